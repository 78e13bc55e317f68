# ABOUTME: Domain models for the GitOps reconciliation engine
# ABOUTME: Applications, repositories, projects, roles, channels, sync windows, ApplicationSets, sync operations

"""
Domain models.

=============================================================================
WHY PYDANTIC MODELS?
=============================================================================

Every declarative entity the engine ingests (applications, repositories,
projects, roles, notification channels, sync windows, ApplicationSets) is a
pydantic model. Construction IS validation: an Application with an invalid
name or a SyncWindow with a malformed schedule cannot exist.

Field names are snake_case in Python and camelCase on the wire, matching the
records the UI stores in a node's ``config``:

    Application.model_validate({"name": "web", "targetRevision": "main"})
    app.model_dump(by_alias=True)   # {"name": "web", "targetRevision": ...}

=============================================================================
OWNERSHIP
=============================================================================

The Reconciler is the only writer of Application.status/health/history/
hooks/resources and of every SyncOperation. The ApplicationSet expansion is
the only writer of ``ApplicationSet.generated_applications`` and of the
``owner`` field of the Applications it spawns.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from argocd_emulator.conditions import parse_condition
from argocd_emulator.errors import EngineError
from argocd_emulator.schedule import parse_schedule

# =============================================================================
# SHARED VOCABULARY
# =============================================================================

SyncStatus = Literal["synced", "outofsync", "progressing", "degraded"]
HealthStatus = Literal["healthy", "degraded", "progressing", "suspended", "missing", "unknown"]
SyncMode = Literal["manual", "automated", "sync-window"]
HookPhase = Literal["PreSync", "Sync", "PostSync", "SyncFail", "PreDelete", "PostDelete"]
HookStatus = Literal["pending", "running", "succeeded", "failed"]
OperationStatus = Literal["running", "success", "failed"]
RepositoryType = Literal["git", "helm", "oci"]
ConnectionStatus = Literal["unknown", "successful", "failed"]
WindowKind = Literal["allow", "deny"]
Effect = Literal["allow", "deny"]

DEFAULT_SERVER = "https://kubernetes.default.svc"

# Kubernetes DNS-1123 label: lowercase alphanumerics and '-', 63 chars max,
# must start and end with an alphanumeric.
DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
REPOSITORY_URL = re.compile(r"^(https?://|git@|oci://)")


def validate_dns_label(value: str) -> str:
    if not value:
        raise ValueError("name is required")
    if len(value) > 63:
        raise ValueError(f"name '{value}' is longer than 63 characters")
    if not DNS1123_LABEL.match(value):
        raise ValueError(
            f"name '{value}' must be a valid DNS-1123 label "
            "(lowercase alphanumeric characters or '-', starting and ending alphanumeric)"
        )
    return value


class EngineModel(BaseModel):
    """Base model: camelCase aliases, populate by field name too."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# APPLICATION
# =============================================================================


class Destination(EngineModel):
    server: str = DEFAULT_SERVER
    namespace: str = "default"


class HelmSource(EngineModel):
    chart: str | None = None
    version: str | None = None
    release_name: str | None = None
    values: str = ""
    value_files: list[str] = Field(default_factory=list)
    skip_crds: bool = False


class SyncPolicy(EngineModel):
    """
    Sync policy variant: ``manual``, ``automated{prune, selfHeal}`` or
    ``sync-window``.

    Accepts the flat UI spelling (``"automated"``), the Argo CD spelling
    (``{"automated": {"prune": true, "selfHeal": true}}``) and the model's
    own dump (``{"mode": "automated", "prune": true}``).
    """

    mode: SyncMode = "manual"
    prune: bool = False
    self_heal: bool = False

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, data: Any) -> Any:
        if data is None:
            return {"mode": "manual"}
        if isinstance(data, str):
            return {"mode": "automated" if data == "auto" else data}
        if isinstance(data, dict) and "mode" not in data:
            if "automated" in data:
                options = data.get("automated") or {}
                return {"mode": "automated", **options}
            if data.get("syncWindow") or data.get("sync_window"):
                return {"mode": "sync-window"}
        return data

    @property
    def is_automated(self) -> bool:
        return self.mode in ("automated", "sync-window")


class SyncHook(EngineModel):
    name: str
    kind: str = "Job"
    phase: HookPhase = "Sync"
    delete_policy: Literal["HookSucceeded", "HookFailed", "BeforeHookCreation"] = (
        "BeforeHookCreation"
    )


class HistoryEntry(EngineModel):
    id: str
    revision: str
    deployed_at: datetime
    deployed_by: str | None = None


class ManagedResource(EngineModel):
    kind: str
    name: str
    namespace: str | None = None
    status: Literal["synced", "outofsync", "missing", "failed", "skipped"] = "synced"
    health: HealthStatus = "healthy"
    message: str | None = None


# Fields that describe desired state; everything else on Application is
# observed state owned by the Reconciler.
APPLICATION_SPEC_FIELDS = (
    "namespace",
    "project",
    "repository",
    "path",
    "target_revision",
    "helm",
    "destination",
    "sync_policy",
    "hooks",
)


class Application(EngineModel):
    """A deployable unit: a source in a repository and a destination cluster."""

    name: str
    namespace: str = "default"
    project: str = "default"
    repository: str
    path: str = "."
    target_revision: str = "main"
    helm: HelmSource | None = None
    destination: Destination = Field(default_factory=Destination)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    hooks: list[SyncHook] = Field(default_factory=list)

    status: SyncStatus = "progressing"
    health: HealthStatus = "progressing"
    revision: str | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    resources: list[ManagedResource] = Field(default_factory=list)
    owner: str | None = None
    created_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_sync_duration: float | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return validate_dns_label(v)

    @field_validator("repository")
    @classmethod
    def _validate_repository(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("repository is required")
        return v.strip()

    def spec(self) -> dict[str, Any]:
        """Desired-state fields, used to detect spec changes."""
        return self.model_dump(include=set(APPLICATION_SPEC_FIELDS))


# =============================================================================
# REPOSITORIES, PROJECTS, CLUSTERS
# =============================================================================


class Repository(EngineModel):
    name: str
    url: str
    type: RepositoryType = "git"
    username: str | None = None
    password: SecretStr | None = None
    ssh_private_key: SecretStr | None = None
    insecure: bool = False
    enable_lfs: bool = False
    proxy: str | None = None
    project: str | None = None
    connection_status: ConnectionStatus = "unknown"
    last_verified_at: datetime | None = None
    last_connection_error: str | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("repository name is required")
        return v.strip()

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        v = v.strip()
        if not REPOSITORY_URL.match(v):
            raise ValueError(f"repository URL '{v}' must start with http(s)://, git@ or oci://")
        return v


class ProjectDestination(EngineModel):
    server: str = "*"
    namespace: str = "*"


class Project(EngineModel):
    name: str
    description: str | None = None
    source_repos: list[str] = Field(default_factory=lambda: ["*"])
    destinations: list[ProjectDestination] = Field(
        default_factory=lambda: [ProjectDestination()]
    )
    roles: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return validate_dns_label(v)

    @field_validator("roles", mode="before")
    @classmethod
    def _role_names(cls, v: Any) -> Any:
        # the UI stores project roles as objects; only the name is a reference
        if isinstance(v, list):
            return [r.get("name") if isinstance(r, dict) else r for r in v]
        return v


class Cluster(EngineModel):
    name: str
    server: str
    labels: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# RBAC
# =============================================================================


class Policy(EngineModel):
    """
    One RBAC rule. Also accepts the Casbin-style line used by Argo CD's
    ``policy.csv``: ``p, role:ci, applications, sync, default/*, allow``.
    """

    action: str
    resource: str
    effect: Effect = "allow"
    object: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_csv(cls, data: Any) -> Any:
        if not isinstance(data, str):
            return data
        parts = [p.strip() for p in data.split(",")]
        if parts and parts[0] == "p":
            parts = parts[1:]
        if len(parts) != 5:
            raise ValueError(
                f"policy '{data}' must be 'p, <subject>, <resource>, <action>, <object>, <effect>'"
            )
        _subject, resource, action, obj, effect = parts
        return {"resource": resource, "action": action, "object": obj, "effect": effect}


class Role(EngineModel):
    name: str
    description: str | None = None
    policies: list[Policy] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("role name is required")
        return v.strip()


# =============================================================================
# NOTIFICATION CHANNELS
# =============================================================================


class SlackConfig(EngineModel):
    type: Literal["slack"] = "slack"
    webhook_url: str
    channel: str | None = None


class EmailConfig(EngineModel):
    type: Literal["email"] = "email"
    recipients: list[str] = Field(min_length=1)
    smtp_host: str | None = None

    @field_validator("recipients")
    @classmethod
    def _validate_recipients(cls, v: list[str]) -> list[str]:
        for address in v:
            if "@" not in address:
                raise ValueError(f"'{address}' is not an email address")
        return v


class PagerDutyConfig(EngineModel):
    type: Literal["pagerduty"] = "pagerduty"
    routing_key: SecretStr
    severity: Literal["critical", "error", "warning", "info"] = "error"


class WebhookConfig(EngineModel):
    type: Literal["webhook"] = "webhook"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"webhook URL '{v}' must be http(s)")
        return v


class OpsgenieConfig(EngineModel):
    type: Literal["opsgenie"] = "opsgenie"
    api_key: SecretStr
    region: Literal["us", "eu"] = "us"


class MSTeamsConfig(EngineModel):
    type: Literal["msteams"] = "msteams"
    webhook_url: str


ChannelConfig = Annotated[
    SlackConfig | EmailConfig | PagerDutyConfig | WebhookConfig | OpsgenieConfig | MSTeamsConfig,
    Field(discriminator="type"),
]


NOTIFICATION_EVENTS = (
    "on-created",
    "on-deleted",
    "on-sync-running",
    "on-sync-succeeded",
    "on-sync-failed",
    "on-health-degraded",
    "on-deployed",
    "on-sync-status-unknown",
)


class Trigger(EngineModel):
    event: str
    condition: str | None = None

    @field_validator("event")
    @classmethod
    def _validate_event(cls, v: str) -> str:
        if v not in NOTIFICATION_EVENTS:
            raise ValueError(f"unknown event '{v}' (expected one of {', '.join(NOTIFICATION_EVENTS)})")
        return v

    @field_validator("condition")
    @classmethod
    def _validate_condition(cls, v: str | None) -> str | None:
        if v is not None and v.strip():
            parse_condition(v)
            return v
        return None


class NotificationChannel(EngineModel):
    name: str
    enabled: bool = True
    config: ChannelConfig
    triggers: list[Trigger] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _lift_type(cls, data: Any) -> Any:
        # flat UI records keep "type" next to "config"
        if isinstance(data, dict) and "type" in data and not isinstance(data.get("config"), BaseModel):
            data = dict(data)
            config = dict(data.get("config") or {})
            config.setdefault("type", data.pop("type"))
            data["config"] = config
        return data

    @property
    def type(self) -> str:
        return self.config.type


# =============================================================================
# SYNC WINDOWS
# =============================================================================


class SyncWindow(EngineModel):
    name: str
    schedule: str
    duration: int | None = Field(default=None, ge=0)
    kind: WindowKind = "allow"
    applications: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    manual_sync: bool = False
    enabled: bool = True

    @field_validator("schedule")
    @classmethod
    def _validate_schedule(cls, v: str) -> str:
        try:
            parse_schedule(v)
        except EngineError as e:
            raise ValueError(str(e)) from None
        return v.strip()

    def applies_to(self, app_name: str, project: str | None) -> bool:
        if not self.applications and not self.projects:
            return True
        return app_name in self.applications or (project is not None and project in self.projects)


# =============================================================================
# APPLICATION SETS
# =============================================================================


class ListGenerator(EngineModel):
    type: Literal["list"] = "list"
    elements: list[dict[str, str]] = Field(default_factory=list)

    @field_validator("elements", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [
                {str(k): "" if val is None else str(val) for k, val in e.items()}
                if isinstance(e, dict)
                else e
                for e in v
            ]
        return v


class GitDirectory(EngineModel):
    path: str
    exclude: bool = False


class GitFile(EngineModel):
    path: str


class GitGenerator(EngineModel):
    type: Literal["git"] = "git"
    repo_url: str = Field(
        validation_alias=AliasChoices("repoURL", "repoUrl", "repo_url"),
        serialization_alias="repoURL",
    )
    revision: str = "HEAD"
    directories: list[GitDirectory] = Field(default_factory=list)
    files: list[GitFile] = Field(default_factory=list)

    @model_validator(mode="after")
    def _needs_filters(self) -> GitGenerator:
        if not self.directories and not self.files:
            raise ValueError("git generator needs 'directories' or 'files'")
        return self


class LabelSelector(EngineModel):
    match_labels: dict[str, str] = Field(default_factory=dict)


class ClusterGenerator(EngineModel):
    type: Literal["clusters"] = "clusters"
    selector: LabelSelector = Field(default_factory=LabelSelector)
    values: dict[str, str] = Field(default_factory=dict)


Generator = Annotated[
    ListGenerator | GitGenerator | ClusterGenerator,
    Field(discriminator="type"),
]

_GENERATOR_KEYS = {"list": "list", "git": "git", "clusters": "clusters", "cluster": "clusters"}


class ApplicationTemplate(EngineModel):
    """Application stub whose string fields may carry placeholders."""

    name: str
    namespace: str = "default"
    project: str = "default"
    repository: str
    path: str = "."
    target_revision: str = "main"
    helm: HelmSource | None = None
    destination: Destination = Field(default_factory=Destination)
    hooks: list[SyncHook] = Field(default_factory=list)


class ApplicationSet(EngineModel):
    name: str
    generators: list[Generator] = Field(min_length=1)
    template: ApplicationTemplate
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    preserve_resources_on_deletion: bool = False
    go_template: bool = False
    enabled: bool = True
    generated_applications: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return validate_dns_label(v)

    @field_validator("generators", mode="before")
    @classmethod
    def _argo_spelling(cls, v: Any) -> Any:
        # {"list": {"elements": [...]}} -> {"type": "list", "elements": [...]}
        if not isinstance(v, list):
            return v
        normalized = []
        for item in v:
            if isinstance(item, dict) and "type" not in item and len(item) == 1:
                key, body = next(iter(item.items()))
                if key in _GENERATOR_KEYS:
                    item = {"type": _GENERATOR_KEYS[key], **(body or {})}
            normalized.append(item)
        return normalized


# =============================================================================
# SYNC OPERATIONS
# =============================================================================


class HookExecution(EngineModel):
    name: str
    kind: str
    phase: HookPhase
    status: HookStatus = "pending"
    message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class SyncOperation(EngineModel):
    id: str
    application: str
    kind: Literal["sync", "rollback"] = "sync"
    status: OperationStatus = "running"
    phase: HookPhase | None = None
    started_at: datetime
    finished_at: datetime | None = None
    revision: str | None = None
    resources: list[ManagedResource] = Field(default_factory=list)
    hooks: list[HookExecution] = Field(default_factory=list)
    error: str | None = None
    initiated_by: str | None = None

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
