# ABOUTME: Policy evaluation for the GitOps engine
# ABOUTME: RBAC role policies, sync-window validation of sync policies, and admission reference checks

"""Policy evaluation: RBAC, sync windows and admission checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

import structlog

from argocd_emulator.errors import NotFoundError, PolicyDeniedError
from argocd_emulator.models import SyncPolicy
from argocd_emulator.schedule import is_within

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime

    from argocd_emulator.models import Application, Project, Repository, Role, SyncWindow

logger = structlog.get_logger(__name__)


def _glob(pattern: str | None, value: str | None) -> bool:
    if pattern in (None, "", "*"):
        return True
    if value is None:
        return False
    return fnmatchcase(value, pattern)


# =============================================================================
# RBAC
# =============================================================================


@dataclass
class AccessDecision:
    """Result of evaluating one access request against one role."""

    role: str
    action: str
    resource: str
    object: str | None
    effect: str
    matched_policy: int | None = None

    @property
    def allowed(self) -> bool:
        return self.effect == "allow"

    def format_message(self) -> str:
        """Format decision for agent consumption."""
        target = f"{self.resource}/{self.object}" if self.object else self.resource
        if self.matched_policy is None:
            reason = "no policy matched (default deny)"
        else:
            reason = f"policy #{self.matched_policy} ({self.effect})"
        verdict = "ALLOWED" if self.allowed else "DENIED"
        return f"{verdict}: role '{self.role}' {self.action} {target} - {reason}"


def evaluate_rbac(
    role: Role,
    action: str,
    resource: str,
    obj: str | None = None,
) -> AccessDecision:
    """Evaluate an access request against a role.

    Policies are scanned in declaration order and the first one whose
    action, resource and object pattern match decides the effect. A deny
    placed before a broader allow wins even if the allow is more specific.
    No match means deny.

    Args:
        role: Role whose policies are evaluated
        action: Requested action (e.g. "sync")
        resource: Requested resource type (e.g. "applications")
        obj: Optional object name, matched against the policy's glob

    Returns:
        AccessDecision naming the matching policy, if any
    """
    for index, policy in enumerate(role.policies):
        if policy.action not in ("*", action):
            continue
        if policy.resource not in ("*", resource):
            continue
        if not _glob(policy.object, obj):
            continue
        return AccessDecision(
            role=role.name,
            action=action,
            resource=resource,
            object=obj,
            effect=policy.effect,
            matched_policy=index,
        )
    return AccessDecision(role=role.name, action=action, resource=resource, object=obj, effect="deny")


def require_access(
    roles: Mapping[str, Role],
    role_name: str,
    action: str,
    resource: str,
    obj: str | None = None,
) -> AccessDecision:
    """Evaluate and raise PolicyDeniedError unless allowed."""
    role = roles.get(role_name)
    if role is None:
        raise NotFoundError(f"Role '{role_name}' not found")
    decision = evaluate_rbac(role, action, resource, obj)
    if not decision.allowed:
        logger.info("rbac_denied", role=role_name, action=action, resource=resource, object=obj)
        raise PolicyDeniedError(
            f"RBAC denied {action} on {resource}" + (f" '{obj}'" if obj else ""),
            details=decision.format_message(),
            blocked_by=f"role:{role_name}",
        )
    return decision


# =============================================================================
# SYNC WINDOWS
# =============================================================================


@dataclass
class SyncPolicyValidation:
    """Outcome of validating a sync policy against sync windows."""

    valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    blocking_window: str | None = None

    def _error(self, message: str, window: str | None = None) -> None:
        self.valid = False
        self.errors.append(message)
        if window and self.blocking_window is None:
            self.blocking_window = window


def applicable_windows(
    windows: Iterable[SyncWindow],
    app_name: str,
    project: str | None,
) -> list[SyncWindow]:
    """Enabled windows scoped to this app or project, or unscoped."""
    return [w for w in windows if w.enabled and w.applies_to(app_name, project)]


def validate_sync_policy(
    policy: SyncPolicy | str,
    windows: Iterable[SyncWindow],
    app_name: str,
    project: str | None,
    now: datetime,
    tz: str = "UTC",
    manual: bool = False,
) -> SyncPolicyValidation:
    """Validate a sync policy against the sync windows open at ``now``.

    Automated syncs (``automated`` and ``sync-window`` policies, unless
    ``manual`` is set) are blocked by any open deny window and by allow
    windows that exist but are all closed. Manual syncs are blocked the same
    way unless the blocking window sets ``manualSync``, in which case the
    block becomes a warning.

    Args:
        policy: Sync policy (model or mode string)
        windows: All configured sync windows
        app_name: Application being synced
        project: Project of the application
        now: Evaluation instant
        tz: Reference timezone of daily-range windows
        manual: Validate a manual sync instead of an automatic one

    Returns:
        SyncPolicyValidation with errors, warnings and the blocking window
    """
    if isinstance(policy, str):
        policy = SyncPolicy.model_validate(policy)
    result = SyncPolicyValidation()
    automatic = policy.is_automated and not manual

    scoped = applicable_windows(windows, app_name, project)
    allows = [w for w in scoped if w.kind == "allow"]
    open_allows = [w for w in allows if is_within(w.schedule, w.duration, now, tz)]
    open_denies = [
        w for w in scoped if w.kind == "deny" and is_within(w.schedule, w.duration, now, tz)
    ]

    for window in open_denies:
        if automatic:
            result._error(
                f"Sync window '{window.name}' (deny) is active: automated sync is blocked",
                window.name,
            )
        elif window.manual_sync:
            result.warnings.append(
                f"Sync window '{window.name}' (deny) is active; manual sync permitted (manualSync)"
            )
        else:
            result._error(
                f"Sync window '{window.name}' (deny) is active and does not permit manual sync",
                window.name,
            )

    if allows and not open_allows:
        names = ", ".join(w.name for w in allows)
        if automatic:
            result._error(
                f"No allow window is active ({names}): automated sync is blocked",
                allows[0].name,
            )
        elif any(w.manual_sync for w in allows):
            result.warnings.append(
                f"No allow window is active ({names}); manual sync permitted (manualSync)"
            )
        else:
            result._error(
                f"No allow window is active ({names}) and none permits manual sync",
                allows[0].name,
            )

    if policy.mode == "sync-window" and not allows:
        result.warnings.append(
            f"Policy 'sync-window' but no allow window applies to '{app_name}'; "
            "syncs are only restricted by deny windows"
        )

    return result


# =============================================================================
# ADMISSION
# =============================================================================


def resolve_repository(reference: str, repositories: Mapping[str, Repository]) -> Repository | None:
    """Find a repository by name, then by URL."""
    if reference in repositories:
        return repositories[reference]
    for repo in repositories.values():
        if repo.url == reference:
            return repo
    return None


def check_admission(
    app: Application,
    repositories: Mapping[str, Repository],
    projects: Mapping[str, Project],
) -> list[str]:
    """Referential checks performed when an application is admitted.

    Returns:
        List of error messages; empty when the application is admissible
    """
    errors: list[str] = []

    repo = resolve_repository(app.repository, repositories)
    if repo is None:
        errors.append(f"repository '{app.repository}' is not configured (by name or URL)")
    elif repo.type == "helm" and (app.helm is None or not app.helm.chart):
        errors.append(f"repository '{repo.name}' is a Helm repository: helm.chart is required")

    project = projects.get(app.project)
    if project is None:
        errors.append(f"project '{app.project}' does not exist")
        return errors

    if repo is not None:
        candidates = (repo.url, repo.name)
        if not any(_glob(p, c) for p in project.source_repos for c in candidates):
            errors.append(f"repository '{repo.url}' is not permitted in project '{project.name}'")

    dest = app.destination
    if not any(
        _glob(d.server, dest.server) and _glob(d.namespace, dest.namespace)
        for d in project.destinations
    ):
        errors.append(
            f"destination {dest.server}/{dest.namespace} is not permitted in project '{project.name}'"
        )

    return errors
