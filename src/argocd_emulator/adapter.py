# ABOUTME: Config sync adapter between the declarative config store and engine models
# ABOUTME: Applies defaults once at ingestion, loads JSON config files and exports engine state back out

"""
Config sync adapter.

=============================================================================
WHERE DO DEFAULTS COME FROM?
=============================================================================

The UI stores plain camelCase records and leaves most fields out. Every
default the engine relies on is applied HERE, once, when records come in:

    application  project "default", path ".", targetRevision "main",
                 destination https://kubernetes.default.svc / "default",
                 syncPolicy from settings.default_sync_policy
    repository   type "git", connectionStatus "unknown"
    project      sourceRepos ["*"], destinations [{server: "*", namespace: "*"}]
    config       a "default" project exists even when none is declared

After ``resolve_defaults`` the engine never re-derives a default.

=============================================================================
CONFIG SHAPE
=============================================================================

    {
      "applications": [...],
      "repositories": [...],
      "projects": [...],
      "roles": [...],
      "syncWindows": [...],
      "notificationChannels": [...],
      "applicationSets": [...],
      "clusters": [...]
    }

Every section is optional. Names must be unique within a section.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from argocd_emulator.errors import AdmissionError, ValidationError
from argocd_emulator.models import (
    Application,
    ApplicationSet,
    Cluster,
    EngineModel,
    NotificationChannel,
    Project,
    Repository,
    Role,
    SyncWindow,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from pathlib import Path

    from argocd_emulator.config import EngineSettings

logger = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_PROJECT = "default"


class DeclarativeConfig(EngineModel):
    applications: list[Application] = Field(default_factory=list)
    repositories: list[Repository] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)
    roles: list[Role] = Field(default_factory=list)
    sync_windows: list[SyncWindow] = Field(default_factory=list)
    notification_channels: list[NotificationChannel] = Field(default_factory=list)
    application_sets: list[ApplicationSet] = Field(default_factory=list)
    clusters: list[Cluster] = Field(default_factory=list)


def _describe(e: PydanticValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc']) or 'record'}: {err['msg']}" for err in e.errors()]


def resolve_entity(
    model: type[M],
    raw: M | Mapping[str, Any],
    settings: EngineSettings | None = None,
) -> M:
    """
    Turn one record into a validated model, applying defaults.

    Raises:
        AdmissionError: the record does not validate
    """
    if isinstance(raw, model):
        return raw.model_copy(deep=True)
    data = dict(raw)
    if model is Application and settings is not None:
        if "syncPolicy" not in data and "sync_policy" not in data:
            data["sync_policy"] = settings.default_sync_policy
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        name = data.get("name") or "<unnamed>"
        raise AdmissionError(f"{model.__name__} '{name}'", _describe(e)) from e


def _ensure_unique(kind: str, names: Iterable[str]) -> None:
    seen: set[str] = set()
    duplicates = []
    for name in names:
        if name in seen:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise ValidationError(f"duplicate {kind} name(s): {', '.join(sorted(set(duplicates)))}")


SECTIONS: dict[str, tuple[str, type[BaseModel]]] = {
    "applications": ("applications", Application),
    "repositories": ("repositories", Repository),
    "projects": ("projects", Project),
    "roles": ("roles", Role),
    "sync_windows": ("syncWindows", SyncWindow),
    "notification_channels": ("notificationChannels", NotificationChannel),
    "application_sets": ("applicationSets", ApplicationSet),
    "clusters": ("clusters", Cluster),
}


def resolve_defaults(raw: Mapping[str, Any], settings: EngineSettings | None = None) -> DeclarativeConfig:
    """
    Validate a raw declarative config and apply every default.

    Accepts camelCase (UI) or snake_case section names. Records may arrive in
    any order.

    Raises:
        AdmissionError: one or more records do not validate
        ValidationError: duplicate names within a section
    """
    sections: dict[str, list[Any]] = {}
    errors: list[str] = []
    for field_name, (alias, model) in SECTIONS.items():
        records = raw.get(alias, raw.get(field_name)) or []
        resolved = []
        for record in records:
            try:
                resolved.append(resolve_entity(model, record, settings))
            except AdmissionError as e:
                errors.extend(f"{e.message}: {err}" for err in e.errors)
        sections[field_name] = resolved
    if errors:
        raise AdmissionError("config", errors)

    for field_name, records in sections.items():
        _ensure_unique(field_name.replace("_", " "), (r.name for r in records))

    if not any(p.name == DEFAULT_PROJECT for p in sections["projects"]):
        sections["projects"].insert(0, Project(name=DEFAULT_PROJECT, description="Default project"))

    config = DeclarativeConfig(**sections)
    logger.debug(
        "config_resolved",
        **{name: len(records) for name, records in sections.items()},
    )
    return config


def load_config_file(path: Path, settings: EngineSettings | None = None) -> DeclarativeConfig:
    """Read a JSON declarative config file."""
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(f"config file '{path}' is not valid JSON", str(e)) from e
    if not isinstance(raw, dict):
        raise ValidationError(f"config file '{path}' must contain a JSON object")
    return resolve_defaults(raw, settings)


_OBSERVED_APPLICATION_FIELDS = {
    "status",
    "health",
    "revision",
    "history",
    "resources",
    "owner",
    "created_at",
    "last_synced_at",
    "last_sync_duration",
}
_OBSERVED_REPOSITORY_FIELDS = {"connection_status", "last_verified_at", "last_connection_error"}


def export_config(
    applications: Iterable[Application] = (),
    repositories: Iterable[Repository] = (),
    projects: Iterable[Project] = (),
    roles: Iterable[Role] = (),
    sync_windows: Iterable[SyncWindow] = (),
    notification_channels: Iterable[NotificationChannel] = (),
    application_sets: Iterable[ApplicationSet] = (),
    clusters: Iterable[Cluster] = (),
) -> dict[str, Any]:
    """
    Render engine state back into the declarative (camelCase) shape.

    Observed state is left out, as are applications an ApplicationSet owns:
    both are derived and would be regenerated. Secrets come out masked.
    """

    def dump(records: Iterable[BaseModel], exclude: set[str] | None = None) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json", by_alias=True, exclude=exclude) for r in records]

    return {
        "applications": dump(
            (a for a in applications if a.owner is None), _OBSERVED_APPLICATION_FIELDS
        ),
        "repositories": dump(repositories, _OBSERVED_REPOSITORY_FIELDS),
        "projects": dump(projects),
        "roles": dump(roles),
        "syncWindows": dump(sync_windows),
        "notificationChannels": dump(notification_channels),
        "applicationSets": dump(application_sets, {"generated_applications"}),
        "clusters": dump(clusters),
    }
