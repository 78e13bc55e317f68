# ABOUTME: Read-only metrics aggregation over an engine snapshot
# ABOUTME: Status/health counts, sync totals, hourly sync rate, average duration, repository and notification counts

"""Metrics read model. Pure: takes snapshot data, returns a new model, mutates nothing."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, get_args

from pydantic import Field

from argocd_emulator.models import EngineModel, HealthStatus, SyncStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from argocd_emulator.models import (
        Application,
        ApplicationSet,
        Project,
        Repository,
        SyncOperation,
    )
    from argocd_emulator.notifications import DispatchRecord

SYNC_RATE_WINDOW_HOURS = 24


class EngineMetrics(EngineModel):
    generated_at: datetime

    applications_total: int = 0
    applications_by_status: dict[str, int] = Field(default_factory=dict)
    applications_by_health: dict[str, int] = Field(default_factory=dict)

    sync_operations_total: int = 0
    sync_operations_success: int = 0
    sync_operations_failed: int = 0
    sync_operations_running: int = 0
    # syncs started per hour over the trailing 24h, oldest hour first
    sync_rate: list[int] = Field(default_factory=lambda: [0] * SYNC_RATE_WINDOW_HOURS)
    syncs_last_24h: int = 0
    average_sync_duration: float | None = None

    repositories_total: int = 0
    repositories_connected: int = 0
    repositories_failed: int = 0
    projects_total: int = 0
    application_sets_total: int = 0
    generated_applications_total: int = 0

    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_pending: int = 0

    requests_total: int = 0
    requests_errors: int = 0


def sync_rate(operations: Iterable[SyncOperation], now: datetime) -> list[int]:
    """Count syncs whose start falls in each of the trailing 24 hours, oldest first."""
    buckets = [0] * SYNC_RATE_WINDOW_HOURS
    window = timedelta(hours=SYNC_RATE_WINDOW_HOURS)
    for op in operations:
        age = now - op.started_at
        if age < timedelta(0) or age >= window:
            continue
        hours_ago = int(age.total_seconds() // 3600)
        buckets[SYNC_RATE_WINDOW_HOURS - 1 - hours_ago] += 1
    return buckets


def compute_metrics(
    now: datetime,
    applications: Iterable[Application],
    operations: Iterable[SyncOperation],
    repositories: Iterable[Repository] = (),
    projects: Iterable[Project] = (),
    application_sets: Iterable[ApplicationSet] = (),
    dispatches: Iterable[DispatchRecord] = (),
    requests_total: int = 0,
    requests_errors: int = 0,
) -> EngineMetrics:
    applications = list(applications)
    operations = list(operations)
    repositories = list(repositories)
    application_sets = list(application_sets)
    dispatches = list(dispatches)

    by_status = dict.fromkeys(get_args(SyncStatus), 0)
    by_health = dict.fromkeys(get_args(HealthStatus), 0)
    for app in applications:
        by_status[app.status] += 1
        by_health[app.health] += 1

    durations = [op.duration for op in operations if op.status != "running" and op.duration is not None]
    rate = sync_rate(operations, now)

    return EngineMetrics(
        generated_at=now,
        applications_total=len(applications),
        applications_by_status=by_status,
        applications_by_health=by_health,
        sync_operations_total=len(operations),
        sync_operations_success=sum(1 for op in operations if op.status == "success"),
        sync_operations_failed=sum(1 for op in operations if op.status == "failed"),
        sync_operations_running=sum(1 for op in operations if op.status == "running"),
        sync_rate=rate,
        syncs_last_24h=sum(rate),
        average_sync_duration=sum(durations) / len(durations) if durations else None,
        repositories_total=len(repositories),
        repositories_connected=sum(1 for r in repositories if r.connection_status == "successful"),
        repositories_failed=sum(1 for r in repositories if r.connection_status == "failed"),
        projects_total=sum(1 for _ in projects),
        application_sets_total=len(application_sets),
        generated_applications_total=sum(len(s.generated_applications) for s in application_sets),
        notifications_sent=sum(1 for d in dispatches if d.status == "delivered"),
        notifications_failed=sum(1 for d in dispatches if d.status == "failed"),
        notifications_pending=sum(1 for d in dispatches if d.status == "pending"),
        requests_total=requests_total,
        requests_errors=requests_errors,
    )
