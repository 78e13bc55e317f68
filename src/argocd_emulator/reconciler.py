# ABOUTME: Reconciler owning the Application state machine and the SyncOperation lifecycle
# ABOUTME: Runs hook phases, applies manifests, detects drift, triggers automated syncs and materializes ApplicationSets

"""
Reconciler / sync controller.

=============================================================================
APPLICATION STATE MACHINE
=============================================================================

    created ──> progressing ──(first tick)──> outofsync
                     ^                           │
                     │ start_sync                │ start_sync
    synced ──────────┤<──────────────────────────┘
      │  ^           │
      │  └─ success ─┤
      │              └─ failure ──> degraded ──(start_sync)──> progressing
      └─ drift (tick) ──> outofsync

Sync status and health are separate axes: a successful sync ends
``synced/healthy``, a failed one ``degraded/degraded``, a terminated or
cancelled one ``outofsync/unknown``.

=============================================================================
SYNC OPERATION LIFECYCLE
=============================================================================

start_sync admits the request (exists, not already running, windows allow)
and returns immediately with a ``running`` SyncOperation. The work happens in
a task:

    resolve target revision
    PreSync hooks  ─┐
    apply manifests │  any failure or timeout ─> SyncFail hooks ─> failed
    Sync hooks      │
    PostSync hooks ─┘
    success ─> history.insert(0, ...), synced/healthy

Hooks of a phase run one at a time in declaration order. Every step is
bounded by a timeout. Cancelling the task (the app was deleted, the sync was
terminated, the engine stopped) forces the operation to ``failed`` and
commits no history.

=============================================================================
SINGLE WRITER
=============================================================================

Commands reach the Reconciler through the controller's queue, one at a time.
Sync tasks run on the same event loop and only touch their own application
and operation between suspension points, so no locks are needed. The
invariant "at most one running operation per application" is kept by the
``running`` index, checked and set without an intervening await.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from argocd_emulator.errors import (
    AdmissionError,
    ConflictError,
    GeneratorError,
    NotFoundError,
    PolicyDeniedError,
    ValidationError,
)
from argocd_emulator.generators import ExpansionResult, expand_application_set
from argocd_emulator.models import (
    APPLICATION_SPEC_FIELDS,
    HistoryEntry,
    HookExecution,
    SyncHook,
    SyncOperation,
)
from argocd_emulator.policy import check_admission, resolve_repository, validate_sync_policy
from argocd_emulator.utils.runtime import StepFailed

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from argocd_emulator.config import EngineSettings
    from argocd_emulator.models import (
        Application,
        ApplicationSet,
        Cluster,
        NotificationChannel,
        Project,
        Repository,
        Role,
        SyncWindow,
    )
    from argocd_emulator.utils.clock import Clock
    from argocd_emulator.utils.resolver import RepositoryResolver
    from argocd_emulator.utils.runtime import DriftObserver, HookRunner, ManifestApplier

logger = structlog.get_logger(__name__)

SYNC_PHASES = ("PreSync", "Sync", "PostSync")


@dataclass
class EngineState:
    """Everything the engine knows. Mutated only by the writer."""

    applications: dict[str, Application] = field(default_factory=dict)
    repositories: dict[str, Repository] = field(default_factory=dict)
    projects: dict[str, Project] = field(default_factory=dict)
    roles: dict[str, Role] = field(default_factory=dict)
    sync_windows: dict[str, SyncWindow] = field(default_factory=dict)
    channels: dict[str, NotificationChannel] = field(default_factory=dict)
    application_sets: dict[str, ApplicationSet] = field(default_factory=dict)
    clusters: dict[str, Cluster] = field(default_factory=dict)
    operations: dict[str, SyncOperation] = field(default_factory=dict)
    # application name -> id of its running operation
    running: dict[str, str] = field(default_factory=dict)


@dataclass
class TickReport:
    drifted: list[str] = field(default_factory=list)
    auto_synced: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    unknown: list[str] = field(default_factory=list)
    repositories_checked: list[str] = field(default_factory=list)
    application_sets: dict[str, list[str]] = field(default_factory=dict)


class Reconciler:
    def __init__(
        self,
        state: EngineState,
        settings: EngineSettings,
        clock: Clock,
        resolver: RepositoryResolver,
        hook_runner: HookRunner,
        applier: ManifestApplier,
        drift: DriftObserver,
        emit: Callable[[str, Application, SyncOperation | None], None],
    ) -> None:
        self._state = state
        self._settings = settings
        self._clock = clock
        self._resolver = resolver
        self._hooks = hook_runner
        self._applier = applier
        self._drift = drift
        self._emit = emit
        self._tasks: dict[str, asyncio.Task[None]] = {}
        # application name -> revision whose sync failed; never retried automatically
        self._failed_revisions: dict[str, str] = {}
        self._status_unknown: set[str] = set()
        self._last_repository_check: datetime | None = None
        self._op_ids = itertools.count(1)

    @property
    def tasks(self) -> list[asyncio.Task[None]]:
        return list(self._tasks.values())

    # =========================================================================
    # APPLICATIONS
    # =========================================================================

    def _admit(self, app: Application) -> None:
        errors = check_admission(app, self._state.repositories, self._state.projects)
        if errors:
            raise AdmissionError(f"application '{app.name}'", errors)

    def _store_new(self, app: Application, owner: str | None) -> Application:
        stored = app.model_copy(
            update={
                "status": "progressing",
                "health": "progressing",
                "revision": None,
                "history": [],
                "resources": [],
                "owner": owner,
                "created_at": self._clock.now(),
                "last_synced_at": None,
                "last_sync_duration": None,
            },
            deep=True,
        )
        self._state.applications[stored.name] = stored
        logger.info("application_created", app=stored.name, project=stored.project, owner=owner)
        self._emit("on-created", stored, None)
        return stored

    def _apply_spec(self, existing: Application, desired: Application) -> Application:
        spec = {f: getattr(desired, f) for f in APPLICATION_SPEC_FIELDS}
        merged = existing.model_copy(update=spec, deep=True)
        if merged.spec() != existing.spec() and merged.status == "synced":
            merged.status = "outofsync"
        self._state.applications[merged.name] = merged
        return merged

    def add_application(self, app: Application) -> Application:
        if app.name in self._state.applications:
            raise ValidationError(f"application '{app.name}' already exists")
        self._admit(app)
        return self._store_new(app, owner=None)

    def update_application(self, app: Application) -> Application:
        existing = self._state.applications.get(app.name)
        if existing is None:
            raise NotFoundError(f"application '{app.name}' not found")
        if existing.owner:
            raise ConflictError(
                f"application '{app.name}' is owned by ApplicationSet '{existing.owner}'",
                "edit the ApplicationSet template instead",
            )
        self._admit(app)
        merged = self._apply_spec(existing, app)
        logger.info("application_updated", app=app.name, status=merged.status)
        return merged

    async def remove_application(self, name: str) -> list[str]:
        app = self._state.applications.get(name)
        if app is None:
            raise NotFoundError(f"application '{name}' not found")
        if app.owner:
            raise ConflictError(
                f"application '{name}' is owned by ApplicationSet '{app.owner}'",
                "remove it from the ApplicationSet instead",
            )
        return await self._delete(name, "application deleted")

    async def _delete(self, name: str, reason: str) -> list[str]:
        """Cancel any running sync, run delete hooks and drop the application."""
        app = self._state.applications[name]
        self._cancel_running(name, f"sync operation cancelled: {reason}", app_status=None)

        warnings = await self._run_delete_hooks(app, "PreDelete")
        self._state.applications.pop(name, None)
        self._failed_revisions.pop(name, None)
        self._status_unknown.discard(name)
        warnings += await self._run_delete_hooks(app, "PostDelete")

        logger.info("application_deleted", app=name, reason=reason)
        self._emit("on-deleted", app, None)
        return warnings

    async def _run_delete_hooks(self, app: Application, phase: str) -> list[str]:
        warnings = []
        for hook in (h for h in app.hooks if h.phase == phase):
            try:
                await asyncio.wait_for(self._hooks.run(app, hook), self._settings.hook_timeout_seconds)
            except (StepFailed, TimeoutError) as e:
                message = str(e) or "timed out"
                logger.warning("delete_hook_failed", app=app.name, hook=hook.name, phase=phase, error=message)
                warnings.append(f"{phase} hook '{hook.name}' failed: {message}")
        return warnings

    # =========================================================================
    # SYNC
    # =========================================================================

    def start_sync(
        self,
        name: str,
        initiated_by: str | None = None,
        kind: str = "sync",
        automatic: bool = False,
        target_revision: str | None = None,
    ) -> tuple[SyncOperation, list[str]]:
        """
        Admit a sync and schedule it.

        Raises:
            NotFoundError: the application does not exist
            ConflictError: a sync is already running for it
            PolicyDeniedError: a sync window blocks it

        Returns:
            The running SyncOperation and any window warnings
        """
        app = self._state.applications.get(name)
        if app is None:
            raise NotFoundError(f"application '{name}' not found")
        running = self._state.running.get(name)
        if running is not None:
            raise ConflictError(
                f"a sync operation is already running for application '{name}'",
                f"operation {running}",
            )

        validation = validate_sync_policy(
            app.sync_policy,
            self._state.sync_windows.values(),
            name,
            app.project,
            self._clock.now(),
            self._settings.timezone,
            manual=not automatic,
        )
        if not validation.valid:
            raise PolicyDeniedError(
                validation.errors[0],
                details="; ".join(validation.errors[1:]) or None,
                blocked_by=validation.blocking_window,
            )

        if target_revision is not None:
            self._pin_revision(app, target_revision)

        op = SyncOperation(
            id=f"op-{next(self._op_ids):06d}",
            application=name,
            kind=kind,
            started_at=self._clock.now(),
            initiated_by=initiated_by,
            hooks=[
                HookExecution(name=h.name, kind=h.kind, phase=h.phase)
                for phase in SYNC_PHASES
                for h in app.hooks
                if h.phase == phase
            ],
        )
        self._state.operations[op.id] = op
        self._state.running[name] = op.id
        app.status = "progressing"
        app.health = "progressing"

        logger.info("sync_started", app=name, operation=op.id, kind=kind, initiated_by=initiated_by)
        self._emit("on-sync-running", app, op)

        task = asyncio.create_task(self._run_sync(name, op), name=f"sync-{name}-{op.id}")
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget_task(n, t))
        return op, validation.warnings

    def _forget_task(self, name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    async def _run_sync(self, name: str, op: SyncOperation) -> None:
        try:
            await self._execute(name, op)
        except asyncio.CancelledError:
            if op.status == "running":
                self._abort(name, op, "sync operation cancelled", app_status="outofsync")
            raise

    async def _execute(self, name: str, op: SyncOperation) -> None:
        try:
            app = self._state.applications[name]
            op.revision = await self._resolve_target(app)
            await self._run_phase(name, op, "PreSync")

            op.phase = "Sync"
            app = self._state.applications[name]
            try:
                op.resources = await asyncio.wait_for(
                    self._applier.apply(app, op.revision),
                    self._settings.sync_timeout_seconds,
                )
            except TimeoutError:
                raise StepFailed(
                    f"applying manifests exceeded {self._settings.sync_timeout_seconds:g}s"
                ) from None

            await self._run_phase(name, op, "Sync")
            await self._run_phase(name, op, "PostSync")
        except (StepFailed, GeneratorError) as e:
            await self._fail(name, op, str(e))
            return
        self._succeed(name, op)

    def _pin_revision(self, app: Application, revision: str) -> None:
        # helm sources resolve from the chart version, not target_revision
        app.target_revision = revision
        repo = resolve_repository(app.repository, self._state.repositories)
        if repo is not None and repo.type == "helm" and app.helm is not None and app.helm.chart:
            app.helm = app.helm.model_copy(update={"version": revision})

    async def _resolve_target(self, app: Application) -> str:
        repo = resolve_repository(app.repository, self._state.repositories)
        if repo is None:
            raise GeneratorError(f"repository '{app.repository}' is not configured")
        if repo.type == "helm" and app.helm is not None and app.helm.chart:
            versions = await self._resolver.list_chart_versions(repo.url, app.helm.chart)
            if app.helm.version:
                if versions and app.helm.version not in versions:
                    raise GeneratorError(
                        f"chart '{app.helm.chart}' has no version '{app.helm.version}'"
                    )
                return app.helm.version
            return versions[-1] if versions else app.target_revision
        return await self._resolver.resolve_revision(repo.url, app.target_revision)

    async def _run_phase(self, name: str, op: SyncOperation, phase: str) -> None:
        op.phase = phase
        for execution in [h for h in op.hooks if h.phase == phase]:
            await self._run_hook(name, op, execution)

    async def _run_hook(self, name: str, op: SyncOperation, execution: HookExecution) -> None:
        app = self._state.applications[name]
        hook = SyncHook(name=execution.name, kind=execution.kind, phase=execution.phase)
        execution.status = "running"
        execution.started_at = self._clock.now()
        log = logger.bind(app=name, operation=op.id, hook=hook.name, phase=hook.phase)
        log.debug("hook_started")
        try:
            execution.message = await asyncio.wait_for(
                self._hooks.run(app, hook), self._settings.hook_timeout_seconds
            )
        except TimeoutError:
            execution.message = f"timed out after {self._settings.hook_timeout_seconds:g}s"
        except StepFailed as e:
            execution.message = str(e)
        else:
            execution.status = "succeeded"
            execution.finished_at = self._clock.now()
            log.debug("hook_succeeded")
            return

        execution.status = "failed"
        execution.finished_at = self._clock.now()
        log.warning("hook_failed", error=execution.message)
        raise StepFailed(f"{hook.phase} hook '{hook.name}' failed: {execution.message}")

    async def _fail(self, name: str, op: SyncOperation, error: str) -> None:
        op.error = error
        app = self._state.applications.get(name)
        if app is not None:
            for hook in (h for h in app.hooks if h.phase == "SyncFail"):
                execution = HookExecution(name=hook.name, kind=hook.kind, phase="SyncFail")
                op.hooks.append(execution)
                op.phase = "SyncFail"
                try:
                    await self._run_hook(name, op, execution)
                except StepFailed as e:
                    logger.warning("syncfail_hook_failed", app=name, operation=op.id, error=str(e))

        now = self._clock.now()
        op.status = "failed"
        op.finished_at = now
        self._release(name, op)
        self._failed_revisions[name] = op.revision or (app.target_revision if app is not None else "")
        logger.warning("sync_failed", app=name, operation=op.id, error=error)

        app = self._state.applications.get(name)
        if app is None:
            return
        app.status = "degraded"
        app.health = "degraded"
        app.last_sync_duration = op.duration
        self._emit("on-sync-failed", app, op)
        self._emit("on-health-degraded", app, op)

    def _succeed(self, name: str, op: SyncOperation) -> None:
        app = self._state.applications[name]
        now = self._clock.now()
        previous = app.revision
        revision = op.revision or app.target_revision

        op.status = "success"
        op.finished_at = now
        self._release(name, op)

        next_id = int(app.history[0].id) + 1 if app.history else 0
        entry = HistoryEntry(id=str(next_id), revision=revision, deployed_at=now, deployed_by=op.initiated_by)
        app.history = [entry, *app.history][: self._settings.history_limit]
        app.revision = revision
        app.status = "synced"
        app.health = "healthy"
        app.resources = list(op.resources)
        app.last_synced_at = now
        app.last_sync_duration = op.duration

        self._failed_revisions.pop(name, None)
        self._status_unknown.discard(name)
        self._drift.acknowledge(app)

        logger.info("sync_succeeded", app=name, operation=op.id, revision=revision)
        self._emit("on-sync-succeeded", app, op)
        if previous != revision:
            self._emit("on-deployed", app, op)

    def _release(self, name: str, op: SyncOperation) -> None:
        if self._state.running.get(name) == op.id:
            del self._state.running[name]
        self._trim_operations()

    def _trim_operations(self) -> None:
        finished = [op_id for op_id, op in self._state.operations.items() if op.status != "running"]
        excess = len(finished) - self._settings.operation_retention
        for op_id in finished[: max(excess, 0)]:
            del self._state.operations[op_id]

    def _abort(self, name: str, op: SyncOperation, reason: str, app_status: str | None) -> None:
        op.status = "failed"
        op.error = reason
        op.finished_at = self._clock.now()
        for execution in op.hooks:
            if execution.status in ("pending", "running"):
                execution.status = "failed"
                execution.message = reason
        self._release(name, op)
        logger.info("sync_aborted", app=name, operation=op.id, reason=reason)

        app = self._state.applications.get(name)
        if app is not None and app_status is not None:
            app.status = app_status
            app.health = "unknown"
            self._emit("on-sync-failed", app, op)

    def _cancel_running(self, name: str, reason: str, app_status: str | None) -> SyncOperation | None:
        op_id = self._state.running.get(name)
        if op_id is None:
            return None
        op = self._state.operations[op_id]
        self._abort(name, op, reason, app_status)
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
        return op

    def terminate_sync(self, name: str) -> SyncOperation:
        if name not in self._state.applications:
            raise NotFoundError(f"application '{name}' not found")
        op = self._cancel_running(name, "sync operation terminated", app_status="outofsync")
        if op is None:
            raise ConflictError(f"no sync operation is running for application '{name}'")
        return op

    def cancel_all(self, reason: str) -> None:
        for name in list(self._state.running):
            self._cancel_running(name, reason, app_status="outofsync")

    def rollback(self, name: str, initiated_by: str | None = None) -> tuple[SyncOperation, list[str]]:
        """Re-deploy the previous history entry's revision."""
        app = self._state.applications.get(name)
        if app is None:
            raise NotFoundError(f"application '{name}' not found")
        if len(app.history) < 2:
            raise ConflictError(
                f"application '{name}' has no previous revision to roll back to",
                f"history has {len(app.history)} entr{'y' if len(app.history) == 1 else 'ies'}",
            )
        target = app.history[1].revision
        if target == app.revision:
            raise ConflictError(f"application '{name}' is already at revision '{target}'")
        return self.start_sync(name, initiated_by, kind="rollback", target_revision=target)

    # =========================================================================
    # PERIODIC RE-EVALUATION
    # =========================================================================

    async def tick(self) -> TickReport:
        """
        One reconciliation pass.

        Repositories are checked when due. Every idle application is compared
        against its desired revision and live state, and automated ones that
        need it are synced (subject to sync windows). Enabled ApplicationSets
        are re-expanded. Running this twice without input changes changes
        nothing the second time.
        """
        report = TickReport()
        now = self._clock.now()
        interval = self._settings.repository_check_interval_seconds
        if (
            self._last_repository_check is None
            or (now - self._last_repository_check).total_seconds() >= interval
        ):
            await self.check_repositories(report)

        for name in sorted(self._state.applications):
            await self.refresh(name, report)

        for appset in list(self._state.application_sets.values()):
            if appset.enabled:
                result = await self.reconcile_application_set(appset.name)
                report.application_sets[appset.name] = result.warnings + result.errors

        if report.drifted or report.auto_synced or report.blocked:
            logger.info(
                "tick_completed",
                drifted=report.drifted,
                auto_synced=report.auto_synced,
                blocked=sorted(report.blocked),
            )
        return report

    async def refresh(self, name: str, report: TickReport | None = None) -> TickReport:
        """Drift detection and automated sync for one application."""
        report = report if report is not None else TickReport()
        app = self._state.applications.get(name)
        if app is None or name in self._state.running:
            return report

        try:
            desired = await self._resolve_target(app)
        except GeneratorError as e:
            if name not in self._status_unknown:
                self._status_unknown.add(name)
                report.unknown.append(name)
                logger.warning("sync_status_unknown", app=name, error=str(e))
                self._emit("on-sync-status-unknown", app, None)
            return report
        self._status_unknown.discard(name)

        # the app may have changed while the resolver was consulted
        app = self._state.applications.get(name)
        if app is None or name in self._state.running:
            return report

        new_revision = desired != app.revision
        if app.status == "progressing" and app.revision is None:
            app.status = "outofsync"
            app.health = "missing"
            report.drifted.append(name)
        elif app.status == "synced" and (new_revision or self._drift.has_drifted(app)):
            app.status = "outofsync"
            report.drifted.append(name)
            logger.info("drift_detected", app=name, desired=desired, live=app.revision)

        if self._wants_auto_sync(app, desired, new_revision):
            try:
                self.start_sync(name, "automated", automatic=True)
            except PolicyDeniedError as e:
                report.blocked[name] = e.blocked_by or str(e)
                logger.info("auto_sync_blocked", app=name, window=e.blocked_by)
            else:
                report.auto_synced.append(name)
        return report

    def _wants_auto_sync(self, app: Application, desired: str, new_revision: bool) -> bool:
        policy = app.sync_policy
        if not policy.is_automated:
            return False
        failed = self._failed_revisions.get(app.name)
        if failed is not None and failed in (desired, app.target_revision):
            return False
        if app.status == "outofsync":
            # live-state drift alone is only repaired with self-heal
            return new_revision or app.revision is None or policy.self_heal
        return app.status == "degraded"

    async def check_repositories(self, report: TickReport | None = None) -> None:
        now = self._clock.now()
        for repo in list(self._state.repositories.values()):
            await self.check_repository(repo)
            if report is not None:
                report.repositories_checked.append(repo.name)
        self._last_repository_check = now

    async def check_repository(self, repo: Repository) -> None:
        try:
            await self._resolver.check_connection(repo)
        except GeneratorError as e:
            repo.connection_status = "failed"
            repo.last_connection_error = str(e)
            logger.warning("repository_unreachable", repository=repo.name, error=str(e))
        else:
            repo.connection_status = "successful"
            repo.last_connection_error = None
        repo.last_verified_at = self._clock.now()

    # =========================================================================
    # APPLICATION SETS
    # =========================================================================

    async def reconcile_application_set(self, name: str) -> ExpansionResult:
        """
        Expand an ApplicationSet and converge its owned applications.

        Creates missing applications, updates changed ones and prunes the ones
        no row produces anymore. Pruning is skipped when a generator failed,
        so a flaky Git server cannot delete a fleet.
        """
        appset = self._state.application_sets[name]
        result = await expand_application_set(appset, self._resolver, self._state.clusters.values())

        desired: list[Application] = []
        for app in result.applications:
            existing = self._state.applications.get(app.name)
            if existing is not None and existing.owner != name:
                result.warnings.append(
                    f"application '{app.name}' already exists and is not owned by '{name}'"
                )
                continue
            errors = check_admission(app, self._state.repositories, self._state.projects)
            if errors:
                result.warnings.append(f"application '{app.name}' skipped: {'; '.join(errors)}")
                continue
            desired.append(app)

        wanted = {app.name for app in desired}
        kept: list[str] = []
        for old in appset.generated_applications:
            current = self._state.applications.get(old)
            if old in wanted or current is None or current.owner != name:
                continue
            if result.errors:
                kept.append(old)
            else:
                await self._delete(old, f"pruned by ApplicationSet '{name}'")

        for app in desired:
            existing = self._state.applications.get(app.name)
            if existing is None:
                self._store_new(app, owner=name)
            else:
                self._apply_spec(existing, app)

        appset.generated_applications = [app.name for app in desired] + kept
        logger.info(
            "appset_reconciled",
            appset=name,
            applications=appset.generated_applications,
            warnings=len(result.warnings),
            errors=len(result.errors),
        )
        return result

    async def retract_application_set(self, appset: ApplicationSet, orphan: bool) -> list[str]:
        """Remove (or, with preserve, keep) the applications an ApplicationSet owns."""
        warnings: list[str] = []
        for name in appset.generated_applications:
            app = self._state.applications.get(name)
            if app is None or app.owner != appset.name:
                continue
            if not appset.preserve_resources_on_deletion:
                warnings += await self._delete(name, f"ApplicationSet '{appset.name}' retracted")
            elif orphan:
                app.owner = None
                logger.info("application_orphaned", app=name, appset=appset.name)
        if not appset.preserve_resources_on_deletion or orphan:
            appset.generated_applications = []
        return warnings
