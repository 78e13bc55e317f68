# ABOUTME: ArgoCDEmulationEngine, the single-writer command-queue actor at the engine boundary
# ABOUTME: Serializes commands, converts engine errors into CommandResults, serves snapshot queries

"""
The engine.

=============================================================================
HOW DO CALLERS TALK TO IT?
=============================================================================

Commands (anything that changes state) go through one asyncio queue and are
executed one at a time by a worker task. Each returns a CommandResult and
never raises an engine error:

    async with ArgoCDEmulationEngine(settings, clock=clock) as engine:
        result = await engine.add_application({"name": "web", "repository": "git-repo"})
        result = await engine.start_sync("web")
        if not result:
            print(result.kind, result.errors)

Queries are plain synchronous methods returning deep copies, so the UI can
read while syncs are in flight and cannot corrupt engine state by mutating
what it got back:

    engine.get_applications()
    engine.get_metrics()

=============================================================================
WHAT RUNS CONCURRENTLY?
=============================================================================

    worker task     executes commands, one at a time
    sync tasks      one per running SyncOperation (hooks, apply)
    delivery tasks  one per notification dispatch
    ticker task     submits a ``tick`` command every tick_interval_seconds
                    (only with ``run_ticker=True``)

An unexpected exception inside a handler is not turned into a CommandResult:
it is re-raised to the caller of that command, and the worker keeps going.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from argocd_emulator.adapter import (
    DEFAULT_PROJECT,
    export_config,
    load_config_file,
    resolve_defaults,
    resolve_entity,
)
from argocd_emulator.config import EngineSettings
from argocd_emulator.errors import (
    CommandResult,
    ConflictError,
    EngineError,
    NotFoundError,
    PolicyDeniedError,
    ValidationError,
)
from argocd_emulator.metrics import compute_metrics
from argocd_emulator.models import (
    Application,
    ApplicationSet,
    Cluster,
    NotificationChannel,
    Project,
    Repository,
    Role,
    SyncPolicy,
    SyncWindow,
)
from argocd_emulator.notifications import InMemoryTransport, NotificationDispatcher
from argocd_emulator.policy import evaluate_rbac, resolve_repository
from argocd_emulator.policy import validate_sync_policy as evaluate_sync_policy
from argocd_emulator.reconciler import EngineState, Reconciler, TickReport
from argocd_emulator.utils.clock import SystemClock
from argocd_emulator.utils.logging import AuditLogger, new_correlation_id, set_correlation_id
from argocd_emulator.utils.resolver import StaticResolver
from argocd_emulator.utils.runtime import (
    SimulatedDriftObserver,
    SimulatedHookRunner,
    SimulatedManifestApplier,
)
from argocd_emulator.utils.transport import HttpNotificationTransport

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from pydantic import BaseModel

    from argocd_emulator.adapter import DeclarativeConfig
    from argocd_emulator.metrics import EngineMetrics
    from argocd_emulator.models import SyncOperation
    from argocd_emulator.notifications import DispatchRecord, NotificationTransport
    from argocd_emulator.policy import AccessDecision, SyncPolicyValidation
    from argocd_emulator.utils.clock import Clock
    from argocd_emulator.utils.resolver import RepositoryResolver
    from argocd_emulator.utils.runtime import DriftObserver, HookRunner, ManifestApplier

logger = structlog.get_logger(__name__)


@dataclass
class _Command:
    action: str
    target: str
    handler: Callable[..., Awaitable[CommandResult]]
    args: tuple[Any, ...]
    future: asyncio.Future[CommandResult]


class ArgoCDEmulationEngine:
    """
    GitOps reconciliation engine.

    Collaborators are injected; every one has a simulated default so a bare
    ``ArgoCDEmulationEngine()`` is a working emulator:

        clock        SystemClock
        resolver     StaticResolver (unknown refs resolve to themselves)
        hook_runner  SimulatedHookRunner (instant, never fails)
        applier      SimulatedManifestApplier
        drift        SimulatedDriftObserver (never drifts on its own)
        transport    InMemoryTransport
        audit        AuditLogger on settings.audit_log
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        clock: Clock | None = None,
        resolver: RepositoryResolver | None = None,
        hook_runner: HookRunner | None = None,
        applier: ManifestApplier | None = None,
        drift: DriftObserver | None = None,
        transport: NotificationTransport | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.clock = clock or SystemClock()
        self.resolver = resolver or StaticResolver()
        self.hook_runner = hook_runner or SimulatedHookRunner()
        self.applier = applier or SimulatedManifestApplier()
        self.drift = drift or SimulatedDriftObserver()
        self._owns_transport = transport is None and self.settings.notifications.live_delivery
        if self._owns_transport:
            notifications = self.settings.notifications
            transport = HttpNotificationTransport(
                timeout=notifications.timeout_seconds,
                max_attempts=notifications.max_attempts,
            )
        self.transport: Any = transport or InMemoryTransport()
        self.audit = audit or AuditLogger(self.settings.audit_log, clock=self.clock)

        self._state = EngineState()
        self._state.projects[DEFAULT_PROJECT] = Project(name=DEFAULT_PROJECT, description="Default project")
        self._dispatcher = NotificationDispatcher(
            self.transport, self.clock, retention=self.settings.operation_retention
        )
        self._reconciler = Reconciler(
            self._state,
            self.settings,
            self.clock,
            self.resolver,
            self.hook_runner,
            self.applier,
            self.drift,
            emit=self._emit,
        )

        self._queue: asyncio.Queue[_Command] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._deliveries: set[asyncio.Task[Any]] = set()
        self._requests_total = 0
        self._requests_errors = 0

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self, run_ticker: bool = False) -> None:
        """
        Start the worker (and optionally the ticker).

        When ``settings.config_file`` is set, the file is applied as the first
        command. A file that cannot be read or validated stops the engine
        again and raises.
        """
        if self.running:
            return
        if self._owns_transport:
            await self.transport.__aenter__()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run_worker(), name="engine-worker")
        if run_ticker:
            self._ticker = asyncio.create_task(self._run_ticker(), name="engine-ticker")
        logger.info("engine_started", tick_interval=self.settings.tick_interval_seconds, ticker=run_ticker)

        if self.settings.config_file is not None:
            try:
                config = load_config_file(self.settings.config_file, self.settings)
            except (EngineError, OSError):
                await self.stop()
                raise
            result = await self.apply_config(config)
            if not result:
                logger.warning("config_file_partially_applied", path=str(self.settings.config_file), errors=result.errors)

    async def stop(self) -> None:
        """Stop the ticker and worker, cancel running syncs and pending deliveries."""
        syncs = self._reconciler.tasks
        self._reconciler.cancel_all("sync operation cancelled: engine stopped")
        pending = [t for t in (self._ticker, self._worker) if t is not None]
        pending += syncs + list(self._deliveries)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if self._queue is not None:
            while not self._queue.empty():
                command = self._queue.get_nowait()
                if not command.future.done():
                    command.future.cancel()
        self._ticker = None
        self._worker = None
        self._queue = None
        if self._owns_transport:
            await self.transport.__aexit__(None, None, None)
        logger.info("engine_stopped")

    async def __aenter__(self) -> ArgoCDEmulationEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    async def drain(self) -> None:
        """Wait until no sync is running and every notification has been delivered."""
        while True:
            pending = self._reconciler.tasks + list(self._deliveries)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run_ticker(self) -> None:
        while True:
            await asyncio.sleep(self.settings.tick_interval_seconds)
            result = await self.tick()
            if not result:
                logger.warning("tick_rejected", errors=result.errors)

    # =========================================================================
    # COMMAND QUEUE
    # =========================================================================

    async def _submit(
        self,
        action: str,
        target: str,
        handler: Callable[..., Awaitable[CommandResult]],
        *args: Any,
    ) -> CommandResult:
        if self._queue is None or not self.running:
            raise RuntimeError("Engine not started. Use 'async with' context manager.")
        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(action, target, handler, args, future))
        return await future

    async def _run_worker(self) -> None:
        assert self._queue is not None
        while True:
            command = await self._queue.get()
            try:
                await self._execute(command)
            except asyncio.CancelledError:
                if not command.future.done():
                    command.future.cancel()
                raise
            finally:
                self._queue.task_done()

    async def _execute(self, command: _Command) -> None:
        set_correlation_id(new_correlation_id())
        log = logger.bind(command=command.action, target=command.target)
        log.debug("command_received")
        self._requests_total += 1

        try:
            result = await command.handler(*command.args)
        except PolicyDeniedError as e:
            result = CommandResult.rejected(e)
            self.audit.log_denied(command.action, command.target, str(e))
        except EngineError as e:
            result = CommandResult.rejected(e)
            self.audit.log_rejected(command.action, command.target, result.errors)
        except PydanticValidationError as e:
            result = CommandResult(
                ok=False,
                errors=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
                kind=ValidationError.kind,
            )
            self.audit.log_rejected(command.action, command.target, result.errors)
        except Exception as e:
            self._requests_errors += 1
            log.exception("command_failed")
            self.audit.log_error(command.action, command.target, f"{type(e).__name__}: {e}")
            if not command.future.done():
                command.future.set_exception(e)
            return
        else:
            details: dict[str, Any] = {"warnings": result.warnings} if result.warnings else {}
            self.audit.log_accepted(command.action, command.target, details or None)

        if not result:
            self._requests_errors += 1
            log.info("command_rejected", kind=result.kind, errors=result.errors)
        if not command.future.done():
            command.future.set_result(result)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def _emit(self, event: str, app: Application, op: SyncOperation | None) -> None:
        context = {
            "event": event,
            "app": app.model_dump(mode="json"),
            "operation": op.model_dump(mode="json") if op is not None else None,
        }
        channels = list(self._state.channels.values())
        for record in self._dispatcher.dispatch(channels, event, context):
            channel = self._state.channels[record.channel]
            task = asyncio.create_task(self._dispatcher.deliver(record, channel))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _coerce(self, model: type[BaseModel], raw: Any) -> Any:
        return resolve_entity(model, raw, self.settings)

    @staticmethod
    def _name_of(raw: Any) -> str:
        if isinstance(raw, str):
            return raw
        name = getattr(raw, "name", None)
        if name is None and hasattr(raw, "get"):
            name = raw.get("name")
        return str(name or "?")

    @staticmethod
    def _require(registry: Mapping[str, Any], kind: str, name: str) -> Any:
        if name not in registry:
            raise NotFoundError(f"{kind} '{name}' not found")
        return registry[name]

    # =========================================================================
    # COMMANDS: APPLICATIONS AND SYNC
    # =========================================================================

    async def add_application(self, app: Application | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_application", self._name_of(app), self._add_application, app)

    async def _add_application(self, raw: Any) -> CommandResult:
        app = self._reconciler.add_application(self._coerce(Application, raw))
        return CommandResult.accepted(app.model_copy(deep=True))

    async def update_application(self, app: Application | Mapping[str, Any]) -> CommandResult:
        return await self._submit("update_application", self._name_of(app), self._update_application, app)

    async def _update_application(self, raw: Any) -> CommandResult:
        app = self._reconciler.update_application(self._coerce(Application, raw))
        return CommandResult.accepted(app.model_copy(deep=True))

    async def remove_application(self, name: str) -> CommandResult:
        return await self._submit("remove_application", name, self._remove_application, name)

    async def _remove_application(self, name: str) -> CommandResult:
        warnings = await self._reconciler.remove_application(name)
        return CommandResult.accepted(name, warnings)

    async def start_sync(self, name: str, initiated_by: str | None = "admin") -> CommandResult:
        """Schedule a sync. A falsy result means it was not scheduled."""
        return await self._submit("start_sync", name, self._start_sync, name, initiated_by)

    async def _start_sync(self, name: str, initiated_by: str | None) -> CommandResult:
        op, warnings = self._reconciler.start_sync(name, initiated_by)
        return CommandResult.accepted(op.model_copy(deep=True), warnings)

    async def rollback(self, name: str, initiated_by: str | None = "admin") -> CommandResult:
        return await self._submit("rollback", name, self._rollback, name, initiated_by)

    async def _rollback(self, name: str, initiated_by: str | None) -> CommandResult:
        op, warnings = self._reconciler.rollback(name, initiated_by)
        return CommandResult.accepted(op.model_copy(deep=True), warnings)

    async def terminate_sync(self, name: str) -> CommandResult:
        return await self._submit("terminate_sync", name, self._terminate_sync, name)

    async def _terminate_sync(self, name: str) -> CommandResult:
        op = self._reconciler.terminate_sync(name)
        return CommandResult.accepted(op.model_copy(deep=True))

    async def tick(self) -> CommandResult:
        return await self._submit("tick", "all", self._tick)

    async def _tick(self) -> CommandResult:
        report = await self._reconciler.tick()
        return CommandResult.accepted(report)

    # =========================================================================
    # COMMANDS: REPOSITORIES, PROJECTS, CLUSTERS
    # =========================================================================

    async def add_repository(self, repo: Repository | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_repository", self._name_of(repo), self._add_repository, repo)

    async def _add_repository(self, raw: Any) -> CommandResult:
        repo: Repository = self._coerce(Repository, raw)
        if repo.name in self._state.repositories:
            raise ValidationError(f"repository '{repo.name}' already exists")
        if any(r.url == repo.url for r in self._state.repositories.values()):
            raise ValidationError(f"repository URL '{repo.url}' is already configured")
        self._state.repositories[repo.name] = repo
        await self._reconciler.check_repository(repo)
        return CommandResult.accepted(repo.model_copy(deep=True))

    async def update_repository(self, repo: Repository | Mapping[str, Any]) -> CommandResult:
        return await self._submit("update_repository", self._name_of(repo), self._update_repository, repo)

    async def _update_repository(self, raw: Any) -> CommandResult:
        repo: Repository = self._coerce(Repository, raw)
        self._require(self._state.repositories, "repository", repo.name)
        if any(r.url == repo.url and r.name != repo.name for r in self._state.repositories.values()):
            raise ValidationError(f"repository URL '{repo.url}' is already configured")
        self._state.repositories[repo.name] = repo
        await self._reconciler.check_repository(repo)
        return CommandResult.accepted(repo.model_copy(deep=True))

    async def remove_repository(self, name: str) -> CommandResult:
        return await self._submit("remove_repository", name, self._remove_repository, name)

    async def _remove_repository(self, name: str) -> CommandResult:
        self._require(self._state.repositories, "repository", name)
        users = sorted(
            app.name
            for app in self._state.applications.values()
            if (repo := resolve_repository(app.repository, self._state.repositories)) is not None
            and repo.name == name
        )
        if users:
            raise ConflictError(f"repository '{name}' is used by application(s): {', '.join(users)}")
        del self._state.repositories[name]
        return CommandResult.accepted(name)

    async def add_project(self, project: Project | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_project", self._name_of(project), self._put_project, project, False)

    async def update_project(self, project: Project | Mapping[str, Any]) -> CommandResult:
        return await self._submit("update_project", self._name_of(project), self._put_project, project, True)

    async def _put_project(self, raw: Any, update: bool) -> CommandResult:
        project: Project = self._coerce(Project, raw)
        exists = project.name in self._state.projects
        if update and not exists:
            raise NotFoundError(f"project '{project.name}' not found")
        if not update and exists:
            raise ValidationError(f"project '{project.name}' already exists")
        missing = [r for r in project.roles if r not in self._state.roles]
        if missing:
            raise ValidationError(f"project '{project.name}' references unknown role(s): {', '.join(missing)}")
        self._state.projects[project.name] = project
        return CommandResult.accepted(project.model_copy(deep=True))

    async def remove_project(self, name: str) -> CommandResult:
        return await self._submit("remove_project", name, self._remove_project, name)

    async def _remove_project(self, name: str) -> CommandResult:
        self._require(self._state.projects, "project", name)
        if name == DEFAULT_PROJECT:
            raise ConflictError(f"project '{name}' cannot be removed")
        users = sorted(a.name for a in self._state.applications.values() if a.project == name)
        if users:
            raise ConflictError(f"project '{name}' still has application(s): {', '.join(users)}")
        del self._state.projects[name]
        return CommandResult.accepted(name)

    async def add_cluster(self, cluster: Cluster | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_cluster", self._name_of(cluster), self._add_cluster, cluster)

    async def _add_cluster(self, raw: Any) -> CommandResult:
        cluster: Cluster = self._coerce(Cluster, raw)
        if cluster.name in self._state.clusters:
            raise ValidationError(f"cluster '{cluster.name}' already exists")
        self._state.clusters[cluster.name] = cluster
        warnings = await self._reconcile_cluster_sets()
        return CommandResult.accepted(cluster.model_copy(deep=True), warnings)

    async def remove_cluster(self, name: str) -> CommandResult:
        return await self._submit("remove_cluster", name, self._remove_cluster, name)

    async def _remove_cluster(self, name: str) -> CommandResult:
        self._require(self._state.clusters, "cluster", name)
        del self._state.clusters[name]
        warnings = await self._reconcile_cluster_sets()
        return CommandResult.accepted(name, warnings)

    async def _reconcile_cluster_sets(self) -> list[str]:
        warnings: list[str] = []
        for appset in list(self._state.application_sets.values()):
            if appset.enabled and any(g.type == "clusters" for g in appset.generators):
                result = await self._reconciler.reconcile_application_set(appset.name)
                warnings += result.warnings + result.errors
        return warnings

    # =========================================================================
    # COMMANDS: ROLES, SYNC WINDOWS, NOTIFICATION CHANNELS
    # =========================================================================

    async def add_role(self, role: Role | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_role", self._name_of(role), self._put_simple, "roles", Role, role, False)

    async def update_role(self, role: Role | Mapping[str, Any]) -> CommandResult:
        return await self._submit("update_role", self._name_of(role), self._put_simple, "roles", Role, role, True)

    async def remove_role(self, name: str) -> CommandResult:
        return await self._submit("remove_role", name, self._remove_role, name)

    async def _remove_role(self, name: str) -> CommandResult:
        self._require(self._state.roles, "role", name)
        users = sorted(p.name for p in self._state.projects.values() if name in p.roles)
        if users:
            raise ConflictError(f"role '{name}' is still referenced by project(s): {', '.join(users)}")
        if name == self.settings.server_role:
            raise ConflictError(f"role '{name}' is the server role")
        del self._state.roles[name]
        return CommandResult.accepted(name)

    async def add_sync_window(self, window: SyncWindow | Mapping[str, Any]) -> CommandResult:
        return await self._submit(
            "add_sync_window", self._name_of(window), self._put_simple, "sync_windows", SyncWindow, window, False
        )

    async def update_sync_window(self, window: SyncWindow | Mapping[str, Any]) -> CommandResult:
        return await self._submit(
            "update_sync_window", self._name_of(window), self._put_simple, "sync_windows", SyncWindow, window, True
        )

    async def remove_sync_window(self, name: str) -> CommandResult:
        return await self._submit("remove_sync_window", name, self._remove_simple, "sync_windows", "sync window", name)

    async def add_notification_channel(self, channel: NotificationChannel | Mapping[str, Any]) -> CommandResult:
        return await self._submit(
            "add_notification_channel",
            self._name_of(channel),
            self._put_simple,
            "channels",
            NotificationChannel,
            channel,
            False,
        )

    async def update_notification_channel(
        self, channel: NotificationChannel | Mapping[str, Any]
    ) -> CommandResult:
        return await self._submit(
            "update_notification_channel",
            self._name_of(channel),
            self._put_simple,
            "channels",
            NotificationChannel,
            channel,
            True,
        )

    async def remove_notification_channel(self, name: str) -> CommandResult:
        return await self._submit(
            "remove_notification_channel", name, self._remove_simple, "channels", "notification channel", name
        )

    async def _put_simple(self, registry_name: str, model: type[BaseModel], raw: Any, update: bool) -> CommandResult:
        registry: dict[str, Any] = getattr(self._state, registry_name)
        entity = self._coerce(model, raw)
        kind = registry_name.rstrip("s").replace("_", " ")
        exists = entity.name in registry
        if update and not exists:
            raise NotFoundError(f"{kind} '{entity.name}' not found")
        if not update and exists:
            raise ValidationError(f"{kind} '{entity.name}' already exists")
        registry[entity.name] = entity
        return CommandResult.accepted(entity.model_copy(deep=True))

    async def _remove_simple(self, registry_name: str, kind: str, name: str) -> CommandResult:
        registry: dict[str, Any] = getattr(self._state, registry_name)
        self._require(registry, kind, name)
        del registry[name]
        return CommandResult.accepted(name)

    # =========================================================================
    # COMMANDS: APPLICATION SETS
    # =========================================================================

    async def add_application_set(self, appset: ApplicationSet | Mapping[str, Any]) -> CommandResult:
        return await self._submit("add_application_set", self._name_of(appset), self._add_application_set, appset)

    async def _add_application_set(self, raw: Any) -> CommandResult:
        appset: ApplicationSet = self._coerce(ApplicationSet, raw)
        if appset.name in self._state.application_sets:
            raise ValidationError(f"ApplicationSet '{appset.name}' already exists")
        appset.generated_applications = []
        self._state.application_sets[appset.name] = appset
        if not appset.enabled:
            return CommandResult.accepted(appset.model_copy(deep=True))
        result = await self._reconciler.reconcile_application_set(appset.name)
        return CommandResult.accepted(appset.model_copy(deep=True), result.warnings + result.errors)

    async def update_application_set(self, appset: ApplicationSet | Mapping[str, Any]) -> CommandResult:
        return await self._submit(
            "update_application_set", self._name_of(appset), self._update_application_set, appset
        )

    async def _update_application_set(self, raw: Any) -> CommandResult:
        appset: ApplicationSet = self._coerce(ApplicationSet, raw)
        existing: ApplicationSet = self._require(self._state.application_sets, "ApplicationSet", appset.name)
        appset.generated_applications = list(existing.generated_applications)
        self._state.application_sets[appset.name] = appset
        if not appset.enabled:
            warnings = await self._reconciler.retract_application_set(appset, orphan=False)
            return CommandResult.accepted(appset.model_copy(deep=True), warnings)
        result = await self._reconciler.reconcile_application_set(appset.name)
        return CommandResult.accepted(appset.model_copy(deep=True), result.warnings + result.errors)

    async def remove_application_set(self, name: str) -> CommandResult:
        return await self._submit("remove_application_set", name, self._remove_application_set, name)

    async def _remove_application_set(self, name: str) -> CommandResult:
        appset: ApplicationSet = self._require(self._state.application_sets, "ApplicationSet", name)
        warnings = await self._reconciler.retract_application_set(appset, orphan=True)
        del self._state.application_sets[name]
        return CommandResult.accepted(name, warnings)

    # =========================================================================
    # COMMANDS: BULK CONFIG AND WEBHOOKS
    # =========================================================================

    async def apply_config(self, config: DeclarativeConfig | Mapping[str, Any]) -> CommandResult:
        """
        Reconcile engine state against a full declarative config.

        Entities missing from the config are removed, new ones added, changed
        ones updated. Each entity is applied independently: one that fails
        validation is reported and the rest still go through.
        """
        return await self._submit("apply_config", "config", self._apply_config, config)

    async def _apply_config(self, raw: Any) -> CommandResult:
        config = raw if not isinstance(raw, dict) else resolve_defaults(raw, self.settings)
        errors: list[str] = []
        warnings: list[str] = []

        async def attempt(action: Callable[..., Awaitable[CommandResult]], *args: Any) -> None:
            try:
                result = await action(*args)
            except EngineError as e:
                errors.append(str(e))
            else:
                warnings.extend(result.warnings)

        state = self._state
        wanted_apps = {a.name for a in config.applications}
        # decided before any set is retracted so orphaned applications survive
        stale_apps = [n for n, a in state.applications.items() if a.owner is None and n not in wanted_apps]
        wanted_sets = {s.name for s in config.application_sets}
        for name in [n for n in state.application_sets if n not in wanted_sets]:
            await attempt(self._remove_application_set, name)
        for name in stale_apps:
            await attempt(self._remove_application, name)

        for role in config.roles:
            await attempt(self._put_simple, "roles", Role, role, role.name in state.roles)
        for repo in config.repositories:
            if repo.name in state.repositories:
                await attempt(self._update_repository, repo)
            else:
                await attempt(self._add_repository, repo)
        for project in config.projects:
            await attempt(self._put_project, project, project.name in state.projects)
        for cluster in config.clusters:
            if cluster.name not in state.clusters:
                await attempt(self._add_cluster, cluster)
        for window in config.sync_windows:
            await attempt(self._put_simple, "sync_windows", SyncWindow, window, window.name in state.sync_windows)
        for channel in config.notification_channels:
            await attempt(self._put_simple, "channels", NotificationChannel, channel, channel.name in state.channels)
        for app in config.applications:
            if app.name in state.applications:
                await attempt(self._update_application, app)
            else:
                await attempt(self._add_application, app)
        for appset in config.application_sets:
            if appset.name in state.application_sets:
                await attempt(self._update_application_set, appset)
            else:
                await attempt(self._add_application_set, appset)

        wanted = {
            "sync_windows": {w.name for w in config.sync_windows},
            "channels": {c.name for c in config.notification_channels},
        }
        for registry_name, names in wanted.items():
            registry = getattr(state, registry_name)
            for name in [n for n in registry if n not in names]:
                del registry[name]
        for name in [n for n in state.clusters if n not in {c.name for c in config.clusters}]:
            await attempt(self._remove_cluster, name)
        for name in [n for n in state.projects if n != DEFAULT_PROJECT and n not in {p.name for p in config.projects}]:
            await attempt(self._remove_project, name)
        for name in [n for n in state.roles if n not in {r.name for r in config.roles}]:
            await attempt(self._remove_role, name)
        for name in [n for n in state.repositories if n not in {r.name for r in config.repositories}]:
            await attempt(self._remove_repository, name)

        logger.info("config_applied", errors=len(errors), warnings=len(warnings))
        return CommandResult(ok=not errors, errors=errors, warnings=warnings, kind=None if not errors else "validation")

    async def handle_webhook(self, payload: Mapping[str, Any]) -> CommandResult:
        """
        React to a Git provider or CI webhook.

        ``{"application": "web"}`` syncs that application.
        ``{"repository": "<name or url>"}`` (or a GitHub push payload with
        ``repository.clone_url``) refreshes every application using the
        repository, which auto-syncs the automated ones.
        """
        target = str(payload.get("application") or payload.get("repository") or "webhook")
        return await self._submit("handle_webhook", target, self._handle_webhook, dict(payload))

    async def _handle_webhook(self, payload: dict[str, Any]) -> CommandResult:
        app_name = payload.get("application") or payload.get("app")
        if app_name:
            op, warnings = self._reconciler.start_sync(str(app_name), initiated_by="webhook")
            return CommandResult.accepted([op.application], warnings)

        reference = payload.get("repository") or payload.get("repoURL")
        if isinstance(reference, dict):
            reference = reference.get("clone_url") or reference.get("html_url") or reference.get("url")
        if not reference:
            raise ValidationError("webhook payload names neither an application nor a repository")
        repo = resolve_repository(str(reference), self._state.repositories)
        if repo is None:
            raise NotFoundError(f"repository '{reference}' is not configured")

        report = TickReport()
        for app in sorted(self._state.applications.values(), key=lambda a: a.name):
            used = resolve_repository(app.repository, self._state.repositories)
            if used is not None and used.name == repo.name:
                await self._reconciler.refresh(app.name, report)
        return CommandResult.accepted(report.auto_synced, [f"{n}: blocked by {w}" for n, w in report.blocked.items()])

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_applications(self, project: str | None = None) -> list[Application]:
        return [
            a.model_copy(deep=True)
            for a in self._state.applications.values()
            if project is None or a.project == project
        ]

    def get_application(self, name: str) -> Application | None:
        app = self._state.applications.get(name)
        return app.model_copy(deep=True) if app is not None else None

    def get_sync_operations(self, application: str | None = None) -> list[SyncOperation]:
        """Sync operations, most recent first."""
        return [
            op.model_copy(deep=True)
            for op in reversed(self._state.operations.values())
            if application is None or op.application == application
        ]

    def get_repositories(self) -> list[Repository]:
        return [r.model_copy(deep=True) for r in self._state.repositories.values()]

    def get_projects(self) -> list[Project]:
        return [p.model_copy(deep=True) for p in self._state.projects.values()]

    def get_roles(self) -> list[Role]:
        return [r.model_copy(deep=True) for r in self._state.roles.values()]

    def get_clusters(self) -> list[Cluster]:
        return [c.model_copy(deep=True) for c in self._state.clusters.values()]

    def get_sync_windows(self) -> list[SyncWindow]:
        return [w.model_copy(deep=True) for w in self._state.sync_windows.values()]

    def get_notification_channels(self) -> list[NotificationChannel]:
        return [c.model_copy(deep=True) for c in self._state.channels.values()]

    def get_application_sets(self) -> list[ApplicationSet]:
        return [s.model_copy(deep=True) for s in self._state.application_sets.values()]

    def get_dispatch_records(self) -> list[DispatchRecord]:
        return [replace(r, payload=dict(r.payload)) for r in self._dispatcher.records]

    def get_metrics(self) -> EngineMetrics:
        return compute_metrics(
            self.clock.now(),
            self._state.applications.values(),
            self._state.operations.values(),
            repositories=self._state.repositories.values(),
            projects=self._state.projects.values(),
            application_sets=self._state.application_sets.values(),
            dispatches=self._dispatcher.records,
            requests_total=self._requests_total,
            requests_errors=self._requests_errors,
        )

    def get_stats(self) -> dict[str, int]:
        """Entity counts for a quick status line."""
        state = self._state
        return {
            "applications": len(state.applications),
            "repositories": len(state.repositories),
            "projects": len(state.projects),
            "roles": len(state.roles),
            "syncWindows": len(state.sync_windows),
            "notificationChannels": len(state.channels),
            "applicationSets": len(state.application_sets),
            "clusters": len(state.clusters),
            "runningOperations": len(state.running),
        }

    def export_config(self) -> dict[str, Any]:
        state = self._state
        return export_config(
            applications=state.applications.values(),
            repositories=state.repositories.values(),
            projects=state.projects.values(),
            roles=state.roles.values(),
            sync_windows=state.sync_windows.values(),
            notification_channels=state.channels.values(),
            application_sets=state.application_sets.values(),
            clusters=state.clusters.values(),
        )

    def check_access(self, role: str, action: str, resource: str, obj: str | None = None) -> AccessDecision:
        """Evaluate an access request. Raises NotFoundError for an unknown role."""
        found = self._require(self._state.roles, "role", role)
        return evaluate_rbac(found, action, resource, obj)

    def validate_sync_policy(
        self,
        policy: SyncPolicy | str,
        app_name: str,
        project: str | None = None,
        manual: bool = False,
    ) -> SyncPolicyValidation:
        """Validate a sync policy against the configured windows at the engine's now."""
        return evaluate_sync_policy(
            policy,
            self._state.sync_windows.values(),
            app_name,
            project,
            self.clock.now(),
            self.settings.timezone,
            manual=manual,
        )
