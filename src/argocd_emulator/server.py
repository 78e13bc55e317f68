# ABOUTME: FastMCP server exposing the emulation engine as MCP tools and resources
# ABOUTME: Lifespan starts the engine; tools run RBAC checks, audit every call and render plain text

"""ArgoCD emulator MCP server."""

from __future__ import annotations

import json
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from argocd_emulator.config import EngineSettings, load_settings
from argocd_emulator.controller import ArgoCDEmulationEngine
from argocd_emulator.errors import EngineError, PolicyDeniedError
from argocd_emulator.policy import require_access
from argocd_emulator.schedule import is_within
from argocd_emulator.utils.logging import AuditLogger, configure_logging, set_correlation_id

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from argocd_emulator.errors import CommandResult
    from argocd_emulator.models import Application

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: EngineSettings | None = None
_engine: ArgoCDEmulationEngine | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load settings, start the engine, stop it on shutdown."""
    global _settings, _engine, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting ArgoCD emulator server", config_file=str(_settings.config_file))

    _engine = ArgoCDEmulationEngine(_settings)
    _audit_logger = _engine.audit
    await _engine.start(run_ticker=True)

    yield {"settings": _settings, "engine": _engine}

    await _engine.stop()
    _engine = None
    logger.info("ArgoCD emulator server stopped")


mcp = FastMCP("argocd-emulator", lifespan=lifespan)


def get_engine() -> ArgoCDEmulationEngine:
    """Get the running engine."""
    if not _engine:
        raise RuntimeError("Server not initialized")
    return _engine


def get_settings() -> EngineSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording tool calls."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def check_access(tool: str, action: str, resource: str, obj: str | None = None) -> str | None:
    """
    Check the server role against RBAC.

    Returns:
        None if allowed (or no server role is configured), otherwise the
        message to hand back to the caller
    """
    role = get_settings().server_role
    if role is None:
        return None
    engine = get_engine()
    roles = {r.name: r for r in engine.get_roles()}
    try:
        require_access(roles, role, action, resource, obj)
    except PolicyDeniedError as e:
        get_audit_logger().log_denied(tool, obj or resource, str(e))
        return f"Access denied: {e}"
    except EngineError as e:
        get_audit_logger().log_error(tool, obj or resource, str(e))
        return f"Access check failed: {e}"
    return None


def format_result(result: CommandResult, success: str) -> str:
    """Render a CommandResult for an MCP client."""
    if not result:
        lines = [f"Rejected ({result.kind}):"]
        lines += [f"  - {e}" for e in result.errors]
        return "\n".join(lines)
    lines = [success]
    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines += [f"  - {w}" for w in result.warnings]
    return "\n".join(lines)


def _describe_application(app: Application) -> str:
    health_marker = "[OK]" if app.health == "healthy" else "[!]"
    sync_marker = "[OK]" if app.status == "synced" else "[!]"
    owner = f" owner={app.owner}" if app.owner else ""
    return (
        f"- {app.name} [{app.project}] "
        f"sync={app.status} {sync_marker} "
        f"health={app.health} {health_marker} "
        f"revision={app.revision or '-'}{owner}"
    )


# =============================================================================
# READ OPERATIONS
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    project: str | None = Field(default=None, description="Filter by project name")
    health: str | None = Field(
        default=None,
        description="Filter by health (healthy, progressing, degraded, suspended, missing, unknown)",
    )
    status: str | None = Field(
        default=None, description="Filter by sync status (synced, outofsync, progressing, degraded)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List applications with optional filtering.

    Use this to get an overview of a project or to find unhealthy and
    out-of-sync applications.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("list_applications", "get", "applications", params.project)
    if denied:
        return denied

    apps = get_engine().get_applications(project=params.project)
    if params.health:
        apps = [a for a in apps if a.health == params.health]
    if params.status:
        apps = [a for a in apps if a.status == params.status]

    get_audit_logger().log_read("list_applications", f"project={params.project}")

    if not apps:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(apps)} application(s):", ""]
    lines += [_describe_application(app) for app in apps]
    return "\n".join(lines)


class ApplicationParams(BaseModel):
    """Parameters for tools addressing a single application."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Get detailed information about one application.

    Includes source, destination, sync policy, observed state and the
    most recent deployment history.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("get_application", "get", "applications", params.name)
    if denied:
        return denied

    app = get_engine().get_application(params.name)
    if app is None:
        get_audit_logger().log_error("get_application", params.name, "not found")
        return f"Application '{params.name}' not found."

    get_audit_logger().log_read("get_application", params.name)

    policy = app.sync_policy
    lines = [
        f"Application: {app.name}",
        f"Project: {app.project}",
        f"Owner: {app.owner or '-'}",
        "",
        "Source:",
        f"  Repository: {app.repository}",
        f"  Path: {app.path}",
        f"  Target Revision: {app.target_revision}",
        "",
        "Destination:",
        f"  Server: {app.destination.server}",
        f"  Namespace: {app.destination.namespace}",
        "",
        f"Sync Policy: {policy.mode} (prune={policy.prune}, selfHeal={policy.self_heal})",
        f"Status: {app.status}",
        f"Health: {app.health}",
        f"Revision: {app.revision or '-'}",
        f"Last Synced: {app.last_synced_at.isoformat() if app.last_synced_at else 'never'}",
    ]
    if app.history:
        lines += ["", "History:"]
        for entry in app.history[:5]:
            lines.append(f"  #{entry.id} {entry.revision} at {entry.deployed_at.isoformat()}")
    return "\n".join(lines)


class ListSyncOperationsParams(BaseModel):
    """Parameters for list_sync_operations tool."""

    application: str | None = Field(default=None, description="Only operations of this application")
    limit: int = Field(default=20, ge=1, le=200, description="Maximum operations to return")


@mcp.tool()
async def list_sync_operations(params: ListSyncOperationsParams, ctx: MCPContext) -> str:
    """List sync operations, most recent first, with hook outcomes."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("list_sync_operations", "get", "applications", params.application)
    if denied:
        return denied

    ops = get_engine().get_sync_operations(params.application)[: params.limit]
    get_audit_logger().log_read("list_sync_operations", params.application or "all")

    if not ops:
        return "No sync operations recorded."

    lines = [f"{len(ops)} sync operation(s):", ""]
    for op in ops:
        duration = f"{op.duration:.1f}s" if op.duration is not None else "running"
        lines.append(
            f"- {op.id} {op.application} {op.kind} status={op.status} "
            f"phase={op.phase} revision={op.revision or '-'} duration={duration}"
        )
        for hook in op.hooks:
            lines.append(f"    {hook.phase}/{hook.name}: {hook.status}")
        if op.error:
            lines.append(f"    error: {op.error}")
    return "\n".join(lines)


class EmptyParams(BaseModel):
    """Parameters for tools taking no input."""


@mcp.tool()
async def get_metrics(params: EmptyParams, ctx: MCPContext) -> str:
    """Get dashboard metrics: application counts, sync totals and rates."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("get_metrics", "get", "applications")
    if denied:
        return denied

    metrics = get_engine().get_metrics()
    get_audit_logger().log_read("get_metrics", "all")

    status = ", ".join(f"{k}={v}" for k, v in metrics.applications_by_status.items())
    health = ", ".join(f"{k}={v}" for k, v in metrics.applications_by_health.items())
    average = (
        f"{metrics.average_sync_duration:.1f}s" if metrics.average_sync_duration is not None else "n/a"
    )
    return "\n".join(
        [
            f"Applications: {metrics.applications_total}",
            f"  By status: {status}",
            f"  By health: {health}",
            f"Sync operations: {metrics.sync_operations_total} "
            f"(success={metrics.sync_operations_success}, failed={metrics.sync_operations_failed}, "
            f"running={metrics.sync_operations_running})",
            f"Syncs in last 24h: {metrics.syncs_last_24h}",
            f"Average sync duration: {average}",
            f"Repositories: {metrics.repositories_total} "
            f"(connected={metrics.repositories_connected}, failed={metrics.repositories_failed})",
            f"ApplicationSets: {metrics.application_sets_total} "
            f"generating {metrics.generated_applications_total} application(s)",
            f"Notifications: sent={metrics.notifications_sent}, failed={metrics.notifications_failed}, "
            f"pending={metrics.notifications_pending}",
        ]
    )


@mcp.tool()
async def list_application_sets(params: EmptyParams, ctx: MCPContext) -> str:
    """List ApplicationSets and the applications each one generated."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("list_application_sets", "get", "applicationsets")
    if denied:
        return denied

    appsets = get_engine().get_application_sets()
    get_audit_logger().log_read("list_application_sets", "all")

    if not appsets:
        return "No ApplicationSets configured."

    lines = [f"Found {len(appsets)} ApplicationSet(s):", ""]
    for appset in appsets:
        generators = ", ".join(g.type for g in appset.generators)
        state = "enabled" if appset.enabled else "disabled"
        lines.append(f"- {appset.name} [{state}] generators={generators}")
        for name in appset.generated_applications:
            lines.append(f"    {name}")
    return "\n".join(lines)


@mcp.tool()
async def list_sync_windows(params: EmptyParams, ctx: MCPContext) -> str:
    """List sync windows and whether each is open right now."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("list_sync_windows", "get", "projects")
    if denied:
        return denied

    engine = get_engine()
    windows = engine.get_sync_windows()
    get_audit_logger().log_read("list_sync_windows", "all")

    if not windows:
        return "No sync windows configured."

    now = engine.clock.now()
    lines = [f"Found {len(windows)} sync window(s):", ""]
    for window in windows:
        active = is_within(window.schedule, window.duration, now, engine.settings.timezone)
        lines.append(
            f"- {window.name} {window.kind} '{window.schedule}' "
            f"{'OPEN' if active else 'closed'} manualSync={window.manual_sync}"
        )
    return "\n".join(lines)


class ValidateSyncPolicyParams(BaseModel):
    """Parameters for validate_sync_policy tool."""

    application: str = Field(description="Application the policy would apply to")
    mode: str = Field(default="automated", description="Sync policy mode (manual, automated, sync-window)")
    project: str | None = Field(default=None, description="Project of the application")
    manual: bool = Field(default=False, description="Validate a manually triggered sync")


@mcp.tool()
async def validate_sync_policy(params: ValidateSyncPolicyParams, ctx: MCPContext) -> str:
    """
    Check whether a sync would be allowed right now.

    Evaluates the policy against every applicable sync window at the
    engine's current time.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("validate_sync_policy", "get", "applications", params.application)
    if denied:
        return denied

    try:
        validation = get_engine().validate_sync_policy(
            params.mode, params.application, params.project, manual=params.manual
        )
    except EngineError as e:
        get_audit_logger().log_error("validate_sync_policy", params.application, str(e))
        return str(e)

    get_audit_logger().log_read("validate_sync_policy", params.application)

    lines = [f"Sync policy for '{params.application}': {'VALID' if validation.valid else 'BLOCKED'}"]
    if validation.blocking_window:
        lines.append(f"Blocking window: {validation.blocking_window}")
    lines += [f"  error: {e}" for e in validation.errors]
    lines += [f"  warning: {w}" for w in validation.warnings]
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS
# =============================================================================


@mcp.tool()
async def sync_application(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Start a sync of an application.

    Returns as soon as the sync is scheduled; use list_sync_operations to
    follow its progress. Refused while another sync of the same application
    runs or when a sync window blocks it.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("sync_application", "sync", "applications", params.name)
    if denied:
        return denied

    result = await get_engine().start_sync(params.name, initiated_by=get_settings().server_role or "mcp")
    if not result:
        return format_result(result, "")
    return format_result(result, f"Sync of '{params.name}' started as operation {result.value.id}.")


@mcp.tool()
async def rollback_application(params: ApplicationParams, ctx: MCPContext) -> str:
    """Roll an application back to the revision deployed before the current one."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("rollback_application", "sync", "applications", params.name)
    if denied:
        return denied

    result = await get_engine().rollback(params.name, initiated_by=get_settings().server_role or "mcp")
    if not result:
        return format_result(result, "")
    return format_result(
        result,
        f"Rollback of '{params.name}' to {result.value.revision or 'the previous revision'} "
        f"started as operation {result.value.id}.",
    )


@mcp.tool()
async def terminate_sync(params: ApplicationParams, ctx: MCPContext) -> str:
    """Terminate the running sync of an application."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("terminate_sync", "sync", "applications", params.name)
    if denied:
        return denied

    result = await get_engine().terminate_sync(params.name)
    if not result:
        return format_result(result, "")
    return format_result(result, f"Sync operation {result.value.id} of '{params.name}' terminated.")


@mcp.tool()
async def refresh_all(params: EmptyParams, ctx: MCPContext) -> str:
    """Run one reconciliation pass now instead of waiting for the next tick."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    denied = check_access("refresh_all", "sync", "applications")
    if denied:
        return denied

    result = await get_engine().tick()
    if not result:
        return format_result(result, "")
    report = result.value
    lines = ["Reconciliation pass complete."]
    if report.drifted:
        lines.append(f"Out of sync: {', '.join(report.drifted)}")
    if report.auto_synced:
        lines.append(f"Auto-synced: {', '.join(report.auto_synced)}")
    for name, window in report.blocked.items():
        lines.append(f"Blocked: {name} by {window}")
    if report.unknown:
        lines.append(f"Status unknown: {', '.join(report.unknown)}")
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("argocd-emulator://config")
async def get_config_resource() -> str:
    """Get the current declarative config as JSON."""
    return json.dumps(get_engine().export_config(), indent=2)


@mcp.resource("argocd-emulator://settings")
async def get_settings_resource() -> str:
    """Get current engine settings."""
    settings = get_settings()
    return (
        "Engine Settings:\n"
        f"  Tick interval: {settings.tick_interval_seconds:g}s\n"
        f"  Timezone: {settings.timezone}\n"
        f"  Hook timeout: {settings.hook_timeout_seconds}s\n"
        f"  Sync timeout: {settings.sync_timeout_seconds}s\n"
        f"  History limit: {settings.history_limit}\n"
        f"  Default sync policy: {settings.default_sync_policy}\n"
        f"  Live notification delivery: {settings.notifications.live_delivery}\n"
        f"  Server role: {settings.server_role or '(unrestricted)'}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the ArgoCD emulator MCP server."""
    configure_logging(level="INFO")
    logger.info("ArgoCD emulator server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
