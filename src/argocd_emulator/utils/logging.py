# ABOUTME: Structured logging configuration with correlation IDs
# ABOUTME: Provides structlog setup and an audit trail of engine commands

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every engine log line is an event name plus key/value
   pairs, rendered as colored console text or as JSON lines.
2. CORRELATION IDs: the controller sets a fresh id before handling each
   command, so every log line a command produces (admission, hooks, apply,
   notifications) can be pulled out together.
3. AUDIT LOGGING: one record per command outcome, written as JSON lines to a
   file or emitted through structlog.

=============================================================================
CORRELATION IDs AND THE COMMAND QUEUE
=============================================================================

Commands are executed one at a time by the controller's worker task, while
each sync runs in its own task. ``contextvars`` are copied into a task when
it is created, so a sync task keeps the correlation id of the ``start_sync``
command that spawned it:

    {"correlation_id": "a1b2c3", "event": "command_received", "command": "start_sync"}
    {"correlation_id": "a1b2c3", "event": "hook_started", "hook": "db-migrate"}
    {"correlation_id": "a1b2c3", "event": "sync_succeeded", "app": "web"}

Filter with ``jq 'select(.correlation_id == "a1b2c3")'``.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

import structlog

from argocd_emulator.utils.clock import SystemClock

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from argocd_emulator.utils.clock import Clock

# Context variable for correlation ID
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """8 characters of a UUID4; unique enough within a session, short enough to read."""
    return str(uuid.uuid4())[:8]


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a command (startup, the tick loop) still gets an id
    so its logs stay correlatable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for current context ("" means generate on next access)."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor adding the correlation ID to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: Adds any bound context variables
    2. add_log_level: Adds "level"
    3. TimeStamper: Adds ISO-format timestamp
    4. add_correlation_id: Adds our correlation ID
    5. Renderer: JSON or colored console text

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines (log aggregators) instead of console text
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Audit trail of engine commands.

    Every command submitted to the engine ends in one audit record:

        accepted    the command was applied (a sync was scheduled, an entity
                    was stored)
        rejected    validation or conflict error; state unchanged
        denied      a sync window or RBAC policy blocked the command
        failed      an unexpected error escaped the handler

    Records carry the engine clock's time rather than the wall clock, so a
    test driving a manual clock gets reproducible audit trails:

        {"timestamp": "2024-01-15T10:00:00+00:00", "correlation_id": "abc123",
         "action": "start_sync", "target": "web", "result": "accepted"}

    TWO OUTPUT MODES:
    -----------------
    1. FILE: JSON lines appended to ``log_path``
    2. STDOUT: through structlog under the "audit" logger
    """

    def __init__(self, log_path: Path | None = None, clock: Clock | None = None) -> None:
        self._log_path = log_path
        self._clock = clock or SystemClock()
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Command or tool name ("start_sync", "add_application")
            target: Entity the command addressed ("web", "appset=fleet")
            result: "accepted", "rejected", "denied", "failed" or "read"
            details: Optional extra context (errors, warnings, parameters)
        """
        entry: dict[str, Any] = {
            "timestamp": self._clock.now().isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "read")

    def log_accepted(
        self,
        action: str,
        target: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, "accepted", details)

    def log_rejected(self, action: str, target: str, errors: list[str]) -> None:
        self.log(action, target, "rejected", {"errors": errors})

    def log_denied(self, action: str, target: str, reason: str) -> None:
        """
        Log a command blocked by a sync window or RBAC policy.

        Kept separate from rejections: an attempted sync inside a deny window
        is the kind of thing an operator wants to find quickly.
        """
        self.log(action, target, "denied", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "failed", {"error": error})
