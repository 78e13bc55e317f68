# ABOUTME: Configuration management for the Argo CD emulation engine
# ABOUTME: Handles environment variables, reconciliation timing, notification delivery and server settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every knob of the engine that is NOT part of the
declarative GitOps config (applications, repositories, sync windows...).
Those entities arrive through the config adapter; this file covers how the
engine itself behaves:

1. HOW OFTEN the reconciliation loop re-evaluates drift, windows and
   automated syncs (``tick_interval_seconds``)
2. HOW LONG simulated hooks and manifest applies may take before they are
   force-failed
3. HOW MUCH history and how many finished operations are retained
4. WHERE logs and the audit trail go
5. WHETHER notifications are really delivered over HTTP or only recorded

=============================================================================
ENVIRONMENT VARIABLES
=============================================================================

All variables use the ``ARGOCD_EMULATOR_`` prefix. Nested settings use a
double underscore:

    ARGOCD_EMULATOR_TICK_INTERVAL_SECONDS=30
    ARGOCD_EMULATOR_TIMEZONE=Europe/Berlin
    ARGOCD_EMULATOR_CONFIG_FILE=./gitops.json
    ARGOCD_EMULATOR_NOTIFICATIONS__LIVE_DELIVERY=true

=============================================================================
WHY 180 SECONDS?
=============================================================================

Argo CD's application controller re-reconciles every app every three minutes
(``timeout.reconciliation``). Drift detection in the emulator follows the
same cadence by default. The value is configurable because tests and demos
want a much faster loop.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from argocd_emulator.models import SyncMode


class NotificationSettings(BaseModel):
    """
    Notification delivery configuration.

    The dispatcher always records which channel should receive which event.
    Whether anything leaves the process is decided here:

    live_delivery=False (default)
        Records are delivered to an in-memory transport. Nothing touches the
        network. This is what the emulator is for.

    live_delivery=True
        Slack, MS Teams and generic webhook channels are POSTed to with
        httpx, retried with exponential backoff up to ``max_attempts``.
    """

    model_config = {"extra": "ignore"}

    live_delivery: bool = Field(default=False, description="POST notifications over HTTP")
    timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP timeout per attempt")
    max_attempts: int = Field(default=3, ge=1, description="Delivery attempts before failing")


class EngineSettings(BaseSettings):
    """
    Main engine configuration.

    USAGE:
    ------
        settings = load_settings()
        engine = ArgoCDEmulationEngine(settings=settings)
    """

    model_config = SettingsConfigDict(
        env_prefix="ARGOCD_EMULATOR_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # Reconciliation loop
    tick_interval_seconds: float = Field(
        default=180.0,
        gt=0,
        description="Period of drift detection, window evaluation and automated sync",
    )
    timezone: str = Field(
        default="UTC",
        description="Reference timezone of daily-range sync windows",
    )

    # Bounded simulated durations
    hook_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="A hook running longer than this is force-failed",
    )
    sync_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Applying manifests longer than this is force-failed",
    )

    # Retention
    history_limit: int = Field(default=10, ge=1, description="Revision history kept per app")
    operation_retention: int = Field(
        default=1000,
        ge=1,
        description="Finished sync operations kept for the metrics view",
    )

    repository_check_interval_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Interval between repository connection checks",
    )
    default_sync_policy: SyncMode = Field(
        default="manual",
        description="Sync policy for applications that do not declare one",
    )

    config_file: Path | None = Field(
        default=None,
        description="JSON declarative config loaded at startup",
    )

    # Logging
    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Render logs as JSON lines")
    audit_log: Path | None = Field(default=None, description="Path to audit log file")

    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    # MCP surface
    server_role: str | None = Field(
        default=None,
        description="Role every MCP tool call is authorized as (no RBAC when unset)",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject names the IANA database does not know."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone '{v}'") from e
        return v


def load_settings() -> EngineSettings:
    """
    Load settings from environment with validation.

    If ARGOCD_EMULATOR_ENV_FILE is set, additional variables are read from
    that file. Useful for local development.

    Returns:
        Fully validated EngineSettings instance.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return EngineSettings(
        _env_file=os.environ.get("ARGOCD_EMULATOR_ENV_FILE"),
    )
