# ABOUTME: Simulated cluster-side collaborators: hook execution, manifest apply and live-state drift
# ABOUTME: Each step may suspend and fail; failures are raised as StepFailed and recorded by the reconciler

"""
Simulated runtime collaborators.

A sync operation suspends in exactly two kinds of places: running a hook and
applying the desired manifests. Both are behind small protocols so the
reconciler does not care whether the latency is ``asyncio.sleep`` or a test
gate. Failures are signalled by raising ``StepFailed``; the reconciler turns
that into a failed SyncOperation and a degraded Application.

DriftObserver answers one synchronous question during the tick: does the
live state of this application still match what was last applied?
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

import structlog

from argocd_emulator.models import ManagedResource

if TYPE_CHECKING:
    from argocd_emulator.models import Application, SyncHook

logger = structlog.get_logger(__name__)


class StepFailed(Exception):
    """A hook or apply step failed at runtime."""


class HookRunner(Protocol):
    async def run(self, app: Application, hook: SyncHook) -> str | None: ...


class ManifestApplier(Protocol):
    async def apply(self, app: Application, revision: str) -> list[ManagedResource]: ...


class DriftObserver(Protocol):
    def has_drifted(self, app: Application) -> bool: ...

    def acknowledge(self, app: Application) -> None: ...


class SimulatedHookRunner:
    """Runs hooks after a fixed delay; hooks named in ``failures`` fail."""

    def __init__(self, delay: float = 0.0, failures: dict[str, str] | None = None) -> None:
        self.delay = delay
        self.failures = dict(failures or {})
        self.executed: list[tuple[str, str, str]] = []

    def fail(self, hook_name: str, message: str = "hook exited with code 1") -> None:
        self.failures[hook_name] = message

    def recover(self, hook_name: str) -> None:
        self.failures.pop(hook_name, None)

    async def run(self, app: Application, hook: SyncHook) -> str | None:
        await asyncio.sleep(self.delay)
        self.executed.append((app.name, hook.phase, hook.name))
        if hook.name in self.failures:
            raise StepFailed(self.failures[hook.name])
        return f"{hook.kind}/{hook.name} completed"


class SimulatedManifestApplier:
    """
    Produces a plausible resource set for an application.

    Plain sources get a Deployment and a Service named after the app; Helm
    sources additionally get the chart's ConfigMap. Applications named in
    ``failures`` fail to apply.
    """

    def __init__(self, delay: float = 0.0, failures: dict[str, str] | None = None) -> None:
        self.delay = delay
        self.failures = dict(failures or {})

    def fail(self, app_name: str, message: str = "apply failed: admission webhook denied the request") -> None:
        self.failures[app_name] = message

    def recover(self, app_name: str) -> None:
        self.failures.pop(app_name, None)

    async def apply(self, app: Application, revision: str) -> list[ManagedResource]:
        await asyncio.sleep(self.delay)
        if app.name in self.failures:
            raise StepFailed(self.failures[app.name])
        namespace = app.destination.namespace
        resources = [
            ManagedResource(kind="Deployment", name=app.name, namespace=namespace),
            ManagedResource(kind="Service", name=app.name, namespace=namespace),
        ]
        if app.helm is not None and app.helm.chart:
            release = app.helm.release_name or app.name
            resources.append(
                ManagedResource(kind="ConfigMap", name=f"{release}-{app.helm.chart}", namespace=namespace)
            )
        logger.debug("manifests_applied", app=app.name, revision=revision, resources=len(resources))
        return resources


class SimulatedDriftObserver:
    """Live state drifts only when told to (an out-of-band kubectl edit, say)."""

    def __init__(self) -> None:
        self._drifted: set[str] = set()

    def mark_drifted(self, app_name: str) -> None:
        self._drifted.add(app_name)

    def acknowledge(self, app: Application) -> None:
        # a completed sync brings live state back to desired
        self._drifted.discard(app.name)

    def has_drifted(self, app: Application) -> bool:
        return app.name in self._drifted
