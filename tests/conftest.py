# ABOUTME: Pytest fixtures and configuration for the Argo CD emulator tests
# ABOUTME: Provides a manual clock, seedable collaborators and a started engine

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from argocd_emulator.config import EngineSettings
from argocd_emulator.controller import ArgoCDEmulationEngine
from argocd_emulator.models import Application, SyncHook
from argocd_emulator.notifications import InMemoryTransport
from argocd_emulator.utils.clock import ManualClock
from argocd_emulator.utils.resolver import StaticResolver
from argocd_emulator.utils.runtime import SimulatedDriftObserver, SimulatedHookRunner

GIT_URL = "https://github.com/example/gitops.git"
HELM_URL = "https://charts.example.com"


class GatedHookRunner(SimulatedHookRunner):
    """Hook runner whose hooks block until the gate is opened."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.gate.set()

    def close(self) -> None:
        self.gate.clear()

    def open(self) -> None:
        self.gate.set()

    async def run(self, app: Application, hook: SyncHook) -> str | None:
        await self.gate.wait()
        return await super().run(app, hook)


@pytest.fixture
def settings() -> EngineSettings:
    """Create engine settings with short timeouts for testing."""
    return EngineSettings(
        _env_file=None,
        tick_interval_seconds=1,
        hook_timeout_seconds=5,
        sync_timeout_seconds=5,
        repository_check_interval_seconds=60,
        history_limit=10,
    )


@pytest.fixture
def clock() -> ManualClock:
    """Create a manual clock at 2024-01-15 10:00 UTC."""
    return ManualClock()


@pytest.fixture
def resolver() -> StaticResolver:
    """Create a resolver where main points at abc123."""
    resolver = StaticResolver()
    resolver.set_revision(GIT_URL, "main", "abc123")
    return resolver


@pytest.fixture
def hook_runner() -> GatedHookRunner:
    """Create a hook runner with an open gate."""
    return GatedHookRunner()


@pytest.fixture
def drift() -> SimulatedDriftObserver:
    """Create a drift observer with no drift."""
    return SimulatedDriftObserver()


@pytest.fixture
def transport() -> InMemoryTransport:
    """Create an in-memory notification transport."""
    return InMemoryTransport()


@pytest.fixture
async def engine(
    settings: EngineSettings,
    clock: ManualClock,
    resolver: StaticResolver,
    hook_runner: GatedHookRunner,
    drift: SimulatedDriftObserver,
    transport: InMemoryTransport,
) -> AsyncIterator[ArgoCDEmulationEngine]:
    """Create and start an engine wired to the test collaborators."""
    engine = ArgoCDEmulationEngine(
        settings,
        clock=clock,
        resolver=resolver,
        hook_runner=hook_runner,
        drift=drift,
        transport=transport,
    )
    async with engine:
        yield engine


@pytest.fixture
def git_repository() -> dict[str, Any]:
    """Create a git repository record."""
    return {"name": "gitops", "url": GIT_URL, "type": "git"}


@pytest.fixture
def app_record() -> dict[str, Any]:
    """Create an application record with one hook per sync phase."""
    return {
        "name": "app-a",
        "repository": "gitops",
        "path": "apps/a",
        "targetRevision": "main",
        "destination": {"namespace": "app-a"},
        "syncPolicy": "manual",
        "hooks": [
            {"name": "db-migrate", "phase": "PreSync"},
            {"name": "deploy-check", "phase": "Sync"},
            {"name": "smoke-test", "phase": "PostSync"},
        ],
    }


@pytest.fixture
async def seeded_engine(
    engine: ArgoCDEmulationEngine,
    git_repository: dict[str, Any],
    app_record: dict[str, Any],
) -> ArgoCDEmulationEngine:
    """Engine with the gitops repository and app-a registered."""
    assert await engine.add_repository(git_repository)
    assert await engine.add_application(app_record)
    return engine


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx
