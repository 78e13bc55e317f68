# ABOUTME: Git/Helm/OCI resolver collaborator interface and its static in-memory implementation
# ABOUTME: Resolves target revisions, lists directories/files/chart versions and checks repository connectivity

"""
Repository resolver.

The engine never talks to a real Git server or chart registry. Everything it
needs to know about repository contents goes through this interface:

    resolve_revision    "main" -> commit sha (drift detection, sync)
    list_directories    directory listing for the Git directory generator
    list_files          file paths and their parameters for the Git file generator
    list_chart_versions chart versions available in a Helm repository
    check_connection    repository reachability

Failures are raised as GeneratorError. Callers treat them as "no rows for
this generator" or "status unknown", never as a crash.

StaticResolver is fed by tests or by a demo script:

    resolver = StaticResolver()
    resolver.set_revision("https://github.com/org/repo.git", "main", "abc123")
    resolver.set_directories("https://github.com/org/repo.git", ["apps/web", "apps/api"])
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import structlog

from argocd_emulator.errors import GeneratorError

if TYPE_CHECKING:
    from argocd_emulator.models import Repository

logger = structlog.get_logger(__name__)


class RepositoryResolver(Protocol):
    async def resolve_revision(self, repo_url: str, target_revision: str) -> str: ...

    async def list_directories(self, repo_url: str, revision: str) -> list[str]: ...

    async def list_files(self, repo_url: str, revision: str) -> dict[str, dict[str, object]]: ...

    async def list_chart_versions(self, repo_url: str, chart: str) -> list[str]: ...

    async def check_connection(self, repository: Repository) -> None: ...


class StaticResolver:
    """In-memory resolver with seedable contents and failures."""

    def __init__(self) -> None:
        self._revisions: dict[tuple[str, str], str] = {}
        self._directories: dict[str, list[str]] = {}
        self._files: dict[str, dict[str, dict[str, object]]] = {}
        self._charts: dict[str, dict[str, list[str]]] = {}
        self._unreachable: dict[str, str] = {}

    # -- seeding ---------------------------------------------------------

    def set_revision(self, repo_url: str, target_revision: str, sha: str) -> None:
        self._revisions[(repo_url, target_revision)] = sha

    def set_directories(self, repo_url: str, paths: list[str]) -> None:
        self._directories[repo_url] = list(paths)

    def set_files(self, repo_url: str, files: dict[str, dict[str, object]]) -> None:
        self._files[repo_url] = {path: dict(params) for path, params in files.items()}

    def set_chart_versions(self, repo_url: str, chart: str, versions: list[str]) -> None:
        self._charts.setdefault(repo_url, {})[chart] = list(versions)

    def set_unreachable(self, repo_url: str, reason: str = "connection refused") -> None:
        self._unreachable[repo_url] = reason

    def set_reachable(self, repo_url: str) -> None:
        self._unreachable.pop(repo_url, None)

    # -- resolver interface ----------------------------------------------

    def _ensure_reachable(self, repo_url: str) -> None:
        reason = self._unreachable.get(repo_url)
        if reason is not None:
            raise GeneratorError(f"repository '{repo_url}' is unreachable", reason)

    async def resolve_revision(self, repo_url: str, target_revision: str) -> str:
        """Return the sha a target revision points at; unknown refs resolve to themselves."""
        self._ensure_reachable(repo_url)
        return self._revisions.get((repo_url, target_revision), target_revision)

    async def list_directories(self, repo_url: str, revision: str) -> list[str]:
        self._ensure_reachable(repo_url)
        return list(self._directories.get(repo_url, []))

    async def list_files(self, repo_url: str, revision: str) -> dict[str, dict[str, object]]:
        self._ensure_reachable(repo_url)
        return {path: dict(params) for path, params in self._files.get(repo_url, {}).items()}

    async def list_chart_versions(self, repo_url: str, chart: str) -> list[str]:
        self._ensure_reachable(repo_url)
        charts = self._charts.get(repo_url, {})
        if charts and chart not in charts:
            raise GeneratorError(f"chart '{chart}' not found in '{repo_url}'")
        return list(charts.get(chart, []))

    async def check_connection(self, repository: Repository) -> None:
        self._ensure_reachable(repository.url)
        logger.debug("repository_reachable", repository=repository.name)
