# ABOUTME: Unit tests for the metrics read model
# ABOUTME: Tests status counts, hourly sync-rate buckets, durations and repository counts

from datetime import UTC, datetime, timedelta

import pytest

from argocd_emulator.metrics import SYNC_RATE_WINDOW_HOURS, compute_metrics, sync_rate
from argocd_emulator.models import Application, Repository, SyncOperation

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=UTC)


def op(op_id: str, hours_ago: float, status: str = "success", seconds: float = 30.0) -> SyncOperation:
    started = NOW - timedelta(hours=hours_ago)
    finished = None if status == "running" else started + timedelta(seconds=seconds)
    return SyncOperation(id=op_id, application="web", started_at=started, finished_at=finished, status=status)


@pytest.mark.unit
class TestSyncRate:
    """Tests for sync_rate."""

    def test_buckets_oldest_first(self):
        """Test that the newest hour is the last bucket."""
        rate = sync_rate([op("1", 0.1), op("2", 0.5), op("3", 23.5)], NOW)

        assert len(rate) == SYNC_RATE_WINDOW_HOURS
        assert rate[-1] == 2
        assert rate[0] == 1
        assert sum(rate) == 3

    def test_outside_window_ignored(self):
        """Test that syncs older than 24h or in the future are not counted."""
        rate = sync_rate([op("1", 24), op("2", 48), op("3", -1)], NOW)

        assert sum(rate) == 0


@pytest.mark.unit
class TestComputeMetrics:
    """Tests for compute_metrics."""

    def test_empty(self):
        """Test metrics of an empty engine."""
        metrics = compute_metrics(NOW, [], [])

        assert metrics.applications_total == 0
        assert metrics.applications_by_status["synced"] == 0
        assert metrics.average_sync_duration is None

    def test_counts(self):
        """Test application, operation and repository counts."""
        apps = [
            Application(name="web", repository="gitops", status="synced", health="healthy"),
            Application(name="api", repository="gitops", status="degraded", health="degraded"),
        ]
        operations = [op("1", 1, seconds=20), op("2", 2, status="failed", seconds=40), op("3", 0, status="running")]
        repositories = [
            Repository(name="ok", url="https://example.com/ok.git", connection_status="successful"),
            Repository(name="down", url="https://example.com/down.git", connection_status="failed"),
        ]

        metrics = compute_metrics(NOW, apps, operations, repositories, requests_total=7, requests_errors=2)

        assert metrics.applications_by_status == {"synced": 1, "outofsync": 0, "progressing": 0, "degraded": 1}
        assert metrics.applications_by_health["healthy"] == 1
        assert metrics.sync_operations_total == 3
        assert metrics.sync_operations_success == 1
        assert metrics.sync_operations_failed == 1
        assert metrics.sync_operations_running == 1
        assert metrics.average_sync_duration == 30.0
        assert metrics.syncs_last_24h == 3
        assert metrics.repositories_connected == 1
        assert metrics.repositories_failed == 1
        assert metrics.requests_errors == 2

    def test_pure(self):
        """Test that computing metrics does not touch its inputs."""
        apps = [Application(name="web", repository="gitops")]
        before = apps[0].model_dump()

        compute_metrics(NOW, apps, [])

        assert apps[0].model_dump() == before
