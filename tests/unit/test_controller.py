# ABOUTME: Unit tests for the engine controller and its command queue
# ABOUTME: Tests command outcomes, registries, referential conflicts, notifications, webhooks, bulk config and queries

import json
from pathlib import Path

import pytest

from argocd_emulator.config import EngineSettings
from argocd_emulator.controller import ArgoCDEmulationEngine
from argocd_emulator.errors import NotFoundError, ValidationError
from argocd_emulator.utils.logging import AuditLogger

GIT_URL = "https://github.com/example/gitops.git"
SLACK_URL = "https://hooks.slack.com/services/T000/B000/XXXX"

FLEET = {
    "name": "fleet",
    "generators": [{"list": {"elements": [{"env": "dev"}, {"env": "prod"}]}}],
    "template": {"name": "app-{{env}}", "repository": "gitops", "path": "envs/{{env}}"},
}


def slack_channel(event: str, **kwargs) -> dict:
    return {
        "name": "ops",
        "type": "slack",
        "config": {"webhookUrl": SLACK_URL},
        "triggers": [{"event": event}],
        **kwargs,
    }


@pytest.mark.unit
class TestLifecycle:
    """Tests for starting and stopping the engine."""

    async def test_commands_need_a_started_engine(self, settings, app_record):
        """Test that submitting to a stopped engine is a RuntimeError."""
        engine = ArgoCDEmulationEngine(settings)

        with pytest.raises(RuntimeError, match="not started"):
            await engine.add_application(app_record)

    async def test_default_project_seeded(self, engine):
        """Test that the default project exists from the start."""
        assert [p.name for p in engine.get_projects()] == ["default"]

    async def test_stop_cancels_running_sync(self, seeded_engine, hook_runner):
        """Test that stopping the engine fails a running sync."""
        hook_runner.close()
        started = await seeded_engine.start_sync("app-a")

        await seeded_engine.stop()

        [op] = seeded_engine.get_sync_operations()
        assert op.id == started.value.id
        assert op.status == "failed"
        assert seeded_engine.get_application("app-a").status == "outofsync"
        assert seeded_engine.running is False

    async def test_config_file_loaded_on_start(self, tmp_path: Path, clock, resolver, git_repository, app_record):
        """Test that settings.config_file is applied at startup."""
        path = tmp_path / "gitops.json"
        path.write_text(json.dumps({"repositories": [git_repository], "applications": [app_record]}))
        settings = EngineSettings(_env_file=None, config_file=path)

        async with ArgoCDEmulationEngine(settings, clock=clock, resolver=resolver) as engine:
            assert engine.get_application("app-a") is not None

    async def test_bad_config_file_stops_engine(self, tmp_path: Path, clock):
        """Test that an unreadable config file aborts startup."""
        path = tmp_path / "gitops.json"
        path.write_text("{oops")
        engine = ArgoCDEmulationEngine(EngineSettings(_env_file=None, config_file=path), clock=clock)

        with pytest.raises(ValidationError):
            await engine.start()

        assert engine.running is False


@pytest.mark.unit
class TestApplicationCommands:
    """Tests for application and sync commands."""

    async def test_add_returns_copy(self, seeded_engine):
        """Test that query results are copies of engine state."""
        app = seeded_engine.get_application("app-a")
        app.path = "tampered"

        assert seeded_engine.get_application("app-a").path == "apps/a"
        assert app.project == "default"

    async def test_invalid_record_rejected(self, engine):
        """Test that an invalid record yields a falsy validation result."""
        result = await engine.add_application({"name": "Bad_Name", "repository": "gitops"})

        assert not result
        assert result.kind == "validation"
        assert engine.get_applications() == []

    async def test_dangling_repository_rejected(self, engine, app_record):
        """Test that admission failures are reported, not raised."""
        result = await engine.add_application(app_record)

        assert not result
        assert any("repository 'gitops'" in e for e in result.errors)

    async def test_sync_to_completion(self, seeded_engine):
        """Test that a sync scheduled through the queue completes."""
        result = await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()

        app = seeded_engine.get_application("app-a")
        assert result.value.status == "running"
        assert app.status == "synced"
        assert app.history[0].deployed_by == "admin"
        assert seeded_engine.get_sync_operations("app-a")[0].status == "success"

    async def test_concurrent_sync_is_a_conflict(self, seeded_engine, hook_runner):
        """Test that a second sync while one runs is rejected as a conflict."""
        hook_runner.close()
        first = await seeded_engine.start_sync("app-a")
        second = await seeded_engine.start_sync("app-a")
        hook_runner.open()
        await seeded_engine.drain()

        assert first
        assert not second
        assert second.kind == "conflict"
        assert len(seeded_engine.get_sync_operations("app-a")) == 1

    async def test_terminate(self, seeded_engine, hook_runner):
        """Test terminating a running sync through the engine."""
        hook_runner.close()
        await seeded_engine.start_sync("app-a")

        result = await seeded_engine.terminate_sync("app-a")
        await seeded_engine.drain()

        assert result.value.status == "failed"
        assert seeded_engine.get_application("app-a").health == "unknown"

    async def test_rollback(self, seeded_engine, resolver):
        """Test rollback through the engine."""
        await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()
        resolver.set_revision(GIT_URL, "main", "def456")
        await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()

        result = await seeded_engine.rollback("app-a")
        await seeded_engine.drain()

        assert result.value.kind == "rollback"
        assert seeded_engine.get_application("app-a").revision == "abc123"

    async def test_sync_missing_app(self, engine):
        """Test that syncing an unknown app is a not_found result."""
        result = await engine.start_sync("ghost")

        assert result.kind == "not_found"

    async def test_sync_in_deny_window_denied(self, seeded_engine):
        """Test that a deny window rejects a manual sync with policy_denied."""
        await seeded_engine.add_sync_window({"name": "freeze", "schedule": "09:00-17:00", "kind": "deny"})

        result = await seeded_engine.start_sync("app-a")

        assert result.kind == "policy_denied"
        assert "freeze" in result.errors[0]

    async def test_remove_application(self, seeded_engine):
        """Test removing an application."""
        result = await seeded_engine.remove_application("app-a")

        assert result
        assert seeded_engine.get_application("app-a") is None


@pytest.mark.unit
class TestRegistries:
    """Tests for repositories, projects, roles and referential conflicts."""

    async def test_duplicate_repository_url(self, seeded_engine):
        """Test that a URL can only be registered once."""
        result = await seeded_engine.add_repository({"name": "gitops-2", "url": GIT_URL})

        assert not result
        assert "already configured" in result.errors[0]

    async def test_repository_connection_checked(self, seeded_engine):
        """Test that adding a repository checks its connection."""
        [repo] = seeded_engine.get_repositories()

        assert repo.connection_status == "successful"

    async def test_repository_in_use_cannot_be_removed(self, seeded_engine):
        """Test that removing a used repository is a conflict."""
        result = await seeded_engine.remove_repository("gitops")

        assert result.kind == "conflict"
        assert "app-a" in result.errors[0]

    async def test_default_project_cannot_be_removed(self, engine):
        """Test that the default project is protected."""
        result = await engine.remove_project("default")

        assert result.kind == "conflict"

    async def test_project_with_applications_cannot_be_removed(self, seeded_engine, app_record):
        """Test that a project in use is not removed."""
        await seeded_engine.add_project({"name": "team-a"})
        await seeded_engine.add_application({**app_record, "name": "app-b", "project": "team-a"})

        result = await seeded_engine.remove_project("team-a")

        assert result.kind == "conflict"

    async def test_project_unknown_role(self, engine):
        """Test that projects may only reference existing roles."""
        result = await engine.add_project({"name": "team-a", "roles": ["deployer"]})

        assert result.kind == "validation"

    async def test_role_in_use_cannot_be_removed(self, engine):
        """Test that a role referenced by a project is kept."""
        await engine.add_role({"name": "deployer", "policies": [{"action": "sync", "resource": "applications"}]})
        await engine.add_project({"name": "team-a", "roles": ["deployer"]})

        result = await engine.remove_role("deployer")

        assert result.kind == "conflict"

    async def test_update_missing_window(self, engine):
        """Test that updating an unknown window is not_found."""
        result = await engine.update_sync_window({"name": "nightly", "schedule": "22:00-23:00"})

        assert result.kind == "not_found"

    async def test_check_access(self, engine):
        """Test RBAC evaluation through the engine."""
        await engine.add_role(
            {
                "name": "deployer",
                "policies": [
                    {"action": "sync", "resource": "applications", "object": "prod-*", "effect": "deny"},
                    {"action": "*", "resource": "applications"},
                ],
            }
        )

        assert engine.check_access("deployer", "sync", "applications", "prod-web").allowed is False
        assert engine.check_access("deployer", "sync", "applications", "dev-web").allowed is True
        with pytest.raises(NotFoundError):
            engine.check_access("ghost", "get", "applications")


@pytest.mark.unit
class TestNotifications:
    """Tests for notification dispatch through the engine."""

    async def test_delivered_on_sync(self, seeded_engine, transport):
        """Test that a matching channel receives the event."""
        await seeded_engine.add_notification_channel(slack_channel("on-sync-succeeded"))

        await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()

        assert len(transport.sent) == 1
        assert transport.sent[0][1]["event"] == "on-sync-succeeded"
        [record] = seeded_engine.get_dispatch_records()
        assert record.status == "delivered"
        assert seeded_engine.get_metrics().notifications_sent == 1

    async def test_failed_delivery_recorded(self, seeded_engine, transport):
        """Test that a failing transport marks the record failed."""
        await seeded_engine.add_notification_channel(slack_channel("on-sync-running"))
        transport.fail("ops")

        await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()

        [record] = seeded_engine.get_dispatch_records()
        assert record.status == "failed"
        assert seeded_engine.get_metrics().notifications_failed == 1

    async def test_disabled_channel_silent(self, seeded_engine, transport):
        """Test that disabled channels never fire."""
        await seeded_engine.add_notification_channel(slack_channel("on-sync-running", enabled=False))

        await seeded_engine.start_sync("app-a")
        await seeded_engine.drain()

        assert transport.sent == []


@pytest.mark.unit
class TestWebhooks:
    """Tests for handle_webhook."""

    async def test_application_webhook_syncs(self, seeded_engine):
        """Test that naming an application syncs it."""
        result = await seeded_engine.handle_webhook({"application": "app-a"})
        await seeded_engine.drain()

        assert result.value == ["app-a"]
        assert seeded_engine.get_application("app-a").history[0].deployed_by == "webhook"

    async def test_push_webhook_refreshes_repository_users(self, seeded_engine, app_record):
        """Test that a push payload auto-syncs automated apps of that repository."""
        await seeded_engine.update_application({**app_record, "syncPolicy": "automated"})

        result = await seeded_engine.handle_webhook({"repository": {"clone_url": GIT_URL}})
        await seeded_engine.drain()

        assert result.value == ["app-a"]
        assert seeded_engine.get_application("app-a").status == "synced"

    async def test_unknown_repository(self, seeded_engine):
        """Test that an unconfigured repository is not_found."""
        result = await seeded_engine.handle_webhook({"repository": "https://example.com/other.git"})

        assert result.kind == "not_found"

    async def test_empty_payload(self, seeded_engine):
        """Test that a payload without a target is rejected."""
        result = await seeded_engine.handle_webhook({"zen": "Keep it logically awesome."})

        assert result.kind == "validation"


@pytest.mark.unit
class TestApplicationSetCommands:
    """Tests for ApplicationSet commands."""

    async def test_add_generates_applications(self, engine, git_repository):
        """Test that adding a set materializes owned applications."""
        await engine.add_repository(git_repository)

        result = await engine.add_application_set(FLEET)

        assert result.value.generated_applications == ["app-dev", "app-prod"]
        assert {a.owner for a in engine.get_applications()} == {"fleet"}

    async def test_generated_application_is_read_only(self, engine, git_repository, app_record):
        """Test that owned apps cannot be edited directly."""
        await engine.add_repository(git_repository)
        await engine.add_application_set(FLEET)

        result = await engine.update_application({**app_record, "name": "app-dev"})

        assert result.kind == "conflict"

    async def test_remove_deletes_applications(self, engine, git_repository):
        """Test that removing a set deletes its applications."""
        await engine.add_repository(git_repository)
        await engine.add_application_set(FLEET)

        await engine.remove_application_set("fleet")

        assert engine.get_applications() == []
        assert engine.get_application_sets() == []

    async def test_disable_with_preserve_keeps_applications(self, engine, git_repository):
        """Test that disabling a preserving set leaves its apps owned."""
        await engine.add_repository(git_repository)
        await engine.add_application_set({**FLEET, "preserveResourcesOnDeletion": True})

        await engine.update_application_set({**FLEET, "preserveResourcesOnDeletion": True, "enabled": False})

        assert {a.name: a.owner for a in engine.get_applications()} == {"app-dev": "fleet", "app-prod": "fleet"}

    async def test_cluster_added_regenerates(self, engine, git_repository):
        """Test that cluster generators follow cluster registration."""
        await engine.add_repository(git_repository)
        await engine.add_application_set(
            {
                "name": "per-cluster",
                "generators": [{"clusters": {}}],
                "template": {"name": "web-{{name}}", "repository": "gitops", "destination": {"server": "{{server}}"}},
            }
        )

        await engine.add_cluster({"name": "dev", "server": "https://dev.example.com"})
        assert engine.get_application("web-dev").destination.server == "https://dev.example.com"

        await engine.remove_cluster("dev")
        assert engine.get_application("web-dev") is None


@pytest.mark.unit
class TestApplyConfig:
    """Tests for apply_config."""

    async def test_converges(self, engine, git_repository, app_record):
        """Test that entities missing from a later config are removed."""
        window = {"name": "nightly", "schedule": "22:00-23:00", "kind": "allow"}
        first = await engine.apply_config(
            {"repositories": [git_repository], "applications": [app_record], "syncWindows": [window]}
        )
        second = await engine.apply_config({"repositories": [git_repository]})

        assert first
        assert second
        stats = engine.get_stats()
        assert stats["applications"] == 0
        assert stats["syncWindows"] == 0
        assert stats["repositories"] == 1
        assert stats["projects"] == 1

    async def test_partial_failure(self, engine, git_repository, app_record):
        """Test that one bad entity does not block the others."""
        result = await engine.apply_config(
            {
                "repositories": [git_repository],
                "applications": [app_record, {"name": "stray", "repository": "nowhere"}],
            }
        )

        assert not result
        assert any("stray" in e for e in result.errors)
        assert engine.get_application("app-a") is not None

    async def test_export_round_trip(self, seeded_engine):
        """Test that exported config re-applies without changes."""
        exported = seeded_engine.export_config()

        result = await seeded_engine.apply_config(exported)

        assert result
        assert seeded_engine.export_config() == exported


@pytest.mark.unit
class TestObservability:
    """Tests for metrics, stats and the audit trail."""

    async def test_request_counters(self, seeded_engine):
        """Test that every command counts and rejections count as errors."""
        await seeded_engine.remove_repository("gitops")

        metrics = seeded_engine.get_metrics()

        assert metrics.requests_total == 3
        assert metrics.requests_errors == 1
        assert metrics.applications_total == 1

    async def test_validate_sync_policy_uses_engine_clock(self, seeded_engine, clock):
        """Test that validation uses the engine's now."""
        await seeded_engine.add_sync_window({"name": "freeze", "schedule": "09:00-17:00", "kind": "deny"})

        assert seeded_engine.validate_sync_policy("automated", "app-a").valid is False
        clock.advance(hours=10)
        assert seeded_engine.validate_sync_policy("automated", "app-a").valid is True

    async def test_audit_trail(self, tmp_path: Path, settings, clock, resolver, git_repository, app_record):
        """Test that command outcomes are written to the audit log."""
        log_file = tmp_path / "audit.log"
        engine = ArgoCDEmulationEngine(
            settings, clock=clock, resolver=resolver, audit=AuditLogger(log_file, clock=clock)
        )
        async with engine:
            await engine.add_repository(git_repository)
            await engine.add_application(app_record)
            await engine.add_sync_window({"name": "freeze", "schedule": "09:00-17:00", "kind": "deny"})
            await engine.start_sync("app-a")
            await engine.remove_repository("gitops")

        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert [(e["action"], e["result"]) for e in entries] == [
            ("add_repository", "accepted"),
            ("add_application", "accepted"),
            ("add_sync_window", "accepted"),
            ("start_sync", "denied"),
            ("remove_repository", "rejected"),
        ]
        assert entries[0]["timestamp"] == "2024-01-15T10:00:00+00:00"
        assert len({e["correlation_id"] for e in entries}) == 5
