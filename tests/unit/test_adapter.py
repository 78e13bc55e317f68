# ABOUTME: Unit tests for the config sync adapter
# ABOUTME: Tests default resolution, duplicate detection, JSON config files and state export

import json
from pathlib import Path

import pytest

from argocd_emulator.adapter import (
    DEFAULT_PROJECT,
    export_config,
    load_config_file,
    resolve_defaults,
    resolve_entity,
)
from argocd_emulator.config import EngineSettings
from argocd_emulator.errors import AdmissionError, ValidationError
from argocd_emulator.models import Application, Repository

GIT_URL = "https://github.com/example/gitops.git"


@pytest.fixture
def raw_config() -> dict:
    return {
        "repositories": [{"name": "gitops", "url": GIT_URL}],
        "applications": [{"name": "web", "repository": "gitops"}],
        "syncWindows": [{"name": "freeze", "schedule": "0 22 * * *", "duration": 60, "kind": "deny"}],
    }


@pytest.mark.unit
class TestResolveEntity:
    """Tests for resolve_entity."""

    def test_default_sync_policy_from_settings(self):
        """Test that the configured default sync policy fills the gap."""
        settings = EngineSettings(_env_file=None, default_sync_policy="automated")

        app = resolve_entity(Application, {"name": "web", "repository": "gitops"}, settings)
        explicit = resolve_entity(
            Application, {"name": "api", "repository": "gitops", "syncPolicy": "manual"}, settings
        )

        assert app.sync_policy.mode == "automated"
        assert explicit.sync_policy.mode == "manual"

    def test_model_instance_is_copied(self):
        """Test that passing a model returns an independent copy."""
        app = Application(name="web", repository="gitops")

        resolved = resolve_entity(Application, app)

        assert resolved == app
        assert resolved is not app

    def test_invalid_record(self):
        """Test that validation errors are collected into an AdmissionError."""
        with pytest.raises(AdmissionError) as exc_info:
            resolve_entity(Repository, {"name": "bad", "url": "ftp://example.com"})

        assert "Repository 'bad'" in exc_info.value.message
        assert exc_info.value.errors


@pytest.mark.unit
class TestResolveDefaults:
    """Tests for resolve_defaults."""

    def test_defaults_applied(self, raw_config: dict):
        """Test that every default is resolved at ingestion."""
        config = resolve_defaults(raw_config)

        app = config.applications[0]
        assert app.project == DEFAULT_PROJECT
        assert app.target_revision == "main"
        assert app.destination.namespace == "default"
        assert config.repositories[0].type == "git"
        assert config.sync_windows[0].duration == 60

    def test_default_project_added(self, raw_config: dict):
        """Test that a default project exists even when none is declared."""
        config = resolve_defaults(raw_config)

        assert [p.name for p in config.projects] == [DEFAULT_PROJECT]

    def test_declared_default_project_kept(self, raw_config: dict):
        """Test that a declared default project is not replaced."""
        raw_config["projects"] = [{"name": "default", "description": "ours"}]

        config = resolve_defaults(raw_config)

        assert len(config.projects) == 1
        assert config.projects[0].description == "ours"

    def test_snake_case_sections(self):
        """Test that snake_case section names are accepted."""
        config = resolve_defaults({"sync_windows": [{"name": "w", "schedule": "09:00-17:00"}]})

        assert config.sync_windows[0].name == "w"

    def test_all_record_errors_reported(self):
        """Test that errors from several records are reported together."""
        raw = {
            "repositories": [{"name": "a", "url": "ftp://a"}],
            "applications": [{"name": "Bad_Name", "repository": "gitops"}],
        }

        with pytest.raises(AdmissionError) as exc_info:
            resolve_defaults(raw)

        assert len(exc_info.value.errors) >= 2

    def test_duplicate_names(self, raw_config: dict):
        """Test that names must be unique within a section."""
        raw_config["applications"].append({"name": "web", "repository": "gitops"})

        with pytest.raises(ValidationError, match="duplicate applications name"):
            resolve_defaults(raw_config)


@pytest.mark.unit
class TestLoadConfigFile:
    """Tests for load_config_file."""

    def test_loads_json(self, tmp_path: Path, raw_config: dict):
        """Test reading a JSON config file."""
        path = tmp_path / "gitops.json"
        path.write_text(json.dumps(raw_config))

        config = load_config_file(path)

        assert config.applications[0].name == "web"

    def test_invalid_json(self, tmp_path: Path):
        """Test that malformed JSON is a ValidationError."""
        path = tmp_path / "gitops.json"
        path.write_text("{not json")

        with pytest.raises(ValidationError, match="not valid JSON"):
            load_config_file(path)

    def test_top_level_must_be_object(self, tmp_path: Path):
        """Test that a JSON list is rejected."""
        path = tmp_path / "gitops.json"
        path.write_text("[]")

        with pytest.raises(ValidationError, match="JSON object"):
            load_config_file(path)


@pytest.mark.unit
class TestExportConfig:
    """Tests for export_config."""

    def test_observed_state_excluded(self):
        """Test that status, history and connection state are not exported."""
        app = Application(name="web", repository="gitops", status="synced", revision="abc123")
        repo = Repository(name="gitops", url=GIT_URL, connection_status="successful")

        exported = export_config(applications=[app], repositories=[repo])

        assert "status" not in exported["applications"][0]
        assert "revision" not in exported["applications"][0]
        assert exported["applications"][0]["targetRevision"] == "main"
        assert "connectionStatus" not in exported["repositories"][0]

    def test_owned_applications_excluded(self):
        """Test that generated applications are not exported."""
        owned = Application(name="app-dev", repository="gitops", owner="fleet")
        manual = Application(name="web", repository="gitops")

        exported = export_config(applications=[owned, manual])

        assert [a["name"] for a in exported["applications"]] == ["web"]

    def test_secrets_masked(self):
        """Test that repository passwords do not leak."""
        repo = Repository(name="private", url=GIT_URL, username="ci", password="hunter2")

        exported = export_config(repositories=[repo])

        assert "hunter2" not in json.dumps(exported)

    def test_round_trip(self, raw_config: dict):
        """Test that an export resolves back to the same config."""
        config = resolve_defaults(raw_config)

        exported = export_config(**{name: getattr(config, name) for name in type(config).model_fields})

        assert resolve_defaults(exported) == config
