"""
Unit tests for ConfigManager.

Tests cover:
- Default file creation and structure repair
- Dot-notation get/set with backup on save
- Classifier settings validation
- Preference persistence and FilterState views
"""

import json

import pytest

from model_advisor.config.manager import ClassifierSettings, ConfigManager
from model_advisor.schemas.classification import ClassificationMode


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def temp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / ".model_advisor"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def config_file(temp_config_dir):
    return temp_config_dir / "config.json"


@pytest.fixture
def manager(temp_config_dir):
    return ConfigManager(config_dir=str(temp_config_dir))


# =============================================================================
# Test: Loading
# =============================================================================

class TestConfigLoading:
    """Tests for creating, loading and repairing the config file."""

    def test_creates_default_file(self, manager, config_file):
        assert config_file.exists()
        data = json.loads(config_file.read_text())

        assert data["schema_version"] == 1
        assert data["created_at"] is not None
        assert data["ensemble"]["size"] == 5

    def test_creates_missing_directory(self, tmp_path):
        ConfigManager(config_dir=str(tmp_path / "nested" / "dir"))
        assert (tmp_path / "nested" / "dir" / "config.json").exists()

    def test_fills_missing_keys(self, config_file, temp_config_dir):
        config_file.write_text(json.dumps({"ensemble": {"size": 3}}))

        manager = ConfigManager(config_dir=str(temp_config_dir))

        assert manager.get("ensemble.size") == 3
        assert manager.get("ensemble.timeout_seconds") == 5.0
        assert manager.get("preferences.classification_mode") == "fast"

    def test_replaces_wrongly_typed_section(self, config_file, temp_config_dir):
        config_file.write_text(json.dumps({"backends": "oops"}))

        manager = ConfigManager(config_dir=str(temp_config_dir))

        assert manager.get("backends.embedding_enabled") is True

    def test_corrupt_file_recreated(self, config_file, temp_config_dir):
        config_file.write_text("{not json")

        manager = ConfigManager(config_dir=str(temp_config_dir))

        assert manager.get("schema_version") == 1
        assert json.loads(config_file.read_text())["schema_version"] == 1


# =============================================================================
# Test: Get / Set
# =============================================================================

class TestConfigGetSet:
    """Tests for dot-notation access."""

    def test_get_nested(self, manager):
        assert manager.get("classification.embedding_top_k") == 5

    def test_get_missing_returns_default(self, manager):
        assert manager.get("classification.nope", "fallback") == "fallback"
        assert manager.get("ensemble.size.deeper") is None

    def test_set_persists(self, manager, temp_config_dir):
        manager.set("ensemble.timeout_seconds", 2.5)

        reloaded = ConfigManager(config_dir=str(temp_config_dir))
        assert reloaded.get("ensemble.timeout_seconds") == 2.5

    def test_set_creates_intermediate_sections(self, manager):
        manager.set("experimental.flags.verbose", True)
        assert manager.get("experimental.flags.verbose") is True

    def test_save_keeps_backup(self, manager, config_file):
        manager.set("ensemble.size", 7)

        backup = config_file.with_name("config.json.bak")
        assert backup.exists()
        assert json.loads(backup.read_text())["ensemble"]["size"] == 5


# =============================================================================
# Test: Classifier Settings
# =============================================================================

class TestClassifierSettings:
    """Tests for ClassifierSettings and the typed config view."""

    def test_defaults(self, manager):
        settings = manager.classifier_settings()

        assert settings == ClassifierSettings()
        assert settings.ensemble_temperatures == (0.1, 0.3, 0.5, 0.7, 0.9)

    def test_overrides_flow_through(self, manager):
        manager.set("ensemble.size", 3)
        manager.set("ensemble.temperatures", [0.2, 0.8])
        manager.set("classification.keyword_high_threshold", 0.9)

        settings = manager.classifier_settings()

        assert settings.ensemble_size == 3
        assert settings.ensemble_temperatures == (0.2, 0.8)
        assert settings.keyword_high_threshold == 0.9

    def test_inconsistent_values_rejected(self, manager):
        manager.set("classification.keyword_medium_threshold", 0.95)

        with pytest.raises(ValueError):
            manager.classifier_settings()

    @pytest.mark.parametrize("overrides", [
        {"embedding_voting_method": "ranked"},
        {"ensemble_size": 0},
        {"ensemble_min_successful": 6},
        {"ensemble_timeout_seconds": 0},
        {"keyword_evidence_saturation": -1},
        {"ensemble_high_ratio": 1.5},
        {"embedding_retry_seconds": -1},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValueError):
            ClassifierSettings(**overrides)

    def test_from_dict_ignores_unknown_keys(self):
        settings = ClassifierSettings.from_dict({"ensemble_size": 3, "colour": "blue"})
        assert settings.ensemble_size == 3


# =============================================================================
# Test: Preferences
# =============================================================================

class TestPreferences:
    """Tests for accuracy threshold, mode and deployment preferences."""

    @pytest.mark.parametrize("threshold", [0, 50, 75.5, 95])
    def test_valid_threshold(self, manager, threshold):
        manager.set_accuracy_threshold(threshold)
        assert manager.get_accuracy_threshold() == threshold

    @pytest.mark.parametrize("threshold", [-1, 96, "80", True, None])
    def test_invalid_threshold(self, manager, threshold):
        with pytest.raises(ValueError):
            manager.set_accuracy_threshold(threshold)

    def test_invalid_stored_threshold_reads_as_zero(self, manager):
        manager.set("preferences.min_accuracy_threshold", 150)
        assert manager.get_accuracy_threshold() == 0

    def test_classification_mode(self, manager):
        manager.set_classification_mode("ensemble")
        assert manager.get_classification_mode() == ClassificationMode.ENSEMBLE

        with pytest.raises(ValueError):
            manager.set_classification_mode("turbo")

    def test_invalid_stored_mode_reads_as_fast(self, manager):
        manager.set("preferences.classification_mode", "turbo")
        assert manager.get_classification_mode() == ClassificationMode.FAST

    def test_filter_state(self, manager):
        manager.set_accuracy_threshold(80)
        manager.set_deployment_target("browser")

        state = manager.filter_state()

        assert state.min_accuracy_threshold == 80
        assert state.deployment_target == "browser"
        assert state.classification_mode == ClassificationMode.FAST

    def test_blank_deployment_target_clears(self, manager):
        manager.set_deployment_target("")
        assert manager.get("preferences.deployment_target") is None

    def test_clear_preferences(self, manager):
        manager.set_accuracy_threshold(60)
        manager.set_classification_mode("ensemble")

        manager.clear_preferences()

        assert manager.filter_state().is_noop is True
        assert manager.get_classification_mode() == ClassificationMode.FAST
