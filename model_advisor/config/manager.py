"""
Configuration Manager.

Persists classifier tuning, backend settings and user preferences to a JSON
file, and hands out typed, validated views of them:

    manager = ConfigManager()
    settings = manager.classifier_settings()
    filter_state = manager.filter_state()

Every confidence band and vote threshold lives here rather than in the
classifiers, so they can be re-tuned against a labelled corpus.
"""

import json
import os
import shutil
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from model_advisor.schemas.classification import ClassificationMode
from model_advisor.schemas.recommendation import (
    MAX_ACCURACY_THRESHOLD,
    MIN_ACCURACY_THRESHOLD,
    FilterState,
)
from model_advisor.utils.logger import log


VOTING_METHODS = ("simple", "weighted")


@dataclass(frozen=True)
class ClassifierSettings:
    """Tunable constants for the classification pipeline."""
    # Keyword stage
    keyword_high_threshold: float = 0.8
    keyword_medium_threshold: float = 0.6
    keyword_evidence_saturation: float = 2.0

    # Embedding stage
    embedding_high_threshold: float = 0.85
    embedding_medium_threshold: float = 0.70
    embedding_top_k: int = 5
    embedding_voting_method: str = "weighted"
    near_tie_margin: float = 0.1
    embedding_retry_seconds: float = 60.0

    # Ensemble stage
    ensemble_size: int = 5
    ensemble_timeout_seconds: float = 5.0
    ensemble_min_successful: int = 2
    ensemble_temperatures: Tuple[float, ...] = (0.1, 0.3, 0.5, 0.7, 0.9)
    ensemble_high_ratio: float = 0.8
    ensemble_medium_ratio: float = 0.6
    max_alternatives: int = 3

    def __post_init__(self):
        object.__setattr__(self, "ensemble_temperatures", tuple(self.ensemble_temperatures))
        for low, high in (
            ("keyword_medium_threshold", "keyword_high_threshold"),
            ("embedding_medium_threshold", "embedding_high_threshold"),
            ("ensemble_medium_ratio", "ensemble_high_ratio"),
        ):
            low_value, high_value = getattr(self, low), getattr(self, high)
            if not 0.0 <= low_value <= high_value <= 1.0:
                raise ValueError(f"Expected 0 <= {low} <= {high} <= 1, got {low_value} / {high_value}")
        if self.embedding_voting_method not in VOTING_METHODS:
            raise ValueError(f"Invalid voting method: {self.embedding_voting_method}. Must be one of {VOTING_METHODS}")
        if self.embedding_top_k < 1 or self.ensemble_size < 1:
            raise ValueError("embedding_top_k and ensemble_size must be at least 1")
        if not 1 <= self.ensemble_min_successful <= self.ensemble_size:
            raise ValueError("ensemble_min_successful must be between 1 and ensemble_size")
        if self.ensemble_timeout_seconds <= 0:
            raise ValueError("ensemble_timeout_seconds must be positive")
        if self.keyword_evidence_saturation <= 0:
            raise ValueError("keyword_evidence_saturation must be positive")
        if self.embedding_retry_seconds < 0:
            raise ValueError("embedding_retry_seconds must not be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifierSettings":
        """Build settings from a flat mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ConfigManager:
    """
    Configuration manager.

    Features:
    - Nested key access via dot notation
    - Backup of the previous file on every save
    - Missing keys filled from DEFAULT_CONFIG on load
    - Timestamp tracking (created_at, updated_at)
    """

    CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".model_advisor")
    CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")

    DEFAULT_CONFIG = {
        "schema_version": 1,
        "created_at": None,  # Set on creation
        "updated_at": None,  # Set on every save

        "classification": {
            "keyword_high_threshold": 0.8,
            "keyword_medium_threshold": 0.6,
            "keyword_evidence_saturation": 2.0,
            "embedding_high_threshold": 0.85,
            "embedding_medium_threshold": 0.70,
            "embedding_top_k": 5,
            "embedding_voting_method": "weighted",
            "near_tie_margin": 0.1,
            "embedding_retry_seconds": 60.0,
            "max_alternatives": 3,
        },

        "ensemble": {
            "size": 5,
            "timeout_seconds": 5.0,
            "min_successful": 2,
            "temperatures": [0.1, 0.3, 0.5, 0.7, 0.9],
            "high_ratio": 0.8,
            "medium_ratio": 0.6,
        },

        "backends": {
            "embedding_enabled": True,
            "embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
            "generation_enabled": False,
            "generation_base_url": None,  # OpenAI-compatible endpoint
            "generation_model": None,
            "generation_api_key_env": "MODEL_ADVISOR_LLM_API_KEY",
        },

        "data": {
            "taxonomy_path": None,  # None = bundled data/task_taxonomy.yaml
            "catalog_path": None,  # None = bundled data/model_catalog.yaml
        },

        "preferences": {
            "min_accuracy_threshold": 0,
            "classification_mode": "fast",
            "deployment_target": None,
        },
    }

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize the config manager and load config.

        Args:
            config_dir: Override for the config directory (tests, portable installs)
        """
        if config_dir is not None:
            self.CONFIG_DIR = str(config_dir)
            self.CONFIG_FILE = os.path.join(self.CONFIG_DIR, "config.json")
        self._ensure_config_dir()
        self.config = self._load_config()
        self._validate_structure()

    def _ensure_config_dir(self) -> None:
        if not os.path.exists(self.CONFIG_DIR):
            os.makedirs(self.CONFIG_DIR)

    def _load_config(self) -> Dict[str, Any]:
        """Load config from file or create default."""
        if not os.path.exists(self.CONFIG_FILE):
            config = self._create_default_config()
            self._save_config(config)
            return config

        try:
            with open(self.CONFIG_FILE, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Failed to load config: {e}. Creating new config.")
            config = self._create_default_config()
            self._save_config(config)
            return config

    def _create_default_config(self) -> Dict[str, Any]:
        config = self._deep_copy(self.DEFAULT_CONFIG)
        now = datetime.now(timezone.utc).isoformat()
        config["created_at"] = now
        config["updated_at"] = now
        return config

    def _save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Save config to file with backup."""
        if config is None:
            config = self.config

        config["updated_at"] = datetime.now(timezone.utc).isoformat()

        if os.path.exists(self.CONFIG_FILE):
            try:
                shutil.copy2(self.CONFIG_FILE, self.CONFIG_FILE + ".bak")
            except IOError as e:
                log.warning(f"Failed to backup config: {e}")

        try:
            with open(self.CONFIG_FILE, 'w', encoding='utf-8') as f:
                json.dump(config, f, indent=2)
        except IOError as e:
            log.error(f"Failed to save config: {e}")

    def _validate_structure(self) -> None:
        """Ensure config has all required keys with correct types."""
        changed = False
        if not isinstance(self.config, dict):
            self.config = self._create_default_config()
            changed = True

        for key, default in self.DEFAULT_CONFIG.items():
            if key not in self.config:
                self.config[key] = self._deep_copy(default)
                changed = True
            elif isinstance(default, dict) and not isinstance(self.config[key], dict):
                self.config[key] = self._deep_copy(default)
                changed = True
            elif isinstance(default, dict):
                for subkey, subdefault in default.items():
                    if subkey not in self.config[key]:
                        self.config[key][subkey] = self._deep_copy(subdefault)
                        changed = True

        if changed:
            self._save_config()

    def _deep_copy(self, obj: Any) -> Any:
        """Deep copy a JSON-serializable object."""
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(i) for i in obj]
        return obj

    # =========================================================================
    # Public API - Get/Set
    # =========================================================================

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a config value by key.

        Supports dot notation for nested keys:
            manager.get("ensemble.timeout_seconds")

        Args:
            key: The config key (supports dot notation)
            default: Default value if key not found

        Returns:
            The config value or default
        """
        value = self.config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a config value by key and save.

        Args:
            key: The config key (supports dot notation)
            value: The value to set
        """
        parts = key.split(".")

        parent = self.config
        for part in parts[:-1]:
            if part not in parent:
                parent[part] = {}
            parent = parent[part]

        parent[parts[-1]] = value
        self._save_config()

    def load_config(self) -> Dict[str, Any]:
        """Reload config from disk."""
        self.config = self._load_config()
        self._validate_structure()
        return self.config

    # =========================================================================
    # Classifier Settings API
    # =========================================================================

    def classifier_settings(self) -> ClassifierSettings:
        """
        Typed view of the classification and ensemble sections.

        Raises:
            ValueError: If the stored values are inconsistent
        """
        flat = dict(self.get("classification", {}))
        ensemble = self.get("ensemble", {})
        flat.update({
            "ensemble_size": ensemble.get("size", 5),
            "ensemble_timeout_seconds": ensemble.get("timeout_seconds", 5.0),
            "ensemble_min_successful": ensemble.get("min_successful", 2),
            "ensemble_temperatures": tuple(ensemble.get("temperatures", ())) or (0.1, 0.3, 0.5, 0.7, 0.9),
            "ensemble_high_ratio": ensemble.get("high_ratio", 0.8),
            "ensemble_medium_ratio": ensemble.get("medium_ratio", 0.6),
        })
        return ClassifierSettings.from_dict(flat)

    # =========================================================================
    # Preferences API
    # =========================================================================

    def get_accuracy_threshold(self) -> float:
        """Stored minimum accuracy (0-95); invalid stored values read as 0."""
        value = self.get("preferences.min_accuracy_threshold", 0)
        if isinstance(value, (int, float)) and not isinstance(value, bool) \
                and MIN_ACCURACY_THRESHOLD <= value <= MAX_ACCURACY_THRESHOLD:
            return value
        return 0

    def set_accuracy_threshold(self, threshold: float) -> None:
        """
        Persist the minimum accuracy filter.

        Raises:
            ValueError: If threshold is not a number within 0-95
        """
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) \
                or not MIN_ACCURACY_THRESHOLD <= threshold <= MAX_ACCURACY_THRESHOLD:
            raise ValueError(
                f"Invalid threshold: {threshold}. Must be between "
                f"{MIN_ACCURACY_THRESHOLD} and {MAX_ACCURACY_THRESHOLD}"
            )
        self.set("preferences.min_accuracy_threshold", threshold)

    def get_classification_mode(self) -> ClassificationMode:
        value = self.get("preferences.classification_mode", "fast")
        try:
            return ClassificationMode(value)
        except ValueError:
            return ClassificationMode.FAST

    def set_classification_mode(self, mode: str) -> None:
        self.set("preferences.classification_mode", ClassificationMode(mode).value)

    def set_deployment_target(self, target: Optional[str]) -> None:
        self.set("preferences.deployment_target", target or None)

    def filter_state(self) -> FilterState:
        """Current preferences as a validated FilterState."""
        return FilterState(
            min_accuracy_threshold=self.get_accuracy_threshold(),
            classification_mode=self.get_classification_mode(),
            deployment_target=self.get("preferences.deployment_target"),
        )

    def clear_preferences(self) -> None:
        """Reset preferences to defaults."""
        self.set("preferences", self._deep_copy(self.DEFAULT_CONFIG["preferences"]))
