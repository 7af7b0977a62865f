"""
Model Catalog Service.

Loads and queries data/model_catalog.yaml, the tiered catalog of models
grouped by category -> subcategory. Tier and environmental score are
always derived from a model's size; declared values that disagree are
logged and overridden.

Accepted slice layouts:

    computer_vision:
      object_detection:          # flat list
        - {id: ..., size_mb: ...}
      image_classification:      # grouped by declared tier
        lightweight:
          - {id: ..., size_mb: ...}
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml

from model_advisor.schemas.recommendation import (
    ENVIRONMENTAL_SCORE_BY_TIER,
    TIER_ORDER,
    ModelEntry,
    Tier,
    tier_for_size,
)
from model_advisor.schemas.taxonomy import TaskTaxonomy
from model_advisor.utils.logger import log


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class CatalogStats:
    """Summary numbers for the loaded catalog."""
    total_models: int = 0
    by_tier: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)
    by_deployment: Dict[str, int] = field(default_factory=dict)
    average_size_mb: float = 0.0
    with_accuracy: int = 0

    @property
    def accuracy_coverage(self) -> float:
        """Share of models that report an accuracy (0.0-1.0)."""
        if not self.total_models:
            return 0.0
        return self.with_accuracy / self.total_models


SliceKey = Tuple[str, str]
TierSlice = Dict[Tier, Tuple[ModelEntry, ...]]


# =============================================================================
# Model Catalog Class
# =============================================================================

class ModelCatalog:
    """
    Read-only tiered model catalog.

    Usage:
        catalog = ModelCatalog()
        catalog.load()

        slice_ = catalog.get_slice("computer_vision", "object_detection")
        for tier in TIER_ORDER:
            for model in slice_[tier]:
                ...
    """

    DEFAULT_PATH = Path(__file__).parent.parent.parent / "data" / "model_catalog.yaml"

    REQUIRED_FIELDS = ("id", "name", "size_mb")

    def __init__(self, yaml_path: Optional[Path] = None):
        """
        Initialize the catalog.

        Args:
            yaml_path: Optional path to the YAML file. Defaults to data/model_catalog.yaml
        """
        self.yaml_path = Path(yaml_path) if yaml_path else self.DEFAULT_PATH
        self._models: Dict[str, ModelEntry] = {}
        self._slices: Dict[SliceKey, TierSlice] = {}
        self._issues: List[str] = []
        self._loaded = False

    @classmethod
    def from_entries(cls, entries: Iterable[ModelEntry]) -> "ModelCatalog":
        """Build an in-memory catalog from already-constructed entries."""
        catalog = cls()
        catalog._index(list(entries))
        catalog._loaded = True
        return catalog

    def load(self) -> bool:
        """
        Load the catalog from YAML.

        Returns:
            True if loaded successfully, False otherwise.
        """
        try:
            with open(self.yaml_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}

            self._issues = []
            self._index(self._parse_models(raw.get("models", {}) or {}))
            self._loaded = True
            log.info(f"Loaded {len(self._models)} models from {self.yaml_path}")
            return True

        except FileNotFoundError:
            log.error(f"Model catalog not found: {self.yaml_path}")
            return False
        except yaml.YAMLError as e:
            log.error(f"Failed to parse model catalog: {e}")
            return False
        except (AttributeError, TypeError, ValueError) as e:
            log.error(f"Invalid model catalog structure: {e}")
            return False

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse_models(self, data: Dict[str, Any]) -> List[ModelEntry]:
        """Parse the category -> subcategory mapping into entries."""
        entries = []

        for category, subcategories in data.items():
            if not isinstance(subcategories, dict):
                self._issues.append(f"Category {category}: expected a mapping of subcategories")
                continue

            for subcategory, slice_data in subcategories.items():
                for declared_tier, model_data in self._iter_slice(slice_data):
                    if not isinstance(model_data, dict):
                        continue
                    entry = self._parse_model_entry(category, subcategory, model_data, declared_tier)
                    if entry is not None:
                        entries.append(entry)

        return entries

    def _iter_slice(self, slice_data: Any) -> Iterator[Tuple[Optional[str], Any]]:
        if isinstance(slice_data, list):
            for model_data in slice_data:
                yield None, model_data
        elif isinstance(slice_data, dict):
            for tier_name, tier_models in slice_data.items():
                for model_data in tier_models or []:
                    yield tier_name, model_data

    def _parse_model_entry(
        self,
        category: str,
        subcategory: str,
        data: Dict[str, Any],
        declared_tier: Optional[str] = None,
    ) -> Optional[ModelEntry]:
        """Parse a single model, deriving tier and environmental score from size."""
        missing = [f for f in self.REQUIRED_FIELDS if data.get(f) in (None, "")]
        if missing:
            issue = f"Model {data.get('id', '?')} in {category}/{subcategory}: missing {', '.join(missing)}"
            self._issues.append(issue)
            log.warning(issue)
            return None

        model_id = str(data["id"])
        try:
            size_mb = float(data["size_mb"])
        except (TypeError, ValueError):
            issue = f"Model {model_id}: size_mb is not a number ({data['size_mb']!r})"
            self._issues.append(issue)
            log.warning(issue)
            return None

        if not math.isfinite(size_mb) or size_mb <= 0:
            issue = f"Model {model_id}: size_mb must be a positive finite number"
            self._issues.append(issue)
            log.warning(issue)
            return None

        tier = tier_for_size(size_mb)
        declared = data.get("tier", declared_tier)
        if declared and declared != tier.value:
            issue = f"Model {model_id}: declared tier {declared} overridden by size-derived {tier.value}"
            self._issues.append(issue)
            log.warning(issue)

        declared_score = data.get("environmental_score")
        if declared_score is not None and declared_score != ENVIRONMENTAL_SCORE_BY_TIER[tier]:
            issue = (
                f"Model {model_id}: declared environmental_score {declared_score} "
                f"overridden by {ENVIRONMENTAL_SCORE_BY_TIER[tier]}"
            )
            self._issues.append(issue)
            log.warning(issue)

        accuracy = data.get("accuracy")
        if accuracy is not None:
            accuracy = float(accuracy)
            if not 0.0 <= accuracy <= 1.0:
                issue = f"Model {model_id}: accuracy {accuracy} outside [0, 1], treated as missing"
                self._issues.append(issue)
                log.warning(issue)
                accuracy = None

        return ModelEntry.create(
            id=model_id,
            name=str(data["name"]),
            size_mb=size_mb,
            category=category,
            subcategory=subcategory,
            external_ref=data.get("external_ref", model_id),
            accuracy=accuracy,
            deployment_options=frozenset(data.get("deployment_options", []) or []),
            description=data.get("description", ""),
            downloads=int(data.get("downloads", 0) or 0),
            license=data.get("license"),
        )

    def _index(self, entries: List[ModelEntry]) -> None:
        """Rebuild the id and slice indexes."""
        models: Dict[str, ModelEntry] = {}
        buckets: Dict[SliceKey, Dict[Tier, List[ModelEntry]]] = {}

        for entry in entries:
            if entry.id in models:
                issue = f"Duplicate model id {entry.id}; keeping the first occurrence"
                self._issues.append(issue)
                log.warning(issue)
                continue
            models[entry.id] = entry
            tiers = buckets.setdefault((entry.category, entry.subcategory), {t: [] for t in TIER_ORDER})
            tiers[entry.tier].append(entry)

        self._models = models
        self._slices = {
            key: {tier: tuple(tiers[tier]) for tier in TIER_ORDER}
            for key, tiers in buckets.items()
        }

    # =========================================================================
    # Query Methods
    # =========================================================================

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def load_issues(self) -> List[str]:
        """Problems found while loading (skipped or corrected entries)."""
        return list(self._issues)

    def get_model(self, model_id: str) -> Optional[ModelEntry]:
        return self._models.get(model_id)

    def get_all_models(self) -> List[ModelEntry]:
        return list(self._models.values())

    def has_slice(self, category: str, subcategory: str) -> bool:
        return (category, subcategory) in self._slices

    def get_slice(self, category: str, subcategory: str) -> TierSlice:
        """
        Models for one (category, subcategory), grouped by tier.

        Returns empty tuples for every tier when the slice is absent.
        """
        found = self._slices.get((category, subcategory))
        if found is None:
            return {tier: () for tier in TIER_ORDER}
        return dict(found)

    def get_models_by_category(self, category: str) -> List[ModelEntry]:
        return [m for m in self._models.values() if m.category == category]

    def get_models_by_tier(self, tier: Tier) -> List[ModelEntry]:
        tier = Tier(tier)
        return [m for m in self._models.values() if m.tier == tier]

    def get_models_by_deployment(self, deployment: str) -> List[ModelEntry]:
        return [m for m in self._models.values() if deployment in m.deployment_options]

    def search_models(self, query: str, limit: int = 20) -> List[ModelEntry]:
        """
        Case-insensitive search over id, name, description and labels.

        Results are ordered smallest first.
        """
        needle = query.strip().lower()
        if not needle:
            return []

        hits = [
            m for m in self._models.values()
            if needle in m.id.lower()
            or needle in m.name.lower()
            or needle in m.description.lower()
            or needle in m.external_ref.lower()
            or needle in m.subcategory
        ]
        hits.sort(key=lambda m: (m.size_mb, m.id))
        return hits[:limit]

    def get_stats(self) -> CatalogStats:
        models = list(self._models.values())
        deployments: Counter = Counter()
        for m in models:
            deployments.update(m.deployment_options)

        return CatalogStats(
            total_models=len(models),
            by_tier={t.value: sum(1 for m in models if m.tier == t) for t in TIER_ORDER},
            by_category=dict(Counter(m.category for m in models)),
            by_deployment=dict(deployments),
            average_size_mb=(sum(m.size_mb for m in models) / len(models)) if models else 0.0,
            with_accuracy=sum(1 for m in models if m.accuracy is not None),
        )

    def validate(self, taxonomy: Optional[TaskTaxonomy] = None) -> List[str]:
        """
        Check the catalog for problems.

        Args:
            taxonomy: When given, slices must name known categories/subcategories

        Returns:
            Human-readable issues (empty when the catalog is clean)
        """
        issues = list(self._issues)

        if taxonomy is not None:
            for category, subcategory in sorted(self._slices):
                if taxonomy.get_subcategory(category, subcategory) is None:
                    issues.append(f"Slice {category}/{subcategory} is not in the task taxonomy")

        for model in self._models.values():
            if not model.deployment_options:
                issues.append(f"Model {model.id}: no deployment options")

        return issues

    def iter_models(self) -> Iterator[ModelEntry]:
        yield from self._models.values()

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models
