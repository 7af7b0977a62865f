import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from model_advisor.schemas.classification import ClassificationMode


# --- Tier System ---

class Tier(str, Enum):
    """Size-based model bucket. Declaration order is the display order."""
    LIGHTWEIGHT = "lightweight"
    STANDARD = "standard"
    ADVANCED = "advanced"
    XLARGE = "xlarge"


TIER_ORDER: Tuple[Tier, ...] = (Tier.LIGHTWEIGHT, Tier.STANDARD, Tier.ADVANCED, Tier.XLARGE)

# Upper size bound (inclusive, MB) per tier; anything above the last is xlarge
TIER_SIZE_LIMITS_MB: Tuple[Tuple[Tier, float], ...] = (
    (Tier.LIGHTWEIGHT, 500),
    (Tier.STANDARD, 4000),
    (Tier.ADVANCED, 20000),
)

ENVIRONMENTAL_SCORE_BY_TIER: Dict[Tier, int] = {
    Tier.LIGHTWEIGHT: 1,
    Tier.STANDARD: 2,
    Tier.ADVANCED: 3,
    Tier.XLARGE: 3,
}

MIN_ACCURACY_THRESHOLD = 0
MAX_ACCURACY_THRESHOLD = 95


def tier_for_size(size_mb: float) -> Tier:
    """Map a model size to its tier."""
    for tier, limit in TIER_SIZE_LIMITS_MB:
        if size_mb <= limit:
            return tier
    return Tier.XLARGE


def environmental_score_for_tier(tier: Tier) -> int:
    return ENVIRONMENTAL_SCORE_BY_TIER[Tier(tier)]


# --- Catalog Schemas ---

@dataclass(frozen=True)
class ModelEntry:
    """
    A catalog model.

    ``tier`` and ``environmental_score`` are derived from ``size_mb``; use
    ``ModelEntry.create`` to fill them in. Direct construction with values
    that disagree with the size raises ValueError.
    """
    id: str
    name: str
    size_mb: float
    tier: Tier
    environmental_score: int
    category: str
    subcategory: str
    external_ref: str = ""
    accuracy: Optional[float] = None
    deployment_options: FrozenSet[str] = frozenset()
    description: str = ""
    downloads: int = 0
    license: Optional[str] = None

    def __post_init__(self):
        if not self.size_mb or not math.isfinite(self.size_mb) or self.size_mb <= 0:
            raise ValueError(f"Model {self.id}: size_mb must be a positive finite number, got {self.size_mb}")
        object.__setattr__(self, "tier", Tier(self.tier))
        object.__setattr__(self, "deployment_options", frozenset(self.deployment_options))
        expected_tier = tier_for_size(self.size_mb)
        if self.tier != expected_tier:
            raise ValueError(
                f"Model {self.id}: tier {self.tier} does not match size "
                f"{self.size_mb}MB (expected {expected_tier.value})"
            )
        expected_score = ENVIRONMENTAL_SCORE_BY_TIER[expected_tier]
        if self.environmental_score != expected_score:
            raise ValueError(
                f"Model {self.id}: environmental_score {self.environmental_score} "
                f"does not match tier {expected_tier.value} (expected {expected_score})"
            )
        if self.accuracy is not None and not 0.0 <= self.accuracy <= 1.0:
            raise ValueError(f"Model {self.id}: accuracy must be within [0, 1], got {self.accuracy}")

    @classmethod
    def create(cls, id: str, name: str, size_mb: float, category: str, subcategory: str, **kwargs) -> "ModelEntry":
        """Build an entry with tier and environmental score derived from size."""
        tier = tier_for_size(size_mb) if size_mb and size_mb > 0 else Tier.LIGHTWEIGHT
        return cls(
            id=id,
            name=name,
            size_mb=size_mb,
            tier=tier,
            environmental_score=ENVIRONMENTAL_SCORE_BY_TIER[tier],
            category=category,
            subcategory=subcategory,
            **kwargs,
        )

    @property
    def accuracy_percent(self) -> float:
        """Accuracy on the 0-100 scale, missing accuracy counted as 0."""
        return (self.accuracy or 0.0) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "external_ref": self.external_ref,
            "size_mb": self.size_mb,
            "accuracy": self.accuracy,
            "environmental_score": self.environmental_score,
            "tier": self.tier.value,
            "deployment_options": sorted(self.deployment_options),
            "category": self.category,
            "subcategory": self.subcategory,
        }


# --- Filter State ---

@dataclass(frozen=True)
class FilterState:
    """User-adjustable constraints, owned by the caller."""
    min_accuracy_threshold: float = 0
    classification_mode: ClassificationMode = ClassificationMode.FAST
    deployment_target: Optional[str] = None  # e.g. "browser", "edge"; None = any

    def __post_init__(self):
        if not MIN_ACCURACY_THRESHOLD <= self.min_accuracy_threshold <= MAX_ACCURACY_THRESHOLD:
            raise ValueError(
                f"min_accuracy_threshold must be within "
                f"[{MIN_ACCURACY_THRESHOLD}, {MAX_ACCURACY_THRESHOLD}], got {self.min_accuracy_threshold}"
            )
        object.__setattr__(self, "classification_mode", ClassificationMode(self.classification_mode))

    @property
    def is_noop(self) -> bool:
        return self.min_accuracy_threshold == 0 and not self.deployment_target


# --- Result Schemas ---

@dataclass
class TierRecommendation:
    """Kept models for one tier plus how many the filters hid."""
    models: List[ModelEntry] = field(default_factory=list)
    hidden_count: int = 0

    @property
    def shown_count(self) -> int:
        return len(self.models)


@dataclass
class RecommendationResult:
    """Tiered recommendations for one (category, subcategory) slice."""
    category: str
    subcategory: str
    filter_state: FilterState
    models_by_tier: Dict[Tier, TierRecommendation] = field(
        default_factory=lambda: {tier: TierRecommendation() for tier in TIER_ORDER}
    )
    total_shown: int = 0
    total_hidden: int = 0
    # HiddenReason value -> count, across all tiers
    hidden_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.total_shown == 0 and self.total_hidden == 0

    def iter_tiers(self):
        """Yield (tier, TierRecommendation) in canonical tier order."""
        for tier in TIER_ORDER:
            yield tier, self.models_by_tier[tier]

    def all_models(self) -> List[ModelEntry]:
        models = []
        for _, tier_rec in self.iter_tiers():
            models.extend(tier_rec.models)
        return models

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "models_by_tier": {
                tier.value: {
                    "models": [m.to_dict() for m in tier_rec.models],
                    "hidden_count": tier_rec.hidden_count,
                }
                for tier, tier_rec in self.iter_tiers()
            },
            "total_shown": self.total_shown,
            "total_hidden": self.total_hidden,
            "hidden_reasons": dict(self.hidden_reasons),
        }
