"""
Tiered Recommendation Engine.

Turns a (category, subcategory) classification into per-tier model lists:

1. Look up the catalog slice (missing slice -> empty, well-formed result)
2. Per tier, hide models below the accuracy threshold or not deployable
   to the requested target
3. Sort kept models: size ascending, accuracy descending, environmental
   score ascending ("smaller is better", accuracy as tie-breaker)
4. Emit tiers in the fixed order lightweight -> standard -> advanced -> xlarge

The catalog is never mutated; the same inputs always give the same output.
"""

from collections import Counter
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from model_advisor.schemas.recommendation import (
    TIER_ORDER,
    FilterState,
    ModelEntry,
    RecommendationResult,
    TierRecommendation,
)
from model_advisor.services.model_catalog import ModelCatalog
from model_advisor.utils.logger import log


class HiddenReason(Enum):
    """Why a catalog model was left out of the shown list."""
    BELOW_ACCURACY_THRESHOLD = "below_accuracy_threshold"
    DEPLOYMENT_UNSUPPORTED = "deployment_unsupported"


def passes_accuracy_filter(model: ModelEntry, min_accuracy_threshold: float) -> bool:
    """Missing accuracy counts as 0, so it only passes a 0 threshold."""
    return (model.accuracy or 0.0) * 100 >= min_accuracy_threshold


def ranking_key(model: ModelEntry) -> Tuple[float, float, int, str]:
    """Size asc, accuracy desc, environmental score asc, id for stability."""
    return (model.size_mb, -(model.accuracy or 0.0), model.environmental_score, model.id)


def filter_models(
    models: Iterable[ModelEntry],
    filter_state: FilterState,
) -> Tuple[List[ModelEntry], List[Tuple[ModelEntry, HiddenReason]]]:
    """
    Split models into kept and hidden.

    Returns:
        Tuple of (kept_models, hidden_models_with_reason)
    """
    kept: List[ModelEntry] = []
    hidden: List[Tuple[ModelEntry, HiddenReason]] = []

    for model in models:
        if not passes_accuracy_filter(model, filter_state.min_accuracy_threshold):
            hidden.append((model, HiddenReason.BELOW_ACCURACY_THRESHOLD))
        elif filter_state.deployment_target and filter_state.deployment_target not in model.deployment_options:
            hidden.append((model, HiddenReason.DEPLOYMENT_UNSUPPORTED))
        else:
            kept.append(model)

    return kept, hidden


class RecommendationEngine:
    """
    Filters and ranks a catalog slice by tier.

    Usage:
        engine = RecommendationEngine(catalog)
        result = engine.recommend("computer_vision", "object_detection", FilterState())
        for tier, tier_rec in result.iter_tiers():
            ...
    """

    def __init__(self, catalog: ModelCatalog):
        self.catalog = catalog

    def recommend(
        self,
        category: str,
        subcategory: str,
        filter_state: Optional[FilterState] = None,
    ) -> RecommendationResult:
        """
        Build tiered recommendations.

        Args:
            category: Task category id
            subcategory: Task subcategory id
            filter_state: User filters (defaults to no filtering)

        Returns:
            RecommendationResult; all tiers empty when the slice is unknown
        """
        filter_state = filter_state or FilterState()
        result = RecommendationResult(category=category, subcategory=subcategory, filter_state=filter_state)

        if not self.catalog.has_slice(category, subcategory):
            log.info(f"No catalog models for {category}/{subcategory}")
            return result

        slice_ = self.catalog.get_slice(category, subcategory)
        reasons: Counter = Counter()

        for tier in TIER_ORDER:
            kept, hidden = filter_models(slice_[tier], filter_state)
            kept.sort(key=ranking_key)
            result.models_by_tier[tier] = TierRecommendation(models=kept, hidden_count=len(hidden))
            reasons.update(reason.value for _, reason in hidden)

        result.total_shown = sum(t.shown_count for t in result.models_by_tier.values())
        result.total_hidden = sum(t.hidden_count for t in result.models_by_tier.values())
        result.hidden_reasons = dict(reasons)

        log.debug(
            f"Recommendations for {category}/{subcategory}: "
            f"{result.total_shown} shown, {result.total_hidden} hidden {dict(reasons)}"
        )
        return result
