"""
Tiered Recommendation Engine.

Usage:
    from model_advisor.services.recommendation import RecommendationEngine

    engine = RecommendationEngine(catalog)
    result = engine.recommend("computer_vision", "object_detection", FilterState())
"""

from model_advisor.services.recommendation.engine import (
    HiddenReason,
    RecommendationEngine,
    filter_models,
    passes_accuracy_filter,
    ranking_key,
)

__all__ = [
    "HiddenReason",
    "RecommendationEngine",
    "filter_models",
    "passes_accuracy_filter",
    "ranking_key",
]
