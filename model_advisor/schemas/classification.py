from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple


# --- Enumerations ---

class ConfidenceLevel(str, Enum):
    """Coarse banding of a continuous confidence score."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ClassificationMethod(str, Enum):
    """Strategy that produced a classification result."""
    KEYWORD = "keyword"
    EMBEDDING = "embedding"
    ENSEMBLE = "ensemble"


class ClassificationMode(str, Enum):
    """Caller-selected escalation budget."""
    FAST = "fast"
    ENSEMBLE = "ensemble"


class PipelineStage(str, Enum):
    """States of the classification pipeline."""
    KEYWORD_ONLY = "keyword_only"
    EMBEDDING_ESCALATION = "embedding_escalation"
    ENSEMBLE_ESCALATION = "ensemble_escalation"
    NEEDS_CLARIFICATION = "needs_clarification"
    RESOLVED = "resolved"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStage.NEEDS_CLARIFICATION, PipelineStage.RESOLVED)


def level_for_score(score: float, high: float, medium: float) -> ConfidenceLevel:
    """Band a score with the given (inclusive) thresholds."""
    if score >= high:
        return ConfidenceLevel.HIGH
    if score >= medium:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


# --- Result Schemas ---

@dataclass(frozen=True)
class CategoryScore:
    """A category with its score, used for alternatives and rankings."""
    category: str
    score: float
    subcategory: Optional[str] = None


@dataclass(frozen=True)
class ClassificationResult:
    """
    Outcome of a classification request.

    A result with ``needs_clarification`` set is an explicit ambiguity: the
    category/subcategory are provisional (highest-voted) and ``alternatives``
    lists the options to put to the user. A plain low-confidence result is
    resolved, just weakly.
    """
    category: str
    subcategory: str
    confidence_score: float
    confidence_level: ConfidenceLevel
    method: ClassificationMethod
    alternatives: Tuple[CategoryScore, ...] = ()
    votes: Optional[Dict[str, int]] = None
    needs_clarification: bool = False
    stage_trace: Tuple[PipelineStage, ...] = ()
    suggestions: Tuple[str, ...] = ()
    matched_keywords: Tuple[str, ...] = ()

    def with_updates(self, **changes) -> "ClassificationResult":
        return replace(self, **changes)

    @property
    def alternative_categories(self) -> List[str]:
        return [alt.category for alt in self.alternatives]

    def to_dict(self) -> Dict:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "confidence_score": round(self.confidence_score, 4),
            "confidence_level": self.confidence_level.value,
            "method": self.method.value,
            "alternatives": [
                {"category": a.category, "subcategory": a.subcategory, "score": round(a.score, 4)}
                for a in self.alternatives
            ],
            "votes": dict(self.votes) if self.votes is not None else None,
            "needs_clarification": self.needs_clarification,
            "stage_trace": [s.value for s in self.stage_trace],
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class KeywordMatch:
    """One ranked keyword-classifier candidate."""
    category: str
    subcategory: str
    score: float
    raw_score: float = 0.0
    matched_keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SimilarExample:
    """Reference example close to the input in embedding space."""
    text: str
    category: str
    subcategory: str
    similarity: float


@dataclass(frozen=True)
class EmbeddingClassification:
    """Output of the embedding classifier."""
    category: str
    subcategory: str
    confidence: float
    confidence_level: ConfidenceLevel
    top_categories: Tuple[CategoryScore, ...] = ()
    similar_examples: Tuple[SimilarExample, ...] = ()
    votes: Dict[str, int] = field(default_factory=dict)
    near_tie: bool = False
