"""
Classification evaluation against a labelled corpus.

Used to check the confidence bands and vote thresholds in the config
instead of trusting their defaults.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml

from model_advisor.schemas.classification import ClassificationMode, ClassificationResult, ConfidenceLevel
from model_advisor.utils.logger import log

DEFAULT_CASES_PATH = Path(__file__).parent.parent.parent.parent / "data" / "evaluation_cases.yaml"


@dataclass(frozen=True)
class EvaluationCase:
    """A labelled task description."""
    text: str
    category: str
    subcategory: Optional[str] = None
    # Edge cases are expected to be ambiguous or low confidence
    edge_case: bool = False


@dataclass
class ClassificationMetrics:
    """Aggregate confidence and method statistics for a batch of results."""
    total: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    needs_clarification: int = 0
    average_confidence: float = 0.0
    method_distribution: Dict[str, int] = field(default_factory=dict)
    category_distribution: Dict[str, int] = field(default_factory=dict)

    def percent(self, count: int) -> float:
        return (count / self.total * 100) if self.total else 0.0


@dataclass
class EvaluationReport:
    metrics: ClassificationMetrics
    category_accuracy: float = 0.0
    subcategory_accuracy: float = 0.0
    # Accuracy restricted to results the pipeline reported as high confidence
    high_confidence_precision: float = 0.0
    average_latency_ms: float = 0.0
    misclassified: List[Dict[str, str]] = field(default_factory=list)


def calculate_classification_metrics(results: Sequence[ClassificationResult]) -> ClassificationMetrics:
    """Summarize confidence levels, methods and categories."""
    metrics = ClassificationMetrics(total=len(results))
    if not results:
        return metrics

    levels = Counter(r.confidence_level for r in results)
    metrics.high_confidence = levels[ConfidenceLevel.HIGH]
    metrics.medium_confidence = levels[ConfidenceLevel.MEDIUM]
    metrics.low_confidence = levels[ConfidenceLevel.LOW]
    metrics.needs_clarification = sum(1 for r in results if r.needs_clarification)
    metrics.average_confidence = sum(r.confidence_score for r in results) / len(results)
    metrics.method_distribution = dict(Counter(r.method.value for r in results))
    metrics.category_distribution = dict(Counter(r.category for r in results))
    return metrics


def load_cases(path: Optional[Path] = None) -> List[EvaluationCase]:
    """
    Read labelled cases from YAML (``cases`` and ``edge_cases`` lists).

    Returns an empty list when the file is missing or invalid.
    """
    path = Path(path) if path else DEFAULT_CASES_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        log.error(f"Evaluation cases not found: {path}")
        return []
    except yaml.YAMLError as e:
        log.error(f"Failed to parse evaluation cases: {e}")
        return []

    cases = []
    for key, edge in (("cases", False), ("edge_cases", True)):
        for item in raw.get(key, []) or []:
            if not isinstance(item, dict) or "text" not in item or "category" not in item:
                log.warning(f"Skipping malformed evaluation case: {item!r}")
                continue
            cases.append(EvaluationCase(
                text=item["text"],
                category=item["category"],
                subcategory=item.get("subcategory"),
                edge_case=edge,
            ))
    return cases


async def evaluate(pipeline, cases: Sequence[EvaluationCase], mode: ClassificationMode = ClassificationMode.FAST) -> EvaluationReport:
    """
    Run the pipeline over ``cases`` and score it.

    Args:
        pipeline: ClassificationPipeline
        cases: Labelled cases
        mode: Classification mode to evaluate

    Returns:
        EvaluationReport
    """
    results: List[ClassificationResult] = []
    latencies = []
    category_hits = 0
    subcategory_hits = 0
    subcategory_total = 0
    high_hits = 0
    misclassified = []

    for case in cases:
        started = time.perf_counter()
        result = await pipeline.run(case.text, mode)
        latencies.append((time.perf_counter() - started) * 1000)
        results.append(result)

        if result.category == case.category:
            category_hits += 1
            if result.confidence_level == ConfidenceLevel.HIGH:
                high_hits += 1
        else:
            misclassified.append({
                "text": case.text,
                "expected": case.category,
                "actual": result.category,
                "confidence": f"{result.confidence_score:.2f}",
            })

        if case.subcategory:
            subcategory_total += 1
            if result.category == case.category and result.subcategory == case.subcategory:
                subcategory_hits += 1

    metrics = calculate_classification_metrics(results)
    total = len(cases)
    return EvaluationReport(
        metrics=metrics,
        category_accuracy=category_hits / total if total else 0.0,
        subcategory_accuracy=subcategory_hits / subcategory_total if subcategory_total else 0.0,
        high_confidence_precision=high_hits / metrics.high_confidence if metrics.high_confidence else 0.0,
        average_latency_ms=sum(latencies) / total if total else 0.0,
        misclassified=misclassified,
    )
