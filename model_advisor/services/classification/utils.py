"""
Shared helpers for the classifiers: text normalization, similarity and
user-facing improvement suggestions.
"""

import math
import re
from typing import List, Sequence, Tuple

from model_advisor.schemas.classification import ClassificationResult
from model_advisor.schemas.taxonomy import TaskTaxonomy

_NON_WORD = re.compile(r"[^\w]+")


def normalize_text(text: str) -> str:
    """Lowercase, replace non-word characters with spaces, collapse whitespace."""
    if not text:
        return ""
    return " ".join(_NON_WORD.sub(" ", text.lower()).replace("_", " ").split())


def _stem(token: str) -> str:
    # Plural folding only: "images" -> "image", keeps "process", "class"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> Tuple[str, ...]:
    """Normalized, plural-folded tokens."""
    return tuple(_stem(t) for t in normalize_text(text).split())


def contains_phrase(tokens: Sequence[str], phrase: Sequence[str]) -> bool:
    """True if ``phrase`` occurs as a contiguous run inside ``tokens``."""
    n = len(phrase)
    if n == 0 or n > len(tokens):
        return False
    phrase = tuple(phrase)
    return any(tuple(tokens[i:i + n]) == phrase for i in range(len(tokens) - n + 1))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 for empty, zero-length or mismatched vectors.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def suggest_improvements(result: ClassificationResult, taxonomy: TaskTaxonomy) -> List[str]:
    """
    Hints for rewording a weakly classified task description.

    Args:
        result: Classification to advise on
        taxonomy: Used to quote example keywords of the likely category

    Returns:
        Suggestions, most important first (empty for confident results)
    """
    suggestions = []
    confidence = result.confidence_score

    if confidence < 0.3:
        suggestions.append(
            "Task description is too vague. Try adding more specific details about what you want to accomplish."
        )
    if confidence < 0.5:
        suggestions.append("Consider mentioning the type of data you're working with (text, images, audio, etc.).")
    if confidence == 0 and not result.matched_keywords:
        suggestions.append(
            'No clear task indicators found. Try using keywords like "classify", "detect", "generate", or "predict".'
        )

    if 0 < confidence < 0.6:
        category = taxonomy.get_category(result.category)
        if category is not None:
            terms = []
            for sub in category.subcategories:
                terms.append(", ".join(sorted(sub.keywords)[:2]))
            terms = [t for t in terms if t]
            if terms:
                suggestions.append(
                    f"This seems related to {category.label}. Try using terms like: {' or '.join(terms)}."
                )

    return suggestions
