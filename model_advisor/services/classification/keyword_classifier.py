"""
Keyword Classifier - Baseline Classification Stage.

Matches free text against the taxonomy keyword phrases. Deterministic,
synchronous and dependency-free, so it is always available and guarantees
the pipeline a result.

Scoring, per subcategory:
    raw_score = sum(tokens in each matched phrase) / keyword_set_size

The calibrated score combines how much of the total keyword evidence the
subcategory's category holds (its share of all raw scores) with how much
evidence there is in absolute terms (matched tokens, saturating at
``keyword_evidence_saturation``):

    score = category_share * min(1, matched_tokens / saturation)

One strong two-word phrase, or two single keywords, from a single category
therefore reaches 1.0; matches split between categories dilute each other.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from model_advisor.config.manager import ClassifierSettings
from model_advisor.schemas.classification import (
    CategoryScore,
    ClassificationMethod,
    ClassificationResult,
    KeywordMatch,
    level_for_score,
)
from model_advisor.schemas.taxonomy import TaskTaxonomy
from model_advisor.services.classification.utils import contains_phrase, tokenize


@dataclass(frozen=True)
class _SubcategoryKeywords:
    category: str
    subcategory: str
    # (keyword as written, normalized tokens)
    phrases: Tuple[Tuple[str, Tuple[str, ...]], ...]
    sort_key: Tuple[int, int]


class KeywordClassifier:
    """
    Ranks taxonomy subcategories by keyword overlap with the input.

    Usage:
        classifier = KeywordClassifier(taxonomy)
        matches = classifier.classify("detect objects in photos")
        best = matches[0]
    """

    def __init__(self, taxonomy: TaskTaxonomy, settings: Optional[ClassifierSettings] = None):
        self.taxonomy = taxonomy
        self.settings = settings or ClassifierSettings()
        self._index = self._build_index()

    def _build_index(self) -> Tuple[_SubcategoryKeywords, ...]:
        entries = []
        for category in self.taxonomy.ordered_categories():
            for sub in category.subcategories:
                seen = set()
                phrases = []
                for keyword in sorted(sub.keywords):
                    tokens = tokenize(keyword)
                    if tokens and tokens not in seen:
                        seen.add(tokens)
                        phrases.append((keyword, tokens))
                if not phrases:
                    continue
                entries.append(_SubcategoryKeywords(
                    category=category.id,
                    subcategory=sub.id,
                    phrases=tuple(phrases),
                    sort_key=(
                        self.taxonomy.priority_index(category.id),
                        self.taxonomy.subcategory_index(category.id, sub.id),
                    ),
                ))
        return tuple(entries)

    def _fallback_match(self) -> KeywordMatch:
        category, subcategory = self.taxonomy.fallback
        return KeywordMatch(category=category, subcategory=subcategory, score=0.0)

    def classify(self, text: str) -> List[KeywordMatch]:
        """
        Rank subcategories for ``text``.

        Args:
            text: Free-text task description (may be empty)

        Returns:
            Matches sorted by descending score; never empty. Unmatched or
            empty input yields the taxonomy fallback with score 0.
        """
        tokens = tokenize(text or "")
        if not tokens:
            return [self._fallback_match()]

        hits = []
        for entry in self._index:
            matched = [(kw, phrase) for kw, phrase in entry.phrases if contains_phrase(tokens, phrase)]
            if not matched:
                continue
            matched_tokens = sum(len(phrase) for _, phrase in matched)
            raw_score = matched_tokens / len(entry.phrases)
            hits.append((entry, matched, matched_tokens, raw_score))

        if not hits:
            return [self._fallback_match()]

        total_raw = sum(h[3] for h in hits)
        category_raw: Dict[str, float] = defaultdict(float)
        for entry, _, _, raw_score in hits:
            category_raw[entry.category] += raw_score

        saturation = self.settings.keyword_evidence_saturation
        scored = []
        for entry, matched, matched_tokens, raw_score in hits:
            share = category_raw[entry.category] / total_raw
            evidence = min(1.0, matched_tokens / saturation)
            match = KeywordMatch(
                category=entry.category,
                subcategory=entry.subcategory,
                score=round(share * evidence, 6),
                raw_score=round(raw_score, 6),
                matched_keywords=tuple(kw for kw, _ in matched),
            )
            scored.append((match, entry.sort_key))

        scored.sort(key=lambda item: (-item[0].score, -item[0].raw_score, item[1]))
        return [match for match, _ in scored]

    def classify_result(self, text: str) -> ClassificationResult:
        """Classify and package the best match as a ClassificationResult."""
        return self.to_result(self.classify(text))

    def to_result(self, matches: List[KeywordMatch]) -> ClassificationResult:
        best = matches[0]

        # Best match per other category, in ranked order
        alternatives = []
        seen = {best.category}
        for match in matches[1:]:
            if match.category in seen or match.score <= 0:
                continue
            seen.add(match.category)
            alternatives.append(CategoryScore(match.category, match.score, match.subcategory))
            if len(alternatives) >= self.settings.max_alternatives:
                break

        return ClassificationResult(
            category=best.category,
            subcategory=best.subcategory,
            confidence_score=best.score,
            confidence_level=level_for_score(
                best.score,
                self.settings.keyword_high_threshold,
                self.settings.keyword_medium_threshold,
            ),
            method=ClassificationMethod.KEYWORD,
            alternatives=tuple(alternatives),
            matched_keywords=best.matched_keywords,
        )
