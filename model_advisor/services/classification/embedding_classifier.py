"""
Embedding Classifier - Semantic Escalation Stage.

k-nearest-neighbour classification over the taxonomy example phrases.
Reference embeddings are computed once by ``initialize`` and then treated
as immutable shared state for the life of the session.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from model_advisor.config.manager import VOTING_METHODS, ClassifierSettings
from model_advisor.schemas.classification import (
    CategoryScore,
    ClassificationMethod,
    ClassificationResult,
    ConfidenceLevel,
    EmbeddingClassification,
    SimilarExample,
    level_for_score,
)
from model_advisor.schemas.taxonomy import ReferenceExample, TaskTaxonomy
from model_advisor.services.classification.backends import EmbeddingBackend, EmbeddingUnavailable
from model_advisor.services.classification.utils import cosine_similarity, normalize_text
from model_advisor.utils.logger import log


@dataclass(frozen=True)
class ReferenceEmbedding:
    """A taxonomy example with its precomputed vector."""
    example: ReferenceExample
    vector: Tuple[float, ...]


class EmbeddingClassifier:
    """
    Classifies text by similarity to taxonomy examples.

    Voting over the top-k most similar examples:
    - simple: confidence = winning category's share of the k votes
    - weighted: confidence = winning category's summed similarity divided by
      the summed similarity of all k matches
    """

    SIMILAR_EXAMPLES_SHOWN = 3

    def __init__(
        self,
        backend: Optional[EmbeddingBackend],
        taxonomy: TaskTaxonomy,
        settings: Optional[ClassifierSettings] = None,
    ):
        self.backend = backend
        self.taxonomy = taxonomy
        self.settings = settings or ClassifierSettings()
        self._references: Optional[Tuple[ReferenceEmbedding, ...]] = None
        self._init_lock: Optional[asyncio.Lock] = None

    @property
    def is_available(self) -> bool:
        """True when a backend is configured (it may still fail on use)."""
        return self.backend is not None

    @property
    def is_ready(self) -> bool:
        return self._references is not None

    @property
    def reference_count(self) -> int:
        return len(self._references) if self._references else 0

    async def _embed(self, text: str) -> Tuple[float, ...]:
        if self.backend is None:
            raise EmbeddingUnavailable("No embedding backend configured")
        try:
            vector = await self.backend.embed(text)
        except EmbeddingUnavailable:
            raise
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding backend failed: {e}") from e
        if not vector:
            raise EmbeddingUnavailable("Embedding backend returned an empty vector")
        return tuple(float(v) for v in vector)

    async def initialize(self, reference_examples: Optional[Sequence[ReferenceExample]] = None) -> int:
        """
        Precompute embeddings for every reference example.

        Safe to call more than once; only the first call does work.

        Args:
            reference_examples: Examples to index. Defaults to all taxonomy examples.

        Returns:
            Number of indexed examples

        Raises:
            EmbeddingUnavailable: If the backend is missing or fails
        """
        # Bound to the running loop on first use
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._references is not None:
                return len(self._references)

            examples = list(reference_examples) if reference_examples is not None \
                else self.taxonomy.reference_examples()
            if not examples:
                raise EmbeddingUnavailable("No reference examples to index")

            vectors = await asyncio.gather(*(self._embed(e.text) for e in examples))
            self._references = tuple(
                ReferenceEmbedding(example=e, vector=v) for e, v in zip(examples, vectors)
            )
            log.info(f"Indexed {len(self._references)} reference examples for embedding classification")
            return len(self._references)

    async def classify(
        self,
        text: str,
        k: Optional[int] = None,
        voting_method: Optional[str] = None,
    ) -> EmbeddingClassification:
        """
        Classify ``text`` by k-nearest-neighbour voting.

        Args:
            text: Task description
            k: Neighbours to vote (defaults to settings.embedding_top_k)
            voting_method: "simple" or "weighted" (defaults to settings)

        Returns:
            EmbeddingClassification

        Raises:
            EmbeddingUnavailable: If not initialized or the backend fails
        """
        if self._references is None:
            raise EmbeddingUnavailable("Embedding classifier is not initialized")

        k = k or self.settings.embedding_top_k
        voting_method = voting_method or self.settings.embedding_voting_method
        if voting_method not in VOTING_METHODS:
            raise ValueError(f"Invalid voting method: {voting_method}. Must be one of {VOTING_METHODS}")

        if not normalize_text(text):
            category, subcategory = self.taxonomy.fallback
            return EmbeddingClassification(
                category=category,
                subcategory=subcategory,
                confidence=0.0,
                confidence_level=ConfidenceLevel.LOW,
            )

        query = await self._embed(text)

        similarities = [
            (cosine_similarity(query, ref.vector), i, ref)
            for i, ref in enumerate(self._references)
        ]
        similarities.sort(key=lambda item: (-item[0], item[1]))
        top = similarities[:k]

        votes: Dict[str, int] = defaultdict(int)
        weights: Dict[str, float] = defaultdict(float)
        for similarity, _, ref in top:
            votes[ref.example.category] += 1
            weights[ref.example.category] += max(similarity, 0.0)

        total_weight = sum(weights.values())
        if voting_method == "weighted" and total_weight > 0:
            scores = {c: w / total_weight for c, w in weights.items()}
        else:
            scores = {c: n / len(top) for c, n in votes.items()}

        ranked = sorted(scores.items(), key=lambda item: (-item[1], self.taxonomy.priority_index(item[0])))
        winner, confidence = ranked[0]
        near_tie = len(ranked) > 1 and (ranked[0][1] - ranked[1][1]) < self.settings.near_tie_margin

        return EmbeddingClassification(
            category=winner,
            subcategory=self._pick_subcategory(winner, top),
            confidence=confidence,
            confidence_level=level_for_score(
                confidence,
                self.settings.embedding_high_threshold,
                self.settings.embedding_medium_threshold,
            ),
            top_categories=tuple(CategoryScore(c, s) for c, s in ranked),
            similar_examples=tuple(
                SimilarExample(
                    text=ref.example.text,
                    category=ref.example.category,
                    subcategory=ref.example.subcategory,
                    similarity=similarity,
                )
                for similarity, _, ref in top[:self.SIMILAR_EXAMPLES_SHOWN]
            ),
            votes=dict(votes),
            near_tie=near_tie,
        )

    def _pick_subcategory(self, category: str, top: List[Tuple[float, int, ReferenceEmbedding]]) -> str:
        """Similarity-weighted vote among the winning category's neighbours."""
        sub_scores: Dict[str, float] = defaultdict(float)
        for similarity, _, ref in top:
            if ref.example.category == category:
                sub_scores[ref.example.subcategory] += max(similarity, 0.0) + 1e-9

        if not sub_scores:
            return self.taxonomy.default_subcategory(category) or ""

        return min(
            sub_scores,
            key=lambda sub: (-sub_scores[sub], self.taxonomy.subcategory_index(category, sub)),
        )

    def to_result(self, classification: EmbeddingClassification) -> ClassificationResult:
        alternatives = tuple(
            score for score in classification.top_categories[1:self.settings.max_alternatives + 1]
        )
        return ClassificationResult(
            category=classification.category,
            subcategory=classification.subcategory,
            confidence_score=classification.confidence,
            confidence_level=classification.confidence_level,
            method=ClassificationMethod.EMBEDDING,
            alternatives=alternatives,
            votes=dict(classification.votes) or None,
        )
