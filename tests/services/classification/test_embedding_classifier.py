"""
Unit tests for the embedding classifier.

Reference vectors are looked up from a fixed table, so every similarity in
these tests is exact.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from model_advisor.schemas.classification import ClassificationMethod, ConfidenceLevel
from model_advisor.schemas.taxonomy import ReferenceExample
from model_advisor.services.classification.backends import CallableEmbeddingBackend, EmbeddingUnavailable
from model_advisor.services.classification.embedding_classifier import EmbeddingClassifier


# =============================================================================
# Test Data
# =============================================================================

VECTORS = {
    "det-1": [1.0, 0.0],
    "det-2": [1.0, 0.0],
    "cls-1": [1.0, 0.0],
    "sent-1": [0.0, 1.0],
    "sum-1": [0.0, 1.0],
    "vision query": [1.0, 0.0],
    "mixed query": [1.0, 1.0],
    "opposite query": [-1.0, 0.0],
}

REFERENCES = [
    ReferenceExample("vision", "detection", "det-1"),
    ReferenceExample("vision", "detection", "det-2"),
    ReferenceExample("vision", "classification", "cls-1"),
    ReferenceExample("text", "sentiment", "sent-1"),
    ReferenceExample("text", "summarization", "sum-1"),
]


def make_classifier(taxonomy, settings, fn=None):
    backend = CallableEmbeddingBackend(fn or (lambda text: VECTORS[text]))
    return EmbeddingClassifier(backend, taxonomy, settings)


# =============================================================================
# Test: Initialization
# =============================================================================

class TestEmbeddingInitialization:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_initialize_indexes_references(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)

        assert await classifier.initialize(REFERENCES) == 5
        assert classifier.is_ready is True
        assert classifier.reference_count == 5

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, taxonomy, settings):
        backend = AsyncMock()
        backend.embed.return_value = [1.0, 0.0]
        classifier = EmbeddingClassifier(backend, taxonomy, settings)

        await classifier.initialize(REFERENCES)
        await classifier.initialize(REFERENCES)

        assert backend.embed.await_count == len(REFERENCES)

    def test_built_outside_event_loop(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        assert classifier._init_lock is None

        assert asyncio.run(classifier.initialize(REFERENCES)) == 5
        assert classifier.is_ready is True

    @pytest.mark.asyncio
    async def test_initialize_defaults_to_taxonomy_examples(self, taxonomy, settings, topic_embedder):
        classifier = EmbeddingClassifier(topic_embedder, taxonomy, settings)

        assert await classifier.initialize() == len(taxonomy.reference_examples())

    @pytest.mark.asyncio
    async def test_backend_failure_is_unavailable(self, taxonomy, settings):
        def broken(text):
            raise RuntimeError("model crashed")

        classifier = make_classifier(taxonomy, settings, broken)

        with pytest.raises(EmbeddingUnavailable):
            await classifier.initialize(REFERENCES)
        assert classifier.is_ready is False

    @pytest.mark.asyncio
    async def test_missing_backend(self, taxonomy, settings):
        classifier = EmbeddingClassifier(None, taxonomy, settings)

        assert classifier.is_available is False
        with pytest.raises(EmbeddingUnavailable):
            await classifier.initialize(REFERENCES)

    @pytest.mark.asyncio
    async def test_classify_before_initialize(self, taxonomy, settings):
        with pytest.raises(EmbeddingUnavailable):
            await make_classifier(taxonomy, settings).classify("vision query")


# =============================================================================
# Test: Voting
# =============================================================================

class TestEmbeddingVoting:
    """Tests for k-NN voting and confidence."""

    @pytest.mark.asyncio
    async def test_weighted_vote(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        result = await classifier.classify("vision query", k=5, voting_method="weighted")

        assert result.category == "vision"
        assert result.subcategory == "detection"
        assert result.confidence == pytest.approx(1.0)
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert result.votes == {"vision": 3, "text": 2}
        assert len(result.similar_examples) == 3

    @pytest.mark.asyncio
    async def test_simple_vote(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        result = await classifier.classify("vision query", k=5, voting_method="simple")

        assert result.confidence == pytest.approx(0.6)
        assert result.confidence_level == ConfidenceLevel.LOW

    @pytest.mark.asyncio
    async def test_near_tie_prefers_priority(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES[1:])

        result = await classifier.classify("mixed query", k=4)

        assert result.near_tie is True
        assert result.category == "text"
        assert [c.category for c in result.top_categories] == ["text", "vision"]

    @pytest.mark.asyncio
    async def test_all_negative_similarity_uses_simple_vote(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        result = await classifier.classify("opposite query", k=3)

        assert result.category == "text"
        assert result.confidence == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_empty_text_is_fallback(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        result = await classifier.classify("   ")

        assert (result.category, result.subcategory) == taxonomy.fallback
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_invalid_voting_method(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        with pytest.raises(ValueError):
            await classifier.classify("vision query", voting_method="ranked")

    @pytest.mark.asyncio
    async def test_to_result(self, taxonomy, settings):
        classifier = make_classifier(taxonomy, settings)
        await classifier.initialize(REFERENCES)

        result = classifier.to_result(await classifier.classify("vision query"))

        assert result.method == ClassificationMethod.EMBEDDING
        assert result.alternative_categories == ["text"]
