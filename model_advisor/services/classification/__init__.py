"""
Hybrid task classification.

Stages, cheapest first:
- KeywordClassifier: deterministic keyword/phrase matching (always available)
- EmbeddingClassifier: k-NN over taxonomy examples (needs an embedding backend)
- EnsembleCoordinator: majority vote over N generative calls (needs a generator)

ClassificationPipeline escalates through them by confidence.

Usage:
    from model_advisor.services.classification import ClassificationPipeline

    pipeline = ClassificationPipeline(taxonomy, settings, embedding_backend=embedder)
    result = await pipeline.run("detect objects in photos")
"""

from model_advisor.services.classification.backends import (
    CallableEmbeddingBackend,
    CallableGenerator,
    ClassificationBackendError,
    EmbeddingUnavailable,
    EnsembleAborted,
    GenerationParams,
    GeneratorUnavailable,
)
from model_advisor.services.classification.embedding_classifier import EmbeddingClassifier
from model_advisor.services.classification.ensemble import (
    EnsembleCoordinator,
    EnsembleStrategy,
    LabelGrammar,
    tally_votes,
)
from model_advisor.services.classification.keyword_classifier import KeywordClassifier
from model_advisor.services.classification.pipeline import SKIP, ClassificationPipeline

__all__ = [
    "CallableEmbeddingBackend",
    "CallableGenerator",
    "ClassificationBackendError",
    "ClassificationPipeline",
    "EmbeddingClassifier",
    "EmbeddingUnavailable",
    "EnsembleAborted",
    "EnsembleCoordinator",
    "EnsembleStrategy",
    "GenerationParams",
    "GeneratorUnavailable",
    "KeywordClassifier",
    "LabelGrammar",
    "SKIP",
    "tally_votes",
]
