"""
Shared fixtures: a small three-category taxonomy, a topic-count embedder
and scripted generators, so classifier tests never need real models.
"""

import asyncio
import copy
from typing import Dict, List

import pytest

from model_advisor.config.manager import ClassifierSettings
from model_advisor.services.classification.backends import (
    CallableEmbeddingBackend,
    CallableGenerator,
    GenerationParams,
)
from model_advisor.services.model_catalog import ModelCatalog
from model_advisor.services.task_taxonomy import TaskTaxonomyLoader, parse_taxonomy


# =============================================================================
# Sample Data
# =============================================================================

SAMPLE_TAXONOMY = {
    "priority_order": ["text", "vision", "audio"],
    "categories": {
        "text": {
            "label": "Text",
            "aliases": ["nlp"],
            "default_subcategory": "sentiment",
            "subcategories": {
                "sentiment": {
                    "keywords": ["sentiment", "customer reviews", "opinion"],
                    "examples": ["analyze the sentiment of reviews", "is this tweet positive"],
                },
                "summarization": {
                    "keywords": ["summarize", "summary"],
                    "examples": ["summarize a long report"],
                },
            },
        },
        "vision": {
            "label": "Vision",
            "aliases": ["image"],
            "subcategories": {
                "detection": {
                    "keywords": ["detect", "detect objects", "bounding box"],
                    "examples": ["detect cars in photos", "draw boxes around cars"],
                },
                "classification": {
                    "keywords": ["classify images", "photo"],
                    "examples": ["classify photos of animals"],
                },
            },
        },
        "audio": {
            "label": "Audio",
            "aliases": ["speech"],
            "subcategories": {
                "transcription": {
                    "keywords": ["transcribe", "speech to text"],
                    "examples": ["transcribe a podcast recording"],
                },
            },
        },
    },
}

# Word lists per embedding dimension
TOPIC_WORDS = (
    {"photo", "photos", "car", "cars", "image", "images", "boxes", "animals"},
    {"review", "reviews", "tweet", "sentiment", "report", "positive"},
    {"podcast", "speech", "recording", "voice"},
)

# Scripted ensemble replies keyed by temperature
TIE_REPLIES = {0.1: "vision", 0.3: "Vision/detection", 0.5: "text", 0.7: "nlp", 0.9: "audio"}


def topic_vector(text: str) -> List[float]:
    """Counts of topic words per dimension, plus a tiny constant component."""
    tokens = text.lower().split()
    return [float(sum(t in words for t in tokens)) for words in TOPIC_WORDS] + [0.01]


def scripted_generator(replies: Dict[float, str]) -> CallableGenerator:
    """Generator answering by sampling temperature."""
    def generate(prompt: str, params: GenerationParams) -> str:
        return replies[params.temperature]
    return CallableGenerator(generate)


def blocking_generator(started: asyncio.Event, reply: str = "vision") -> CallableGenerator:
    """Generator that signals ``started`` and then hangs until cancelled."""
    async def generate(prompt: str, params: GenerationParams) -> str:
        started.set()
        await asyncio.sleep(60)
        return reply
    return CallableGenerator(generate)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def sample_taxonomy_data():
    return copy.deepcopy(SAMPLE_TAXONOMY)


@pytest.fixture
def taxonomy():
    return parse_taxonomy(SAMPLE_TAXONOMY)


@pytest.fixture
def settings():
    return ClassifierSettings()


@pytest.fixture
def topic_embedder():
    return CallableEmbeddingBackend(topic_vector)


@pytest.fixture
def tie_generator():
    return scripted_generator(TIE_REPLIES)


@pytest.fixture
def make_generator():
    return scripted_generator


@pytest.fixture
def make_blocking_generator():
    return blocking_generator


@pytest.fixture(scope="session")
def bundled_taxonomy():
    loader = TaskTaxonomyLoader()
    assert loader.load()
    return loader.taxonomy


@pytest.fixture(scope="session")
def bundled_catalog():
    catalog = ModelCatalog()
    assert catalog.load()
    return catalog
