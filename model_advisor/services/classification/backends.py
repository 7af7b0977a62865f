"""
External model backends used by the classifiers.

The embedding function (text -> vector) and the generative function
(prompt -> text) are black boxes behind two small interfaces. Either may be
missing at runtime; adapters raise the matching *Unavailable error and the
pipeline degrades to an earlier stage.
"""

import asyncio
import inspect
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from model_advisor.utils.logger import log


# =============================================================================
# Errors
# =============================================================================

class ClassificationBackendError(Exception):
    """Base class for recoverable backend failures."""


class EmbeddingUnavailable(ClassificationBackendError):
    """The embedding function is not installed, not loaded, or failing."""


class GeneratorUnavailable(ClassificationBackendError):
    """The generative classification function is not installed or not configured."""


class EnsembleAborted(ClassificationBackendError):
    """Too few ensemble calls produced a usable vote."""

    def __init__(self, message: str, successful: int = 0, requested: int = 0):
        super().__init__(message)
        self.successful = successful
        self.requested = requested


# =============================================================================
# Interfaces
# =============================================================================

@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters for one generative call."""
    temperature: float = 0.1
    max_tokens: int = 32
    seed: Optional[int] = None


class EmbeddingBackend(ABC):
    """Turns text into a vector."""

    @abstractmethod
    async def embed(self, text: str) -> Sequence[float]:
        """
        Embed a single text.

        Raises:
            EmbeddingUnavailable: If the backend cannot produce embeddings
        """


class GenerativeBackend(ABC):
    """Produces free text from a prompt."""

    @abstractmethod
    async def generate(self, prompt: str, params: GenerationParams) -> str:
        """
        Generate a completion.

        Raises:
            GeneratorUnavailable: If the backend is not usable at all
        """


# =============================================================================
# Callable Adapters
# =============================================================================

async def _call_maybe_async(fn: Callable, *args) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class CallableEmbeddingBackend(EmbeddingBackend):
    """Wraps a plain ``fn(text) -> vector`` (sync or async)."""

    def __init__(self, fn: Callable[[str], Any]):
        self._fn = fn

    async def embed(self, text: str) -> Sequence[float]:
        return list(await _call_maybe_async(self._fn, text))


class CallableGenerator(GenerativeBackend):
    """Wraps a plain ``fn(prompt, params) -> str`` (sync or async)."""

    def __init__(self, fn: Callable[[str, GenerationParams], Any]):
        self._fn = fn

    async def generate(self, prompt: str, params: GenerationParams) -> str:
        return str(await _call_maybe_async(self._fn, prompt, params))


# =============================================================================
# Library Adapters
# =============================================================================

class SentenceTransformerEmbedder(EmbeddingBackend):
    """
    Embeddings from a sentence-transformers model.

    The model is loaded on first use; encoding runs in a worker thread so it
    does not block the event loop.
    """

    DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        self._model = None

    def _load(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise EmbeddingUnavailable(
                    "sentence-transformers is not installed (pip install model-advisor[embeddings])"
                ) from e
            try:
                self._model = SentenceTransformer(self.model_name)
            except (OSError, ValueError) as e:
                raise EmbeddingUnavailable(f"Failed to load embedding model {self.model_name}: {e}") from e
            log.info(f"Loaded embedding model {self.model_name}")
        return self._model

    async def embed(self, text: str) -> List[float]:
        model = await asyncio.to_thread(self._load)
        vector = await asyncio.to_thread(model.encode, text, normalize_embeddings=True)
        return [float(v) for v in vector]


class OpenAICompatibleGenerator(GenerativeBackend):
    """
    Generation through any OpenAI-compatible chat completions endpoint.

    Works against OpenAI, vLLM, llama.cpp server, etc. via ``base_url``.
    """

    SYSTEM_PROMPT = "You are a task classifier. Answer with the category only."

    def __init__(self, model_name: str, base_url: Optional[str] = None, api_key: Optional[str] = None):
        if not model_name:
            raise GeneratorUnavailable("No generation model configured")
        self.model_name = model_name
        self.base_url = base_url
        self.api_key = api_key or "not-needed"
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise GeneratorUnavailable(
                    "openai is not installed (pip install model-advisor[llm])"
                ) from e
            self._client = AsyncOpenAI(base_url=self.base_url, api_key=self.api_key)
        return self._client

    async def generate(self, prompt: str, params: GenerationParams) -> str:
        client = self._get_client()
        kwargs = {}
        if params.seed is not None:
            kwargs["seed"] = params.seed
        response = await client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            **kwargs,
        )
        return response.choices[0].message.content or ""


def create_embedding_backend(config) -> Optional[EmbeddingBackend]:
    """
    Build the configured embedding backend.

    Args:
        config: ConfigManager

    Returns:
        Backend, or None when embeddings are disabled
    """
    if not config.get("backends.embedding_enabled", True):
        return None
    return SentenceTransformerEmbedder(config.get("backends.embedding_model") or SentenceTransformerEmbedder.DEFAULT_MODEL)


def create_generator(config) -> Optional[GenerativeBackend]:
    """
    Build the configured generator.

    Returns:
        Backend, or None when generation is disabled or has no model
    """
    if not config.get("backends.generation_enabled", False):
        return None
    model_name = config.get("backends.generation_model")
    if not model_name:
        log.warning("Generation enabled but backends.generation_model is not set; ensemble disabled")
        return None
    api_key_env = config.get("backends.generation_api_key_env", "MODEL_ADVISOR_LLM_API_KEY")
    return OpenAICompatibleGenerator(
        model_name=model_name,
        base_url=config.get("backends.generation_base_url"),
        api_key=os.environ.get(api_key_env) if api_key_env else None,
    )
