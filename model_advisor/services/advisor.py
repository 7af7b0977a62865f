"""
Model Advisor - the interface exposed to UI and API layers.

    advisor = ModelAdvisor.from_config(ConfigManager())
    result = await advisor.classify("detect objects in photos")
    if result.needs_clarification:
        result = await advisor.resolve_clarification(text, "in video frames")
    recommendations = advisor.recommend(result.category, result.subcategory, filter_state)

Taxonomy, catalog and settings are loaded once into an AdvisorContext and
passed in explicitly. Supersede state and recent results are kept per
session id: a new classify/resolve call supersedes the request still in
flight for the same session only, and the superseded caller gets
RequestSuperseded, never a result.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from model_advisor.config.manager import ClassifierSettings, ConfigManager
from model_advisor.schemas.classification import ClassificationMode, ClassificationResult
from model_advisor.schemas.recommendation import FilterState, RecommendationResult
from model_advisor.schemas.taxonomy import TaskTaxonomy
from model_advisor.services.classification.backends import (
    EmbeddingBackend,
    GenerativeBackend,
    create_embedding_backend,
    create_generator,
)
from model_advisor.services.classification.pipeline import (
    ClarificationAnswer,
    ClassificationPipeline,
)
from model_advisor.services.classification.utils import normalize_text
from model_advisor.services.model_catalog import ModelCatalog
from model_advisor.services.recommendation.engine import RecommendationEngine
from model_advisor.services.task_taxonomy import TaskTaxonomyLoader
from model_advisor.utils.logger import log


class RequestSuperseded(Exception):
    """A newer request replaced this one before it finished."""

    def __init__(self, text: str):
        super().__init__(f"Classification superseded by a newer request: {text[:60]!r}")
        self.text = text


@dataclass(frozen=True)
class AdvisorContext:
    """Immutable reference data shared by every request and session."""
    taxonomy: TaskTaxonomy
    catalog: ModelCatalog
    settings: ClassifierSettings

    @classmethod
    def load(cls, config: ConfigManager) -> "AdvisorContext":
        """
        Load taxonomy and catalog from the configured (or bundled) paths.

        Raises:
            RuntimeError: If the taxonomy cannot be loaded. A missing catalog
                only yields empty recommendations.
        """
        taxonomy_path = config.get("data.taxonomy_path")
        loader = TaskTaxonomyLoader(Path(taxonomy_path) if taxonomy_path else None)
        if not loader.load():
            raise RuntimeError(f"Cannot start without a task taxonomy ({loader.yaml_path})")

        catalog_path = config.get("data.catalog_path")
        catalog = ModelCatalog(Path(catalog_path) if catalog_path else None)
        if not catalog.load():
            log.error("Continuing with an empty model catalog")

        return cls(taxonomy=loader.taxonomy, catalog=catalog, settings=config.classifier_settings())


DEFAULT_SESSION = "default"


@dataclass
class AdvisorSession:
    """Supersede state and recent results for one user session."""
    inflight: Optional[asyncio.Task] = None
    generation: int = 0
    recent: "OrderedDict[str, ClassificationResult]" = field(default_factory=OrderedDict)


class ModelAdvisor:
    """Classification + recommendation, with supersede tracked per session."""

    # Recent results kept per session for clarification follow-ups
    RESULT_CACHE_SIZE = 64
    # Least recently used sessions beyond this are forgotten
    MAX_SESSIONS = 256

    def __init__(
        self,
        context: AdvisorContext,
        embedding_backend: Optional[EmbeddingBackend] = None,
        generator: Optional[GenerativeBackend] = None,
    ):
        self.context = context
        self.pipeline = ClassificationPipeline(
            context.taxonomy,
            context.settings,
            embedding_backend=embedding_backend,
            generator=generator,
        )
        self.engine = RecommendationEngine(context.catalog)
        self._sessions: "OrderedDict[str, AdvisorSession]" = OrderedDict()

    @classmethod
    def from_config(cls, config: Optional[ConfigManager] = None) -> "ModelAdvisor":
        config = config or ConfigManager()
        return cls(
            AdvisorContext.load(config),
            embedding_backend=create_embedding_backend(config),
            generator=create_generator(config),
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def classify(
        self,
        text: str,
        mode: ClassificationMode = ClassificationMode.FAST,
        session_id: Optional[str] = DEFAULT_SESSION,
    ) -> ClassificationResult:
        """
        Classify a task description.

        Raises:
            RequestSuperseded: If a newer classify/resolve call started in the
                same session first
        """
        session = self.session(session_id)
        result = await self._submit(session, text, lambda: self.pipeline.run(text, mode))
        self._remember(session, text, result)
        return result

    def recommend(
        self,
        category: str,
        subcategory: str,
        filter_state: Optional[FilterState] = None,
    ) -> RecommendationResult:
        """Tiered recommendations; synchronous, never suspends."""
        return self.engine.recommend(category, subcategory, filter_state)

    async def resolve_clarification(
        self,
        original_text: str,
        answer: ClarificationAnswer,
        mode: ClassificationMode = ClassificationMode.FAST,
        session_id: Optional[str] = DEFAULT_SESSION,
    ) -> ClassificationResult:
        """
        Answer (or SKIP) a clarification request for ``original_text``.

        Only results remembered for the same session are reused.

        Raises:
            RequestSuperseded: If a newer classify/resolve call started in the
                same session first
        """
        session = self.session(session_id)
        previous = session.recent.get(normalize_text(original_text))
        result = await self._submit(
            session,
            original_text,
            lambda: self.pipeline.resolve_clarification(original_text, answer, mode, previous),
        )
        self._remember(session, original_text, result)
        return result

    def session(self, session_id: Optional[str] = DEFAULT_SESSION) -> AdvisorSession:
        """
        The session record for ``session_id``, created on first use.

        ``None`` gives a throwaway session: nothing supersedes it and none of
        its results are remembered.
        """
        if session_id is None:
            return AdvisorSession()
        session = self._sessions.get(session_id)
        if session is None:
            session = self._sessions[session_id] = AdvisorSession()
        self._sessions.move_to_end(session_id)
        while len(self._sessions) > self.MAX_SESSIONS:
            evicted, _ = self._sessions.popitem(last=False)
            log.debug(f"Forgetting idle advisor session {evicted}")
        return session

    # =========================================================================
    # Request Handling
    # =========================================================================

    async def _submit(
        self,
        session: AdvisorSession,
        text: str,
        start: Callable[[], Awaitable[ClassificationResult]],
    ) -> ClassificationResult:
        session.generation += 1
        generation = session.generation

        if session.inflight is not None and not session.inflight.done():
            log.debug("Cancelling superseded classification request")
            session.inflight.cancel()

        task = asyncio.ensure_future(start())
        session.inflight = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != session.generation:
                raise RequestSuperseded(text) from None
            raise
        finally:
            if session.inflight is task:
                session.inflight = None

        if generation != session.generation:
            raise RequestSuperseded(text)
        return result

    def _remember(self, session: AdvisorSession, text: str, result: ClassificationResult) -> None:
        key = normalize_text(text)
        session.recent[key] = result
        session.recent.move_to_end(key)
        while len(session.recent) > self.RESULT_CACHE_SIZE:
            session.recent.popitem(last=False)
