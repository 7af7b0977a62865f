"""
Classification Pipeline.

Escalates through classification strategies only as far as needed:

    KEYWORD_ONLY -> EMBEDDING_ESCALATION -> ENSEMBLE_ESCALATION
                 -> NEEDS_CLARIFICATION | RESOLVED

Each stage handler takes ``(text, context)`` and returns a StageResult naming
the next stage. Stages run strictly one after another for a request. Missing
or failing backends skip their stage; the keyword stage always runs, so a
result is always produced.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from model_advisor.config.manager import ClassifierSettings
from model_advisor.schemas.classification import (
    CategoryScore,
    ClassificationMode,
    ClassificationResult,
    ConfidenceLevel,
    EmbeddingClassification,
    KeywordMatch,
    PipelineStage,
)
from model_advisor.schemas.taxonomy import TaskTaxonomy
from model_advisor.services.classification.backends import (
    EmbeddingBackend,
    EmbeddingUnavailable,
    GenerativeBackend,
)
from model_advisor.services.classification.embedding_classifier import EmbeddingClassifier
from model_advisor.services.classification.ensemble import EnsembleCoordinator
from model_advisor.services.classification.keyword_classifier import KeywordClassifier
from model_advisor.services.classification.utils import normalize_text, suggest_improvements
from model_advisor.utils.logger import log


class Clarification(Enum):
    """Non-text answers to a clarification request."""
    SKIP = "skip"


SKIP = Clarification.SKIP

ClarificationAnswer = Union[str, Clarification]


@dataclass
class PipelineContext:
    """Per-request state carried between stages."""
    mode: ClassificationMode
    trace: List[PipelineStage] = field(default_factory=list)
    keyword_matches: List[KeywordMatch] = field(default_factory=list)
    embedding: Optional[EmbeddingClassification] = None
    best: Optional[ClassificationResult] = None
    ensemble_aborted: bool = False
    preferred_category: Optional[str] = None


@dataclass(frozen=True)
class StageResult:
    next_stage: PipelineStage
    result: ClassificationResult


class ClassificationPipeline:
    """
    Confidence-driven escalation over the three classifiers.

    Usage:
        pipeline = ClassificationPipeline(taxonomy, settings, embedding_backend=embedder)
        result = await pipeline.run("detect objects in photos", ClassificationMode.FAST)
    """

    def __init__(
        self,
        taxonomy: TaskTaxonomy,
        settings: Optional[ClassifierSettings] = None,
        embedding_backend: Optional[EmbeddingBackend] = None,
        generator: Optional[GenerativeBackend] = None,
    ):
        self.taxonomy = taxonomy
        self.settings = settings or ClassifierSettings()
        self.keyword = KeywordClassifier(taxonomy, self.settings)
        self.embedding = EmbeddingClassifier(embedding_backend, taxonomy, self.settings) \
            if embedding_backend is not None else None
        self.ensemble = EnsembleCoordinator(
            generator,
            taxonomy,
            self.settings,
            subcategory_resolver=self._keyword_subcategory,
        ) if generator is not None else None
        self._embedding_disabled = False
        self._embedding_retry_at = 0.0

        self._handlers = {
            PipelineStage.KEYWORD_ONLY: self._keyword_stage,
            PipelineStage.EMBEDDING_ESCALATION: self._embedding_stage,
            PipelineStage.ENSEMBLE_ESCALATION: self._ensemble_stage,
        }

    # =========================================================================
    # Availability
    # =========================================================================

    @property
    def embedding_available(self) -> bool:
        return (
            self.embedding is not None
            and not self._embedding_disabled
            and time.monotonic() >= self._embedding_retry_at
        )

    @property
    def ensemble_available(self) -> bool:
        return self.ensemble is not None

    # =========================================================================
    # Driver
    # =========================================================================

    async def run(
        self,
        text: str,
        mode: ClassificationMode = ClassificationMode.FAST,
        preferred_category: Optional[str] = None,
    ) -> ClassificationResult:
        """
        Classify ``text``, escalating as confidence requires.

        Args:
            text: Task description (empty input yields the low-confidence default)
            mode: FAST never calls the ensemble; ENSEMBLE allows it
            preferred_category: Category named unambiguously by a clarification
                answer; keyword evidence for it resolves the run

        Returns:
            A terminal ClassificationResult. ``needs_clarification`` marks an
            explicit ambiguity; otherwise the result is resolved.
        """
        context = PipelineContext(mode=ClassificationMode(mode), preferred_category=preferred_category)
        stage = PipelineStage.KEYWORD_ONLY
        result: Optional[ClassificationResult] = None

        while not stage.is_terminal:
            context.trace.append(stage)
            outcome = await self._handlers[stage](text, context)
            log.debug(
                f"{stage.value} -> {outcome.next_stage.value}: {outcome.result.category}/"
                f"{outcome.result.subcategory} ({outcome.result.confidence_score:.2f})"
            )
            stage, result = outcome.next_stage, outcome.result

        context.trace.append(stage)
        return self._finalize(result, stage, context)

    def _finalize(
        self,
        result: ClassificationResult,
        stage: PipelineStage,
        context: PipelineContext,
    ) -> ClassificationResult:
        needs_clarification = stage == PipelineStage.NEEDS_CLARIFICATION
        changes = {
            "stage_trace": tuple(context.trace),
            "needs_clarification": needs_clarification,
        }
        if needs_clarification:
            changes["confidence_level"] = ConfidenceLevel.LOW
            changes["alternatives"] = self._clarification_alternatives(result, context)

        finalized = result.with_updates(**changes)
        if finalized.confidence_level == ConfidenceLevel.LOW:
            finalized = finalized.with_updates(
                suggestions=tuple(suggest_improvements(finalized, self.taxonomy))
            )
        return finalized

    def _escalate_or_resolve(self, context: PipelineContext, result: ClassificationResult) -> StageResult:
        if context.mode == ClassificationMode.ENSEMBLE and self.ensemble_available:
            return StageResult(PipelineStage.ENSEMBLE_ESCALATION, result)
        return StageResult(PipelineStage.RESOLVED, result)

    # =========================================================================
    # Stages
    # =========================================================================

    async def _keyword_stage(self, text: str, context: PipelineContext) -> StageResult:
        matches = self.keyword.classify(text)
        result = self.keyword.to_result(matches)
        context.keyword_matches = matches
        context.best = result

        if not normalize_text(text):
            return StageResult(PipelineStage.RESOLVED, result)
        if result.confidence_level == ConfidenceLevel.HIGH:
            return StageResult(PipelineStage.RESOLVED, result)

        preferred = self._preferred_result(matches, context.preferred_category)
        if preferred is not None:
            context.best = preferred
            return StageResult(PipelineStage.RESOLVED, preferred)

        if self.embedding_available:
            return StageResult(PipelineStage.EMBEDDING_ESCALATION, result)
        return self._escalate_or_resolve(context, result)

    async def _embedding_stage(self, text: str, context: PipelineContext) -> StageResult:
        try:
            await self.embedding.initialize()
        except EmbeddingUnavailable as e:
            if isinstance(e.__cause__, ImportError):
                log.warning(f"Embedding classification disabled: {e}")
                self._embedding_disabled = True
            else:
                retry = self.settings.embedding_retry_seconds
                log.warning(f"Embedding initialization failed, retrying in {retry:.0f}s: {e}")
                self._embedding_retry_at = time.monotonic() + retry
            return self._escalate_or_resolve(context, context.best)

        try:
            classification = await self.embedding.classify(text)
        except EmbeddingUnavailable as e:
            log.warning(f"Embedding classification failed, keeping keyword result: {e}")
            return self._escalate_or_resolve(context, context.best)

        result = self.embedding.to_result(classification)
        context.embedding = classification
        context.best = result

        wants_ensemble = context.mode == ClassificationMode.ENSEMBLE and (
            classification.confidence_level == ConfidenceLevel.LOW or classification.near_tie
        )
        if wants_ensemble and self.ensemble_available:
            return StageResult(PipelineStage.ENSEMBLE_ESCALATION, result)
        return StageResult(PipelineStage.RESOLVED, result)

    async def _ensemble_stage(self, text: str, context: PipelineContext) -> StageResult:
        prior = context.best

        async def single_classification(_text: str) -> ClassificationResult:
            context.ensemble_aborted = True
            return prior

        result = await self.ensemble.classify_ensemble(text, fallback=single_classification)
        if context.ensemble_aborted:
            return StageResult(PipelineStage.RESOLVED, prior)

        context.best = result
        if result.needs_clarification or result.confidence_level == ConfidenceLevel.LOW:
            return StageResult(PipelineStage.NEEDS_CLARIFICATION, result)
        return StageResult(PipelineStage.RESOLVED, result)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _preferred_result(
        self,
        matches: List[KeywordMatch],
        category: Optional[str],
    ) -> Optional[ClassificationResult]:
        """Keyword result led by ``category``, at least MEDIUM; None without evidence for it."""
        if category is None:
            return None
        lead = next((m for m in matches if m.category == category and m.score > 0), None)
        if lead is None:
            return None
        result = self.keyword.to_result([lead] + [m for m in matches if m is not lead])
        if result.confidence_level == ConfidenceLevel.LOW:
            result = result.with_updates(confidence_level=ConfidenceLevel.MEDIUM)
        return result

    def _answer_category(self, answer: str, previous: Optional[ClassificationResult]) -> Optional[str]:
        """
        The single category a clarification answer points at, if any.

        Only keyword evidence in the answer itself counts. When the earlier
        result offered alternatives, the answer must pick one of them.
        """
        categories = {m.category for m in self.keyword.classify(answer) if m.score > 0}
        if previous is not None and previous.needs_clarification and previous.alternatives:
            categories &= set(previous.alternative_categories)
        return categories.pop() if len(categories) == 1 else None

    def _keyword_subcategory(self, text: str, category: str) -> Optional[str]:
        """Best keyword-matched subcategory inside ``category``, if any."""
        for match in self.keyword.classify(text):
            if match.category == category and match.score > 0:
                return match.subcategory
        return None

    def _clarification_alternatives(self, result: ClassificationResult, context: PipelineContext):
        """
        2-3 distinct categories to offer the user.

        Starts from the ensemble's alternatives (the tied leaders) and only
        tops up from earlier stages when fewer than two remain.
        """
        limit = self.settings.max_alternatives
        alternatives = list(result.alternatives[:limit])
        seen = {a.category for a in alternatives}

        if len(alternatives) < 2:
            candidates = []
            if result.category not in seen:
                candidates.append(CategoryScore(
                    result.category, result.confidence_score, result.subcategory
                ))
            if context.embedding is not None:
                candidates.extend(context.embedding.top_categories)
            candidates.extend(
                CategoryScore(m.category, m.score, m.subcategory)
                for m in context.keyword_matches if m.score > 0
            )
            for candidate in candidates:
                if len(alternatives) >= min(2, limit):
                    break
                if candidate.category in seen:
                    continue
                seen.add(candidate.category)
                alternatives.append(candidate)

        return tuple(alternatives)

    # =========================================================================
    # Clarification
    # =========================================================================

    async def resolve_clarification(
        self,
        original_text: str,
        answer: ClarificationAnswer,
        mode: ClassificationMode = ClassificationMode.FAST,
        previous: Optional[ClassificationResult] = None,
    ) -> ClassificationResult:
        """
        Continue after a NEEDS_CLARIFICATION result.

        Args:
            original_text: The text that needed clarification
            answer: Disambiguating text, or SKIP
            mode: Mode for the re-run
            previous: The clarification result, if the caller kept it

        Returns:
            For a text answer, a fresh run on ``"{original_text} {answer}"``;
            keyword evidence in the answer for exactly one of the offered
            alternatives resolves that run without asking again.
            For SKIP (or a blank answer), the highest-voted category resolved
            with low confidence.
        """
        if answer is SKIP or not str(answer).strip():
            base = previous if previous is not None else await self.run(original_text, mode)
            if not base.needs_clarification:
                return base
            trace = tuple(s for s in base.stage_trace if s != PipelineStage.NEEDS_CLARIFICATION)
            return base.with_updates(
                needs_clarification=False,
                confidence_level=ConfidenceLevel.LOW,
                stage_trace=trace + (PipelineStage.RESOLVED,),
            )

        answer_text = str(answer).strip()
        return await self.run(
            f"{original_text} {answer_text}",
            mode,
            preferred_category=self._answer_category(answer_text, previous),
        )
