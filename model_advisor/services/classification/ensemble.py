"""
Ensemble Coordinator - Voting Escalation Stage.

Runs N generative classification calls concurrently with varied sampling
temperature and prompt phrasing, parses each reply with a fixed label
grammar, and reduces the votes to a ClassificationResult. When no vote
names a subcategory of a clear winner, one more call asks for it within
the winning category.

Vote aggregation (``tally_votes``) is a pure reduction over the completed
labels. It never depends on completion order, so it can be tested without
any concurrency.
"""

import asyncio
import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from model_advisor.config.manager import ClassifierSettings
from model_advisor.schemas.classification import (
    CategoryScore,
    ClassificationMethod,
    ClassificationResult,
    ConfidenceLevel,
)
from model_advisor.schemas.taxonomy import TaskCategory, TaskTaxonomy
from model_advisor.services.classification.backends import (
    EnsembleAborted,
    GenerationParams,
    GenerativeBackend,
)
from model_advisor.utils.logger import log


PROMPT_STYLES = ("direct", "descriptive", "constrained")

FallbackFn = Callable[[str], Awaitable[ClassificationResult]]
SubcategoryResolver = Callable[[str, str], Optional[str]]


# =============================================================================
# Strategies & Prompts
# =============================================================================

@dataclass(frozen=True)
class EnsembleStrategy:
    """One prompt/parameter variant of the generative call."""
    name: str
    temperature: float
    prompt_style: str = "direct"
    max_tokens: int = 32

    def params(self) -> GenerationParams:
        return GenerationParams(temperature=self.temperature, max_tokens=self.max_tokens)


def default_strategies(settings: ClassifierSettings) -> List[EnsembleStrategy]:
    """
    N variants cycling through the configured temperatures and prompt styles.

    With the defaults: temperatures 0.1, 0.3, 0.5, 0.7, 0.9.
    """
    temperatures = settings.ensemble_temperatures or (0.1,)
    return [
        EnsembleStrategy(
            name=f"variant_{i + 1}",
            temperature=temperatures[i % len(temperatures)],
            prompt_style=PROMPT_STYLES[i % len(PROMPT_STYLES)],
        )
        for i in range(settings.ensemble_size)
    ]


def build_prompt(text: str, taxonomy: TaskTaxonomy, style: str = "direct") -> str:
    """Render the classification prompt for one strategy."""
    categories = taxonomy.ordered_categories()

    if style == "descriptive":
        lines = []
        for category in categories:
            subs = ", ".join(s.label for s in category.subcategories)
            hint = category.description or subs
            lines.append(f"- {category.id}: {category.label} ({hint})")
        return (
            "Classify the following machine learning task into exactly one category.\n\n"
            f"Task: \"{text}\"\n\n"
            "Categories:\n" + "\n".join(lines) + "\n\n"
            "Answer with the category id, optionally followed by '/' and the subcategory id."
        )

    if style == "constrained":
        ids = " | ".join(c.id for c in categories)
        return (
            f"Task description: {text}\n"
            f"Which one of these task categories fits best? {ids}\n"
            "Reply with a single category id and nothing else."
        )

    lines = []
    for category in categories:
        subs = ", ".join(s.id for s in category.subcategories)
        lines.append(f"{category.id}: {subs}")
    return (
        "Categorize this task.\n"
        f"Task: {text}\n"
        "Options (category: subcategories):\n" + "\n".join(lines) + "\n"
        "Category:"
    )


def build_subcategory_prompt(text: str, category: TaskCategory) -> str:
    """Prompt asking for the subcategory within an already chosen category."""
    lines = [f"- {sub.id}: {sub.label}" for sub in category.subcategories]
    return (
        f"This task belongs to the '{category.label}' category.\n"
        f"Task: {text}\n\n"
        "Subcategories:\n" + "\n".join(lines) + "\n\n"
        "Reply with the single best subcategory id and nothing else."
    )


# =============================================================================
# Label Grammar
# =============================================================================

@dataclass(frozen=True)
class ParsedLabel:
    category: str
    subcategory: Optional[str] = None


def _term_pattern(term: str) -> Optional[Pattern]:
    words = re.findall(r"[a-z0-9]+", term.lower())
    if not words:
        return None
    return re.compile(r"\b" + r"[\s_\-/]+".join(re.escape(w) for w in words) + r"s?\b")


class LabelGrammar:
    """
    Maps free-form generated text to a taxonomy label.

    Recognised terms per category: its id, label, aliases, and the ids and
    labels of its subcategories. The earliest mention in the reply wins;
    at the same position the longer term wins, then category priority.
    Replies mentioning no term are invalid votes.
    """

    def __init__(self, taxonomy: TaskTaxonomy):
        self.taxonomy = taxonomy
        # (pattern, category, subcategory or None)
        self._terms: List[Tuple[Pattern, str, Optional[str]]] = []

        for category in taxonomy.ordered_categories():
            for term in (category.id, category.label, *category.aliases):
                pattern = _term_pattern(term)
                if pattern is not None:
                    self._terms.append((pattern, category.id, None))
            for sub in category.subcategories:
                for term in (sub.id, sub.label):
                    pattern = _term_pattern(term)
                    if pattern is not None:
                        self._terms.append((pattern, category.id, sub.id))

    def parse(self, output: str) -> Optional[ParsedLabel]:
        if not output:
            return None
        lowered = output.lower()

        best = None
        for pattern, category, _ in self._terms:
            match = pattern.search(lowered)
            if match is None:
                continue
            key = (match.start(), -(match.end() - match.start()), self.taxonomy.priority_index(category))
            if best is None or key < best[0]:
                best = (key, category)

        if best is None:
            return None
        category = best[1]

        # Subcategory: earliest subcategory mention belonging to the chosen category
        sub_best = None
        for pattern, term_category, subcategory in self._terms:
            if subcategory is None or term_category != category:
                continue
            match = pattern.search(lowered)
            if match is not None and (sub_best is None or match.start() < sub_best[0]):
                sub_best = (match.start(), subcategory)

        return ParsedLabel(category=category, subcategory=sub_best[1] if sub_best else None)

    def parse_subcategory(self, output: str, category: str) -> Optional[str]:
        """Earliest mentioned subcategory of ``category``; terms of other categories are ignored."""
        if not output:
            return None
        lowered = output.lower()

        best = None
        for pattern, term_category, subcategory in self._terms:
            if subcategory is None or term_category != category:
                continue
            match = pattern.search(lowered)
            if match is None:
                continue
            key = (match.start(), -(match.end() - match.start()))
            if best is None or key < best[0]:
                best = (key, subcategory)
        return best[1] if best else None


# =============================================================================
# Vote Aggregation
# =============================================================================

@dataclass(frozen=True)
class VoteTally:
    """Result of reducing ensemble votes."""
    votes: Dict[str, int]
    requested: int
    winner: str
    winner_votes: int
    confidence: float
    confidence_level: ConfidenceLevel
    needs_clarification: bool
    tied: Tuple[str, ...] = ()
    alternatives: Tuple[str, ...] = ()


def tally_votes(
    labels: Iterable[str],
    requested: int,
    settings: Optional[ClassifierSettings] = None,
    priority: Optional[Callable[[str], int]] = None,
) -> VoteTally:
    """
    Reduce category votes to a winner and confidence.

    Thresholds are relative to the requested ensemble size N, so failed
    calls count against confidence:
        high   if winner votes >= ceil(high_ratio * N)
        medium if winner votes >= ceil(medium_ratio * N)
        low    otherwise

    A shared top count, or a winner without a strict majority of N, needs
    clarification. Tied leaders become the alternatives (categories below
    the tie are left out); without a tie the top-ranked categories are used.

    Args:
        labels: One category id per successful call, in any order
        requested: N, the number of calls issued
        settings: Ratios and max alternatives
        priority: Deterministic ordering for equal counts (lower first)

    Raises:
        ValueError: If there are no labels
    """
    settings = settings or ClassifierSettings()
    counts = Counter(labels)
    if not counts:
        raise ValueError("Cannot tally an empty vote")
    requested = max(requested, sum(counts.values()))
    priority = priority or (lambda category: 0)

    ranked = sorted(counts.items(), key=lambda item: (-item[1], priority(item[0]), item[0]))
    winner, top = ranked[0]
    leaders = tuple(category for category, n in ranked if n == top)
    tied = leaders if len(leaders) > 1 else ()

    majority = requested // 2 + 1
    needs_clarification = bool(tied) or top < majority

    if tied:
        level = ConfidenceLevel.LOW
    elif top >= math.ceil(settings.ensemble_high_ratio * requested):
        level = ConfidenceLevel.HIGH
    elif top >= math.ceil(settings.ensemble_medium_ratio * requested):
        level = ConfidenceLevel.MEDIUM
    else:
        level = ConfidenceLevel.LOW

    if tied:
        alternatives = tied[:settings.max_alternatives]
    elif needs_clarification:
        alternatives = tuple(category for category, _ in ranked[:settings.max_alternatives])
    else:
        alternatives = tuple(category for category, _ in ranked[1:settings.max_alternatives + 1])

    return VoteTally(
        votes=dict(ranked),
        requested=requested,
        winner=winner,
        winner_votes=top,
        confidence=top / requested,
        confidence_level=level,
        needs_clarification=needs_clarification,
        tied=tied,
        alternatives=alternatives,
    )


def _vote_subcategory(labels: Sequence[ParsedLabel], category: str, taxonomy: TaskTaxonomy) -> Optional[str]:
    counts = Counter(l.subcategory for l in labels if l.category == category and l.subcategory)
    if not counts:
        return None
    return min(counts, key=lambda sub: (-counts[sub], taxonomy.subcategory_index(category, sub)))


# =============================================================================
# Coordinator
# =============================================================================

class EnsembleCoordinator:
    """
    Fans out N generative calls and votes on the replies.

    Usage:
        coordinator = EnsembleCoordinator(generator, taxonomy, settings)
        result = await coordinator.classify_ensemble("forecast next month's sales")
    """

    def __init__(
        self,
        generator: Optional[GenerativeBackend],
        taxonomy: TaskTaxonomy,
        settings: Optional[ClassifierSettings] = None,
        fallback: Optional[FallbackFn] = None,
        subcategory_resolver: Optional[SubcategoryResolver] = None,
    ):
        self.generator = generator
        self.taxonomy = taxonomy
        self.settings = settings or ClassifierSettings()
        self.fallback = fallback
        self.subcategory_resolver = subcategory_resolver
        self.grammar = LabelGrammar(taxonomy)

    @property
    def is_available(self) -> bool:
        return self.generator is not None

    async def classify_ensemble(
        self,
        text: str,
        strategies: Optional[Sequence[EnsembleStrategy]] = None,
        fallback: Optional[FallbackFn] = None,
    ) -> ClassificationResult:
        """
        Classify by majority vote over concurrent generative calls.

        Args:
            text: Task description
            strategies: Variants to run (defaults to ``default_strategies``)
            fallback: Single non-ensemble classification used when the
                ensemble aborts; overrides the constructor fallback

        Returns:
            ClassificationResult with ``votes`` filled in

        Raises:
            EnsembleAborted: Fewer than ``ensemble_min_successful`` usable
                votes and no fallback is configured
        """
        fallback = fallback or self.fallback
        try:
            return await self._run(text, strategies)
        except EnsembleAborted as e:
            if fallback is None:
                raise
            log.warning(f"Ensemble aborted ({e}); using single classification")
            return await fallback(text)

    async def _run(self, text: str, strategies: Optional[Sequence[EnsembleStrategy]]) -> ClassificationResult:
        if self.generator is None:
            raise EnsembleAborted("No generative backend configured")

        strategies = list(strategies) if strategies else default_strategies(self.settings)
        requested = len(strategies)
        labels = await self._gather_labels(text, strategies)

        if len(labels) < self.settings.ensemble_min_successful:
            raise EnsembleAborted(
                f"only {len(labels)}/{requested} calls produced a usable label",
                successful=len(labels),
                requested=requested,
            )

        tally = tally_votes(
            [label.category for label in labels],
            requested,
            self.settings,
            self.taxonomy.priority_index,
        )

        subcategory = _vote_subcategory(labels, tally.winner, self.taxonomy)
        if subcategory is None and not tally.needs_clarification:
            subcategory = await self._generate_subcategory(text, tally.winner)
        if subcategory is None and self.subcategory_resolver is not None:
            subcategory = self.subcategory_resolver(text, tally.winner)
        if subcategory is None:
            subcategory = self.taxonomy.default_subcategory(tally.winner) or ""

        log.debug(f"Ensemble votes for '{text[:60]}': {tally.votes} -> {tally.winner} ({tally.confidence_level.value})")

        return ClassificationResult(
            category=tally.winner,
            subcategory=subcategory,
            confidence_score=tally.confidence,
            confidence_level=tally.confidence_level,
            method=ClassificationMethod.ENSEMBLE,
            alternatives=tuple(
                CategoryScore(
                    category,
                    tally.votes[category] / tally.requested,
                    self.taxonomy.default_subcategory(category),
                )
                for category in tally.alternatives
            ),
            votes=dict(tally.votes),
            needs_clarification=tally.needs_clarification,
        )

    async def _gather_labels(self, text: str, strategies: Sequence[EnsembleStrategy]) -> List[ParsedLabel]:
        """Run all attempts under one timeout; keep whatever completed cleanly."""
        tasks = [asyncio.create_task(self._attempt(text, s), name=s.name) for s in strategies]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.settings.ensemble_timeout_seconds)
        finally:
            unfinished = [t for t in tasks if not t.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        if pending:
            log.warning(
                f"Ensemble timeout after {self.settings.ensemble_timeout_seconds}s: "
                f"{len(pending)}/{len(tasks)} calls cancelled"
            )

        labels = []
        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                log.debug(f"Ensemble call {task.get_name()} failed: {error}")
                continue
            label = task.result()
            if label is None:
                log.debug(f"Ensemble call {task.get_name()} returned no recognisable label")
                continue
            labels.append(label)
        return labels

    async def _attempt(self, text: str, strategy: EnsembleStrategy) -> Optional[ParsedLabel]:
        prompt = build_prompt(text, self.taxonomy, strategy.prompt_style)
        output = await self.generator.generate(prompt, strategy.params())
        return self.grammar.parse(output)

    async def _generate_subcategory(self, text: str, category_id: str) -> Optional[str]:
        """
        Ask for the subcategory of the winning category when no vote named one.

        Runs once, at the lowest configured temperature. Categories with a
        single subcategory need no call. Failures and unrecognised replies
        yield None so the caller's fallbacks apply.
        """
        category = self.taxonomy.get_category(category_id)
        if category is None or len(category.subcategories) < 2:
            return None

        params = GenerationParams(temperature=min(self.settings.ensemble_temperatures or (0.1,)))
        prompt = build_subcategory_prompt(text, category)
        try:
            output = await asyncio.wait_for(
                self.generator.generate(prompt, params),
                timeout=self.settings.ensemble_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning(f"Subcategory call for {category_id} timed out")
            return None
        except Exception as e:
            log.warning(f"Subcategory call for {category_id} failed: {e}")
            return None

        subcategory = self.grammar.parse_subcategory(output, category_id)
        if subcategory is None:
            log.debug(f"No {category_id} subcategory recognised in {output[:60]!r}")
        return subcategory
