"""
Unit tests for the ensemble coordinator.

Vote aggregation is tested as a pure function; the coordinator is driven by
scripted generators that answer according to sampling temperature.
"""

import asyncio

import pytest

from model_advisor.config.manager import ClassifierSettings
from model_advisor.schemas.classification import ClassificationMethod, ConfidenceLevel
from model_advisor.services.classification.backends import CallableGenerator, EnsembleAborted
from model_advisor.services.classification.ensemble import (
    EnsembleCoordinator,
    EnsembleStrategy,
    LabelGrammar,
    build_prompt,
    build_subcategory_prompt,
    default_strategies,
    tally_votes,
)
from model_advisor.services.classification.keyword_classifier import KeywordClassifier


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def keyword_fallback(taxonomy):
    classifier = KeywordClassifier(taxonomy)

    async def fallback(text):
        return classifier.classify_result(text)

    return fallback


# =============================================================================
# Test: Vote Aggregation
# =============================================================================

class TestTallyVotes:
    """Tests for tally_votes()."""

    def test_unanimous_is_high(self):
        tally = tally_votes(["a"] * 5, 5)

        assert tally.winner == "a"
        assert tally.confidence == pytest.approx(1.0)
        assert tally.confidence_level == ConfidenceLevel.HIGH
        assert tally.needs_clarification is False
        assert tally.alternatives == ()

    def test_four_of_five_is_high(self):
        tally = tally_votes(["a", "a", "b", "a", "a"], 5)

        assert tally.confidence_level == ConfidenceLevel.HIGH
        assert tally.alternatives == ("b",)

    def test_three_of_five_is_medium(self):
        tally = tally_votes(["a", "b", "a", "c", "a"], 5)

        assert tally.confidence == pytest.approx(0.6)
        assert tally.confidence_level == ConfidenceLevel.MEDIUM
        assert tally.needs_clarification is False

    def test_two_way_tie(self):
        tally = tally_votes(["a", "b", "c", "a", "b"], 5)

        assert tally.confidence_level == ConfidenceLevel.LOW
        assert tally.needs_clarification is True
        assert set(tally.tied) == {"a", "b"}
        assert set(tally.alternatives) == {"a", "b"}
        assert "c" not in tally.alternatives

    def test_tie_broken_by_priority(self):
        order = {"b": 0, "a": 1}
        tally = tally_votes(["a", "b"], 2, priority=order.get)

        assert tally.winner == "b"
        assert tally.tied == ("b", "a")

    def test_failed_calls_count_against_confidence(self):
        # Two usable votes out of five requested
        tally = tally_votes(["a", "a"], 5)

        assert tally.confidence == pytest.approx(0.4)
        assert tally.confidence_level == ConfidenceLevel.LOW
        assert tally.needs_clarification is True
        assert tally.alternatives == ("a",)

    def test_requested_never_below_votes(self):
        tally = tally_votes(["a", "a", "a"], 1)
        assert tally.requested == 3

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            tally_votes([], 5)

    def test_order_independent(self):
        labels = ["a", "b", "a", "c", "a"]
        assert tally_votes(labels, 5) == tally_votes(list(reversed(labels)), 5)

    def test_alternatives_capped(self):
        tally = tally_votes(["a", "b", "c", "d", "e"], 5)

        assert tally.needs_clarification is True
        assert len(tally.alternatives) == 3

    def test_custom_ratios(self):
        settings = ClassifierSettings(ensemble_high_ratio=1.0, ensemble_medium_ratio=0.8)
        tally = tally_votes(["a", "a", "a", "a", "b"], 5, settings)

        assert tally.confidence_level == ConfidenceLevel.MEDIUM


# =============================================================================
# Test: Label Grammar & Prompts
# =============================================================================

class TestLabelGrammar:
    """Tests for LabelGrammar.parse()."""

    @pytest.fixture
    def grammar(self, taxonomy):
        return LabelGrammar(taxonomy)

    def test_category_and_subcategory(self, grammar):
        label = grammar.parse("Vision/detection")

        assert (label.category, label.subcategory) == ("vision", "detection")

    def test_alias(self, grammar):
        assert grammar.parse("Category: nlp").category == "text"

    def test_subcategory_implies_category(self, grammar):
        label = grammar.parse("I think this is summarization.")

        assert (label.category, label.subcategory) == ("text", "summarization")

    def test_earliest_mention_wins(self, grammar):
        assert grammar.parse("audio, not vision").category == "audio"

    def test_unrecognised_is_none(self, grammar):
        assert grammar.parse("nonsense") is None
        assert grammar.parse("") is None

    def test_subcategory_within_category(self, grammar):
        assert grammar.parse_subcategory("Detection, I think", "vision") == "detection"

    def test_subcategory_of_other_category_ignored(self, grammar):
        assert grammar.parse_subcategory("summarization", "vision") is None
        assert grammar.parse_subcategory("", "vision") is None


class TestPrompts:
    """Tests for strategy and prompt construction."""

    def test_default_strategies(self, settings):
        strategies = default_strategies(settings)

        assert [s.temperature for s in strategies] == [0.1, 0.3, 0.5, 0.7, 0.9]
        assert {s.prompt_style for s in strategies} == {"direct", "descriptive", "constrained"}

    @pytest.mark.parametrize("style", ["direct", "descriptive", "constrained"])
    def test_prompt_mentions_task_and_categories(self, taxonomy, style):
        prompt = build_prompt("forecast sales", taxonomy, style)

        assert "forecast sales" in prompt
        for category_id in ("text", "vision", "audio"):
            assert category_id in prompt

    def test_subcategory_prompt_lists_only_that_category(self, taxonomy):
        prompt = build_subcategory_prompt("find the cars", taxonomy.get_category("vision"))

        assert "find the cars" in prompt
        assert "detection" in prompt and "classification" in prompt
        assert "summarization" not in prompt


# =============================================================================
# Test: Coordinator
# =============================================================================

class TestEnsembleCoordinator:
    """Tests for EnsembleCoordinator.classify_ensemble()."""

    @pytest.mark.asyncio
    async def test_unanimous(self, taxonomy, settings):
        generator = CallableGenerator(lambda prompt, params: "audio/transcription")
        result = await EnsembleCoordinator(generator, taxonomy, settings).classify_ensemble("transcribe my calls")

        assert result.method == ClassificationMethod.ENSEMBLE
        assert (result.category, result.subcategory) == ("audio", "transcription")
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert result.votes == {"audio": 5}
        assert result.needs_clarification is False

    @pytest.mark.asyncio
    async def test_tie_needs_clarification(self, taxonomy, settings, tie_generator):
        result = await EnsembleCoordinator(tie_generator, taxonomy, settings).classify_ensemble("do something")

        assert result.category == "text"
        assert result.confidence_level == ConfidenceLevel.LOW
        assert result.needs_clarification is True
        assert result.alternative_categories == ["text", "vision"]
        assert result.votes == {"text": 2, "vision": 2, "audio": 1}

    @pytest.mark.asyncio
    async def test_subcategory_from_votes(self, taxonomy, settings, make_generator):
        replies = {0.1: "vision", 0.3: "Vision/detection", 0.5: "vision", 0.7: "vision", 0.9: "vision/classification"}
        result = await EnsembleCoordinator(make_generator(replies), taxonomy, settings).classify_ensemble("x")

        assert result.category == "vision"
        # One vote each; subcategory order decides
        assert result.subcategory == "detection"

    @pytest.mark.asyncio
    async def test_subcategory_resolver_used_without_votes(self, taxonomy, settings):
        generator = CallableGenerator(lambda prompt, params: "vision")
        coordinator = EnsembleCoordinator(
            generator, taxonomy, settings, subcategory_resolver=lambda text, category: "classification"
        )

        assert (await coordinator.classify_ensemble("x")).subcategory == "classification"

    @pytest.mark.asyncio
    async def test_default_subcategory_without_votes(self, taxonomy, settings):
        generator = CallableGenerator(lambda prompt, params: "text")
        result = await EnsembleCoordinator(generator, taxonomy, settings).classify_ensemble("x")

        assert result.subcategory == "sentiment"

    @pytest.mark.asyncio
    async def test_subcategory_asked_when_votes_name_none(self, taxonomy, settings):
        prompts = []

        def generate(prompt, params):
            prompts.append(prompt)
            return "classification" if "Subcategories:" in prompt else "vision"

        result = await EnsembleCoordinator(CallableGenerator(generate), taxonomy, settings).classify_ensemble("x")

        assert (result.category, result.subcategory) == ("vision", "classification")
        assert len(prompts) == 6
        assert "Vision" in prompts[-1]

    @pytest.mark.asyncio
    async def test_failed_subcategory_call_uses_default(self, taxonomy, settings):
        def generate(prompt, params):
            if "Subcategories:" in prompt:
                raise ConnectionError("backend down")
            return "text"

        result = await EnsembleCoordinator(CallableGenerator(generate), taxonomy, settings).classify_ensemble("x")

        assert (result.category, result.subcategory) == ("text", "sentiment")
        assert result.confidence_level == ConfidenceLevel.HIGH

    @pytest.mark.asyncio
    async def test_no_subcategory_call_when_not_needed(self, taxonomy, settings, tie_generator):
        calls = []

        async def generate(prompt, params):
            calls.append(prompt)
            return await tie_generator.generate(prompt, params)

        coordinator = EnsembleCoordinator(CallableGenerator(generate), taxonomy, settings)

        # Tie: clarification follows, so no subcategory is requested
        await coordinator.classify_ensemble("x")
        assert len(calls) == 5

        # Single-subcategory winner
        calls.clear()

        def audio(prompt, params):
            calls.append(prompt)
            return "audio"

        result = await EnsembleCoordinator(CallableGenerator(audio), taxonomy, settings).classify_ensemble("x")
        assert result.subcategory == "transcription"
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_unparseable_votes_excluded(self, taxonomy, settings, make_generator):
        replies = {0.1: "audio", 0.3: "audio", 0.5: "audio", 0.7: "no idea", 0.9: "???"}
        result = await EnsembleCoordinator(make_generator(replies), taxonomy, settings).classify_ensemble("x")

        assert result.votes == {"audio": 3}
        assert result.confidence_score == pytest.approx(0.6)
        assert result.confidence_level == ConfidenceLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_aborts_when_too_few_succeed(self, taxonomy, settings):
        def flaky(prompt, params):
            if params.temperature == 0.1:
                return "audio"
            raise ConnectionError("backend down")

        coordinator = EnsembleCoordinator(CallableGenerator(flaky), taxonomy, settings)

        with pytest.raises(EnsembleAborted) as exc_info:
            await coordinator.classify_ensemble("x")
        assert exc_info.value.successful == 1
        assert exc_info.value.requested == 5

    @pytest.mark.asyncio
    async def test_abort_uses_fallback(self, taxonomy, settings, keyword_fallback):
        generator = CallableGenerator(lambda prompt, params: "nonsense")
        coordinator = EnsembleCoordinator(generator, taxonomy, settings, fallback=keyword_fallback)

        result = await coordinator.classify_ensemble("detect objects in photos")

        assert result.method == ClassificationMethod.KEYWORD
        assert result.category == "vision"

    @pytest.mark.asyncio
    async def test_no_generator_aborts(self, taxonomy, settings):
        coordinator = EnsembleCoordinator(None, taxonomy, settings)

        assert coordinator.is_available is False
        with pytest.raises(EnsembleAborted):
            await coordinator.classify_ensemble("x")

    @pytest.mark.asyncio
    async def test_timeout_keeps_completed_votes(self, taxonomy):
        settings = ClassifierSettings(ensemble_timeout_seconds=0.2)
        cancelled = []

        async def slow_for_some(prompt, params):
            if params.temperature >= 0.7:
                try:
                    await asyncio.sleep(30)
                except asyncio.CancelledError:
                    cancelled.append(params.temperature)
                    raise
            return "vision"

        coordinator = EnsembleCoordinator(CallableGenerator(slow_for_some), taxonomy, settings)
        result = await coordinator.classify_ensemble("x")

        assert result.votes == {"vision": 3}
        assert result.confidence_score == pytest.approx(0.6)
        assert sorted(cancelled) == [0.7, 0.9]

    @pytest.mark.asyncio
    async def test_custom_strategies(self, taxonomy, settings):
        generator = CallableGenerator(lambda prompt, params: "audio")
        strategies = [EnsembleStrategy("a", 0.2), EnsembleStrategy("b", 0.4, "constrained")]

        result = await EnsembleCoordinator(generator, taxonomy, settings).classify_ensemble("x", strategies)

        assert result.votes == {"audio": 2}
        assert result.confidence_level == ConfidenceLevel.HIGH
