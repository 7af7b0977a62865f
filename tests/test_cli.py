"""
Tests for the model-advisor command line.
"""

from unittest.mock import patch

import pytest

from model_advisor.cli import _classify_interactive, main
from model_advisor.config.manager import ConfigManager
from model_advisor.schemas.classification import ClassificationMode
from model_advisor.services.advisor import AdvisorContext, ModelAdvisor
from model_advisor.services.model_catalog import ModelCatalog


@pytest.fixture
def config_dir(tmp_path):
    """Config with the embedding backend off, so no model is ever downloaded."""
    ConfigManager(config_dir=str(tmp_path)).set("backends.embedding_enabled", False)
    return str(tmp_path)


@pytest.fixture
def ambiguous_advisor(taxonomy, settings, tie_generator):
    context = AdvisorContext(taxonomy=taxonomy, catalog=ModelCatalog.from_entries([]), settings=settings)
    return ModelAdvisor(context, generator=tie_generator)


class TestCommands:
    """Tests for main() with each subcommand."""

    def test_recommend(self, config_dir, capsys):
        assert main(["--config-dir", config_dir, "recommend", "computer_vision", "object_detection"]) == 0

        out = capsys.readouterr().out
        assert "Lightweight tier" in out
        assert "shown" in out

    def test_recommend_unknown_slice(self, config_dir, capsys):
        assert main(["--config-dir", config_dir, "recommend", "cooking", "recipes"]) == 0
        assert "No models in the catalog" in capsys.readouterr().out

    def test_recommend_invalid_threshold(self, config_dir, capsys):
        code = main(["--config-dir", config_dir, "recommend", "computer_vision", "ocr", "--min-accuracy", "120"])

        assert code == 2
        assert "Error" in capsys.readouterr().out

    def test_stats(self, config_dir, capsys):
        assert main(["--config-dir", config_dir, "stats"]) == 0
        assert "Catalog (" in capsys.readouterr().out

    def test_classify(self, config_dir, capsys):
        assert main(["--config-dir", config_dir, "classify", "detect objects in photos", "--recommend"]) == 0

        out = capsys.readouterr().out
        assert "computer_vision" in out
        assert "object_detection" in out
        assert "shown" in out

    def test_evaluate(self, config_dir, capsys):
        assert main(["--config-dir", config_dir, "evaluate"]) == 0
        assert "Category accuracy" in capsys.readouterr().out

    def test_evaluate_missing_cases(self, config_dir, tmp_path):
        assert main(["--config-dir", config_dir, "evaluate", "--cases", str(tmp_path / "none.yaml")]) == 1

    def test_missing_taxonomy(self, config_dir, tmp_path):
        ConfigManager(config_dir=config_dir).set("data.taxonomy_path", str(tmp_path / "none.yaml"))
        assert main(["--config-dir", config_dir, "stats"]) == 1

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])


class TestInteractiveClarification:
    """Tests for the clarification prompt loop."""

    @pytest.mark.asyncio
    async def test_blank_answer_skips(self, ambiguous_advisor):
        with patch("model_advisor.cli.Prompt.ask", return_value="") as ask:
            result = await _classify_interactive(ambiguous_advisor, "do something clever", ClassificationMode.ENSEMBLE)

        assert ask.call_count == 1
        assert result.needs_clarification is False
        assert result.category == "text"

    @pytest.mark.asyncio
    async def test_answer_reclassifies(self, ambiguous_advisor):
        with patch("model_advisor.cli.Prompt.ask", return_value="speech to text"):
            result = await _classify_interactive(ambiguous_advisor, "do something clever", ClassificationMode.ENSEMBLE)

        assert result.category == "audio"
        assert result.needs_clarification is False
