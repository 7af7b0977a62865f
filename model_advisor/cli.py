"""
Model Advisor command line.

    model-advisor classify "detect objects in photos" [--mode ensemble] [--recommend]
    model-advisor recommend computer_vision object_detection [--min-accuracy 80] [--deployment browser]
    model-advisor evaluate [--cases data/evaluation_cases.yaml]
    model-advisor stats
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from model_advisor.config.manager import ConfigManager
from model_advisor.schemas.classification import ClassificationMode, ClassificationResult, ConfidenceLevel
from model_advisor.schemas.recommendation import FilterState, RecommendationResult
from model_advisor.services.advisor import ModelAdvisor
from model_advisor.services.classification.evaluation import evaluate, load_cases
from model_advisor.services.classification.pipeline import SKIP

CONSOLE = Console()

LEVEL_STYLES = {
    ConfidenceLevel.HIGH: "bold green",
    ConfidenceLevel.MEDIUM: "bold yellow",
    ConfidenceLevel.LOW: "bold red",
}

ENV_LABELS = {1: "[green]low[/]", 2: "[yellow]medium[/]", 3: "[red]high[/]"}


# --- Rendering ---

def render_classification(result: ClassificationResult) -> None:
    style = LEVEL_STYLES[result.confidence_level]
    grid = Table.grid(padding=(0, 2))
    grid.add_column(style="dim")
    grid.add_column()
    grid.add_row("Category", f"[bold]{result.category}[/] / {result.subcategory}")
    grid.add_row("Confidence", f"[{style}]{result.confidence_level.value}[/] ({result.confidence_score:.2f})")
    grid.add_row("Method", result.method.value)
    if result.votes:
        grid.add_row("Votes", ", ".join(f"{c}: {n}" for c, n in result.votes.items()))
    if result.alternatives:
        grid.add_row("Alternatives", ", ".join(f"{a.category} ({a.score:.2f})" for a in result.alternatives))

    title = "Needs clarification" if result.needs_clarification else "Classification"
    CONSOLE.print(Panel(grid, title=title, border_style="yellow" if result.needs_clarification else "blue"))

    for suggestion in result.suggestions:
        CONSOLE.print(f"[dim]- {suggestion}[/]")


def render_recommendations(result: RecommendationResult) -> None:
    if result.is_empty:
        CONSOLE.print(f"[yellow]No models in the catalog for {result.category}/{result.subcategory}.[/]")
        return

    for tier, tier_rec in result.iter_tiers():
        table = Table(title=f"{tier.value.title()} tier", expand=True, border_style="dim")
        table.add_column("Model")
        table.add_column("Size (MB)", justify="right")
        table.add_column("Accuracy", justify="right")
        table.add_column("Env. impact")
        table.add_column("Deployment")
        for model in tier_rec.models:
            table.add_row(
                model.name,
                f"{model.size_mb:,.0f}",
                f"{model.accuracy * 100:.1f}%" if model.accuracy is not None else "[dim]n/a[/]",
                ENV_LABELS[model.environmental_score],
                ", ".join(sorted(model.deployment_options)),
            )
        if tier_rec.models or tier_rec.hidden_count:
            CONSOLE.print(table)
        if tier_rec.hidden_count:
            CONSOLE.print(f"[dim]{tier_rec.hidden_count} model(s) hidden by filters[/]")

    CONSOLE.print(f"[bold]{result.total_shown}[/] shown, [bold]{result.total_hidden}[/] hidden")


# --- Commands ---

async def _classify_interactive(advisor: ModelAdvisor, text: str, mode: ClassificationMode) -> ClassificationResult:
    result = await advisor.classify(text, mode)
    render_classification(result)

    while result.needs_clarification:
        options = ", ".join(result.alternative_categories)
        answer = Prompt.ask(f"Which is closer ({options})? Describe it, or press Enter to skip", default="")
        result = await advisor.resolve_clarification(text, answer if answer.strip() else SKIP, mode)
        text = f"{text} {answer}".strip()
        render_classification(result)

    return result


def cmd_classify(args, config: ConfigManager) -> int:
    advisor = ModelAdvisor.from_config(config)
    mode = ClassificationMode(args.mode) if args.mode else config.get_classification_mode()
    result = asyncio.run(_classify_interactive(advisor, args.text, mode))

    if args.recommend:
        render_recommendations(advisor.recommend(result.category, result.subcategory, config.filter_state()))
    return 0


def cmd_recommend(args, config: ConfigManager) -> int:
    advisor = ModelAdvisor.from_config(config)
    stored = config.filter_state()
    filter_state = FilterState(
        min_accuracy_threshold=args.min_accuracy if args.min_accuracy is not None else stored.min_accuracy_threshold,
        classification_mode=stored.classification_mode,
        deployment_target=args.deployment or stored.deployment_target,
    )
    render_recommendations(advisor.recommend(args.category, args.subcategory, filter_state))
    return 0


def cmd_evaluate(args, config: ConfigManager) -> int:
    advisor = ModelAdvisor.from_config(config)
    cases = load_cases(args.cases)
    if not cases:
        CONSOLE.print("[bold red]No evaluation cases found.[/]")
        return 1

    report = asyncio.run(evaluate(advisor.pipeline, cases, ClassificationMode(args.mode)))
    metrics = report.metrics

    table = Table(title=f"Evaluation ({metrics.total} cases)", border_style="dim")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Category accuracy", f"{report.category_accuracy:.1%}")
    table.add_row("Subcategory accuracy", f"{report.subcategory_accuracy:.1%}")
    table.add_row("High-confidence precision", f"{report.high_confidence_precision:.1%}")
    table.add_row("High / medium / low", f"{metrics.high_confidence} / {metrics.medium_confidence} / {metrics.low_confidence}")
    table.add_row("Needs clarification", str(metrics.needs_clarification))
    table.add_row("Average confidence", f"{metrics.average_confidence:.2f}")
    table.add_row("Average latency", f"{report.average_latency_ms:.1f} ms")
    CONSOLE.print(table)

    for miss in report.misclassified:
        CONSOLE.print(f"[red]x[/] {miss['text']!r}: expected {miss['expected']}, got {miss['actual']} ({miss['confidence']})")
    return 0


def cmd_stats(args, config: ConfigManager) -> int:
    advisor = ModelAdvisor.from_config(config)
    stats = advisor.context.catalog.get_stats()

    table = Table(title=f"Catalog ({stats.total_models} models)", border_style="dim")
    table.add_column("Group")
    table.add_column("Count", justify="right")
    for tier, count in stats.by_tier.items():
        table.add_row(f"tier: {tier}", str(count))
    for category, count in sorted(stats.by_category.items()):
        table.add_row(f"category: {category}", str(count))
    CONSOLE.print(table)
    CONSOLE.print(
        f"Average size {stats.average_size_mb:,.0f} MB; "
        f"{stats.accuracy_coverage:.0%} of models report accuracy"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="model-advisor", description="Find the smallest AI model for a task.")
    parser.add_argument("--config-dir", help="Config directory (default: ~/.model_advisor)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_classify = subparsers.add_parser("classify", help="Classify a task description")
    p_classify.add_argument("text")
    p_classify.add_argument("--mode", choices=[m.value for m in ClassificationMode])
    p_classify.add_argument("--recommend", action="store_true", help="Also show recommendations")
    p_classify.set_defaults(func=cmd_classify)

    p_recommend = subparsers.add_parser("recommend", help="Recommend models for a category/subcategory")
    p_recommend.add_argument("category")
    p_recommend.add_argument("subcategory")
    p_recommend.add_argument("--min-accuracy", type=float, help="Minimum accuracy, 0-95")
    p_recommend.add_argument("--deployment", help="Deployment target, e.g. browser, edge, cloud")
    p_recommend.set_defaults(func=cmd_recommend)

    p_evaluate = subparsers.add_parser("evaluate", help="Score the classifier on labelled cases")
    p_evaluate.add_argument("--cases", help="YAML file with cases/edge_cases")
    p_evaluate.add_argument("--mode", choices=[m.value for m in ClassificationMode], default="fast")
    p_evaluate.set_defaults(func=cmd_evaluate)

    p_stats = subparsers.add_parser("stats", help="Catalog statistics")
    p_stats.set_defaults(func=cmd_stats)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = ConfigManager(args.config_dir)
    try:
        return args.func(args, config)
    except ValueError as e:
        CONSOLE.print(f"[bold red]Error:[/] {e}")
        return 2
    except RuntimeError as e:
        CONSOLE.print(f"[bold red]Error:[/] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
