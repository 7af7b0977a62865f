"""
Environmental Impact Estimator.

Rough energy and carbon estimates for running a catalog model under a
deployment scenario. These are order-of-magnitude figures for comparing
models, not measurements.

Model:
    inference_watts = base_power[deployment]
                      * (log10(size_mb / 10) + 1)
                      * architecture_multiplier
                      * product(optimization multipliers), floored at 1 W
    kWh per inference assumes 0.1 h of work per inference
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from model_advisor.schemas.recommendation import ModelEntry


# =============================================================================
# Constants
# =============================================================================

# Watts drawn while inferring, per deployment target
BASE_POWER_WATTS: Dict[str, float] = {
    "mobile": 2,
    "edge": 8,
    "browser": 15,
    "cloud": 50,
    "server": 100,
    "gpu": 250,
}

# g CO2 per kWh
CARBON_INTENSITY: Dict[str, float] = {
    "mobile": 400,
    "edge": 500,
    "browser": 450,
    "cloud": 350,
    "server": 400,
    "gpu": 600,
}

ARCHITECTURE_MULTIPLIERS: Dict[str, float] = {
    "transformer": 1.5,
    "cnn": 1.0,
    "rnn": 1.2,
    "diffusion": 2.0,
    "ensemble": 1.8,
    "distilled": 0.7,
}

OPTIMIZATION_MULTIPLIERS: Dict[str, float] = {
    "quantization": 0.6,
    "pruning": 0.8,
    "distillation": 0.7,
}

# Inferences per hour
USAGE_PATTERNS: Dict[str, int] = {
    "batch": 100,
    "interactive": 10,
    "realtime": 3600,
    "periodic": 1,
}

HOURS_PER_INFERENCE = 0.1
MIN_WATTS = 1.0

# Daily kWh upper bounds for impact scores 1 and 2; above is 3
IMPACT_SCORE_LIMITS_KWH = (0.1, 1.0)

# Checked in order; first hit wins
_ARCHITECTURE_HINTS = (
    ("distilled", ("distil",)),
    ("transformer", ("transformer", "bert", "gpt", "t5", "llama", "whisper", "vit")),
    ("diffusion", ("diffusion", "stable", "dalle")),
    ("cnn", ("cnn", "resnet", "mobilenet", "efficientnet", "yolo")),
    ("rnn", ("rnn", "lstm", "gru")),
    ("ensemble", ("ensemble",)),
)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class DeploymentScenario:
    """How a model is expected to be used."""
    deployment: Optional[str] = None  # None = inferred from the model
    usage_pattern: str = "interactive"
    hours_per_day: float = 8
    days_per_week: int = 5
    optimizations: Sequence[str] = ()

    def __post_init__(self):
        if self.deployment is not None and self.deployment not in BASE_POWER_WATTS:
            raise ValueError(f"Unknown deployment: {self.deployment}. Must be one of {sorted(BASE_POWER_WATTS)}")
        if self.usage_pattern not in USAGE_PATTERNS:
            raise ValueError(f"Unknown usage pattern: {self.usage_pattern}. Must be one of {sorted(USAGE_PATTERNS)}")
        unknown = [o for o in self.optimizations if o not in OPTIMIZATION_MULTIPLIERS]
        if unknown:
            raise ValueError(f"Unknown optimizations: {unknown}")


@dataclass
class ImpactEstimate:
    """Energy and carbon estimate for one model under one scenario."""
    model_id: str
    deployment: str
    architecture: str
    inference_watts: float
    daily_kwh: float
    weekly_kwh: float
    carbon_per_inference_g: float
    carbon_daily_g: float
    carbon_weekly_g: float
    impact_score: int  # 1 (low) - 3 (high), usage-based
    notes: List[str] = field(default_factory=list)


# =============================================================================
# Estimator
# =============================================================================

def infer_deployment(model: ModelEntry) -> str:
    """Pick the lightest declared deployment, else guess from size."""
    for option in ("browser", "mobile", "edge"):
        if option in model.deployment_options:
            return option
    if model.size_mb < 50:
        return "mobile"
    if model.size_mb < 200:
        return "browser"
    if model.size_mb < 1000:
        return "cloud"
    return "server"


def infer_architecture(model: ModelEntry) -> str:
    text = f"{model.name} {model.external_ref} {model.description}".lower()
    for architecture, hints in _ARCHITECTURE_HINTS:
        if any(hint in text for hint in hints):
            return architecture
    return "cnn"


def _impact_score(daily_kwh: float) -> int:
    low, medium = IMPACT_SCORE_LIMITS_KWH
    if daily_kwh < low:
        return 1
    if daily_kwh < medium:
        return 2
    return 3


def estimate_impact(model: ModelEntry, scenario: Optional[DeploymentScenario] = None) -> ImpactEstimate:
    """
    Estimate power and carbon for ``model``.

    Args:
        model: Catalog model
        scenario: Usage scenario (defaults to interactive use, 8h/day, 5 days/week)

    Returns:
        ImpactEstimate
    """
    scenario = scenario or DeploymentScenario()
    deployment = scenario.deployment or infer_deployment(model)
    architecture = infer_architecture(model)

    size_multiplier = math.log10(model.size_mb / 10) + 1
    watts = BASE_POWER_WATTS[deployment] * size_multiplier * ARCHITECTURE_MULTIPLIERS[architecture]
    for optimization in scenario.optimizations:
        watts *= OPTIMIZATION_MULTIPLIERS[optimization]
    watts = max(MIN_WATTS, watts)

    inferences_per_hour = USAGE_PATTERNS[scenario.usage_pattern]
    carbon_per_inference = (watts * HOURS_PER_INFERENCE / 1000) * CARBON_INTENSITY[deployment]
    carbon_daily = carbon_per_inference * inferences_per_hour * scenario.hours_per_day

    average_hourly_watts = watts * inferences_per_hour / 3600
    daily_kwh = average_hourly_watts * scenario.hours_per_day / 1000

    notes = []
    if model.size_mb > 500:
        notes.append("Consider a smaller or distilled variant of this model.")
    if deployment == "server" and model.size_mb < 200:
        notes.append("Small enough for edge deployment, which usually uses less energy.")
    if not scenario.optimizations:
        notes.append("Quantization, pruning or distillation can cut energy use by 20-50%.")
    if scenario.usage_pattern == "realtime":
        notes.append("Real-time inference is costly; batching or caching can help.")

    return ImpactEstimate(
        model_id=model.id,
        deployment=deployment,
        architecture=architecture,
        inference_watts=watts,
        daily_kwh=daily_kwh,
        weekly_kwh=daily_kwh * scenario.days_per_week,
        carbon_per_inference_g=carbon_per_inference,
        carbon_daily_g=carbon_daily,
        carbon_weekly_g=carbon_daily * scenario.days_per_week,
        impact_score=_impact_score(daily_kwh),
        notes=notes,
    )


def compare_models(models: Sequence[ModelEntry], scenario: Optional[DeploymentScenario] = None) -> List[ImpactEstimate]:
    """Estimates for several models, lowest daily energy first."""
    estimates = [estimate_impact(m, scenario) for m in models]
    estimates.sort(key=lambda e: (e.daily_kwh, e.model_id))
    return estimates
