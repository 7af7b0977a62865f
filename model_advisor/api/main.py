"""
HTTP surface for the Model Advisor.

Thin FastAPI layer over ModelAdvisor:
- POST /v1/classify     classify a task description
- POST /v1/clarify      answer or skip a clarification request
- POST /v1/recommend    tiered model recommendations
- GET  /v1/models/{id}/impact   environmental impact estimate

Classify and clarify requests carrying the same ``session_id`` supersede one
another; requests without one run independently.

Run with:
    uvicorn model_advisor.api.main:app
"""

import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from model_advisor.schemas.classification import ClassificationMode
from model_advisor.schemas.recommendation import MAX_ACCURACY_THRESHOLD, MIN_ACCURACY_THRESHOLD, FilterState
from model_advisor.services.advisor import ModelAdvisor, RequestSuperseded
from model_advisor.services.classification.pipeline import SKIP
from model_advisor.services.environmental import DeploymentScenario, estimate_impact
from model_advisor.utils.logger import log

app = FastAPI(
    title="Model Advisor",
    description="Task classification and tiered AI model recommendations.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_advisor: Optional[ModelAdvisor] = None


def get_advisor() -> ModelAdvisor:
    """Process-wide advisor, created from the user config on first use."""
    global _advisor
    if _advisor is None:
        _advisor = ModelAdvisor.from_config()
    return _advisor


# --- Request Models ---

class ClassifyRequest(BaseModel):
    text: str = ""
    mode: ClassificationMode = ClassificationMode.FAST
    # Requests sharing a session id supersede each other; none means standalone
    session_id: Optional[str] = Field(None, min_length=1, max_length=128)


class ClarifyRequest(BaseModel):
    original_text: str
    answer: Optional[str] = None
    skip: bool = False
    mode: ClassificationMode = ClassificationMode.FAST
    session_id: Optional[str] = Field(None, min_length=1, max_length=128)


class RecommendRequest(BaseModel):
    category: str
    subcategory: str
    min_accuracy_threshold: float = Field(0, ge=MIN_ACCURACY_THRESHOLD, le=MAX_ACCURACY_THRESHOLD)
    deployment_target: Optional[str] = None


# --- Endpoints ---

@app.get("/health", tags=["System"])
async def health_check():
    """Verify API is alive."""
    return {"status": "ok", "timestamp": time.time()}


@app.post("/v1/classify", tags=["Classification"])
async def classify(request: ClassifyRequest, advisor: ModelAdvisor = Depends(get_advisor)):
    try:
        result = await advisor.classify(request.text, request.mode, session_id=request.session_id)
    except RequestSuperseded as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return result.to_dict()


@app.post("/v1/clarify", tags=["Classification"])
async def clarify(request: ClarifyRequest, advisor: ModelAdvisor = Depends(get_advisor)):
    if not request.skip and not (request.answer or "").strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide an answer or set skip=true.",
        )
    answer = SKIP if request.skip else request.answer
    try:
        result = await advisor.resolve_clarification(
            request.original_text, answer, request.mode, session_id=request.session_id
        )
    except RequestSuperseded as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return result.to_dict()


@app.post("/v1/recommend", tags=["Recommendation"])
async def recommend(request: RecommendRequest, advisor: ModelAdvisor = Depends(get_advisor)):
    filter_state = FilterState(
        min_accuracy_threshold=request.min_accuracy_threshold,
        deployment_target=request.deployment_target,
    )
    return advisor.recommend(request.category, request.subcategory, filter_state).to_dict()


@app.get("/v1/models/{model_id}/impact", tags=["Recommendation"])
async def model_impact(
    model_id: str,
    deployment: Optional[str] = None,
    usage_pattern: str = "interactive",
    advisor: ModelAdvisor = Depends(get_advisor),
):
    model = advisor.context.catalog.get_model(model_id)
    if model is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model: {model_id}")
    try:
        scenario = DeploymentScenario(deployment=deployment, usage_pattern=usage_pattern)
    except ValueError as e:
        log.warning(f"Rejected impact scenario for {model_id}: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    estimate = estimate_impact(model, scenario)
    return {
        "model_id": estimate.model_id,
        "tier_environmental_score": model.environmental_score,
        "deployment": estimate.deployment,
        "architecture": estimate.architecture,
        "inference_watts": round(estimate.inference_watts, 2),
        "daily_kwh": round(estimate.daily_kwh, 5),
        "weekly_kwh": round(estimate.weekly_kwh, 5),
        "carbon_daily_g": round(estimate.carbon_daily_g, 3),
        "impact_score": estimate.impact_score,
        "notes": estimate.notes,
    }
