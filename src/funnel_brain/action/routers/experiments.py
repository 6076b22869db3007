"""Experiment routes: registry, lifecycle, assignment, event tracking, analytics."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from funnel_brain.action.dependencies import (
    assignment_dict,
    event_dict,
    experiment_dict,
    raise_http,
    variant_dict,
)
from funnel_brain.db.connection import get_session
from funnel_brain.errors import FunnelBrainError
from funnel_brain.experiments import analytics, assignment, event_tracker, registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/experiments", tags=["experiments"])


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class ExperimentRequest(BaseModel):
    name: str
    description: Optional[str] = None
    content_type: Optional[str] = None
    traffic_allocation: int = Field(100, ge=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: Optional[str] = None


class ExperimentUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    content_type: Optional[str] = None
    traffic_allocation: Optional[int] = Field(None, ge=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class VariantRequest(BaseModel):
    name: str
    traffic_weight: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    is_control: bool = False


class VariantUpdateRequest(BaseModel):
    name: Optional[str] = None
    traffic_weight: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    is_control: Optional[bool] = None


class TargetRequest(BaseModel):
    persona: str
    funnel_stage: str


class TargetsRequest(BaseModel):
    targets: list[TargetRequest] = []


class CompleteRequest(BaseModel):
    winner_variant_id: Optional[str] = None


class AssignRequest(BaseModel):
    test_id: str
    session_id: str
    persona: Optional[str] = None
    funnel_stage: Optional[str] = None
    user_id: Optional[str] = None


class TrackRequest(BaseModel):
    test_id: str
    variant_id: str
    session_id: str
    event_type: str  # exposure/conversion/custom
    event_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Public routes (registered before /{test_id} so the literal paths win)
# ---------------------------------------------------------------------------


@router.get("/active")
async def active_experiments(
    persona: Optional[str] = None,
    funnel_stage: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Running experiments, filtered by targeting when persona and stage are given."""
    try:
        experiments = await registry.get_active_experiments(session, persona, funnel_stage)
    except Exception:
        logger.exception("Failed to fetch active experiments")
        await session.rollback()
        return []
    return [experiment_dict(e) for e in experiments]


@router.post("/assign")
async def assign_variant(req: AssignRequest, session: AsyncSession = Depends(get_session)) -> dict:
    """Get or create the sticky variant assignment for a session."""
    try:
        a = await assignment.get_or_create_assignment(
            session,
            req.test_id,
            req.session_id,
            persona=req.persona,
            funnel_stage=req.funnel_stage,
            user_id=req.user_id,
        )
    except FunnelBrainError as exc:
        raise_http(exc)
    return assignment_dict(a)


@router.post("/track", status_code=201)
async def track(req: TrackRequest, session: AsyncSession = Depends(get_session)) -> dict:
    """Append an exposure / conversion / custom event."""
    try:
        ev = await event_tracker.track_event(
            session, req.test_id, req.variant_id, req.session_id, req.event_type, req.event_name,
        )
    except FunnelBrainError as exc:
        raise_http(exc)
    return {"status": "accepted", "event": event_dict(ev)}


@router.get("/sessions/{session_id}/assignments")
async def session_assignments(session_id: str, session: AsyncSession = Depends(get_session)) -> list[dict]:
    rows = await assignment.get_session_assignments(session, session_id)
    return [assignment_dict(a) for a in rows]


@router.patch("/variants/{variant_id}")
async def update_variant(
    variant_id: str,
    req: VariantUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    try:
        variant = await registry.update_variant(session, variant_id, **req.model_dump(exclude_none=True))
    except FunnelBrainError as exc:
        raise_http(exc)
    if variant is None:
        raise HTTPException(status_code=404, detail="Variant not found")
    return variant_dict(variant)


@router.delete("/variants/{variant_id}", status_code=204)
async def delete_variant(variant_id: str, session: AsyncSession = Depends(get_session)) -> Response:
    try:
        deleted = await registry.delete_variant(session, variant_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    if not deleted:
        raise HTTPException(status_code=404, detail="Variant not found")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Registry routes
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_experiment(req: ExperimentRequest, session: AsyncSession = Depends(get_session)) -> dict:
    experiment = await registry.create_experiment(session, **req.model_dump())
    return experiment_dict(experiment)


@router.get("")
async def list_experiments(
    status: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
) -> list[dict]:
    experiments = await registry.list_experiments(session, status)
    return [experiment_dict(e) for e in experiments]


@router.get("/{test_id}")
async def get_experiment(test_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    experiment = await registry.get_experiment(session, test_id)
    if experiment is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    variants = await registry.get_variants(session, test_id)
    targets = await registry.get_targets(session, test_id)
    return {
        **experiment_dict(experiment),
        "variants": [variant_dict(v) for v in variants],
        "targets": [{"persona": t.persona, "funnel_stage": t.funnel_stage} for t in targets],
    }


@router.patch("/{test_id}")
async def update_experiment(
    test_id: str,
    req: ExperimentUpdateRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    try:
        experiment = await registry.update_experiment(session, test_id, **req.model_dump(exclude_none=True))
    except FunnelBrainError as exc:
        raise_http(exc)
    return experiment_dict(experiment)


@router.delete("/{test_id}", status_code=204)
async def delete_experiment(test_id: str, session: AsyncSession = Depends(get_session)) -> Response:
    try:
        deleted = await registry.delete_experiment(session, test_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    if not deleted:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return Response(status_code=204)


@router.post("/{test_id}/activate")
async def activate(test_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    try:
        experiment = await registry.activate_experiment(session, test_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    return experiment_dict(experiment)


@router.post("/{test_id}/pause")
async def pause(test_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    try:
        experiment = await registry.pause_experiment(session, test_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    return experiment_dict(experiment)


@router.post("/{test_id}/complete")
async def complete(
    test_id: str,
    req: CompleteRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    try:
        experiment = await registry.complete_experiment(session, test_id, req.winner_variant_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    return experiment_dict(experiment)


@router.put("/{test_id}/targets")
async def put_targets(
    test_id: str,
    req: TargetsRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    combinations = [(t.persona, t.funnel_stage) for t in req.targets]
    try:
        targets = await registry.set_targets(session, test_id, combinations)
    except FunnelBrainError as exc:
        raise_http(exc)
    return {"status": "updated", "total": len(targets)}


@router.get("/{test_id}/targets")
async def get_targets(test_id: str, session: AsyncSession = Depends(get_session)) -> list[dict]:
    targets = await registry.get_targets(session, test_id)
    return [{"persona": t.persona, "funnel_stage": t.funnel_stage} for t in targets]


@router.post("/{test_id}/variants", status_code=201)
async def create_variant(
    test_id: str,
    req: VariantRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    try:
        variant = await registry.create_variant(
            session, test_id, req.name, traffic_weight=req.traffic_weight, is_control=req.is_control,
        )
    except FunnelBrainError as exc:
        raise_http(exc)
    return variant_dict(variant)


@router.get("/{test_id}/variants")
async def list_variants(test_id: str, session: AsyncSession = Depends(get_session)) -> list[dict]:
    variants = await registry.get_variants(session, test_id)
    return [variant_dict(v) for v in variants]


@router.get("/{test_id}/events")
async def list_events(
    test_id: str,
    limit: int = Query(500, ge=1, le=5000),
    session: AsyncSession = Depends(get_session),
) -> list[dict]:
    events = await event_tracker.get_test_events(session, test_id, limit=limit)
    return [event_dict(ev) for ev in events]


@router.get("/{test_id}/analytics")
async def test_analytics(
    test_id: str,
    confidence: Optional[float] = Query(None, gt=0, lt=1),
    session: AsyncSession = Depends(get_session),
) -> list[dict]:
    """Per-variant exposures, conversions, rates and significance vs control."""
    try:
        stats = await analytics.get_test_analytics(session, test_id, confidence=confidence)
    except FunnelBrainError as exc:
        raise_http(exc)
    return [s.to_dict() for s in stats]


@router.get("/{test_id}/sample-size")
async def sample_size(
    test_id: str,
    baseline_rate: float,
    min_detectable_effect_pct: float,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Sessions needed per variant to detect the given relative lift."""
    try:
        await registry.require_experiment(session, test_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    try:
        n = analytics.required_sample_size(
            baseline_rate,
            min_detectable_effect_pct,
            confidence=settings.significance_confidence,
            power=settings.sample_size_power,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"test_id": test_id, "per_variant": n}


@router.get("/{test_id}/winner")
async def winner(test_id: str, session: AsyncSession = Depends(get_session)) -> dict:
    """Bayesian winner check: probability the best challenger beats control."""
    try:
        evaluation = await analytics.evaluate_winner(session, test_id)
    except FunnelBrainError as exc:
        raise_http(exc)
    return evaluation.to_dict()
