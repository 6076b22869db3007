"""Pipeline routes: stage transitions, board, funnel analytics."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_brain.action.dependencies import lead_dict, raise_http, stage_dict, transition_dict
from funnel_brain.db.connection import get_session
from funnel_brain.errors import FunnelBrainError
from funnel_brain.pipeline import funnel_analytics, ledger, stage_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class TransitionRequest(BaseModel):
    to_stage: str
    actor_id: Optional[str] = None
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/stages")
async def list_stages(session: AsyncSession = Depends(get_session)) -> list[dict]:
    """Active stages in funnel order."""
    stages = await stage_store.list_stages(session)
    return [stage_dict(s) for s in stages]


@router.post("/leads/{lead_id}/transition")
async def transition_lead(
    lead_id: str,
    req: TransitionRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Move a lead to another stage and append the ledger record."""
    try:
        lead = await ledger.record_transition(
            session, lead_id, req.to_stage, req.actor_id, req.reason,
        )
    except FunnelBrainError as exc:
        raise_http(exc)
    return lead_dict(lead)


@router.get("/leads/{lead_id}/history")
async def lead_history(lead_id: str, session: AsyncSession = Depends(get_session)) -> list[dict]:
    """Stage history of a lead, oldest first."""
    records = await ledger.get_history(session, lead_id)
    return [transition_dict(r) for r in records]


@router.get("/board")
async def board(session: AsyncSession = Depends(get_session)) -> dict:
    """Kanban snapshot: stages plus leads grouped by current stage slug."""
    try:
        snapshot = await stage_store.get_board_snapshot(session)
    except Exception:
        logger.exception("Board snapshot failed")
        await session.rollback()
        return {"stages": [], "leads_by_stage": {}}
    return {
        "stages": [stage_dict(s) for s in snapshot["stages"]],
        "leads_by_stage": {
            slug: [lead_dict(lead) for lead in leads]
            for slug, leads in snapshot["leads_by_stage"].items()
        },
    }


@router.get("/analytics")
async def analytics(session: AsyncSession = Depends(get_session)) -> list[dict]:
    """Per-stage counts, next-stage conversion, dwell time and bottleneck flag."""
    try:
        results = await funnel_analytics.get_funnel_analytics(session)
    except Exception:
        logger.exception("Funnel analytics failed")
        await session.rollback()
        return []
    return [r.to_dict() for r in results]


@router.get("/analytics/text", response_class=PlainTextResponse)
async def analytics_text(session: AsyncSession = Depends(get_session)) -> str:
    """The funnel table as plain text, for digests and terminals."""
    results = await funnel_analytics.get_funnel_analytics(session)
    return funnel_analytics.format_funnel_text(results)
