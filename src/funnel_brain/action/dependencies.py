"""Shared helpers for API routers: error mapping and serialisation."""

import logging
from datetime import datetime
from typing import NoReturn, Optional

from fastapi import HTTPException

from funnel_brain.errors import FunnelBrainError

logger = logging.getLogger(__name__)


def raise_http(exc: FunnelBrainError) -> NoReturn:
    """Translate a domain error into the HTTP error the API answers with."""
    logger.info("Rejected request: %s", exc.message)
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# ORM -> dict
# ---------------------------------------------------------------------------


def stage_dict(s) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "slug": s.slug,
        "position": s.position,
        "description": s.description,
        "color": s.color,
    }


def lead_dict(lead) -> dict:
    return {
        "id": lead.id,
        "name": lead.name,
        "email": lead.email,
        "persona": lead.persona,
        "current_stage": lead.current_stage,
        "stage_updated_at": iso(lead.stage_updated_at),
    }


def transition_dict(t) -> dict:
    return {
        "id": t.id,
        "lead_id": t.lead_id,
        "from_stage": t.from_stage,
        "to_stage": t.to_stage,
        "actor_id": t.actor_id,
        "reason": t.reason,
        "occurred_at": iso(t.occurred_at),
    }


def experiment_dict(e) -> dict:
    return {
        "id": e.id,
        "name": e.name,
        "description": e.description,
        "content_type": e.content_type,
        "status": e.status,
        "traffic_allocation": e.traffic_allocation,
        "start_date": iso(e.start_date),
        "end_date": iso(e.end_date),
        "winner_variant_id": e.winner_variant_id,
        "created_by": e.created_by,
        "created_at": iso(e.created_at),
    }


def variant_dict(v) -> dict:
    return {
        "id": v.id,
        "test_id": v.test_id,
        "name": v.name,
        "traffic_weight": v.traffic_weight,
        "is_control": bool(v.is_control),
    }


def assignment_dict(a) -> dict:
    return {
        "id": a.id,
        "test_id": a.test_id,
        "variant_id": a.variant_id,
        "session_id": a.session_id,
        "user_id": a.user_id,
        "persona": a.persona,
        "funnel_stage": a.funnel_stage,
        "assigned_at": iso(a.assigned_at),
    }


def event_dict(ev) -> dict:
    return {
        "id": ev.id,
        "test_id": ev.test_id,
        "variant_id": ev.variant_id,
        "session_id": ev.session_id,
        "event_type": ev.event_type,
        "event_name": ev.event_name,
        "occurred_at": iso(ev.occurred_at),
    }
