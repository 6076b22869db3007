"""Stage-transition ledger: append a transition and move the lead pointer atomically."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_brain.db.models import Lead, StageTransition
from funnel_brain.errors import LeadNotFoundError, UnknownStageError
from funnel_brain.pipeline.stage_store import get_stage

logger = logging.getLogger(__name__)


async def record_transition(
    session: AsyncSession,
    lead_id: str,
    to_stage: str,
    actor_id: str | None,
    reason: str | None = None,
) -> Lead:
    """Move a lead to ``to_stage`` and append the ledger record.

    The lead row is locked for the duration of the transaction so concurrent
    writers for the same lead serialize, and the record insert and pointer
    update commit together or not at all.

    Raises:
        UnknownStageError: ``to_stage`` is not a configured stage slug.
        LeadNotFoundError: no lead with ``lead_id``.
    """
    try:
        stage = await get_stage(session, to_stage)
        if stage is None:
            raise UnknownStageError(to_stage)

        # from_stage must come from the locked row, not an identity-map copy
        result = await session.execute(
            select(Lead)
            .where(Lead.id == lead_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        lead = result.scalar_one_or_none()
        if lead is None:
            raise LeadNotFoundError(lead_id)

        now = datetime.now(timezone.utc)
        record = StageTransition(
            lead_id=lead_id,
            from_stage=lead.current_stage,
            to_stage=to_stage,
            actor_id=actor_id,
            reason=reason,
            occurred_at=now,
        )
        session.add(record)
        lead.current_stage = to_stage
        lead.stage_updated_at = now

        await session.commit()
        await session.refresh(lead)
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Lead %s moved %s -> %s by %s", lead_id, record.from_stage or "(entry)", to_stage, actor_id,
    )
    return lead


async def get_history(session: AsyncSession, lead_id: str) -> list[StageTransition]:
    """A lead's transitions, oldest first."""
    result = await session.execute(
        select(StageTransition)
        .where(StageTransition.lead_id == lead_id)
        .order_by(StageTransition.occurred_at, StageTransition.id)
    )
    return list(result.scalars().all())


async def load_transitions(session: AsyncSession) -> list[StageTransition]:
    """Every ledger record in ledger order, for analytics."""
    result = await session.execute(
        select(StageTransition).order_by(StageTransition.occurred_at, StageTransition.id)
    )
    return list(result.scalars().all())


async def count_current_stages(session: AsyncSession) -> dict[str, int]:
    """Number of leads per current stage slug."""
    result = await session.execute(
        select(Lead.current_stage, func.count(Lead.id))
        .where(Lead.current_stage.is_not(None))
        .group_by(Lead.current_stage)
    )
    return {slug: int(count) for slug, count in result.all()}
