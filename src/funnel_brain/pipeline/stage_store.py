"""Read access to the pipeline stage catalog and the kanban board."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_brain.db.models import Lead, PipelineStage

logger = logging.getLogger(__name__)


async def list_stages(session: AsyncSession) -> list[PipelineStage]:
    """Active stages in funnel order."""
    result = await session.execute(
        select(PipelineStage)
        .where(PipelineStage.is_active == True)  # noqa: E712
        .order_by(PipelineStage.position)
    )
    return list(result.scalars().all())


async def get_stage(session: AsyncSession, slug: str) -> PipelineStage | None:
    result = await session.execute(select(PipelineStage).where(PipelineStage.slug == slug))
    return result.scalar_one_or_none()


async def upsert_stage(
    session: AsyncSession,
    slug: str,
    name: str,
    position: int,
    description: str | None = None,
    color: str | None = None,
) -> PipelineStage:
    """Create or update a stage definition (configuration path, not the engine)."""
    try:
        stage = await get_stage(session, slug)
        if stage:
            stage.name = name
            stage.position = position
            stage.description = description
            stage.color = color
        else:
            stage = PipelineStage(
                slug=slug,
                name=name,
                position=position,
                description=description,
                color=color,
                is_active=True,
            )
            session.add(stage)
        await session.commit()
        await session.refresh(stage)
        return stage
    except Exception:
        logger.exception("Failed to upsert pipeline stage: %s", slug)
        await session.rollback()
        raise


async def get_board_snapshot(
    session: AsyncSession,
    stages: list[PipelineStage] | None = None,
) -> dict:
    """Leads grouped by current stage slug, one bucket per stage.

    Leads pointing at a stage outside ``stages`` are left off the board.
    """
    if stages is None:
        stages = await list_stages(session)

    buckets: dict[str, list[Lead]] = {s.slug: [] for s in stages}
    if not buckets:
        return {"stages": stages, "leads_by_stage": buckets}

    result = await session.execute(
        select(Lead)
        .where(Lead.current_stage.in_(list(buckets)))
        .order_by(Lead.stage_updated_at.desc())
    )
    for lead in result.scalars().all():
        buckets.setdefault(lead.current_stage, []).append(lead)

    return {"stages": stages, "leads_by_stage": buckets}
