"""Append-only experiment event log (exposures, conversions, custom events).

Events are not deduplicated: a session that converts twice is counted
twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_brain.db.experiment_models import EVENT_TYPES, ExperimentEvent, Variant
from funnel_brain.errors import InvalidEventTypeError, UnknownVariantError

logger = logging.getLogger(__name__)


async def track_event(
    session: AsyncSession,
    test_id: str,
    variant_id: str,
    session_id: str,
    event_type: str,
    event_name: str | None = None,
) -> ExperimentEvent:
    """Append one event after checking the (test, variant) pair exists.

    Raises:
        InvalidEventTypeError: event_type outside exposure/conversion/custom.
        UnknownVariantError: the variant does not exist or belongs to another test.
    """
    if event_type not in EVENT_TYPES:
        raise InvalidEventTypeError(event_type)

    result = await session.execute(
        select(Variant.id).where(Variant.id == variant_id, Variant.test_id == test_id)
    )
    if result.scalar_one_or_none() is None:
        raise UnknownVariantError(test_id, variant_id)

    event = ExperimentEvent(
        test_id=test_id,
        variant_id=variant_id,
        session_id=session_id,
        event_type=event_type,
        event_name=event_name,
        occurred_at=datetime.now(timezone.utc),
    )
    try:
        session.add(event)
        await session.commit()
        await session.refresh(event)
    except Exception:
        logger.exception("Failed to track %s event for test %s", event_type, test_id)
        await session.rollback()
        raise
    return event


async def get_test_events(
    session: AsyncSession,
    test_id: str,
    limit: int = 500,
) -> list[ExperimentEvent]:
    """Most recent events of a test, newest first."""
    result = await session.execute(
        select(ExperimentEvent)
        .where(ExperimentEvent.test_id == test_id)
        .order_by(ExperimentEvent.occurred_at.desc(), ExperimentEvent.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
