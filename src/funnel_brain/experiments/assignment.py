"""Sticky weighted variant assignment.

One assignment per (test, session), enforced by a unique constraint.  New
assignments are written with ``INSERT ... ON CONFLICT DO NOTHING`` and then
re-read, so two sessions racing for the first assignment both come back
with whichever row won.
"""

from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_brain.db.experiment_models import Assignment, Variant
from funnel_brain.errors import NoVariantsError, TestNotActiveError
from funnel_brain.experiments.registry import get_experiment, get_variants, is_selectable_weight

logger = logging.getLogger(__name__)


class _Random(Protocol):
    def random(self) -> float: ...


_rng = random.Random()


def pick_variant(variants: Sequence[Variant], rng: _Random | None = None) -> Variant:
    """Weighted random choice, walking variants in the order given.

    Draws r uniformly from [0, total_weight) and subtracts each weight in
    turn; the first variant that brings r to <= 0 is chosen.  Variants with zero
    and non-finite weights are skipped so they can never be picked.

    Raises:
        NoVariantsError: no variant has a positive weight.
    """
    eligible = [v for v in variants if is_selectable_weight(v.traffic_weight)]
    if not eligible:
        raise NoVariantsError(variants[0].test_id if variants else "")

    total = sum(v.traffic_weight for v in eligible)
    r = (rng or _rng).random() * total
    for variant in eligible:
        r -= variant.traffic_weight
        if r <= 0:
            return variant
    # float drift on the last subtraction
    return eligible[-1]


async def get_assignment(session: AsyncSession, test_id: str, session_id: str) -> Assignment | None:
    result = await session.execute(
        select(Assignment).where(
            Assignment.test_id == test_id,
            Assignment.session_id == session_id,
        )
    )
    return result.scalar_one_or_none()


async def get_session_assignments(session: AsyncSession, session_id: str) -> list[Assignment]:
    result = await session.execute(
        select(Assignment)
        .where(Assignment.session_id == session_id)
        .order_by(Assignment.assigned_at)
    )
    return list(result.scalars().all())


async def get_or_create_assignment(
    session: AsyncSession,
    test_id: str,
    session_id: str,
    persona: str | None = None,
    funnel_stage: str | None = None,
    user_id: str | None = None,
    rng: _Random | None = None,
) -> Assignment:
    """Return the session's assignment for a test, creating it on first call.

    An existing assignment is returned as-is whatever the test's status.

    Raises:
        TestNotActiveError: no assignment yet and the test is missing or not active.
        NoVariantsError: the test has no variant with a positive weight.
    """
    existing = await get_assignment(session, test_id, session_id)
    if existing is not None:
        return existing

    experiment = await get_experiment(session, test_id)
    if experiment is None or experiment.status != "active":
        raise TestNotActiveError(test_id)

    variants = await get_variants(session, test_id)
    if not variants:
        raise NoVariantsError(test_id)
    chosen = pick_variant(variants, rng)

    stmt = (
        pg_insert(Assignment)
        .values(
            id=str(uuid.uuid4()),
            test_id=test_id,
            variant_id=chosen.id,
            session_id=session_id,
            user_id=user_id,
            persona=persona,
            funnel_stage=funnel_stage,
            assigned_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["test_id", "session_id"])
    )
    try:
        result = await session.execute(stmt)
        await session.commit()
    except Exception:
        logger.exception("Failed to persist assignment for test %s session %s", test_id, session_id)
        await session.rollback()
        raise

    if result.rowcount == 0:
        logger.info("Assignment race on test %s session %s; returning stored winner", test_id, session_id)

    assignment = await get_assignment(session, test_id, session_id)
    if assignment is None:
        # The insert either wrote the row or lost to a committed one.
        raise RuntimeError(f"Assignment for test {test_id} session {session_id} vanished after insert")
    return assignment
