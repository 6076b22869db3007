"""CRUD and lifecycle for experiments, their targets and weighted variants."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from funnel_brain.db.experiment_models import (
    Assignment,
    Experiment,
    ExperimentEvent,
    ExperimentTarget,
    Variant,
)
from funnel_brain.errors import (
    ExperimentInUseError,
    InvalidTransitionError,
    InvalidWeightError,
    NoEligibleVariantsError,
    TestNotFoundError,
    UnknownVariantError,
)

logger = logging.getLogger(__name__)

# Allowed status moves; completed is terminal.
_TRANSITIONS = {
    "draft": {"active", "completed"},
    "active": {"paused", "completed"},
    "paused": {"active", "completed"},
    "completed": set(),
}

_EXPERIMENT_FIELDS = {
    "name", "description", "content_type", "traffic_allocation", "start_date", "end_date",
}
_VARIANT_FIELDS = {"name", "traffic_weight", "is_control"}


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


async def create_experiment(
    session: AsyncSession,
    name: str,
    description: str | None = None,
    content_type: str | None = None,
    traffic_allocation: int = 100,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    created_by: str | None = None,
) -> Experiment:
    """Create a draft experiment."""
    experiment = Experiment(
        name=name,
        description=description,
        content_type=content_type,
        status="draft",
        traffic_allocation=traffic_allocation,
        start_date=start_date,
        end_date=end_date,
        created_by=created_by,
    )
    session.add(experiment)
    await session.commit()
    await session.refresh(experiment)
    logger.info("Created experiment %s (%s)", experiment.id, name)
    return experiment


async def get_experiment(session: AsyncSession, test_id: str) -> Experiment | None:
    result = await session.execute(select(Experiment).where(Experiment.id == test_id))
    return result.scalar_one_or_none()


async def require_experiment(session: AsyncSession, test_id: str) -> Experiment:
    experiment = await get_experiment(session, test_id)
    if experiment is None:
        raise TestNotFoundError(test_id)
    return experiment


async def list_experiments(session: AsyncSession, status: str | None = None) -> list[Experiment]:
    q = select(Experiment).order_by(Experiment.created_at.desc())
    if status:
        q = q.where(Experiment.status == status)
    result = await session.execute(q)
    return list(result.scalars().all())


async def update_experiment(session: AsyncSession, test_id: str, **updates) -> Experiment:
    """Update descriptive fields. Status changes go through the lifecycle functions."""
    experiment = await require_experiment(session, test_id)
    for key, value in updates.items():
        if key in _EXPERIMENT_FIELDS:
            setattr(experiment, key, value)
    await session.commit()
    await session.refresh(experiment)
    return experiment


async def _has_traffic(session: AsyncSession, test_id: str, variant_id: str | None = None) -> bool:
    """True when any assignment or event references the test (or one variant of it)."""
    assignments = select(Assignment.id).where(Assignment.test_id == test_id)
    events = select(ExperimentEvent.id).where(ExperimentEvent.test_id == test_id)
    if variant_id is not None:
        assignments = assignments.where(Assignment.variant_id == variant_id)
        events = events.where(ExperimentEvent.variant_id == variant_id)
    result = await session.execute(select(or_(assignments.exists(), events.exists())))
    return bool(result.scalar())


async def delete_experiment(session: AsyncSession, test_id: str) -> bool:
    """Delete an experiment that is not running and never served traffic.

    Raises:
        ExperimentInUseError: the test is active or has assignments/events.
    """
    experiment = await get_experiment(session, test_id)
    if not experiment:
        return False
    if experiment.status == "active" or await _has_traffic(session, test_id):
        raise ExperimentInUseError(test_id)
    await session.delete(experiment)
    await session.commit()
    logger.info("Deleted experiment %s", test_id)
    return True


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _check_transition(experiment: Experiment, target: str) -> None:
    if target not in _TRANSITIONS.get(experiment.status, set()):
        raise InvalidTransitionError(experiment.id, experiment.status, target)


async def activate_experiment(session: AsyncSession, test_id: str) -> Experiment:
    """Move a draft or paused experiment to active.

    Raises:
        NoEligibleVariantsError: no variant carries a positive traffic weight.
    """
    experiment = await require_experiment(session, test_id)
    _check_transition(experiment, "active")

    variants = await get_variants(session, test_id)
    if not any(is_selectable_weight(v.traffic_weight) for v in variants):
        raise NoEligibleVariantsError(test_id)

    experiment.status = "active"
    if experiment.start_date is None:
        experiment.start_date = datetime.now(timezone.utc)
    await session.commit()
    await session.refresh(experiment)
    logger.info("Activated experiment %s with %d variants", test_id, len(variants))
    return experiment


async def pause_experiment(session: AsyncSession, test_id: str) -> Experiment:
    experiment = await require_experiment(session, test_id)
    _check_transition(experiment, "paused")
    experiment.status = "paused"
    await session.commit()
    await session.refresh(experiment)
    logger.info("Paused experiment %s", test_id)
    return experiment


async def complete_experiment(
    session: AsyncSession,
    test_id: str,
    winner_variant_id: str | None = None,
) -> Experiment:
    """Conclude an experiment, optionally recording the winning variant."""
    experiment = await require_experiment(session, test_id)
    _check_transition(experiment, "completed")

    if winner_variant_id is not None:
        winner = await get_variant(session, winner_variant_id)
        if winner is None or winner.test_id != test_id:
            raise UnknownVariantError(test_id, winner_variant_id)

    experiment.status = "completed"
    experiment.end_date = datetime.now(timezone.utc)
    experiment.winner_variant_id = winner_variant_id
    await session.commit()
    await session.refresh(experiment)
    logger.info("Completed experiment %s (winner=%s)", test_id, winner_variant_id)
    return experiment


# ---------------------------------------------------------------------------
# Targeting
# ---------------------------------------------------------------------------


async def set_targets(
    session: AsyncSession,
    test_id: str,
    combinations: list[tuple[str, str]],
) -> list[ExperimentTarget]:
    """Replace the persona x funnel-stage targets of an experiment."""
    await require_experiment(session, test_id)
    try:
        await session.execute(delete(ExperimentTarget).where(ExperimentTarget.test_id == test_id))
        targets = [
            ExperimentTarget(test_id=test_id, persona=persona, funnel_stage=stage)
            for persona, stage in dict.fromkeys(combinations)
        ]
        session.add_all(targets)
        await session.commit()
        return targets
    except Exception:
        logger.exception("Failed to set targets for experiment %s", test_id)
        await session.rollback()
        raise


async def get_targets(session: AsyncSession, test_id: str) -> list[ExperimentTarget]:
    result = await session.execute(
        select(ExperimentTarget).where(ExperimentTarget.test_id == test_id)
    )
    return list(result.scalars().all())


def matches_targeting(
    targets: list[ExperimentTarget],
    persona: str | None,
    funnel_stage: str | None,
) -> bool:
    """An untargeted experiment matches everyone; otherwise the pair must be listed."""
    if not targets:
        return True
    return any(t.persona == persona and t.funnel_stage == funnel_stage for t in targets)


async def get_active_experiments(
    session: AsyncSession,
    persona: str | None = None,
    funnel_stage: str | None = None,
    now: datetime | None = None,
) -> list[Experiment]:
    """Active experiments inside their schedule window.

    When both persona and funnel_stage are given, only experiments whose
    targeting matches the pair are returned.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(Experiment).where(
            and_(
                Experiment.status == "active",
                or_(Experiment.start_date.is_(None), Experiment.start_date <= now),
                or_(Experiment.end_date.is_(None), Experiment.end_date >= now),
            )
        ).order_by(Experiment.created_at)
    )
    experiments = list(result.scalars().all())
    if not persona or not funnel_stage:
        return experiments

    matched = []
    for experiment in experiments:
        targets = await get_targets(session, experiment.id)
        if matches_targeting(targets, persona, funnel_stage):
            matched.append(experiment)
    return matched


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


def is_selectable_weight(weight: float | None) -> bool:
    """A variant can be drawn only with a finite, positive weight."""
    return weight is not None and math.isfinite(weight) and weight > 0


def _check_weight(weight: float) -> float:
    if weight is None or not math.isfinite(weight) or weight < 0:
        raise InvalidWeightError(weight)
    return float(weight)


async def create_variant(
    session: AsyncSession,
    test_id: str,
    name: str,
    traffic_weight: float | None = None,
    is_control: bool = False,
) -> Variant:
    await require_experiment(session, test_id)
    weight = settings.default_variant_weight if traffic_weight is None else traffic_weight
    variant = Variant(
        test_id=test_id,
        name=name,
        traffic_weight=_check_weight(weight),
        is_control=is_control,
    )
    session.add(variant)
    await session.commit()
    await session.refresh(variant)
    return variant


async def get_variants(session: AsyncSession, test_id: str) -> list[Variant]:
    """Variants of an experiment in creation order (the assignment walk order)."""
    result = await session.execute(
        select(Variant)
        .where(Variant.test_id == test_id)
        .order_by(Variant.created_at, Variant.id)
    )
    return list(result.scalars().all())


async def get_variant(session: AsyncSession, variant_id: str) -> Variant | None:
    result = await session.execute(select(Variant).where(Variant.id == variant_id))
    return result.scalar_one_or_none()


async def update_variant(session: AsyncSession, variant_id: str, **updates) -> Variant | None:
    variant = await get_variant(session, variant_id)
    if variant is None:
        return None
    for key, value in updates.items():
        if key not in _VARIANT_FIELDS:
            continue
        if key == "traffic_weight":
            value = _check_weight(value)
        setattr(variant, key, value)
    await session.commit()
    await session.refresh(variant)
    return variant


async def delete_variant(session: AsyncSession, variant_id: str) -> bool:
    """Delete a variant whose test is not running and that never served traffic.

    Raises:
        ExperimentInUseError: the parent test is active, or the variant has
            assignments/events.
    """
    variant = await get_variant(session, variant_id)
    if not variant:
        return False
    experiment = await get_experiment(session, variant.test_id)
    if (experiment is not None and experiment.status == "active") or await _has_traffic(
        session, variant.test_id, variant_id,
    ):
        raise ExperimentInUseError(variant.test_id, what="Variant")
    await session.delete(variant)
    await session.commit()
    return True
