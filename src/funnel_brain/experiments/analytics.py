"""Per-variant experiment statistics and two-proportion significance tests.

Counting is done in SQL; the statistics are pure functions over the counts
(numpy arrays + scipy's normal and beta distributions).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Sequence

import numpy as np
from scipy import stats as sp_stats
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from funnel_brain.db.experiment_models import ExperimentEvent, Variant
from funnel_brain.experiments.registry import get_variants, require_experiment

logger = logging.getLogger(__name__)


@dataclass
class VariantCounts:
    exposures: int = 0
    conversions: int = 0
    unique_sessions: int = 0  # distinct sessions with an exposure


@dataclass
class VariantStats:
    """Exposure/conversion statistics for one variant."""
    variant_id: str
    variant_name: str
    is_control: bool
    exposures: int
    conversions: int
    unique_sessions: int
    conversion_rate: float | None  # conversions / exposures
    lift: float | None = None  # % change in rate vs control
    z_score: float | None = None
    p_value: float | None = None
    confidence: float | None = None  # 1 - p_value
    is_significant: bool | None = None  # None on the control row

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def two_proportion_z_tests(
    control_conversions: int,
    control_exposures: int,
    conversions: Sequence[int] | np.ndarray,
    exposures: Sequence[int] | np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Pooled two-proportion z-test of each challenger against the control.

    Returns (z_scores, two_sided_p_values). Entries where either side has no
    exposures or the pooled standard error is zero come back as NaN.
    """
    conv = np.asarray(conversions, dtype=float)
    n = np.asarray(exposures, dtype=float)
    c_conv = float(control_conversions)
    c_n = float(control_exposures)

    with np.errstate(divide="ignore", invalid="ignore"):
        p_control = c_conv / c_n if c_n > 0 else np.nan
        p_challenger = conv / n
        pooled = (c_conv + conv) / (c_n + n)
        se = np.sqrt(pooled * (1 - pooled) * (1 / c_n + 1 / n)) if c_n > 0 else np.full_like(n, np.nan)
        z = (p_challenger - p_control) / se

    z = np.where((n > 0) & np.isfinite(z), z, np.nan)
    p = 2 * sp_stats.norm.sf(np.abs(z))
    return z, p


def two_proportion_z_test(
    control_conversions: int,
    control_exposures: int,
    conversions: int,
    exposures: int,
) -> tuple[float | None, float | None]:
    """Scalar form of two_proportion_z_tests; (None, None) when undefined."""
    z, p = two_proportion_z_tests(control_conversions, control_exposures, [conversions], [exposures])
    if np.isnan(z[0]):
        return None, None
    return float(z[0]), float(p[0])


def required_sample_size(
    baseline_rate: float,
    min_detectable_effect_pct: float,
    confidence: float = 0.95,
    power: float = 0.8,
) -> int:
    """Sessions needed per variant to detect a relative lift of the given size.

    Args:
        baseline_rate: Control conversion rate as a fraction (0.05 = 5%).
        min_detectable_effect_pct: Relative improvement to detect (20 = +20%).
        confidence: Two-sided confidence level.
        power: Probability of detecting the effect when it exists.
    """
    if not 0 < baseline_rate < 1:
        raise ValueError(f"baseline_rate must be in (0, 1), got {baseline_rate}")
    if min_detectable_effect_pct == 0:
        raise ValueError("min_detectable_effect_pct must be non-zero")

    expected = baseline_rate * (1 + min_detectable_effect_pct / 100)
    if not 0 < expected < 1:
        raise ValueError(f"Effect pushes the expected rate outside (0, 1): {expected}")

    z_alpha = sp_stats.norm.ppf(1 - (1 - confidence) / 2)
    z_beta = sp_stats.norm.ppf(power)
    pooled = (baseline_rate + expected) / 2

    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled))
        + z_beta * math.sqrt(baseline_rate * (1 - baseline_rate) + expected * (1 - expected))
    ) ** 2
    return math.ceil(numerator / (expected - baseline_rate) ** 2)


def _pick_control(variants: Sequence[Variant]) -> Variant | None:
    for v in variants:
        if v.is_control:
            return v
    return variants[0] if variants else None


def compute_variant_stats(
    variants: Sequence[Variant],
    counts: dict[str, VariantCounts],
    confidence: float = 0.95,
) -> list[VariantStats]:
    """Build per-variant stats, comparing every challenger to the control.

    The control is the variant flagged ``is_control``, else the first one.
    A challenger is significant when its two-sided p-value is below
    ``1 - confidence``.
    """
    if not variants:
        return []

    control = _pick_control(variants)
    rows: list[VariantStats] = []
    for v in variants:
        c = counts.get(v.id, VariantCounts())
        rows.append(VariantStats(
            variant_id=v.id,
            variant_name=v.name,
            is_control=v is control,
            exposures=c.exposures,
            conversions=c.conversions,
            unique_sessions=c.unique_sessions,
            conversion_rate=(c.conversions / c.exposures) if c.exposures > 0 else None,
        ))

    control_row = next(r for r in rows if r.is_control)
    challengers = [r for r in rows if not r.is_control]
    if not challengers:
        return rows

    z, p = two_proportion_z_tests(
        control_row.conversions,
        control_row.exposures,
        [r.conversions for r in challengers],
        [r.exposures for r in challengers],
    )
    alpha = 1 - confidence

    for row, z_i, p_i in zip(challengers, z, p):
        if control_row.conversion_rate and row.conversion_rate is not None:
            row.lift = (row.conversion_rate - control_row.conversion_rate) / control_row.conversion_rate * 100
        if np.isnan(z_i):
            row.is_significant = False
            continue
        row.z_score = float(z_i)
        row.p_value = float(p_i)
        row.confidence = 1 - float(p_i)
        row.is_significant = bool(p_i < alpha)

    return rows


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


async def count_events(session: AsyncSession, test_id: str) -> dict[str, VariantCounts]:
    """Exposure / conversion / unique-session counts per variant."""
    is_exposure = ExperimentEvent.event_type == "exposure"
    result = await session.execute(
        select(
            ExperimentEvent.variant_id,
            func.count(ExperimentEvent.id).filter(is_exposure),
            func.count(ExperimentEvent.id).filter(ExperimentEvent.event_type == "conversion"),
            func.count(distinct(ExperimentEvent.session_id)).filter(is_exposure),
        )
        .where(ExperimentEvent.test_id == test_id)
        .group_by(ExperimentEvent.variant_id)
    )
    return {
        variant_id: VariantCounts(
            exposures=int(exposures or 0),
            conversions=int(conversions or 0),
            unique_sessions=int(unique or 0),
        )
        for variant_id, exposures, conversions, unique in result.all()
    }


async def get_test_analytics(
    session: AsyncSession,
    test_id: str,
    confidence: float | None = None,
) -> list[VariantStats]:
    """Per-variant statistics for an experiment, recomputed from the event log.

    Raises:
        TestNotFoundError: unknown experiment.
    """
    await require_experiment(session, test_id)
    variants = await get_variants(session, test_id)
    counts = await count_events(session, test_id)
    threshold = settings.significance_confidence if confidence is None else confidence
    logger.debug("Analytics for %s: %d variants, %d with events", test_id, len(variants), len(counts))
    return compute_variant_stats(variants, counts, confidence=threshold)


# ---------------------------------------------------------------------------
# Winner evaluation
# ---------------------------------------------------------------------------


@dataclass
class WinnerEvaluation:
    """Bayesian read of the best challenger against the control."""
    test_id: str
    has_winner: bool
    should_stop: bool
    stop_reason: str  # winner_found / futility_stopped / continue_testing / insufficient_data
    winner_variant_id: str | None = None
    winner_name: str | None = None
    control_variant_id: str | None = None
    probability_beat_control: float | None = None
    expected_lift: float | None = None  # % change in rate vs control
    credible_interval: tuple[float, float] | None = None  # challenger rate
    is_significant: bool = False
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def probability_beats_control(
    control_conversions: int,
    control_exposures: int,
    conversions: int,
    exposures: int,
    draws: int = 20000,
    rng: np.random.Generator | None = None,
) -> float:
    """P(challenger rate > control rate) under Beta(1, 1) priors, by sampling."""
    rng = rng or np.random.default_rng()
    control = rng.beta(control_conversions + 1, control_exposures - control_conversions + 1, draws)
    challenger = rng.beta(conversions + 1, exposures - conversions + 1, draws)
    return float(np.mean(challenger > control))


def credible_interval(conversions: int, exposures: int, level: float = 0.95) -> tuple[float, float]:
    """Equal-tailed interval of the Beta posterior of a conversion rate."""
    tail = (1 - level) / 2
    a, b = conversions + 1, exposures - conversions + 1
    lower, upper = sp_stats.beta.ppf([tail, 1 - tail], a, b)
    return float(lower), float(upper)


def evaluate_stats(
    test_id: str,
    rows: Sequence[VariantStats],
    min_sample_size: int = 100,
    min_detectable_effect: float = 5.0,
    confidence: float = 0.95,
    futility_probability: float = 0.1,
    rng: np.random.Generator | None = None,
) -> WinnerEvaluation:
    """Decide whether the best challenger has beaten the control.

    The best challenger is the one with the highest conversion rate.  It wins
    when P(beats control) reaches ``confidence`` and its lift is at least
    ``min_detectable_effect`` percent.  A probability below
    ``futility_probability`` recommends stopping without a winner.
    """
    if len(rows) < 2:
        return WinnerEvaluation(
            test_id, False, False, "insufficient_data", message="Need at least 2 variants",
        )

    control = next((r for r in rows if r.is_control), rows[0])
    challengers = [r for r in rows if r is not control]
    best = max(challengers, key=lambda r: r.conversion_rate or 0.0)

    if control.exposures < min_sample_size or best.exposures < min_sample_size:
        return WinnerEvaluation(
            test_id, False, False, "insufficient_data",
            control_variant_id=control.variant_id,
            message=f"Insufficient sample size (need {min_sample_size} exposures per variant)",
        )

    prob = probability_beats_control(
        control.conversions, control.exposures, best.conversions, best.exposures, rng=rng,
    )
    control_rate = control.conversion_rate or 0.0
    best_rate = best.conversion_rate or 0.0
    lift = (best_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0
    significant = prob >= confidence and abs(lift) >= min_detectable_effect

    if significant:
        reason = "winner_found"
        message = f"{best.variant_name} beats control with {prob:.1%} probability"
    elif prob < futility_probability:
        reason = "futility_stopped"
        message = f"{best.variant_name} is unlikely to beat control ({prob:.1%})"
    else:
        reason = "continue_testing"
        message = "No conclusive result yet"

    logger.debug("Winner evaluation for %s: %s (p=%.4f, lift=%.2f%%)", test_id, reason, prob, lift)
    return WinnerEvaluation(
        test_id=test_id,
        has_winner=significant,
        should_stop=reason != "continue_testing",
        stop_reason=reason,
        winner_variant_id=best.variant_id if significant else None,
        winner_name=best.variant_name if significant else None,
        control_variant_id=control.variant_id,
        probability_beat_control=prob,
        expected_lift=lift,
        credible_interval=credible_interval(best.conversions, best.exposures, confidence),
        is_significant=significant,
        message=message,
    )


async def evaluate_winner(
    session: AsyncSession,
    test_id: str,
    rng: np.random.Generator | None = None,
) -> WinnerEvaluation:
    """Evaluate the experiment's event log for a winning variant.

    Raises:
        TestNotFoundError: unknown experiment.
    """
    rows = await get_test_analytics(session, test_id)
    return evaluate_stats(
        test_id,
        rows,
        min_sample_size=settings.min_sample_size,
        min_detectable_effect=settings.min_detectable_effect,
        confidence=settings.significance_confidence,
        futility_probability=settings.futility_probability,
        rng=rng,
    )
