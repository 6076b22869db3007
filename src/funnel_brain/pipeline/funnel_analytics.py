"""Funnel analytics: per-stage counts, conversion, dwell time and bottlenecks.

Everything is recomputed from the transition ledger on each call.  The core
is a pure function over plain objects (anything with ``slug``/``name``/
``position`` for stages and ``lead_id``/``from_stage``/``to_stage``/
``occurred_at`` for ledger records); ``get_funnel_analytics`` loads those
from the database.

Dwell time only counts entries that already have an exit.  Leads still
sitting in a stage are left out of the average, so slow movers understate
it until they leave.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from funnel_brain.pipeline import ledger
from funnel_brain.pipeline.stage_store import list_stages

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass
class StageAnalytics:
    """Metrics for a single funnel stage."""
    stage: str
    stage_slug: str
    position: int
    leads_in_stage: int
    total_entered: int
    conversion_rate: float | None  # % of entries that exited to the next stage
    avg_time_in_days: float | None  # mean dwell over entries that have exited
    is_bottleneck: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _match_exits(transitions: Iterable[Any]) -> list[tuple[Any, Any | None]]:
    """Pair every entry record with the lead's next record leaving that stage.

    Records are taken in the order given (ledger order); for each entry into
    stage S the exit is the first later record of the same lead whose
    ``from_stage`` is S.  Entries with no exit yet are paired with None.
    """
    by_lead: dict[str, list[Any]] = defaultdict(list)
    for record in transitions:
        by_lead[record.lead_id].append(record)

    pairs: list[tuple[Any, Any | None]] = []
    for records in by_lead.values():
        for i, entry in enumerate(records):
            exit_record = next(
                (r for r in records[i + 1:] if r.from_stage == entry.to_stage),
                None,
            )
            pairs.append((entry, exit_record))
    return pairs


def is_bottleneck(
    avg_time_in_days: float | None,
    conversion_rate: float | None,
    dwell_threshold_days: float,
    conversion_threshold_pct: float,
) -> bool:
    slow = avg_time_in_days is not None and avg_time_in_days > dwell_threshold_days
    leaky = conversion_rate is not None and conversion_rate < conversion_threshold_pct
    return slow or leaky


def compute_analytics(
    stages: Sequence[Any],
    current_counts: dict[str, int],
    transitions: Sequence[Any],
    dwell_threshold_days: float = 7.0,
    conversion_threshold_pct: float = 50.0,
) -> list[StageAnalytics]:
    """Compute one StageAnalytics per stage.

    Args:
        stages: Stage definitions; sorted by position here.
        current_counts: Leads per current stage slug.
        transitions: Ledger records in ledger order (occurred_at, id).
        dwell_threshold_days: Average dwell above this flags a bottleneck.
        conversion_threshold_pct: Next-stage conversion below this flags a bottleneck.

    Returns:
        List of StageAnalytics in funnel order. Never raises on empty input.
    """
    ordered = sorted(stages, key=lambda s: s.position)

    entered: dict[str, int] = defaultdict(int)
    to_next_slug: dict[str, str | None] = {
        s.slug: (ordered[i + 1].slug if i + 1 < len(ordered) else None)
        for i, s in enumerate(ordered)
    }
    exits_to_next: dict[str, int] = defaultdict(int)
    durations: dict[str, list[float]] = defaultdict(list)

    for entry, exit_record in _match_exits(transitions):
        slug = entry.to_stage
        entered[slug] += 1
        if exit_record is None:
            continue
        next_slug = to_next_slug.get(slug)
        if next_slug is not None and exit_record.to_stage == next_slug:
            exits_to_next[slug] += 1
        elapsed = (exit_record.occurred_at - entry.occurred_at).total_seconds()
        durations[slug].append(elapsed / SECONDS_PER_DAY)

    results: list[StageAnalytics] = []
    for stage in ordered:
        total = entered.get(stage.slug, 0)

        conversion_rate = None
        if to_next_slug[stage.slug] is not None and total > 0:
            conversion_rate = round(exits_to_next.get(stage.slug, 0) / total * 100, 1)

        dwell = durations.get(stage.slug)
        avg_days = sum(dwell) / len(dwell) if dwell else None

        results.append(StageAnalytics(
            stage=stage.name,
            stage_slug=stage.slug,
            position=stage.position,
            leads_in_stage=current_counts.get(stage.slug, 0),
            total_entered=total,
            conversion_rate=conversion_rate,
            avg_time_in_days=avg_days,
            is_bottleneck=is_bottleneck(
                avg_days, conversion_rate, dwell_threshold_days, conversion_threshold_pct,
            ),
        ))

    return results


async def get_funnel_analytics(
    session: AsyncSession,
    stages: Sequence[Any] | None = None,
) -> list[StageAnalytics]:
    """Load the ledger and current pointers, then compute per-stage analytics."""
    if stages is None:
        stages = await list_stages(session)
    if not stages:
        return []

    current_counts = await ledger.count_current_stages(session)
    transitions = await ledger.load_transitions(session)
    logger.debug("Computing funnel analytics over %d stages, %d records", len(stages), len(transitions))

    return compute_analytics(
        stages,
        current_counts,
        transitions,
        dwell_threshold_days=settings.bottleneck_dwell_days,
        conversion_threshold_pct=settings.bottleneck_conversion_pct,
    )


def format_funnel_text(results: Sequence[StageAnalytics]) -> str:
    """Plain-text funnel table for logs and email digests."""
    lines = ["Funnel Analytics", "=" * 60]
    for r in results:
        rate = f"{r.conversion_rate:.1f}%" if r.conversion_rate is not None else "n/a"
        dwell = f"{r.avg_time_in_days:.1f}d" if r.avg_time_in_days is not None else "n/a"
        flag = "  << bottleneck" if r.is_bottleneck else ""
        lines.append(
            f"  {r.stage:<20} now {r.leads_in_stage:>5}  entered {r.total_entered:>5}  "
            f"next {rate:>6}  dwell {dwell:>6}{flag}"
        )
    return "\n".join(lines)
