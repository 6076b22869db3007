"""ORM models for experiments: definitions, targets, variants, assignments, events."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)

from funnel_brain.db.models import Base
from funnel_brain.errors import LedgerImmutableError

EXPERIMENT_STATUSES = ("draft", "active", "paused", "completed")
EVENT_TYPES = ("exposure", "conversion", "custom")


def _uuid() -> str:
    return str(uuid.uuid4())


class Experiment(Base):
    """An A/B test definition."""

    __tablename__ = "experiments"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    content_type = Column(String(50), nullable=True)  # hero/cta/service/event/...
    status = Column(String(20), nullable=False, default="draft")  # draft/active/paused/completed
    traffic_allocation = Column(Integer, default=100)  # percent of eligible sessions
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    winner_variant_id = Column(String(36), nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ExperimentTarget(Base):
    """One persona x funnel-stage combination an experiment is shown to."""

    __tablename__ = "experiment_targets"
    __table_args__ = (
        UniqueConstraint("test_id", "persona", "funnel_stage", name="uq_experiment_target"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    persona = Column(String(50), nullable=False)
    funnel_stage = Column(String(100), nullable=False)


class Variant(Base):
    """A weighted arm of an experiment."""

    __tablename__ = "experiment_variants"

    id = Column(String(36), primary_key=True, default=_uuid)
    test_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    traffic_weight = Column(Float, nullable=False, default=50.0)
    is_control = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Assignment(Base):
    """Sticky variant choice for one session in one experiment."""

    __tablename__ = "experiment_assignments"
    __table_args__ = (
        UniqueConstraint("test_id", "session_id", name="uq_assignment_test_session"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    test_id = Column(String(36), ForeignKey("experiments.id", ondelete="RESTRICT"), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id", ondelete="RESTRICT"), nullable=False)
    session_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    persona = Column(String(50), nullable=True)  # snapshot at assignment time
    funnel_stage = Column(String(100), nullable=True)  # snapshot at assignment time
    assigned_at = Column(DateTime(timezone=True), server_default=func.now())


class ExperimentEvent(Base):
    """Append-only exposure / conversion / custom event."""

    __tablename__ = "experiment_events"
    __table_args__ = (
        Index("ix_experiment_events_test_variant", "test_id", "variant_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_id = Column(String(36), ForeignKey("experiments.id", ondelete="RESTRICT"), nullable=False)
    variant_id = Column(String(36), ForeignKey("experiment_variants.id", ondelete="RESTRICT"), nullable=False)
    session_id = Column(String(64), nullable=False)
    event_type = Column(String(20), nullable=False)  # exposure/conversion/custom
    event_name = Column(String(100), nullable=True)  # label for custom events
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


@event.listens_for(ExperimentEvent, "before_update")
def _reject_event_update(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Experiment event {target.id} is append-only and cannot be modified")


@event.listens_for(ExperimentEvent, "before_delete")
def _reject_event_delete(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Experiment event {target.id} is append-only and cannot be deleted")
