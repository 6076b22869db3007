"""ORM models for pipeline stages, leads and the stage-transition ledger."""

import uuid

from sqlalchemy import Column, DateTime, Boolean, ForeignKey, Index, Integer, String, Text, event, func
from sqlalchemy.orm import DeclarativeBase

from funnel_brain.errors import LedgerImmutableError


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


class PipelineStage(Base):
    """A funnel stage. Position defines the funnel order."""

    __tablename__ = "pipeline_stages"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    position = Column(Integer, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    color = Column(String(20), nullable=True)  # hex, board column colour
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Lead(Base):
    """The slice of a lead record this service owns: identity and stage pointer."""

    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    persona = Column(String(50), nullable=True)  # donor/student/volunteer/parent/provider
    current_stage = Column(String(100), nullable=True, index=True)  # slug of latest transition
    stage_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class StageTransition(Base):
    """Append-only ledger row: one funnel-stage change for one lead."""

    __tablename__ = "stage_transitions"
    __table_args__ = (
        Index("ix_stage_transitions_lead_time", "lead_id", "occurred_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(String(36), ForeignKey("leads.id", ondelete="RESTRICT"), nullable=False)
    from_stage = Column(String(100), nullable=True)  # null on first entry
    to_stage = Column(String(100), nullable=False, index=True)
    actor_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


@event.listens_for(StageTransition, "before_update")
def _reject_transition_update(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Stage transition {target.id} is append-only and cannot be modified")


@event.listens_for(StageTransition, "before_delete")
def _reject_transition_delete(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Stage transition {target.id} is append-only and cannot be deleted")


# Import experiment models so Base.metadata picks them up for auto-create
import funnel_brain.db.experiment_models as _experiment_models  # noqa: E402, F401
