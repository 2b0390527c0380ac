"""
SQLAlchemy Database Models
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from realty.pipeline.models import utcnow


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class Lead(Base):
    """Prospective buyer (owned by the intake flow, read-only here)"""
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Computed by the scoring service
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    budget_estimate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    assignments = relationship("LeadAssignment", back_populates="lead")


class SalesActor(Base):
    """Sales manager"""
    __tablename__ = "sales_actors"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    assignments = relationship("LeadAssignment", back_populates="actor")


class LeadAssignment(Base):
    """Lead handed to a sales actor"""
    __tablename__ = "lead_assignments"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    lead_id: Mapped[str] = mapped_column(String(50), ForeignKey("leads.id"))
    actor_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("sales_actors.id"), index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default="ACTIVE"
    )  # ACTIVE, COMPLETED, CANCELLED, ON_HOLD
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    expected_close_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    lead = relationship("Lead", back_populates="assignments")
    actor = relationship("SalesActor", back_populates="assignments")
    stages = relationship("PipelineStage", back_populates="assignment")


class PipelineStage(Base):
    """One interval an assignment spent in a stage (append-only)"""
    __tablename__ = "pipeline_stages"
    __table_args__ = (
        # At most one open stage per assignment
        Index(
            "uq_pipeline_stages_open",
            "assignment_id",
            unique=True,
            postgresql_where=text("exited_at IS NULL"),
            sqlite_where=text("exited_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    assignment_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("lead_assignments.id"), index=True
    )
    stage: Mapped[str] = mapped_column(String(30))

    entered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    exited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Mutable while open
    probability: Mapped[int] = mapped_column(Integer, default=0)
    estimated_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    next_action: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_action_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[str] = mapped_column(String(50))

    assignment = relationship("LeadAssignment", back_populates="stages")
    activities = relationship("PipelineActivity", back_populates="stage")


class PipelineActivity(Base):
    """Sales action logged under a stage (append-only)"""
    __tablename__ = "pipeline_activities"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    stage_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("pipeline_stages.id"), index=True
    )
    activity_type: Mapped[str] = mapped_column(String(40))
    description: Mapped[str] = mapped_column(Text)
    outcome: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str] = mapped_column(String(50), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    stage = relationship("PipelineStage", back_populates="activities")
