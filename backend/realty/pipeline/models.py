"""
Sales Pipeline Models

Stage vocabulary, assignments, stage intervals and activity records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware timestamp to naive UTC; naive input is taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class StageName(Enum):
    """Real-estate sales cycle stages"""
    NEW_LEAD = "NEW_LEAD"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    NEGOTIATION = "NEGOTIATION"
    PROPERTY_VIEWING = "PROPERTY_VIEWING"
    APPLICATION = "APPLICATION"
    CLOSING = "CLOSING"
    WON = "WON"
    LOST = "LOST"
    ON_HOLD = "ON_HOLD"


TERMINAL_STAGES = {StageName.WON, StageName.LOST}


class ActivityType(Enum):
    """Sales actions that can be logged against a stage"""
    PHONE_CALL = "PHONE_CALL"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_RECEIVED = "EMAIL_RECEIVED"
    MEETING_SCHEDULED = "MEETING_SCHEDULED"
    MEETING_COMPLETED = "MEETING_COMPLETED"
    PROPERTY_SHOWING = "PROPERTY_SHOWING"
    PROPOSAL_SENT = "PROPOSAL_SENT"
    FOLLOW_UP = "FOLLOW_UP"
    DOCUMENT_RECEIVED = "DOCUMENT_RECEIVED"
    APPLICATION_SUBMITTED = "APPLICATION_SUBMITTED"
    NEGOTIATION = "NEGOTIATION"
    CONTRACT_SENT = "CONTRACT_SENT"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    DEAL_CLOSED = "DEAL_CLOSED"
    DEAL_LOST = "DEAL_LOST"
    NOTE_ADDED = "NOTE_ADDED"


class AssignmentStatus(Enum):
    """Aggregate status of a lead assignment"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ON_HOLD = "ON_HOLD"


# Default probability-of-closing per stage (percent)
STAGE_PROBABILITY: Dict[StageName, int] = {
    StageName.NEW_LEAD: 10,
    StageName.CONTACTED: 20,
    StageName.QUALIFIED: 35,
    StageName.PROPOSAL_SENT: 50,
    StageName.NEGOTIATION: 65,
    StageName.PROPERTY_VIEWING: 60,
    StageName.APPLICATION: 80,
    StageName.CLOSING: 90,
    StageName.WON: 100,
    StageName.LOST: 0,
    StageName.ON_HOLD: 25,
}


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:8].upper()}"


@dataclass
class Lead:
    """Prospective buyer. Score and category come from the scoring service."""
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    score: Optional[float] = None
    category: Optional[str] = None
    budget_estimate: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "score": self.score,
            "category": self.category,
            "budget_estimate": self.budget_estimate,
        }

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
        }


@dataclass
class SalesActor:
    """Sales manager responsible for assignments"""
    id: str
    name: str
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
        }


@dataclass
class Assignment:
    """One lead handed to one sales actor"""
    id: str
    lead_id: str
    actor_id: str
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    assigned_at: datetime = field(default_factory=utcnow)
    expected_close_date: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_id("ASG")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "actor_id": self.actor_id,
            "status": self.status.value,
            "assigned_at": self.assigned_at.isoformat(),
            "expected_close_date": _iso(self.expected_close_date),
            "notes": self.notes,
        }


@dataclass
class PipelineStage:
    """
    One interval an assignment spent in a stage.

    exited_at is None while the stage is open.
    """
    id: str
    assignment_id: str
    stage: StageName
    probability: int
    created_by: str
    entered_at: datetime = field(default_factory=utcnow)
    exited_at: Optional[datetime] = None
    duration_hours: Optional[int] = None
    estimated_value: Optional[float] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = generate_id("STG")

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    @property
    def weighted_value(self) -> float:
        if not self.estimated_value:
            return 0.0
        return self.estimated_value * self.probability / 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "stage": self.stage.value,
            "entered_at": self.entered_at.isoformat(),
            "exited_at": _iso(self.exited_at),
            "duration_hours": self.duration_hours,
            "probability": self.probability,
            "estimated_value": self.estimated_value,
            "next_action": self.next_action,
            "next_action_date": _iso(self.next_action_date),
            "notes": self.notes,
            "created_by": self.created_by,
        }


@dataclass
class PipelineActivity:
    """A sales action logged under a stage. Never modified after creation."""
    id: str
    stage_id: str
    activity_type: ActivityType
    description: str
    created_by: str
    outcome: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.id:
            self.id = generate_id("PACT")
        self.scheduled_at = as_naive_utc(self.scheduled_at)
        self.completed_at = as_naive_utc(self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "activity_type": self.activity_type.value,
            "description": self.description,
            "outcome": self.outcome,
            "scheduled_at": _iso(self.scheduled_at),
            "completed_at": _iso(self.completed_at),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class StageUpdate:
    """Partial update of an open stage's mutable fields. None = keep."""
    probability: Optional[int] = None
    estimated_value: Optional[float] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None
    notes: Optional[str] = None

    def __post_init__(self):
        self.next_action_date = as_naive_utc(self.next_action_date)

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.probability,
                self.estimated_value,
                self.next_action,
                self.next_action_date,
                self.notes,
            )
        )

