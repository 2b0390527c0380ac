"""
Sales Pipeline API Endpoints

Thin HTTP layer over the pipeline tracker, activity log and metrics engine.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from realty.pipeline.activity_log import ActivityLog
from realty.pipeline.auto_advance import ActivityIngestor
from realty.pipeline.errors import (
    AssignmentNotFoundError,
    ConcurrentModificationError,
    InvalidProbabilityError,
    InvalidTransitionError,
    PipelineError,
)
from realty.pipeline.metrics import MetricsEngine
from realty.pipeline.models import ActivityType, StageName
from realty.pipeline.repository import get_pipeline_store
from realty.pipeline.tracker import PipelineTracker

router = APIRouter()


# === Request Models ===

class InitializeRequest(BaseModel):
    actor_id: str


class MoveStageRequest(BaseModel):
    stage: str
    actor_id: str
    probability: Optional[int] = Field(default=None, ge=0, le=100)
    estimated_value: Optional[float] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None
    notes: Optional[str] = None


class ActivityCreate(BaseModel):
    activity_type: str
    description: str
    actor_id: str
    outcome: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    auto_advance: bool = True


# === Helpers ===

def _tracker() -> PipelineTracker:
    return PipelineTracker(get_pipeline_store())


def _activity_log() -> ActivityLog:
    return ActivityLog(get_pipeline_store())


def _metrics() -> MetricsEngine:
    return MetricsEngine(get_pipeline_store())


def _parse_stage(value: str) -> StageName:
    try:
        return StageName(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid stage: {value}")


def _parse_activity_type(value: str) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid activity type: {value}")


def _to_http(error: PipelineError) -> HTTPException:
    if isinstance(error, AssignmentNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidTransitionError, InvalidProbabilityError)):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, ConcurrentModificationError):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# === Stages ===

@router.post("/initialize", response_model=Dict[str, Any])
async def initialize_pending_pipelines():
    """Initialise pipelines for every active assignment without one."""
    return await _tracker().initialize_pending_pipelines()


@router.post("/assignments/{assignment_id}/initialize", response_model=Dict[str, Any])
async def initialize_pipeline(assignment_id: str, request: InitializeRequest):
    """Put an assignment into the pipeline (idempotent)."""
    try:
        stage = await _tracker().initialize_pipeline(assignment_id, request.actor_id)
    except PipelineError as e:
        raise _to_http(e)
    return stage.to_dict()


@router.get("/assignments/{assignment_id}", response_model=Dict[str, Any])
async def get_assignment_pipeline(assignment_id: str):
    """Assignment with lead, sales manager and stage history."""
    try:
        return await _tracker().get_assignment_pipeline(assignment_id)
    except PipelineError as e:
        raise _to_http(e)


@router.put("/assignments/{assignment_id}/stage", response_model=Dict[str, Any])
async def move_to_stage(assignment_id: str, request: MoveStageRequest):
    """Move an assignment to a stage, or update the open stage in place."""
    target = _parse_stage(request.stage)
    try:
        stage = await _tracker().move_to_stage(
            assignment_id,
            target,
            request.actor_id,
            probability=request.probability,
            estimated_value=request.estimated_value,
            next_action=request.next_action,
            next_action_date=request.next_action_date,
            notes=request.notes,
        )
    except PipelineError as e:
        raise _to_http(e)
    return stage.to_dict()


# === Activities ===

@router.post("/assignments/{assignment_id}/activities", response_model=Dict[str, Any])
async def create_activity(assignment_id: str, request: ActivityCreate):
    """Log an activity; optionally let it advance the stage."""
    activity_type = _parse_activity_type(request.activity_type)
    activity_log = _activity_log()
    try:
        if request.auto_advance:
            ingestor = ActivityIngestor(activity_log, _tracker())
            result = await ingestor.record(
                assignment_id,
                activity_type,
                request.description,
                request.actor_id,
                outcome=request.outcome,
                scheduled_at=request.scheduled_at,
                completed_at=request.completed_at,
            )
            return result.to_dict()

        activity = await activity_log.add_activity(
            assignment_id,
            activity_type,
            request.description,
            request.actor_id,
            outcome=request.outcome,
            scheduled_at=request.scheduled_at,
            completed_at=request.completed_at,
        )
    except PipelineError as e:
        raise _to_http(e)
    return {"activity": activity.to_dict(), "outcome": None, "candidate_stage": None, "stage": None}


@router.get("/assignments/{assignment_id}/activities", response_model=List[Dict[str, Any]])
async def list_stage_activities(
    assignment_id: str,
    stage_id: Optional[str] = None,
    limit: int = 50,
):
    """Activities of a stage (the open one by default)."""
    try:
        activities = await _activity_log().list_stage_activities(
            assignment_id, stage_id=stage_id, limit=limit
        )
    except PipelineError as e:
        raise _to_http(e)
    return [a.to_dict() for a in activities]


@router.get("/activities", response_model=List[Dict[str, Any]])
async def list_activities(
    assignment_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    activity_type: Optional[str] = None,
    days: int = 30,
    limit: int = 100,
):
    """Recent activities with optional filters."""
    type_enum = _parse_activity_type(activity_type) if activity_type else None
    activities = await _activity_log().list_activities(
        assignment_id=assignment_id,
        actor_id=actor_id,
        activity_type=type_enum,
        days=days,
        limit=limit,
    )
    return [a.to_dict() for a in activities]


# === Reporting ===

@router.get("/actors/{actor_id}/metrics", response_model=Dict[str, Any])
async def get_metrics(actor_id: str, days: int = 30):
    """Pipeline metrics for a sales manager."""
    metrics = await _metrics().calculate_metrics(actor_id, days=days)
    return metrics.to_dict()


@router.get("/actors/{actor_id}/performance", response_model=Dict[str, Any])
async def get_stage_performance(actor_id: str, days: int = 30):
    """Per-stage performance for a sales manager."""
    return await _metrics().stage_performance(actor_id, days=days)


@router.get("/actors/{actor_id}/upcoming-actions", response_model=List[Dict[str, Any]])
async def get_upcoming_actions(actor_id: str, days: int = 7):
    """Next actions due within `days` days, soonest first."""
    return await _tracker().get_upcoming_actions(actor_id, days=days)
