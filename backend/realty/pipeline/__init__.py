"""
Sales Pipeline Module

Stage state machine, activity log, auto-advancement and metrics.
"""

from realty.pipeline.activity_log import ActivityLog
from realty.pipeline.auto_advance import (
    AUTO_ADVANCE_STAGES,
    ActivityIngestor,
    IngestOutcome,
    IngestResult,
)
from realty.pipeline.errors import (
    AssignmentNotFoundError,
    ConcurrentModificationError,
    InvalidProbabilityError,
    InvalidTransitionError,
    PipelineError,
)
from realty.pipeline.metrics import MetricsEngine, PipelineMetrics
from realty.pipeline.models import (
    ActivityType,
    Assignment,
    AssignmentStatus,
    Lead,
    PipelineActivity,
    PipelineStage,
    SalesActor,
    StageName,
    StageUpdate,
)
from realty.pipeline.repository import PipelineStore, get_pipeline_store, set_pipeline_store
from realty.pipeline.stage_machine import (
    StageLifecycle,
    default_probability,
    derive_assignment_status,
    is_valid_transition,
    merge_stage_update,
)
from realty.pipeline.tracker import PipelineTracker

__all__ = [
    "ActivityLog",
    "AUTO_ADVANCE_STAGES",
    "ActivityIngestor",
    "IngestOutcome",
    "IngestResult",
    "AssignmentNotFoundError",
    "ConcurrentModificationError",
    "InvalidProbabilityError",
    "InvalidTransitionError",
    "PipelineError",
    "MetricsEngine",
    "PipelineMetrics",
    "ActivityType",
    "Assignment",
    "AssignmentStatus",
    "Lead",
    "PipelineActivity",
    "PipelineStage",
    "SalesActor",
    "StageName",
    "StageUpdate",
    "PipelineStore",
    "get_pipeline_store",
    "set_pipeline_store",
    "StageLifecycle",
    "default_probability",
    "derive_assignment_status",
    "is_valid_transition",
    "merge_stage_update",
    "PipelineTracker",
]
