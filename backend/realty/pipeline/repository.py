"""
Pipeline Store

Transactional repository interface used by the tracker, activity log and
metrics engine, plus the shared accessor.
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import AsyncContextManager, List, Optional

from realty.pipeline.models import (
    ActivityType,
    Assignment,
    AssignmentStatus,
    Lead,
    PipelineActivity,
    PipelineStage,
    SalesActor,
)

logger = logging.getLogger(__name__)


class PipelineUnitOfWork(ABC):
    """
    Writes against one assignment inside a single transaction.

    The assignment is locked for the lifetime of the unit of work. Nothing
    is visible to other readers until the transaction commits.
    """

    assignment: Assignment

    @abstractmethod
    async def get_open_stage(self) -> Optional[PipelineStage]:
        """The stage with no exit timestamp, if any."""

    @abstractmethod
    async def add_stage(self, stage: PipelineStage) -> PipelineStage:
        """Insert a new (open) stage. Raises ConcurrentModificationError if one is already open."""

    @abstractmethod
    async def close_stage(
        self,
        stage: PipelineStage,
        exited_at: datetime,
        duration_hours: int,
    ) -> PipelineStage:
        """Close `stage` only if it is still open; ConcurrentModificationError otherwise."""

    @abstractmethod
    async def update_stage(self, stage: PipelineStage) -> PipelineStage:
        """Persist the mutable fields of an open stage."""

    @abstractmethod
    async def set_assignment_status(self, status: AssignmentStatus) -> Assignment:
        ...

    @abstractmethod
    async def add_activity(self, activity: PipelineActivity) -> PipelineActivity:
        ...


class PipelineStore(ABC):
    """Stage store: CRUD plus a per-assignment transactional update"""

    @abstractmethod
    def transaction(self, assignment_id: str) -> AsyncContextManager[PipelineUnitOfWork]:
        """
        Open a transaction that locks `assignment_id`.

        Raises AssignmentNotFoundError when the assignment does not exist.
        Commits on normal exit, rolls back when the body raises.
        """

    # === Intake (records created outside the engine) ===

    @abstractmethod
    async def add_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def add_actor(self, actor: SalesActor) -> SalesActor:
        ...

    @abstractmethod
    async def add_assignment(self, assignment: Assignment) -> Assignment:
        ...

    # === Lookups ===

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def get_actor(self, actor_id: str) -> Optional[SalesActor]:
        ...

    @abstractmethod
    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        ...

    @abstractmethod
    async def list_assignments_without_pipeline(
        self,
        status: AssignmentStatus = AssignmentStatus.ACTIVE,
    ) -> List[Assignment]:
        """Assignments in `status` that have no stage history at all."""

    # === Stages ===

    @abstractmethod
    async def get_open_stage(self, assignment_id: str) -> Optional[PipelineStage]:
        ...

    @abstractmethod
    async def list_stages(self, assignment_id: str) -> List[PipelineStage]:
        """Stage history of one assignment, oldest first."""

    @abstractmethod
    async def list_stages_for_actor(
        self,
        actor_id: str,
        assigned_since: datetime,
    ) -> List[PipelineStage]:
        """Every stage of the actor's assignments assigned on or after `assigned_since`."""

    @abstractmethod
    async def list_upcoming_stages(
        self,
        actor_id: str,
        start: datetime,
        end: datetime,
    ) -> List[PipelineStage]:
        """Open stages of the actor with next_action_date in [start, end], soonest first."""

    # === Activities ===

    @abstractmethod
    async def list_stage_activities(
        self,
        stage_id: str,
        limit: int = 50,
    ) -> List[PipelineActivity]:
        """Activities of one stage, newest first."""

    @abstractmethod
    async def query_activities(
        self,
        since: datetime,
        assignment_id: Optional[str] = None,
        created_by: Optional[str] = None,
        activity_type: Optional[ActivityType] = None,
        limit: int = 100,
    ) -> List[PipelineActivity]:
        """Activities created on or after `since`, newest first."""


# === Global accessor ===

_pipeline_store: Optional[PipelineStore] = None


def get_pipeline_store() -> PipelineStore:
    """Shared PipelineStore instance (PIPELINE_STORE=sql|memory)"""
    global _pipeline_store
    if _pipeline_store is None:
        backend = os.getenv("PIPELINE_STORE", "sql").lower()
        if backend == "memory":
            from realty.pipeline.memory_repository import InMemoryPipelineStore
            _pipeline_store = InMemoryPipelineStore()
        else:
            from realty.db.database import AsyncSessionLocal
            from realty.pipeline.sql_repository import SqlPipelineStore
            _pipeline_store = SqlPipelineStore(session_factory=AsyncSessionLocal)
        logger.info(f"Pipeline store initialised: {type(_pipeline_store).__name__}")
    return _pipeline_store


def set_pipeline_store(store: Optional[PipelineStore]) -> None:
    """Set the shared instance (used for test injection)"""
    global _pipeline_store
    _pipeline_store = store
