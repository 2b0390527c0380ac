"""
In-memory Pipeline Store

Dict-backed store with an asyncio.Lock per assignment for transactional
writes. Used by tests and by PIPELINE_STORE=memory.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from realty.pipeline.errors import AssignmentNotFoundError, ConcurrentModificationError
from realty.pipeline.models import (
    ActivityType,
    Assignment,
    AssignmentStatus,
    Lead,
    PipelineActivity,
    PipelineStage,
    SalesActor,
)
from realty.pipeline.repository import PipelineStore, PipelineUnitOfWork


def _newest_first(activities: List[PipelineActivity]) -> List[PipelineActivity]:
    # Later inserts win ties on created_at
    return sorted(reversed(activities), key=lambda a: a.created_at, reverse=True)


class _MemoryUnitOfWork(PipelineUnitOfWork):
    """Buffers writes against private copies; applied on commit."""

    def __init__(self, store: "InMemoryPipelineStore", assignment: Assignment):
        self._store = store
        self._version = store._versions.get(assignment.id, 0)
        self.assignment = replace(assignment)
        self._stages = [replace(s) for s in store._stages.get(assignment.id, [])]
        self._activities: List[PipelineActivity] = []

    def _find(self, stage_id: str) -> Optional[PipelineStage]:
        return next((s for s in self._stages if s.id == stage_id), None)

    async def get_open_stage(self) -> Optional[PipelineStage]:
        open_stages = [s for s in self._stages if s.is_open]
        if not open_stages:
            return None
        return replace(max(open_stages, key=lambda s: s.entered_at))

    async def add_stage(self, stage: PipelineStage) -> PipelineStage:
        if stage.is_open and any(s.is_open for s in self._stages):
            raise ConcurrentModificationError(self.assignment.id)
        self._stages.append(replace(stage))
        return stage

    async def close_stage(
        self,
        stage: PipelineStage,
        exited_at: datetime,
        duration_hours: int,
    ) -> PipelineStage:
        current = self._find(stage.id)
        if current is None or not current.is_open:
            raise ConcurrentModificationError(self.assignment.id, stage.id)
        current.exited_at = exited_at
        current.duration_hours = duration_hours
        return replace(current)

    async def update_stage(self, stage: PipelineStage) -> PipelineStage:
        current = self._find(stage.id)
        if current is None or not current.is_open:
            raise ConcurrentModificationError(self.assignment.id, stage.id)
        current.probability = stage.probability
        current.estimated_value = stage.estimated_value
        current.next_action = stage.next_action
        current.next_action_date = stage.next_action_date
        current.notes = stage.notes
        return replace(current)

    async def set_assignment_status(self, status: AssignmentStatus) -> Assignment:
        self.assignment.status = status
        return replace(self.assignment)

    async def add_activity(self, activity: PipelineActivity) -> PipelineActivity:
        self._activities.append(replace(activity))
        return activity

    def commit(self) -> None:
        store = self._store
        assignment_id = self.assignment.id
        # Optimistic check: nobody committed against this assignment since we read it
        if store._versions.get(assignment_id, 0) != self._version:
            raise ConcurrentModificationError(assignment_id)
        store._assignments[assignment_id] = self.assignment
        store._stages[assignment_id] = self._stages
        for stage in self._stages:
            store._stage_owner[stage.id] = assignment_id
        store._activities.extend(self._activities)
        store._versions[assignment_id] = self._version + 1


class InMemoryPipelineStore(PipelineStore):
    """In-memory stage store"""

    def __init__(self):
        self._leads: Dict[str, Lead] = {}
        self._actors: Dict[str, SalesActor] = {}
        self._assignments: Dict[str, Assignment] = {}
        self._stages: Dict[str, List[PipelineStage]] = {}  # assignment_id -> stages
        self._stage_owner: Dict[str, str] = {}  # stage_id -> assignment_id
        self._activities: List[PipelineActivity] = []
        self._versions: Dict[str, int] = {}
        # Locks created lazily to avoid event loop binding issues
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, assignment_id: str) -> asyncio.Lock:
        """Get or create the lock for an assignment."""
        if assignment_id not in self._locks:
            self._locks[assignment_id] = asyncio.Lock()
        return self._locks[assignment_id]

    @asynccontextmanager
    async def transaction(self, assignment_id: str) -> AsyncIterator[PipelineUnitOfWork]:
        async with self._lock(assignment_id):
            assignment = self._assignments.get(assignment_id)
            if assignment is None:
                raise AssignmentNotFoundError(assignment_id)
            uow = _MemoryUnitOfWork(self, assignment)
            yield uow
            uow.commit()

    # === Intake ===

    async def add_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = replace(lead)
        return lead

    async def add_actor(self, actor: SalesActor) -> SalesActor:
        self._actors[actor.id] = replace(actor)
        return actor

    async def add_assignment(self, assignment: Assignment) -> Assignment:
        self._assignments[assignment.id] = replace(assignment)
        self._stages.setdefault(assignment.id, [])
        return assignment

    # === Lookups ===

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return replace(lead) if lead else None

    async def get_actor(self, actor_id: str) -> Optional[SalesActor]:
        actor = self._actors.get(actor_id)
        return replace(actor) if actor else None

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        assignment = self._assignments.get(assignment_id)
        return replace(assignment) if assignment else None

    async def list_assignments_without_pipeline(
        self,
        status: AssignmentStatus = AssignmentStatus.ACTIVE,
    ) -> List[Assignment]:
        return [
            replace(a)
            for a in self._assignments.values()
            if a.status == status and not self._stages.get(a.id)
        ]

    # === Stages ===

    async def get_open_stage(self, assignment_id: str) -> Optional[PipelineStage]:
        open_stages = [s for s in self._stages.get(assignment_id, []) if s.is_open]
        if not open_stages:
            return None
        return replace(max(open_stages, key=lambda s: s.entered_at))

    async def list_stages(self, assignment_id: str) -> List[PipelineStage]:
        stages = self._stages.get(assignment_id, [])
        return [replace(s) for s in sorted(stages, key=lambda s: s.entered_at)]

    async def list_stages_for_actor(
        self,
        actor_id: str,
        assigned_since: datetime,
    ) -> List[PipelineStage]:
        results = []
        for assignment in self._assignments.values():
            if assignment.actor_id != actor_id or assignment.assigned_at < assigned_since:
                continue
            results.extend(await self.list_stages(assignment.id))
        return results

    async def list_upcoming_stages(
        self,
        actor_id: str,
        start: datetime,
        end: datetime,
    ) -> List[PipelineStage]:
        results = []
        for assignment in self._assignments.values():
            if assignment.actor_id != actor_id:
                continue
            for stage in self._stages.get(assignment.id, []):
                if not stage.is_open or stage.next_action_date is None:
                    continue
                if start <= stage.next_action_date <= end:
                    results.append(replace(stage))
        results.sort(key=lambda s: s.next_action_date)
        return results

    # === Activities ===

    async def list_stage_activities(
        self,
        stage_id: str,
        limit: int = 50,
    ) -> List[PipelineActivity]:
        activities = [a for a in self._activities if a.stage_id == stage_id]
        return [replace(a) for a in _newest_first(activities)[:limit]]

    async def query_activities(
        self,
        since: datetime,
        assignment_id: Optional[str] = None,
        created_by: Optional[str] = None,
        activity_type: Optional[ActivityType] = None,
        limit: int = 100,
    ) -> List[PipelineActivity]:
        results = [a for a in self._activities if a.created_at >= since]
        if assignment_id:
            results = [a for a in results if self._stage_owner.get(a.stage_id) == assignment_id]
        if created_by:
            results = [a for a in results if a.created_by == created_by]
        if activity_type:
            results = [a for a in results if a.activity_type == activity_type]
        return [replace(a) for a in _newest_first(results)[:limit]]
