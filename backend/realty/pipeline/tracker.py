"""
Pipeline Tracker

Opens and closes stage records, keeps stage durations and derives the
assignment status. Every write runs in one store transaction keyed on the
assignment.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from realty.pipeline.errors import (
    AssignmentNotFoundError,
    ConcurrentModificationError,
    InvalidProbabilityError,
    InvalidTransitionError,
)
from realty.pipeline.models import (
    ActivityType,
    PipelineActivity,
    PipelineStage,
    StageName,
    StageUpdate,
    utcnow,
)
from realty.pipeline.repository import PipelineStore, PipelineUnitOfWork
from realty.pipeline.stage_machine import (
    allowed_transitions,
    default_probability,
    derive_assignment_status,
    is_valid_transition,
    merge_stage_update,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

PIPELINE_OPENED_NOTE = "Lead assigned to pipeline"


def duration_in_hours(entered_at: datetime, exited_at: datetime) -> int:
    """Whole hours spent in a stage, rounded up."""
    seconds = (exited_at - entered_at).total_seconds()
    return max(0, math.ceil(seconds / 3600))


async def open_stage(
    uow: PipelineUnitOfWork,
    stage: StageName,
    actor_id: str,
    now: datetime,
    update: Optional[StageUpdate] = None,
) -> PipelineStage:
    """Insert a new open stage and re-derive the assignment status."""
    update = update or StageUpdate()
    new_stage = PipelineStage(
        id="",
        assignment_id=uow.assignment.id,
        stage=stage,
        probability=(
            default_probability(stage) if update.probability is None else update.probability
        ),
        created_by=actor_id,
        entered_at=now,
        estimated_value=update.estimated_value,
        next_action=update.next_action,
        next_action_date=update.next_action_date,
        notes=update.notes,
    )
    await uow.add_stage(new_stage)
    await uow.set_assignment_status(derive_assignment_status(stage))
    return new_stage


async def log_note(
    uow: PipelineUnitOfWork,
    stage: PipelineStage,
    description: str,
    actor_id: str,
    now: datetime,
) -> PipelineActivity:
    """Audit entry written alongside stage changes."""
    return await uow.add_activity(PipelineActivity(
        id="",
        stage_id=stage.id,
        activity_type=ActivityType.NOTE_ADDED,
        description=description,
        created_by=actor_id,
        created_at=now,
    ))


async def bootstrap_pipeline(
    uow: PipelineUnitOfWork,
    actor_id: str,
    now: datetime,
    estimated_value: Optional[float] = None,
) -> PipelineStage:
    """Open the NEW_LEAD stage of an assignment with no open stage."""
    stage = await open_stage(
        uow,
        StageName.NEW_LEAD,
        actor_id,
        now,
        StageUpdate(estimated_value=estimated_value),
    )
    await log_note(uow, stage, PIPELINE_OPENED_NOTE, actor_id, now)
    logger.info(f"Pipeline initialised for assignment {uow.assignment.id}: {stage.id}")
    return stage


class PipelineTracker:
    """Stage state machine over a PipelineStore"""

    def __init__(self, store: PipelineStore, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or utcnow

    @property
    def store(self) -> PipelineStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    async def _with_retry(self, assignment_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run `operation`; on a lost race retry the whole thing once."""
        try:
            return await operation()
        except ConcurrentModificationError:
            logger.warning(f"Concurrent modification on assignment {assignment_id}, retrying once")
            return await operation()

    # === Stage Operations ===

    async def initialize_pipeline(
        self,
        assignment_id: str,
        actor_id: str,
        estimated_value: Optional[float] = None,
    ) -> PipelineStage:
        """
        Put an assignment into the pipeline at NEW_LEAD.

        Idempotent: if a stage is already open it is returned unchanged.
        """
        async def _initialize() -> PipelineStage:
            async with self._store.transaction(assignment_id) as uow:
                current = await uow.get_open_stage()
                if current:
                    return current
                return await bootstrap_pipeline(uow, actor_id, self.now(), estimated_value)

        return await self._with_retry(assignment_id, _initialize)

    async def move_to_stage(
        self,
        assignment_id: str,
        target_stage: StageName,
        actor_id: str,
        probability: Optional[int] = None,
        estimated_value: Optional[float] = None,
        next_action: Optional[str] = None,
        next_action_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> PipelineStage:
        """
        Move an assignment to `target_stage`.

        Same stage: the open stage's mutable fields are merged in place.
        Different stage: the move must be allowed by the stage graph; the
        open stage is closed and the target stage opened at the same instant.
        An assignment with no pipeline yet starts at NEW_LEAD first.

        Raises:
            InvalidTransitionError: target not reachable from the open stage.
            AssignmentNotFoundError: unknown assignment.
            InvalidProbabilityError: probability outside 0..100.
            ConcurrentModificationError: lost the race twice.
        """
        if probability is not None and not 0 <= probability <= 100:
            raise InvalidProbabilityError(probability)

        update = StageUpdate(
            probability=probability,
            estimated_value=estimated_value,
            next_action=next_action,
            next_action_date=next_action_date,
            notes=notes,
        )

        async def _move() -> PipelineStage:
            async with self._store.transaction(assignment_id) as uow:
                now = self.now()
                current = await uow.get_open_stage()
                if current is None:
                    current = await bootstrap_pipeline(uow, actor_id, now)

                if current.stage == target_stage:
                    return await self._update_in_place(uow, current, update, actor_id, now)

                if not is_valid_transition(current.stage, target_stage):
                    raise InvalidTransitionError(
                        current.stage,
                        target_stage,
                        allowed_transitions(current.stage),
                    )

                closed = await uow.close_stage(
                    current, now, duration_in_hours(current.entered_at, now)
                )
                new_stage = await open_stage(uow, target_stage, actor_id, now, update)

                description = f"Stage changed to {target_stage.value}"
                if notes:
                    description += f": {notes}"
                await log_note(uow, new_stage, description, actor_id, now)

            logger.info(
                f"Assignment {assignment_id}: {current.stage.value} -> {target_stage.value} "
                f"after {closed.duration_hours}h"
            )
            return new_stage

        return await self._with_retry(assignment_id, _move)

    async def _update_in_place(
        self,
        uow: PipelineUnitOfWork,
        current: PipelineStage,
        update: StageUpdate,
        actor_id: str,
        now: datetime,
    ) -> PipelineStage:
        if update.is_empty():
            return current
        merged = await uow.update_stage(merge_stage_update(current, update))
        description = f"Stage {current.stage.value} updated"
        if update.notes:
            description += f": {update.notes}"
        await log_note(uow, merged, description, actor_id, now)
        return merged

    async def initialize_pending_pipelines(self) -> Dict[str, Any]:
        """
        Initialise a pipeline for every active assignment without one.

        The NEW_LEAD stage is seeded with the lead's budget estimate when
        known. Failures are collected per assignment rather than raised.
        """
        assignments = await self._store.list_assignments_without_pipeline()
        results: List[Dict[str, Any]] = []

        for assignment in assignments:
            lead = await self._store.get_lead(assignment.lead_id)
            actor = await self._store.get_actor(assignment.actor_id)
            entry: Dict[str, Any] = {
                "assignment_id": assignment.id,
                "lead_name": lead.name if lead else None,
                "sales_manager": actor.name if actor else None,
            }
            try:
                stage = await self.initialize_pipeline(
                    assignment.id,
                    assignment.actor_id,
                    estimated_value=lead.budget_estimate if lead else None,
                )
                entry.update({"success": True, "stage_id": stage.id})
            except (AssignmentNotFoundError, ConcurrentModificationError) as e:
                logger.error(f"Failed to initialise pipeline for assignment {assignment.id}: {e}")
                entry.update({"success": False, "error": str(e)})
            results.append(entry)

        successful = len([r for r in results if r["success"]])
        return {
            "total_processed": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }

    # === Queries ===

    async def get_assignment_pipeline(self, assignment_id: str) -> Dict[str, Any]:
        """Assignment with lead, actor and full stage history."""
        assignment = await self._store.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)

        lead = await self._store.get_lead(assignment.lead_id)
        actor = await self._store.get_actor(assignment.actor_id)
        stages = await self._store.list_stages(assignment_id)
        now = self.now()

        history = []
        for stage in stages:
            if stage.exited_at:
                calculated = duration_in_hours(stage.entered_at, stage.exited_at)
            else:
                calculated = duration_in_hours(stage.entered_at, now)
            activities = await self._store.list_stage_activities(stage.id)
            history.append({
                **stage.to_dict(),
                "calculated_duration_hours": calculated,
                "activities": [a.to_dict() for a in activities],
            })

        return {
            "assignment": assignment.to_dict(),
            "lead": lead.to_dict() if lead else None,
            "sales_manager": actor.to_dict() if actor else None,
            "stages": history,
        }

    async def get_upcoming_actions(self, actor_id: str, days: int = 7) -> List[Dict[str, Any]]:
        """Open stages whose next action falls within the next `days` days, soonest first."""
        now = self.now()
        stages = await self._store.list_upcoming_stages(actor_id, now, now + timedelta(days=days))

        actions = []
        for stage in stages:
            assignment = await self._store.get_assignment(stage.assignment_id)
            lead = await self._store.get_lead(assignment.lead_id) if assignment else None
            actions.append({
                "id": stage.id,
                "stage": stage.stage.value,
                "next_action": stage.next_action,
                "next_action_date": stage.next_action_date.isoformat(),
                "probability": stage.probability,
                "estimated_value": stage.estimated_value,
                "assignment_id": stage.assignment_id,
                "lead": lead.to_summary() if lead else None,
            })
        return actions
