"""
Pipeline Activity Log

Append-only record of sales actions, each attached to the stage that is open
when it is logged.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from realty.pipeline.errors import AssignmentNotFoundError
from realty.pipeline.models import ActivityType, PipelineActivity, utcnow
from realty.pipeline.repository import PipelineStore
from realty.pipeline.tracker import Clock, bootstrap_pipeline

logger = logging.getLogger(__name__)


class ActivityLog:
    """Activity log over a PipelineStore"""

    def __init__(self, store: PipelineStore, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or utcnow

    async def add_activity(
        self,
        assignment_id: str,
        activity_type: ActivityType,
        description: str,
        actor_id: str,
        outcome: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> PipelineActivity:
        """
        Append an activity under the assignment's open stage.

        The stage lookup and the insert share one transaction, so the activity
        can never land on a stage that a concurrent transition just closed.
        An assignment without a pipeline is put into NEW_LEAD first. Never
        changes stage.
        """
        async with self._store.transaction(assignment_id) as uow:
            now = self._clock()
            stage = await uow.get_open_stage()
            if stage is None:
                stage = await bootstrap_pipeline(uow, actor_id, now)

            activity = await uow.add_activity(PipelineActivity(
                id="",
                stage_id=stage.id,
                activity_type=activity_type,
                description=description,
                created_by=actor_id,
                outcome=outcome,
                scheduled_at=scheduled_at,
                completed_at=completed_at,
                created_at=now,
            ))

        logger.info(
            f"Activity {activity.id} ({activity_type.value}) logged on "
            f"{stage.stage.value} stage of assignment {assignment_id}"
        )
        return activity

    async def list_stage_activities(
        self,
        assignment_id: str,
        stage_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[PipelineActivity]:
        """Activities of `stage_id`, or of the open stage when omitted. Newest first."""
        if stage_id is None:
            if await self._store.get_assignment(assignment_id) is None:
                raise AssignmentNotFoundError(assignment_id)
            current = await self._store.get_open_stage(assignment_id)
            if current is None:
                return []
            stage_id = current.id
        return await self._store.list_stage_activities(stage_id, limit=limit)

    async def list_activities(
        self,
        assignment_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        activity_type: Optional[ActivityType] = None,
        days: int = 30,
        limit: int = 100,
    ) -> List[PipelineActivity]:
        """Recent activities across the pipeline, newest first."""
        since = self._clock() - timedelta(days=days)
        return await self._store.query_activities(
            since,
            assignment_id=assignment_id,
            created_by=actor_id,
            activity_type=activity_type,
            limit=limit,
        )
