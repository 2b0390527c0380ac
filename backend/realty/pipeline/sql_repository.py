"""
SQLAlchemy Pipeline Store

Session-per-operation reads; every write path runs in one transaction that
holds a row lock on the assignment (SELECT ... FOR UPDATE).
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from realty.db import models as db
from realty.pipeline.errors import AssignmentNotFoundError, ConcurrentModificationError
from realty.pipeline.models import (
    ActivityType,
    Assignment,
    AssignmentStatus,
    Lead,
    PipelineActivity,
    PipelineStage,
    SalesActor,
    StageName,
)
from realty.pipeline.repository import PipelineStore, PipelineUnitOfWork

logger = logging.getLogger(__name__)


# === Row <-> domain mapping ===

def _db_to_lead(row: db.Lead) -> Lead:
    return Lead(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        score=row.score,
        category=row.category,
        budget_estimate=row.budget_estimate,
    )


def _db_to_actor(row: db.SalesActor) -> SalesActor:
    return SalesActor(id=row.id, name=row.name, email=row.email)


def _db_to_assignment(row: db.LeadAssignment) -> Assignment:
    return Assignment(
        id=row.id,
        lead_id=row.lead_id,
        actor_id=row.actor_id,
        status=AssignmentStatus(row.status),
        assigned_at=row.assigned_at,
        expected_close_date=row.expected_close_date,
        notes=row.notes,
    )


def _db_to_stage(row: db.PipelineStage) -> PipelineStage:
    return PipelineStage(
        id=row.id,
        assignment_id=row.assignment_id,
        stage=StageName(row.stage),
        probability=row.probability,
        created_by=row.created_by,
        entered_at=row.entered_at,
        exited_at=row.exited_at,
        duration_hours=row.duration_hours,
        estimated_value=row.estimated_value,
        next_action=row.next_action,
        next_action_date=row.next_action_date,
        notes=row.notes,
    )


def _stage_to_db(stage: PipelineStage) -> db.PipelineStage:
    return db.PipelineStage(
        id=stage.id,
        assignment_id=stage.assignment_id,
        stage=stage.stage.value,
        entered_at=stage.entered_at,
        exited_at=stage.exited_at,
        duration_hours=stage.duration_hours,
        probability=stage.probability,
        estimated_value=stage.estimated_value,
        next_action=stage.next_action,
        next_action_date=stage.next_action_date,
        notes=stage.notes,
        created_by=stage.created_by,
    )


def _db_to_activity(row: db.PipelineActivity) -> PipelineActivity:
    return PipelineActivity(
        id=row.id,
        stage_id=row.stage_id,
        activity_type=ActivityType(row.activity_type),
        description=row.description,
        created_by=row.created_by,
        outcome=row.outcome,
        scheduled_at=row.scheduled_at,
        completed_at=row.completed_at,
        created_at=row.created_at,
    )


def _history_order():
    # Oldest first; a stage closed at the instant its successor opened sorts first
    return (db.PipelineStage.entered_at, db.PipelineStage.exited_at.is_(None))


class _SqlUnitOfWork(PipelineUnitOfWork):
    """Writes inside the caller's transaction; the assignment row is locked."""

    def __init__(self, session: AsyncSession, row: db.LeadAssignment):
        self._session = session
        self._row = row
        self.assignment = _db_to_assignment(row)

    async def get_open_stage(self) -> Optional[PipelineStage]:
        result = await self._session.execute(
            select(db.PipelineStage)
            .where(
                db.PipelineStage.assignment_id == self._row.id,
                db.PipelineStage.exited_at.is_(None),
            )
            .order_by(db.PipelineStage.entered_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _db_to_stage(row) if row else None

    async def add_stage(self, stage: PipelineStage) -> PipelineStage:
        self._session.add(_stage_to_db(stage))
        try:
            await self._session.flush()
        except IntegrityError as e:
            # uq_pipeline_stages_open: someone else opened a stage first
            raise ConcurrentModificationError(self._row.id) from e
        return stage

    async def close_stage(
        self,
        stage: PipelineStage,
        exited_at: datetime,
        duration_hours: int,
    ) -> PipelineStage:
        result = await self._session.execute(
            update(db.PipelineStage)
            .where(
                db.PipelineStage.id == stage.id,
                db.PipelineStage.exited_at.is_(None),
            )
            .values(exited_at=exited_at, duration_hours=duration_hours)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(self._row.id, stage.id)
        stage.exited_at = exited_at
        stage.duration_hours = duration_hours
        return stage

    async def update_stage(self, stage: PipelineStage) -> PipelineStage:
        result = await self._session.execute(
            update(db.PipelineStage)
            .where(
                db.PipelineStage.id == stage.id,
                db.PipelineStage.exited_at.is_(None),
            )
            .values(
                probability=stage.probability,
                estimated_value=stage.estimated_value,
                next_action=stage.next_action,
                next_action_date=stage.next_action_date,
                notes=stage.notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(self._row.id, stage.id)
        return stage

    async def set_assignment_status(self, status: AssignmentStatus) -> Assignment:
        self._row.status = status.value
        self.assignment.status = status
        return self.assignment

    async def add_activity(self, activity: PipelineActivity) -> PipelineActivity:
        self._session.add(db.PipelineActivity(
            id=activity.id,
            stage_id=activity.stage_id,
            activity_type=activity.activity_type.value,
            description=activity.description,
            outcome=activity.outcome,
            scheduled_at=activity.scheduled_at,
            completed_at=activity.completed_at,
            created_by=activity.created_by,
            created_at=activity.created_at,
        ))
        return activity


class SqlPipelineStore(PipelineStore):
    """SQLAlchemy-backed stage store"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        return self._session_factory()

    @asynccontextmanager
    async def transaction(self, assignment_id: str) -> AsyncIterator[PipelineUnitOfWork]:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    select(db.LeadAssignment)
                    .where(db.LeadAssignment.id == assignment_id)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise AssignmentNotFoundError(assignment_id)
                yield _SqlUnitOfWork(session, row)

    # === Intake ===

    async def add_lead(self, lead: Lead) -> Lead:
        async with self._session() as session:
            session.add(db.Lead(
                id=lead.id,
                name=lead.name,
                email=lead.email,
                phone=lead.phone,
                score=lead.score,
                category=lead.category,
                budget_estimate=lead.budget_estimate,
            ))
            await session.commit()
        return lead

    async def add_actor(self, actor: SalesActor) -> SalesActor:
        async with self._session() as session:
            session.add(db.SalesActor(id=actor.id, name=actor.name, email=actor.email))
            await session.commit()
        return actor

    async def add_assignment(self, assignment: Assignment) -> Assignment:
        async with self._session() as session:
            session.add(db.LeadAssignment(
                id=assignment.id,
                lead_id=assignment.lead_id,
                actor_id=assignment.actor_id,
                status=assignment.status.value,
                assigned_at=assignment.assigned_at,
                expected_close_date=assignment.expected_close_date,
                notes=assignment.notes,
            ))
            await session.commit()
        logger.info(f"Created assignment: {assignment.id} ({assignment.lead_id} -> {assignment.actor_id})")
        return assignment

    # === Lookups ===

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with self._session() as session:
            row = await session.get(db.Lead, lead_id)
            return _db_to_lead(row) if row else None

    async def get_actor(self, actor_id: str) -> Optional[SalesActor]:
        async with self._session() as session:
            row = await session.get(db.SalesActor, actor_id)
            return _db_to_actor(row) if row else None

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        async with self._session() as session:
            row = await session.get(db.LeadAssignment, assignment_id)
            return _db_to_assignment(row) if row else None

    async def list_assignments_without_pipeline(
        self,
        status: AssignmentStatus = AssignmentStatus.ACTIVE,
    ) -> List[Assignment]:
        has_stage = (
            select(db.PipelineStage.id)
            .where(db.PipelineStage.assignment_id == db.LeadAssignment.id)
            .exists()
        )
        async with self._session() as session:
            result = await session.execute(
                select(db.LeadAssignment)
                .where(db.LeadAssignment.status == status.value, ~has_stage)
                .order_by(db.LeadAssignment.assigned_at)
            )
            return [_db_to_assignment(row) for row in result.scalars().all()]

    # === Stages ===

    async def get_open_stage(self, assignment_id: str) -> Optional[PipelineStage]:
        async with self._session() as session:
            result = await session.execute(
                select(db.PipelineStage)
                .where(
                    db.PipelineStage.assignment_id == assignment_id,
                    db.PipelineStage.exited_at.is_(None),
                )
                .order_by(db.PipelineStage.entered_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _db_to_stage(row) if row else None

    async def list_stages(self, assignment_id: str) -> List[PipelineStage]:
        async with self._session() as session:
            result = await session.execute(
                select(db.PipelineStage)
                .where(db.PipelineStage.assignment_id == assignment_id)
                .order_by(*_history_order())
            )
            return [_db_to_stage(row) for row in result.scalars().all()]

    async def list_stages_for_actor(
        self,
        actor_id: str,
        assigned_since: datetime,
    ) -> List[PipelineStage]:
        async with self._session() as session:
            result = await session.execute(
                select(db.PipelineStage)
                .join(db.LeadAssignment, db.PipelineStage.assignment_id == db.LeadAssignment.id)
                .where(
                    db.LeadAssignment.actor_id == actor_id,
                    db.LeadAssignment.assigned_at >= assigned_since,
                )
                .order_by(db.PipelineStage.assignment_id, *_history_order())
            )
            return [_db_to_stage(row) for row in result.scalars().all()]

    async def list_upcoming_stages(
        self,
        actor_id: str,
        start: datetime,
        end: datetime,
    ) -> List[PipelineStage]:
        async with self._session() as session:
            result = await session.execute(
                select(db.PipelineStage)
                .join(db.LeadAssignment, db.PipelineStage.assignment_id == db.LeadAssignment.id)
                .where(
                    db.LeadAssignment.actor_id == actor_id,
                    db.PipelineStage.exited_at.is_(None),
                    db.PipelineStage.next_action_date >= start,
                    db.PipelineStage.next_action_date <= end,
                )
                .order_by(db.PipelineStage.next_action_date.asc())
            )
            return [_db_to_stage(row) for row in result.scalars().all()]

    # === Activities ===

    async def list_stage_activities(
        self,
        stage_id: str,
        limit: int = 50,
    ) -> List[PipelineActivity]:
        async with self._session() as session:
            result = await session.execute(
                select(db.PipelineActivity)
                .where(db.PipelineActivity.stage_id == stage_id)
                .order_by(db.PipelineActivity.created_at.desc())
                .limit(limit)
            )
            return [_db_to_activity(row) for row in result.scalars().all()]

    async def query_activities(
        self,
        since: datetime,
        assignment_id: Optional[str] = None,
        created_by: Optional[str] = None,
        activity_type: Optional[ActivityType] = None,
        limit: int = 100,
    ) -> List[PipelineActivity]:
        query = select(db.PipelineActivity).where(db.PipelineActivity.created_at >= since)
        if assignment_id:
            query = query.join(
                db.PipelineStage, db.PipelineActivity.stage_id == db.PipelineStage.id
            ).where(db.PipelineStage.assignment_id == assignment_id)
        if created_by:
            query = query.where(db.PipelineActivity.created_by == created_by)
        if activity_type:
            query = query.where(db.PipelineActivity.activity_type == activity_type.value)

        async with self._session() as session:
            result = await session.execute(
                query.order_by(db.PipelineActivity.created_at.desc()).limit(limit)
            )
            return [_db_to_activity(row) for row in result.scalars().all()]
