"""Shared test fixtures for the pipeline test suite."""

from datetime import datetime, timedelta
from typing import Optional

import pytest

from realty.db.database import build_engine, create_tables, make_session_factory
from realty.pipeline.activity_log import ActivityLog
from realty.pipeline.auto_advance import ActivityIngestor
from realty.pipeline.memory_repository import InMemoryPipelineStore
from realty.pipeline.metrics import MetricsEngine
from realty.pipeline.models import Assignment, Lead, SalesActor
from realty.pipeline.sql_repository import SqlPipelineStore
from realty.pipeline.tracker import PipelineTracker

START = datetime(2024, 3, 1, 9, 0, 0)

LEAD_ID = "lead-1"
ACTOR_ID = "sm-1"
ASSIGNMENT_ID = "asg-1"


class FakeClock:
    """Fixed clock that only moves when told to, or by `step` on every read."""

    def __init__(self, now: datetime = START, step: Optional[timedelta] = None):
        self.current = now
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        if self.step:
            self.current += self.step
        return value

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


async def seed(store, assignment_id=ASSIGNMENT_ID, lead_id=LEAD_ID, actor_id=ACTOR_ID,
               assigned_at=START, budget=None):
    """Lead, sales manager and assignment, as the intake flow would create them."""
    if await store.get_lead(lead_id) is None:
        await store.add_lead(Lead(
            id=lead_id,
            name=f"Buyer {lead_id}",
            email=f"{lead_id}@example.com",
            phone="+1-555-0100",
            budget_estimate=budget,
        ))
    if await store.get_actor(actor_id) is None:
        await store.add_actor(SalesActor(id=actor_id, name="Dana Broker", email="dana@example.com"))
    return await store.add_assignment(Assignment(
        id=assignment_id,
        lead_id=lead_id,
        actor_id=actor_id,
        assigned_at=assigned_at,
    ))


# ── Services over the in-memory store ─────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
async def assignment(store):
    return await seed(store)


@pytest.fixture
def make_assignment(store):
    """Seed further assignments into the in-memory store."""
    async def _make(assignment_id, **kwargs):
        return await seed(store, assignment_id=assignment_id, **kwargs)
    return _make


@pytest.fixture
def tracker(store, clock) -> PipelineTracker:
    return PipelineTracker(store, clock=clock)


@pytest.fixture
def activity_log(store, clock) -> ActivityLog:
    return ActivityLog(store, clock=clock)


@pytest.fixture
def ingestor(activity_log, tracker) -> ActivityIngestor:
    return ActivityIngestor(activity_log, tracker)


@pytest.fixture
def metrics_engine(store, clock) -> MetricsEngine:
    return MetricsEngine(store, clock=clock)


# ── SQLAlchemy store on in-memory SQLite ──────────────────────────────────

@pytest.fixture
async def sql_store():
    engine = build_engine("sqlite+aiosqlite://")
    await create_tables(engine)
    try:
        yield SqlPipelineStore(session_factory=make_session_factory(engine))
    finally:
        await engine.dispose()
