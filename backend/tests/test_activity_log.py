from datetime import timedelta

import pytest

from realty.pipeline.errors import AssignmentNotFoundError
from realty.pipeline.models import ActivityType, StageName


class TestAddActivity:

    @pytest.mark.asyncio
    async def test_attaches_to_open_stage(self, activity_log, tracker, store, assignment, clock):
        await tracker.initialize_pipeline("asg-1", "sm-1")
        clock.advance(hours=1)
        contacted = await tracker.move_to_stage("asg-1", StageName.CONTACTED, "sm-1")
        clock.advance(hours=1)

        activity = await activity_log.add_activity(
            "asg-1",
            ActivityType.FOLLOW_UP,
            "Sent listing links",
            "sm-1",
            outcome="Interested in two units",
        )

        assert activity.stage_id == contacted.id
        assert activity.id.startswith("PACT-")
        assert activity.created_at == clock()
        assert activity.outcome == "Interested in two units"

    @pytest.mark.asyncio
    async def test_never_changes_stage(self, activity_log, tracker, store, assignment):
        await tracker.initialize_pipeline("asg-1", "sm-1")

        await activity_log.add_activity("asg-1", ActivityType.DEAL_CLOSED, "Signed", "sm-1")

        stages = await store.list_stages("asg-1")
        assert [s.stage for s in stages] == [StageName.NEW_LEAD]

    @pytest.mark.asyncio
    async def test_bootstraps_pipeline_when_missing(self, activity_log, store, assignment):
        activity = await activity_log.add_activity(
            "asg-1", ActivityType.PHONE_CALL, "Intro call", "sm-1"
        )

        stage = await store.get_open_stage("asg-1")
        assert stage.stage == StageName.NEW_LEAD
        assert activity.stage_id == stage.id
        descriptions = [a.description for a in await store.list_stage_activities(stage.id)]
        assert descriptions == ["Intro call", "Lead assigned to pipeline"]

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, activity_log):
        with pytest.raises(AssignmentNotFoundError):
            await activity_log.add_activity("missing", ActivityType.NOTE_ADDED, "x", "sm-1")

    @pytest.mark.asyncio
    async def test_scheduled_and_completed_times_are_kept(self, activity_log, assignment, clock):
        scheduled = clock() + timedelta(days=1)
        completed = clock() + timedelta(days=1, hours=1)

        activity = await activity_log.add_activity(
            "asg-1",
            ActivityType.MEETING_SCHEDULED,
            "Office meeting",
            "sm-1",
            scheduled_at=scheduled,
            completed_at=completed,
        )

        assert activity.scheduled_at == scheduled
        assert activity.completed_at == completed


class TestListStageActivities:

    @pytest.mark.asyncio
    async def test_defaults_to_open_stage_newest_first(self, activity_log, tracker, assignment, clock):
        first = await tracker.initialize_pipeline("asg-1", "sm-1")
        clock.advance(minutes=10)
        await activity_log.add_activity("asg-1", ActivityType.PHONE_CALL, "Call 1", "sm-1")
        clock.advance(hours=1)
        await tracker.move_to_stage("asg-1", StageName.CONTACTED, "sm-1")
        clock.advance(minutes=10)
        await activity_log.add_activity("asg-1", ActivityType.EMAIL_SENT, "Email 1", "sm-1")
        clock.advance(minutes=10)
        await activity_log.add_activity("asg-1", ActivityType.PHONE_CALL, "Call 2", "sm-1")

        current = await activity_log.list_stage_activities("asg-1")
        assert [a.description for a in current] == [
            "Call 2",
            "Email 1",
            "Stage changed to CONTACTED",
        ]

        earlier = await activity_log.list_stage_activities("asg-1", stage_id=first.id)
        assert [a.description for a in earlier] == ["Call 1", "Lead assigned to pipeline"]

    @pytest.mark.asyncio
    async def test_limit(self, activity_log, assignment, clock):
        for i in range(5):
            clock.advance(minutes=1)
            await activity_log.add_activity("asg-1", ActivityType.FOLLOW_UP, f"Follow-up {i}", "sm-1")

        latest = await activity_log.list_stage_activities("asg-1", limit=2)
        assert [a.description for a in latest] == ["Follow-up 4", "Follow-up 3"]

    @pytest.mark.asyncio
    async def test_empty_without_pipeline(self, activity_log, assignment):
        assert await activity_log.list_stage_activities("asg-1") == []

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, activity_log):
        with pytest.raises(AssignmentNotFoundError):
            await activity_log.list_stage_activities("missing")


class TestListActivities:

    @pytest.mark.asyncio
    async def test_filters(self, activity_log, make_assignment, clock):
        await make_assignment("asg-a", lead_id="lead-a")
        await make_assignment("asg-b", lead_id="lead-b", actor_id="sm-2")

        clock.advance(minutes=1)
        await activity_log.add_activity("asg-a", ActivityType.PHONE_CALL, "A call", "sm-1")
        clock.advance(minutes=1)
        await activity_log.add_activity("asg-a", ActivityType.EMAIL_SENT, "A email", "sm-1")
        clock.advance(minutes=1)
        await activity_log.add_activity("asg-b", ActivityType.PHONE_CALL, "B call", "sm-2")

        by_assignment = await activity_log.list_activities(assignment_id="asg-a")
        assert [a.description for a in by_assignment] == [
            "A email",
            "A call",
            "Lead assigned to pipeline",
        ]

        by_actor = await activity_log.list_activities(actor_id="sm-2")
        assert [a.description for a in by_actor] == ["B call", "Lead assigned to pipeline"]

        calls = await activity_log.list_activities(activity_type=ActivityType.PHONE_CALL)
        assert [a.description for a in calls] == ["B call", "A call"]

    @pytest.mark.asyncio
    async def test_lookback_window(self, activity_log, assignment, clock):
        await activity_log.add_activity("asg-1", ActivityType.PHONE_CALL, "Old call", "sm-1")
        clock.advance(days=40)
        await activity_log.add_activity("asg-1", ActivityType.PHONE_CALL, "New call", "sm-1")

        recent = await activity_log.list_activities(assignment_id="asg-1", days=30)
        assert [a.description for a in recent] == ["New call"]
