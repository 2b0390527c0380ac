from datetime import datetime, timedelta

import pytest

from realty.pipeline.metrics import compute_metrics, round_half_up
from realty.pipeline.models import PipelineStage, StageName

T0 = datetime(2024, 3, 1, 9, 0, 0)


def _row(assignment_id, stage, hours_in, duration=None, value=None, probability=50, open_=False):
    entered = T0 + timedelta(hours=hours_in)
    return PipelineStage(
        id="",
        assignment_id=assignment_id,
        stage=stage,
        probability=probability,
        created_by="sm-1",
        entered_at=entered,
        exited_at=None if open_ else entered + timedelta(hours=duration or 0),
        duration_hours=None if open_ else duration,
        estimated_value=value,
    )


@pytest.fixture
async def portfolio(tracker, make_assignment, clock):
    """
    Three deals for sm-1 inside the window (won, lost, still open), one deal
    assigned too long ago and one deal owned by another manager.
    """
    start = clock()
    for assignment_id in ("asg-won", "asg-lost", "asg-open"):
        await make_assignment(assignment_id)
    await make_assignment("asg-old", assigned_at=start - timedelta(days=60))
    await make_assignment("asg-other", actor_id="sm-2")

    await tracker.initialize_pipeline("asg-won", "sm-1", estimated_value=500000)
    for hours, target in (
        (48, StageName.CONTACTED),
        (24, StageName.QUALIFIED),
        (72, StageName.NEGOTIATION),
        (30, StageName.CLOSING),
    ):
        clock.advance(hours=hours)
        await tracker.move_to_stage("asg-won", target, "sm-1")
    clock.advance(hours=6)
    await tracker.move_to_stage("asg-won", StageName.WON, "sm-1", estimated_value=520000)

    await tracker.initialize_pipeline("asg-lost", "sm-1")
    clock.advance(hours=10)
    await tracker.move_to_stage("asg-lost", StageName.LOST, "sm-1")

    await tracker.initialize_pipeline("asg-open", "sm-1", estimated_value=400000)
    clock.advance(hours=2)
    await tracker.move_to_stage("asg-open", StageName.QUALIFIED, "sm-1", estimated_value=400000)

    await tracker.initialize_pipeline("asg-old", "sm-1", estimated_value=999)
    await tracker.initialize_pipeline("asg-other", "sm-2", estimated_value=777)
    return start


class TestCalculateMetrics:

    @pytest.mark.asyncio
    async def test_portfolio(self, metrics_engine, portfolio, clock):
        metrics = await metrics_engine.calculate_metrics("sm-1", days=30)

        assert metrics.period_end == clock()
        assert metrics.period_start == clock() - timedelta(days=30)
        assert metrics.total_value == 920000
        assert metrics.weighted_value == pytest.approx(660000)
        assert metrics.avg_deal_size == 520000
        assert metrics.won_count == 1
        assert metrics.lost_count == 1
        assert metrics.conversion_rate == 50.0
        assert metrics.avg_cycle_time == 8.0
        assert metrics.stage_distribution == {
            "NEW_LEAD": 3,
            "CONTACTED": 1,
            "QUALIFIED": 2,
            "NEGOTIATION": 1,
            "CLOSING": 1,
            "WON": 1,
            "LOST": 1,
        }
        assert metrics.velocity_by_stage == {
            "NEW_LEAD": 20,
            "CONTACTED": 24,
            "QUALIFIED": 72,
            "NEGOTIATION": 30,
            "CLOSING": 6,
        }

    @pytest.mark.asyncio
    async def test_is_a_pure_read(self, metrics_engine, portfolio):
        first = await metrics_engine.calculate_metrics("sm-1")
        second = await metrics_engine.calculate_metrics("sm-1")
        assert first.to_dict() == second.to_dict()

    @pytest.mark.asyncio
    async def test_window_excludes_old_assignments(self, metrics_engine, portfolio):
        metrics = await metrics_engine.calculate_metrics(
            "sm-1", days=30, as_of=portfolio + timedelta(days=100)
        )
        assert metrics.total_value == 0
        assert metrics.stage_distribution == {}
        assert metrics.conversion_rate == 0.0

    @pytest.mark.asyncio
    async def test_wide_window_includes_old_assignment(self, metrics_engine, portfolio):
        metrics = await metrics_engine.calculate_metrics("sm-1", days=90)
        assert metrics.total_value == 920999
        assert metrics.stage_distribution["NEW_LEAD"] == 4

    @pytest.mark.asyncio
    async def test_actor_without_deals(self, metrics_engine):
        metrics = await metrics_engine.calculate_metrics("nobody")
        data = metrics.to_dict()
        assert data["total_value"] == 0
        assert data["avg_deal_size"] == 0
        assert data["avg_cycle_time"] == 0
        assert data["velocity_by_stage"] == {}

    @pytest.mark.asyncio
    async def test_stage_performance(self, metrics_engine, portfolio):
        performance = await metrics_engine.stage_performance("sm-1", days=30)

        assert list(performance) == [
            "NEW_LEAD",
            "CONTACTED",
            "QUALIFIED",
            "NEGOTIATION",
            "CLOSING",
            "WON",
            "LOST",
        ]
        assert performance["NEW_LEAD"] == {
            "count": 3,
            "avg_duration_hours": 20,
            "avg_probability": 10,
            "avg_estimated_value": 450000,
        }
        assert performance["WON"]["avg_duration_hours"] == 0
        assert performance["QUALIFIED"]["avg_probability"] == 35


class TestComputeMetrics:

    def test_conversion_without_closed_deals_is_zero(self):
        metrics = compute_metrics("sm-1", [_row("a", StageName.NEW_LEAD, 0, open_=True)], T0, T0)
        assert metrics.conversion_rate == 0.0

    def test_velocity_skips_zero_hour_stages(self):
        rows = [
            _row("a", StageName.CONTACTED, 0, duration=0),
            _row("b", StageName.CONTACTED, 0, duration=0),
            _row("c", StageName.CONTACTED, 0, duration=1),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.velocity_by_stage == {"CONTACTED": 1}

    def test_velocity_omits_stage_with_only_zero_hours(self):
        rows = [
            _row("a", StageName.ON_HOLD, 0, duration=0),
            _row("b", StageName.QUALIFIED, 0, duration=3),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.velocity_by_stage == {"QUALIFIED": 3}
        assert metrics.stage_distribution == {"QUALIFIED": 1, "ON_HOLD": 1}

    def test_velocity_rounds_half_up(self):
        rows = [
            _row("a", StageName.QUALIFIED, 0, duration=1),
            _row("b", StageName.QUALIFIED, 0, duration=2),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.velocity_by_stage == {"QUALIFIED": 2}

    def test_cycle_time_skips_won_without_new_lead(self):
        rows = [
            _row("a", StageName.NEW_LEAD, 0, duration=25),
            _row("a", StageName.WON, 25, open_=True, value=100),
            _row("b", StageName.WON, 10, open_=True, value=300),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.avg_cycle_time == 2.0
        assert metrics.avg_deal_size == 200

    def test_cycle_time_skips_same_instant_win(self):
        rows = [
            _row("a", StageName.NEW_LEAD, 0, duration=0),
            _row("a", StageName.WON, 0, open_=True),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.avg_cycle_time == 0.0

    def test_weighted_value_ignores_closed_stages(self):
        rows = [
            _row("a", StageName.NEW_LEAD, 0, duration=5, value=1000, probability=10),
            _row("a", StageName.QUALIFIED, 5, open_=True, value=1000, probability=40),
        ]
        metrics = compute_metrics("sm-1", rows, T0, T0)
        assert metrics.total_value == 1000
        assert metrics.weighted_value == 400


@pytest.mark.parametrize("value, expected", [
    (0.0, 0),
    (0.49, 0),
    (0.5, 1),
    (2.5, 3),
    (20.0, 20),
])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
