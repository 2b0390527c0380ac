"""
Pipeline Metrics

Read-only aggregation over stage history: pipeline value, conversion,
cycle time and per-stage velocity for one sales actor.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from realty.pipeline.models import PipelineStage, StageName, utcnow
from realty.pipeline.repository import PipelineStore
from realty.pipeline.tracker import Clock

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


@dataclass
class PipelineMetrics:
    """Portfolio metrics for one sales actor over a lookback window"""
    actor_id: str
    period_start: datetime
    period_end: datetime

    total_value: float = 0.0
    weighted_value: float = 0.0  # total value * probability
    avg_deal_size: float = 0.0
    conversion_rate: float = 0.0  # percent of closed deals that were won
    avg_cycle_time: float = 0.0  # days from NEW_LEAD to WON
    won_count: int = 0
    lost_count: int = 0
    stage_distribution: Dict[str, int] = field(default_factory=dict)
    velocity_by_stage: Dict[str, int] = field(default_factory=dict)  # mean non-zero hours per stage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "total_value": self.total_value,
            "weighted_value": self.weighted_value,
            "avg_deal_size": self.avg_deal_size,
            "conversion_rate": self.conversion_rate,
            "avg_cycle_time": self.avg_cycle_time,
            "won_count": self.won_count,
            "lost_count": self.lost_count,
            "stage_distribution": dict(self.stage_distribution),
            "velocity_by_stage": dict(self.velocity_by_stage),
        }


def _group_by_stage(stages: List[PipelineStage]) -> Dict[StageName, List[PipelineStage]]:
    grouped: Dict[StageName, List[PipelineStage]] = defaultdict(list)
    for stage in stages:
        grouped[stage.stage].append(stage)
    # Stable, vocabulary-ordered output
    return {name: grouped[name] for name in StageName if name in grouped}


def _cycle_days(stages: List[PipelineStage], won: PipelineStage) -> int:
    new_lead = next(
        (
            s for s in stages
            if s.assignment_id == won.assignment_id and s.stage == StageName.NEW_LEAD
        ),
        None,
    )
    if new_lead is None:
        return 0
    seconds = (won.entered_at - new_lead.entered_at).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY)


def compute_metrics(
    actor_id: str,
    stages: List[PipelineStage],
    period_start: datetime,
    period_end: datetime,
) -> PipelineMetrics:
    """Pure aggregation over an actor's stage rows."""
    metrics = PipelineMetrics(actor_id=actor_id, period_start=period_start, period_end=period_end)

    open_stages = [s for s in stages if s.is_open]
    won = [s for s in stages if s.stage == StageName.WON]
    lost = [s for s in stages if s.stage == StageName.LOST]

    metrics.total_value = sum(s.estimated_value or 0 for s in open_stages)
    metrics.weighted_value = sum(s.weighted_value for s in open_stages)
    metrics.avg_deal_size = _mean([s.estimated_value or 0 for s in won])

    metrics.won_count = len(won)
    metrics.lost_count = len(lost)
    closed = len(won) + len(lost)
    metrics.conversion_rate = len(won) / closed * 100 if closed > 0 else 0.0

    grouped = _group_by_stage(stages)
    metrics.stage_distribution = {name.value: len(rows) for name, rows in grouped.items()}

    for name, rows in grouped.items():
        # Stages left the instant they opened are skipped
        durations = [s.duration_hours for s in rows if s.duration_hours]
        if durations:
            metrics.velocity_by_stage[name.value] = round_half_up(_mean(durations))

    cycle_times = [days for days in (_cycle_days(stages, s) for s in won) if days > 0]
    metrics.avg_cycle_time = _mean(cycle_times)

    return metrics


class MetricsEngine:
    """Sales analytics over the stage store"""

    def __init__(self, store: PipelineStore, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or utcnow

    async def calculate_metrics(
        self,
        actor_id: str,
        days: int = 30,
        as_of: Optional[datetime] = None,
    ) -> PipelineMetrics:
        """Metrics over the actor's assignments assigned within the last `days` days."""
        period_end = as_of or self._clock()
        period_start = period_end - timedelta(days=days)
        stages = await self._store.list_stages_for_actor(actor_id, period_start)
        metrics = compute_metrics(actor_id, stages, period_start, period_end)
        logger.info(
            f"Metrics for {actor_id} over {days}d: {len(stages)} stages, "
            f"conversion {metrics.conversion_rate:.1f}%"
        )
        return metrics

    async def stage_performance(
        self,
        actor_id: str,
        days: int = 30,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Per stage: row count and average duration, probability and estimated value."""
        period_end = as_of or self._clock()
        stages = await self._store.list_stages_for_actor(
            actor_id, period_end - timedelta(days=days)
        )

        performance: Dict[str, Dict[str, Any]] = {}
        for name, rows in _group_by_stage(stages).items():
            durations = [s.duration_hours for s in rows if s.duration_hours is not None]
            values = [s.estimated_value for s in rows if s.estimated_value is not None]
            performance[name.value] = {
                "count": len(rows),
                "avg_duration_hours": round_half_up(_mean(durations)),
                "avg_probability": round_half_up(_mean([s.probability for s in rows])),
                "avg_estimated_value": _mean(values),
            }
        return performance
