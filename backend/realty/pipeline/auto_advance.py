"""
Activity-driven Stage Advancement

Logging certain sales actions also proposes a stage move. The activity is
always recorded; the move is only applied when the stage graph allows it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from realty.pipeline.activity_log import ActivityLog
from realty.pipeline.errors import InvalidTransitionError
from realty.pipeline.models import ActivityType, PipelineActivity, PipelineStage, StageName
from realty.pipeline.stage_machine import is_valid_transition
from realty.pipeline.tracker import PipelineTracker

logger = logging.getLogger(__name__)


# Candidate stage per activity type; types not listed never move the deal
AUTO_ADVANCE_STAGES: Dict[ActivityType, StageName] = {
    ActivityType.PHONE_CALL: StageName.CONTACTED,
    ActivityType.EMAIL_SENT: StageName.CONTACTED,
    ActivityType.MEETING_COMPLETED: StageName.QUALIFIED,
    ActivityType.PROPERTY_SHOWING: StageName.PROPERTY_VIEWING,
    ActivityType.PROPOSAL_SENT: StageName.PROPOSAL_SENT,
    ActivityType.APPLICATION_SUBMITTED: StageName.APPLICATION,
    ActivityType.CONTRACT_SENT: StageName.CLOSING,
    ActivityType.CONTRACT_SIGNED: StageName.CLOSING,
    ActivityType.DEAL_CLOSED: StageName.WON,
    ActivityType.DEAL_LOST: StageName.LOST,
}


def candidate_stage(activity_type: ActivityType) -> Optional[StageName]:
    return AUTO_ADVANCE_STAGES.get(activity_type)


class IngestOutcome(Enum):
    """What logging an activity did to the deal"""
    ADVANCED = "advanced"                  # candidate stage opened
    SKIPPED = "skipped"                    # candidate not reachable from the open stage
    NO_RULE = "no_rule"                    # activity type has no candidate stage
    ALREADY_IN_STAGE = "already_in_stage"  # open stage is already the candidate


@dataclass
class IngestResult:
    """Recorded activity plus the stage the assignment ended up in"""
    activity: PipelineActivity
    outcome: IngestOutcome
    stage: Optional[PipelineStage]
    candidate: Optional[StageName] = None

    @property
    def advanced(self) -> bool:
        return self.outcome == IngestOutcome.ADVANCED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity": self.activity.to_dict(),
            "outcome": self.outcome.value,
            "candidate_stage": self.candidate.value if self.candidate else None,
            "stage": self.stage.to_dict() if self.stage else None,
        }


class ActivityIngestor:
    """Activity-ingestion boundary: log first, then try to advance"""

    def __init__(self, activity_log: ActivityLog, tracker: PipelineTracker):
        self._activity_log = activity_log
        self._tracker = tracker

    async def record(
        self,
        assignment_id: str,
        activity_type: ActivityType,
        description: str,
        actor_id: str,
        outcome: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> IngestResult:
        activity = await self._activity_log.add_activity(
            assignment_id,
            activity_type,
            description,
            actor_id,
            outcome=outcome,
            scheduled_at=scheduled_at,
            completed_at=completed_at,
        )

        target = candidate_stage(activity_type)
        current = await self._tracker.store.get_open_stage(assignment_id)

        if target is None:
            return IngestResult(activity, IngestOutcome.NO_RULE, current)
        if current is not None and current.stage == target:
            return IngestResult(activity, IngestOutcome.ALREADY_IN_STAGE, current, target)
        if current is None or not is_valid_transition(current.stage, target):
            logger.warning(
                f"Auto-advance skipped for assignment {assignment_id}: "
                f"{activity_type.value} cannot move "
                f"{current.stage.value if current else 'nothing'} to {target.value}"
            )
            return IngestResult(activity, IngestOutcome.SKIPPED, current, target)

        try:
            stage = await self._tracker.move_to_stage(assignment_id, target, actor_id)
        except InvalidTransitionError as e:
            # Stage moved between the check and the transition
            logger.warning(f"Auto-advance skipped for assignment {assignment_id}: {e}")
            current = await self._tracker.store.get_open_stage(assignment_id)
            return IngestResult(activity, IngestOutcome.SKIPPED, current, target)

        return IngestResult(activity, IngestOutcome.ADVANCED, stage, target)
