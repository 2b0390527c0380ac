"""
Pipeline Stage State Machine

Fixed stage graph, default probabilities and assignment status derivation.
Pure validation, no DB/IO.
"""

from dataclasses import replace
from typing import Dict, List

from transitions import Machine

from realty.pipeline.models import (
    AssignmentStatus,
    PipelineStage,
    StageName,
    StageUpdate,
    STAGE_PROBABILITY,
    TERMINAL_STAGES,
)


# Valid transitions: key = current stage, value = allowed next stages
STAGE_PROGRESSION: Dict[StageName, List[StageName]] = {
    StageName.NEW_LEAD: [StageName.CONTACTED, StageName.QUALIFIED, StageName.LOST],
    StageName.CONTACTED: [
        StageName.QUALIFIED,
        StageName.PROPOSAL_SENT,
        StageName.PROPERTY_VIEWING,
        StageName.LOST,
        StageName.ON_HOLD,
    ],
    StageName.QUALIFIED: [
        StageName.PROPOSAL_SENT,
        StageName.PROPERTY_VIEWING,
        StageName.NEGOTIATION,
        StageName.LOST,
    ],
    StageName.PROPOSAL_SENT: [
        StageName.NEGOTIATION,
        StageName.PROPERTY_VIEWING,
        StageName.APPLICATION,
        StageName.LOST,
        StageName.ON_HOLD,
    ],
    StageName.NEGOTIATION: [
        StageName.APPLICATION,
        StageName.CLOSING,
        StageName.PROPOSAL_SENT,
        StageName.LOST,
    ],
    StageName.PROPERTY_VIEWING: [
        StageName.APPLICATION,
        StageName.NEGOTIATION,
        StageName.QUALIFIED,
        StageName.LOST,
    ],
    StageName.APPLICATION: [StageName.CLOSING, StageName.NEGOTIATION, StageName.LOST],
    StageName.CLOSING: [StageName.WON, StageName.LOST, StageName.ON_HOLD],
    StageName.ON_HOLD: [
        StageName.CONTACTED,
        StageName.QUALIFIED,
        StageName.NEGOTIATION,
        StageName.LOST,
    ],
    StageName.WON: [],
    StageName.LOST: [],
}

STATUS_BY_STAGE: Dict[StageName, AssignmentStatus] = {
    StageName.WON: AssignmentStatus.COMPLETED,
    StageName.LOST: AssignmentStatus.CANCELLED,
    StageName.ON_HOLD: AssignmentStatus.ON_HOLD,
}


def trigger_name(target: StageName) -> str:
    """Trigger that moves the lifecycle into `target`."""
    return f"move_to_{target.value.lower()}"


STATES = [stage.value for stage in StageName]

TRANSITIONS = [
    {"trigger": trigger_name(dest), "source": source.value, "dest": dest.value}
    for source, targets in STAGE_PROGRESSION.items()
    for dest in targets
]


class StageLifecycle:
    """Stage graph of a single assignment (pure validation, no IO)"""

    def __init__(self, initial_stage: StageName = StageName.NEW_LEAD):
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial_stage.value,
            auto_transitions=False,
            send_event=False,
        )

    @property
    def stage(self) -> StageName:
        return StageName(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def allowed_targets(self) -> List[StageName]:
        """Stages reachable in one move, in graph order."""
        available = set(self.machine.get_triggers(self.state))
        return [s for s in STAGE_PROGRESSION[self.stage] if trigger_name(s) in available]

    def can_move_to(self, target: StageName) -> bool:
        return trigger_name(target) in self.machine.get_triggers(self.state)

    def move_to(self, target: StageName) -> bool:
        """Fire the transition. Returns False if the graph forbids it."""
        if not self.can_move_to(target):
            return False
        getattr(self, trigger_name(target))()
        return True


def is_valid_transition(from_stage: StageName, to_stage: StageName) -> bool:
    """Whether the fixed stage graph allows moving from `from_stage` to `to_stage`."""
    return StageLifecycle(from_stage).can_move_to(to_stage)


def allowed_transitions(from_stage: StageName) -> List[StageName]:
    return StageLifecycle(from_stage).allowed_targets()


def default_probability(stage: StageName) -> int:
    return STAGE_PROBABILITY.get(stage, 0)


def derive_assignment_status(stage: StageName) -> AssignmentStatus:
    """Assignment status implied by the newly opened stage."""
    return STATUS_BY_STAGE.get(stage, AssignmentStatus.ACTIVE)


def merge_stage_update(stage: PipelineStage, update: StageUpdate) -> PipelineStage:
    """
    Apply a partial update to a stage's mutable fields.

    Fields left as None in the update keep the stage's current value.
    Returns a new PipelineStage; the input is not modified.
    """
    return replace(
        stage,
        probability=stage.probability if update.probability is None else update.probability,
        estimated_value=(
            stage.estimated_value if update.estimated_value is None else update.estimated_value
        ),
        next_action=stage.next_action if update.next_action is None else update.next_action,
        next_action_date=(
            stage.next_action_date if update.next_action_date is None else update.next_action_date
        ),
        notes=stage.notes if update.notes is None else update.notes,
    )
