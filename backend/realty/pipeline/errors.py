"""
Pipeline Errors
"""

from typing import List, Optional

from realty.pipeline.models import StageName


class PipelineError(Exception):
    """Base class for pipeline engine errors."""


class InvalidTransitionError(PipelineError):
    """Raised when the requested stage is not reachable from the open stage."""
    def __init__(
        self,
        from_stage: StageName,
        to_stage: StageName,
        allowed: Optional[List[StageName]] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.allowed = allowed or []
        allowed_names = [s.value for s in self.allowed]
        super().__init__(
            f"Invalid transition from {from_stage.value} to {to_stage.value}. "
            f"Allowed: {allowed_names}"
        )


class InvalidProbabilityError(PipelineError, ValueError):
    """Raised when a probability falls outside 0..100."""
    def __init__(self, probability: int):
        self.probability = probability
        super().__init__(f"Probability must be between 0 and 100, got {probability}")


class AssignmentNotFoundError(PipelineError):
    """Raised when the referenced assignment does not exist."""
    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"Assignment {assignment_id} not found")


class ConcurrentModificationError(PipelineError):
    """Raised when another transition closed the open stage between read and write."""
    def __init__(self, assignment_id: str, stage_id: Optional[str] = None):
        self.assignment_id = assignment_id
        self.stage_id = stage_id
        super().__init__(
            f"Open stage {stage_id or '?'} of assignment {assignment_id} "
            f"was modified concurrently"
        )
