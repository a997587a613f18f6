"""Release pipeline: stages, collaborators and the orchestrator."""

from .errors import StageError
from .lanes import LANES, Lane, get_lane
from .model import PipelineRun, RunStatus, Stage, StageResult, StageStatus

__all__ = [
    "LANES",
    "Lane",
    "PipelineRun",
    "RunStatus",
    "Stage",
    "StageError",
    "StageResult",
    "StageStatus",
    "get_lane",
]
