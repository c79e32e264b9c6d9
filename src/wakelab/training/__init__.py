"""
Training module for WakeLab.

This module synthesizes the run's training config, launches the detached
phase sequence and harvests the model files it produces.
"""

from .harvest import Artifact, find_artifacts, harvest
from .runner import PhaseRunner
from .supervisor import (
    RunRecord,
    RunState,
    RunStateMachine,
    RunSupervisor,
    SessionHandle,
    SessionManager,
    TmuxSessionManager,
)
from .synthesizer import (
    ALIAS_GROUPS,
    SynthesisParams,
    SynthesisResult,
    rewrite_tree,
    synthesize,
)

__all__ = [
    # Synthesis
    "ALIAS_GROUPS",
    "SynthesisParams",
    "SynthesisResult",
    "rewrite_tree",
    "synthesize",
    # Supervision
    "RunRecord",
    "RunState",
    "RunStateMachine",
    "RunSupervisor",
    "SessionHandle",
    "SessionManager",
    "TmuxSessionManager",
    # Execution
    "PhaseRunner",
    # Harvesting
    "Artifact",
    "find_artifacts",
    "harvest",
]
