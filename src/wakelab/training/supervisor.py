"""
Run supervision for detached training sessions.

This module provides:
- The run state machine shared by the launcher and the detached runner
- RunRecord, the on-disk description of a run that the session reads
- Session managers (tmux) with launch/exists semantics
- RunSupervisor, which materializes the run script and launches it

Once a session is launched the run directory belongs to it; the launching
process does not write there again.
"""

import json
import logging
import shlex
import sys
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from ..config import Config, RunContext
from ..environment.shell import CommandRunner, run_command
from ..errors import InvalidTransitionError, SessionExistsError, SessionLaunchError

logger = logging.getLogger(__name__)


# ============================================================================
# State machine
# ============================================================================


class RunState(str, Enum):
    """Lifecycle of a training run."""

    PLANNING = "planning"
    CONFIG_READY = "config_ready"
    DATASET_GENERATING = "dataset_generating"
    CLIPS_GENERATED = "clips_generated"
    AUGMENTING = "augmenting"
    AUGMENTED = "augmented"
    TRAINING = "training"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED})

TRANSITIONS: dict[RunState, RunState] = {
    RunState.PLANNING: RunState.CONFIG_READY,
    RunState.CONFIG_READY: RunState.DATASET_GENERATING,
    RunState.DATASET_GENERATING: RunState.CLIPS_GENERATED,
    RunState.CLIPS_GENERATED: RunState.AUGMENTING,
    RunState.AUGMENTING: RunState.AUGMENTED,
    RunState.AUGMENTED: RunState.TRAINING,
    RunState.TRAINING: RunState.COMPLETED,
}

# Human-readable state descriptions for the log
STATE_DESCRIPTIONS = {
    RunState.PLANNING: "Planning run...",
    RunState.CONFIG_READY: "Training config ready",
    RunState.DATASET_GENERATING: "Generating dataset and clips...",
    RunState.CLIPS_GENERATED: "Clips generated",
    RunState.AUGMENTING: "Augmenting clips...",
    RunState.AUGMENTED: "Clips augmented",
    RunState.TRAINING: "Training the model...",
    RunState.COMPLETED: "Training complete!",
    RunState.FAILED: "Training failed",
}


class RunStateMachine:
    """Enforces the linear phase order, with FAILED reachable from any live state."""

    def __init__(self, state: RunState = RunState.PLANNING) -> None:
        self.state = state
        self.history: list[RunState] = [state]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, target: RunState) -> RunState:
        """Move to target, which must be the next state in the sequence."""
        if TRANSITIONS.get(self.state) is not target:
            raise InvalidTransitionError(
                f"Cannot move from {self.state.value} to {target.value}"
            )
        return self._enter(target)

    def fail(self) -> RunState:
        """Move to FAILED from any non-terminal state."""
        if self.is_terminal:
            raise InvalidTransitionError(f"Run already finished ({self.state.value})")
        return self._enter(RunState.FAILED)

    def _enter(self, state: RunState) -> RunState:
        self.state = state
        self.history.append(state)
        logger.info(f"[{state.value}] {STATE_DESCRIPTIONS[state]}")
        return state


# ============================================================================
# Run record
# ============================================================================

PHASE_SEQUENCE = ("generate_clips", "augment_clips", "train_model")

DEFAULT_DATASET_GENERATOR = Path(__file__).resolve().parent.parent / "dataset.py"


@dataclass
class RunRecord:
    """Everything the detached session needs, persisted as run.json."""

    run_id: str
    session_name: str
    wake_phrase: str
    run_dir: str
    config_path: str
    dataset_dir: str
    dataset_manifest: str
    log_path: str
    start_marker: str
    completed_marker: str
    script_path: str
    venv_dir: str
    repo_dir: str
    custom_models_dir: str
    data_dir: str
    train_threads: int
    umask: int
    python: str
    phases: list[str] = field(default_factory=lambda: list(PHASE_SEQUENCE))
    dataset_generator: Optional[str] = None
    dataset_options: dict[str, Any] = field(default_factory=dict)

    @property
    def record_path(self) -> Path:
        return Path(self.run_dir) / Config.RUN_RECORD_NAME

    @classmethod
    def from_context(
        cls,
        context: RunContext,
        config_path: Path,
        python: str = sys.executable,
        dataset_generator: Optional[Path] = DEFAULT_DATASET_GENERATOR,
    ) -> "RunRecord":
        run_dir = context.run_dir
        dataset_dir = run_dir / Config.DATASET_DIR_NAME
        return cls(
            run_id=context.run_id,
            session_name=context.session_name,
            wake_phrase=context.wake_phrase,
            run_dir=str(run_dir),
            config_path=str(config_path),
            dataset_dir=str(dataset_dir),
            dataset_manifest=str(dataset_dir / Config.DATASET_MANIFEST_NAME),
            log_path=str(run_dir / Config.RUN_LOG_NAME),
            start_marker=str(run_dir / Config.START_MARKER_NAME),
            completed_marker=str(run_dir / Config.COMPLETED_MARKER_NAME),
            script_path=str(run_dir / Config.RUN_SCRIPT_NAME),
            venv_dir=str(context.venv_dir),
            repo_dir=str(context.repo_dir),
            custom_models_dir=str(context.custom_models_dir),
            data_dir=str(context.data_dir),
            train_threads=context.train_threads,
            umask=context.umask,
            python=python,
            dataset_generator=str(dataset_generator) if dataset_generator else None,
            dataset_options=asdict(context.dataset),
        )

    def save(self) -> Path:
        path = self.record_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2)
            f.write("\n")
        return path

    @classmethod
    def load(cls, path: Path) -> "RunRecord":
        with open(path, "r", encoding="utf-8") as f:
            return cls(**json.load(f))


# ============================================================================
# Sessions
# ============================================================================


@dataclass(frozen=True)
class SessionHandle:
    """A launched detached session."""

    name: str
    command: str

    @property
    def attach_command(self) -> str:
        return f"tmux attach -t {self.name}"


class SessionManager(Protocol):
    """Named, detached execution contexts."""

    def exists(self, name: str) -> bool: ...

    def launch(self, name: str, command: str) -> SessionHandle: ...


class TmuxSessionManager:
    """Session manager backed by tmux."""

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self._run = runner

    def exists(self, name: str) -> bool:
        # "=" makes tmux match the name exactly instead of by prefix
        code, _, _ = self._run(["tmux", "has-session", "-t", f"={name}"], capture=True)
        return code == 0

    def launch(self, name: str, command: str) -> SessionHandle:
        if self.exists(name):
            raise SessionExistsError(name)
        code, _, stderr = self._run(
            ["tmux", "new-session", "-d", "-s", name, command], capture=True
        )
        if code != 0:
            raise SessionLaunchError(f"tmux new-session failed for {name}: {stderr.strip()}")
        return SessionHandle(name=name, command=command)


# ============================================================================
# Supervisor
# ============================================================================


class RunSupervisor:
    """
    Materializes a run and hands it to a detached session.

    The supervisor's job ends at a successful launch; the phases themselves
    run in ``wakelab.training.runner`` inside the session.
    """

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    def ensure_available(self, name: str) -> None:
        """Fail early if a run with this identity is already in progress."""
        if self.sessions.exists(name):
            raise SessionExistsError(name)

    def prepare(self, record: RunRecord) -> Path:
        """
        Write run.json and the executable script the session will run.

        Returns:
            Path of the run script
        """
        record_path = record.save()
        script = Path(record.script_path)
        script.write_text(
            "#!/usr/bin/env bash\n"
            "set -euo pipefail\n"
            f"umask {record.umask:03o}\n"
            f"exec {shlex.quote(record.python)} -m wakelab.training.runner "
            f"--record {shlex.quote(str(record_path))}\n",
            encoding="utf-8",
        )
        script.chmod(0o755)
        return script

    def launch(self, record: RunRecord) -> SessionHandle:
        """
        Prepare the run and start its detached session.

        Raises:
            SessionExistsError: If a session with the same name exists
        """
        self.ensure_available(record.session_name)
        script = self.prepare(record)
        logger.info(f"Launching training in tmux session: {record.session_name}")
        handle = self.sessions.launch(
            record.session_name, f"bash -lc {shlex.quote(str(script))}"
        )
        logger.info("tmux session started.")
        return handle
