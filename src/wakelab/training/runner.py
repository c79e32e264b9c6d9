"""
Phase runner executed inside the detached training session.

Usage (normally started by the generated run_training.sh):
    python -m wakelab.training.runner --record /path/to/run/run.json

The runner touches the start marker, optionally builds the dataset
manifest, runs the three openWakeWord phases against the same config and
finally harvests new model files. Every phase appends to one cumulative log.
A failing phase stops the sequence; nothing is retried or resumed.
"""

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, Optional

from ..config import Config
from ..environment.shell import CommandRunner, run_command
from ..errors import PhaseFailedError, RunError, WakeLabError
from .harvest import Artifact, harvest
from .supervisor import RunRecord, RunState, RunStateMachine

logger = logging.getLogger(__name__)

# (cmd, cwd, log_path, env) -> exit code
PhaseExecutor = Callable[[list[str], Path, Path, dict], int]

# States entered before and after each phase
PHASE_STATES: dict[str, tuple[RunState, RunState]] = {
    "generate_clips": (RunState.DATASET_GENERATING, RunState.CLIPS_GENERATED),
    "augment_clips": (RunState.AUGMENTING, RunState.AUGMENTED),
    "train_model": (RunState.TRAINING, RunState.COMPLETED),
}


def run_logged(cmd: list[str], cwd: Path, log_path: Path, env: dict) -> int:
    """Run cmd, echoing combined output to stdout and appending it to log_path."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    # Tool output is not guaranteed to be valid UTF-8
    with open(log_path, "a", encoding="utf-8") as log, subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    ) as process:
        for line in process.stdout:
            sys.stdout.write(line)
            log.write(line)
            log.flush()
    return process.returncode


def thread_env(threads: int) -> dict[str, str]:
    """Environment limiting BLAS/OpenMP threading for training."""
    return {
        "OMP_NUM_THREADS": str(threads),
        "OPENBLAS_NUM_THREADS": "1",
        "MKL_NUM_THREADS": "1",
        "NUMEXPR_NUM_THREADS": "1",
    }


class PhaseRunner:
    """Drives one run from CONFIG_READY to COMPLETED (or FAILED)."""

    def __init__(
        self,
        record: RunRecord,
        executor: PhaseExecutor = run_logged,
        runner: CommandRunner = run_command,
    ) -> None:
        """
        Initialize the phase runner.

        Args:
            record: The run to execute
            executor: Runs a logged phase command and returns its exit code
            runner: Runs short commands (import checks)
        """
        self.record = record
        self.execute = executor
        self._run = runner
        self.machine = RunStateMachine(RunState.CONFIG_READY)
        self.artifacts: list[Artifact] = []

    @property
    def venv_python(self) -> Path:
        return Path(self.record.venv_dir) / "bin" / "python"

    @property
    def log_path(self) -> Path:
        return Path(self.record.log_path)

    def _env(self) -> dict:
        env = dict(os.environ)
        env.update(thread_env(self.record.train_threads))
        env["VIRTUAL_ENV"] = self.record.venv_dir
        env["PATH"] = f"{Path(self.record.venv_dir) / 'bin'}{os.pathsep}{env.get('PATH', '')}"
        return env

    def check_environment(self) -> None:
        """The venv must exist and import openwakeword."""
        if not self.venv_python.exists():
            raise RunError(f"Missing venv interpreter: {self.venv_python}")
        code, _, _ = self._run([str(self.venv_python), "-c", "import openwakeword"], capture=True)
        if code != 0:
            raise RunError("openwakeword not importable inside venv.")

    def generate_dataset(self, env: dict) -> bool:
        """
        Build the dataset manifest if the generator is present.

        Returns:
            True if the manifest step ran, False if it was skipped
        """
        generator = self.record.dataset_generator
        if not generator or not Path(generator).is_file():
            logger.warning(
                f"Dataset generator not found at {generator}; skipping dataset manifest generation."
            )
            return False

        opts = self.record.dataset_options
        data_dir = Path(self.record.data_dir)
        cmd = [
            self.record.python,
            generator,
            "--output-dir", self.record.dataset_dir,
            "--wake-phrase", self.record.wake_phrase,
            "--positive-sources", opts.get("positive_sources") or str(data_dir / "positives"),
            "--negative-sources", opts.get("negative_sources") or str(data_dir / "negatives"),
            "--max-positives", str(opts.get("max_positives", "")),
            "--max-negatives", str(opts.get("max_negatives", "")),
            "--min-per-source", str(opts.get("min_per_source", "")),
            "--seed", str(opts.get("seed", Config.DATASET_SEED)),
        ]
        logger.info("Generating diversified dataset manifest...")
        code = self.execute(cmd, Path(self.record.repo_dir), self.log_path, env)
        if code != 0:
            raise PhaseFailedError("dataset_manifest", code)
        return True

    def run_phase(self, phase: str, env: dict) -> None:
        flag = Config.PHASE_FLAGS[phase]
        cmd = [
            str(self.venv_python),
            Config.OWW_TRAIN_SCRIPT,
            "--training_config",
            self.record.config_path,
            flag,
        ]
        logger.info(f"Running phase {phase}: {' '.join(cmd)}")
        code = self.execute(cmd, Path(self.record.repo_dir), self.log_path, env)
        if code != 0:
            raise PhaseFailedError(phase, code)

    def run(self) -> RunState:
        """
        Execute the whole sequence.

        Raises:
            WakeLabError: After moving to FAILED, for any fatal condition;
                unexpected errors also move to FAILED before propagating
        """
        try:
            self.check_environment()
            env = self._env()

            Path(self.record.run_dir).mkdir(parents=True, exist_ok=True)
            Path(self.record.custom_models_dir).mkdir(parents=True, exist_ok=True)
            start_marker = Path(self.record.start_marker)
            start_marker.touch()

            logger.info("Training start")
            logger.info(f"Config: {self.record.config_path}")
            logger.info(f"Run dir: {self.record.run_dir}")
            logger.info(f"Threads: {self.record.train_threads}")

            for phase in self.record.phases:
                before, after = PHASE_STATES[phase]
                self.machine.advance(before)
                if phase == "generate_clips":
                    self.generate_dataset(env)
                self.run_phase(phase, env)
                if after is not RunState.COMPLETED:
                    self.machine.advance(after)

            logger.info("Training finished; searching for newly produced model artifacts...")
            self.artifacts = harvest(
                [self.record.run_dir, self.record.repo_dir],
                start_marker,
                Path(self.record.custom_models_dir),
            )
            self.machine.advance(RunState.COMPLETED)
            Path(self.record.completed_marker).touch()
            logger.info("Done.")
            return self.machine.state
        except Exception:
            if not self.machine.is_terminal:
                self.machine.fail()
            raise


def setup_logging(log_path: Optional[Path] = None) -> None:
    """Console logging for the session, mirrored into the run log."""
    formatter = logging.Formatter(
        "[%(asctime)s] [train] %(levelname)s %(message)s", "%Y-%m-%dT%H:%M:%S"
    )
    root = logging.getLogger("wakelab")
    root.setLevel(logging.INFO)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point of the detached session."""
    parser = argparse.ArgumentParser(description="Run the training phases of a prepared run")
    parser.add_argument("--record", required=True, type=Path, help="Path to run.json")
    args = parser.parse_args(argv)

    try:
        record = RunRecord.load(args.record)
        os.umask(record.umask)
        setup_logging(Path(record.log_path))
        PhaseRunner(record).run()
    except WakeLabError as e:
        logger.error(f"FATAL: {e}")
        return 1
    except Exception as e:
        logger.error(f"FATAL: {e}")
        logger.debug("Unexpected error", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
