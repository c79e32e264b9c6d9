"""
Tests for the phase runner executed inside the detached session.
"""

import os
import sys
from pathlib import Path

import pytest

from conftest import FakeRunner
from wakelab.errors import PhaseFailedError, RunError
from wakelab.training.runner import PhaseRunner, main, run_logged, thread_env
from wakelab.training.supervisor import RunRecord, RunState


class FakeExecutor:
    """Phase executor that records commands and can fail a chosen phase."""

    def __init__(self, fail_on=None, produce=None):
        self.fail_on = fail_on
        self.produce = produce
        self.calls: list[list[str]] = []

    def __call__(self, cmd, cwd, log_path, env):
        self.calls.append(cmd)
        with open(log_path, "a") as log:
            log.write(f"ran {cmd[-1]}\n")
        if self.fail_on and self.fail_on in cmd:
            return 2
        if self.produce and cmd[-1] == "--train_model":
            self.produce()
        return 0

    @property
    def flags(self) -> list[str]:
        return [cmd[-1] for cmd in self.calls]


@pytest.fixture
def make_record(context, tmp_path):
    venv_python = context.venv_dir / "bin" / "python"
    venv_python.parent.mkdir(parents=True)
    venv_python.touch()
    context.repo_dir.mkdir(parents=True)

    def _make(dataset_generator=None) -> RunRecord:
        return RunRecord.from_context(
            context,
            context.run_dir / "training_config.yml",
            python="/usr/bin/python3",
            dataset_generator=dataset_generator,
        )

    return _make


def write_model(path: Path, marker: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"model")
    newer = marker.stat().st_mtime + 10
    os.utime(path, (newer, newer))


class TestPhaseRunner:
    """Tests for the phase sequence."""

    def test_generator_absent_continues(self, make_record, tmp_path, caplog):
        """Test that a missing generator is a warning and all phases still run."""
        record = make_record(dataset_generator=tmp_path / "missing.py")
        executor = FakeExecutor()
        runner = PhaseRunner(record, executor=executor, runner=FakeRunner())

        with caplog.at_level("WARNING", logger="wakelab"):
            state = runner.run()

        assert state is RunState.COMPLETED
        assert executor.flags == ["--generate_clips", "--augment_clips", "--train_model"]
        assert "Dataset generator not found" in caplog.text
        assert RunState.AUGMENTING in runner.machine.history
        assert Path(record.completed_marker).exists()

    def test_generator_runs_before_clips(self, make_record, tmp_path):
        """Test that the manifest step precedes clip generation."""
        generator = tmp_path / "generator.py"
        generator.write_text("")
        record = make_record(dataset_generator=generator)
        executor = FakeExecutor()

        PhaseRunner(record, executor=executor, runner=FakeRunner()).run()

        assert executor.calls[0][:2] == ["/usr/bin/python3", str(generator)]
        assert "--output-dir" in executor.calls[0]
        assert executor.flags[1:] == ["--generate_clips", "--augment_clips", "--train_model"]

    def test_phase_command(self, make_record, context):
        """Test the train.py invocation."""
        record = make_record()
        executor = FakeExecutor()
        PhaseRunner(record, executor=executor, runner=FakeRunner()).run()

        assert executor.calls[0] == [
            str(context.venv_dir / "bin" / "python"),
            "openwakeword/train.py",
            "--training_config",
            record.config_path,
            "--generate_clips",
        ]

    def test_failing_phase_halts(self, make_record):
        """Test that a failing phase stops the sequence in FAILED."""
        record = make_record()
        executor = FakeExecutor(fail_on="--augment_clips")
        runner = PhaseRunner(record, executor=executor, runner=FakeRunner())

        with pytest.raises(PhaseFailedError, match="augment_clips"):
            runner.run()

        assert executor.flags == ["--generate_clips", "--augment_clips"]
        assert runner.machine.state is RunState.FAILED
        assert not Path(record.completed_marker).exists()
        assert "ran --augment_clips" in Path(record.log_path).read_text()

    def test_failing_generator_halts(self, make_record, tmp_path):
        """Test that a present but failing generator is fatal."""
        generator = tmp_path / "generator.py"
        generator.write_text("")
        executor = FakeExecutor(fail_on=str(generator))
        runner = PhaseRunner(make_record(dataset_generator=generator), executor=executor, runner=FakeRunner())

        with pytest.raises(PhaseFailedError, match="dataset_manifest"):
            runner.run()
        assert runner.machine.state is RunState.FAILED

    def test_harvest_after_last_phase(self, make_record, context):
        """Test that new model files are copied once training finishes."""
        record = make_record()
        marker = Path(record.start_marker)
        executor = FakeExecutor(
            produce=lambda: write_model(Path(record.run_dir) / "model" / "hey_jarvis.tflite", marker)
        )
        runner = PhaseRunner(record, executor=executor, runner=FakeRunner())

        runner.run()

        assert [a.path.name for a in runner.artifacts] == ["hey_jarvis.tflite"]
        assert (context.custom_models_dir / "hey_jarvis.tflite").exists()

    def test_missing_venv_is_fatal(self, context):
        """Test that the runner refuses to start without the venv."""
        record = RunRecord.from_context(context, context.run_dir / "cfg.yml", dataset_generator=None)
        runner = PhaseRunner(record, executor=FakeExecutor(), runner=FakeRunner())
        with pytest.raises(RunError, match="venv"):
            runner.run()
        assert runner.machine.state is RunState.FAILED

    def test_openwakeword_not_importable(self, make_record):
        """Test the import check before any phase."""
        executor = FakeExecutor()
        runner = PhaseRunner(make_record(), executor=executor, runner=FakeRunner(default=1))
        with pytest.raises(RunError, match="openwakeword"):
            runner.run()
        assert executor.calls == []


class TestHelpers:
    """Tests for environment and logging helpers."""

    def test_thread_env(self):
        """Test the threading variables."""
        env = thread_env(3)
        assert env["OMP_NUM_THREADS"] == "3"
        assert env["OPENBLAS_NUM_THREADS"] == "1"
        assert env["MKL_NUM_THREADS"] == "1"
        assert env["NUMEXPR_NUM_THREADS"] == "1"

    def test_run_logged_appends(self, tmp_path):
        """Test that output is appended to the log and the exit code returned."""
        log = tmp_path / "training.log"
        log.write_text("previous\n")
        code = run_logged(["sh", "-c", "echo hello; exit 3"], tmp_path, log, dict(os.environ))
        assert code == 3
        assert log.read_text() == "previous\nhello\n"

    def test_run_logged_undecodable_output(self, tmp_path):
        """Test that bytes outside UTF-8 are replaced instead of aborting the read."""
        log = tmp_path / "training.log"
        code = run_logged(
            [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'loss \\xff\\xfe\\n')"],
            tmp_path,
            log,
            dict(os.environ),
        )
        assert code == 0
        assert log.read_text(encoding="utf-8") == "loss \ufffd\ufffd\n"


class TestFailureHandling:
    """Tests for phases and entry points that fail outside the normal path."""

    def test_undecodable_phase_output_completes(self, make_record):
        """Test that a successful phase with odd output still completes the run."""
        record = make_record()

        def noisy(cmd, cwd, log_path, env):
            child = [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'step \\xff\\n')"]
            return run_logged(child, cwd, log_path, env)

        runner = PhaseRunner(record, executor=noisy, runner=FakeRunner())

        assert runner.run() is RunState.COMPLETED
        assert Path(record.completed_marker).exists()

    def test_unexpected_error_marks_failed(self, make_record):
        """Test that a non-domain error still moves the run to FAILED."""
        record = make_record()

        def broken(cmd, cwd, log_path, env):
            raise OSError("pipe closed")

        runner = PhaseRunner(record, executor=broken, runner=FakeRunner())

        with pytest.raises(OSError, match="pipe closed"):
            runner.run()
        assert runner.machine.state is RunState.FAILED
        assert not Path(record.completed_marker).exists()

    def test_main_missing_record_exits_1(self, tmp_path, caplog):
        """Test that an unreadable run.json is reported instead of escaping."""
        with caplog.at_level("ERROR", logger="wakelab"):
            code = main(["--record", str(tmp_path / "missing" / "run.json")])
        assert code == 1
        assert "FATAL" in caplog.text
