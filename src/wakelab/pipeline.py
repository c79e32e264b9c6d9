"""
Orchestration of one training run.

The steps run strictly in order and each one raises on a fatal condition:

1. Workspace directories and the free disk gate
2. Collaborator service probes
3. System packages (apt), then the openWakeWord checkout and venv
4. Python packages inside the venv, skipping what a reachable service covers
5. Training config synthesis
6. Launch of the detached phase sequence

Nothing is rolled back when a step fails. Once the session is launched the
run directory belongs to it and this module does not touch it again.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

from .config import Config, RunContext, ServiceEndpoint, ensure_directories
from .environment.probe import OWW_SERVICE, PIPER_SERVICE, ServiceReport, probe_services
from .environment.provisioning import (
    AptBackend,
    PackageBackend,
    PipInstaller,
    ProvisioningPlanner,
    ProvisionResult,
    plan_python_packages,
    should_install_openwakeword,
)
from .environment.resources import enforce, platform_summary, require_command
from .environment.shell import CommandRunner, run_command
from .environment.workspace import create_venv, sync_repository
from .errors import ProvisioningError, SessionExistsError
from .training.supervisor import (
    RunRecord,
    RunState,
    RunStateMachine,
    RunSupervisor,
    SessionHandle,
    SessionManager,
    TmuxSessionManager,
)
from .training.synthesizer import SynthesisParams, SynthesisResult, synthesize

logger = logging.getLogger(__name__)

# Commands needed before system packages are installed
BOOTSTRAP_COMMANDS = ("python3",)
# Commands provided by the required apt tier
PROVISIONED_COMMANDS = ("git", "tmux")

Prober = Callable[[Mapping[str, ServiceEndpoint]], ServiceReport]


@dataclass
class RunSummary:
    """What the operator needs once the session is running."""

    context: RunContext
    services: ServiceReport
    record: RunRecord
    handle: SessionHandle
    synthesis: SynthesisResult
    system_packages: ProvisionResult = field(default_factory=ProvisionResult)

    def lines(self) -> list[str]:
        """Final report, one line per fact."""
        return [
            "Training started in background.",
            f"Wake phrase: {self.context.wake_phrase}",
            f"Slug: {self.context.model_slug}",
            f"Run dir: {self.record.run_dir}",
            f"Log file: {self.record.log_path}",
            f"Custom models: {self.record.custom_models_dir}",
            f"Attach: {self.handle.attach_command}",
            "Detected services:",
            *(f"  {line}" for line in self.services.lines()),
        ]


class Orchestrator:
    """
    Runs the bootstrap steps for a single RunContext.

    Every collaborator that touches the host (subprocesses, the package
    manager, the session multiplexer, the network probes) can be injected.
    """

    def __init__(
        self,
        context: RunContext,
        runner: CommandRunner = run_command,
        backend: Optional[PackageBackend] = None,
        sessions: Optional[SessionManager] = None,
        prober: Prober = probe_services,
        online: Optional[bool] = None,
        which: Callable[[str], str] = require_command,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            context: Frozen settings for this run
            runner: Subprocess runner for git, venv and pip
            backend: System package backend (apt if None)
            sessions: Detached session manager (tmux if None)
            prober: Service probe function
            online: Force the network check result (detected if None)
            which: Command lookup that raises when a tool is missing
        """
        self.context = context
        self._run = runner
        self.backend = backend if backend is not None else AptBackend(runner)
        self.supervisor = RunSupervisor(
            sessions if sessions is not None else TmuxSessionManager(runner)
        )
        self._probe = prober
        self._online = online
        self._which = which
        self.machine = RunStateMachine(RunState.PLANNING)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def check_preconditions(self) -> None:
        """Create the workspace and gate on disk space before any installs."""
        os.umask(self.context.umask)
        ensure_directories(self.context)
        enforce(
            self.context.base_dir,
            self.context.min_free_disk_gb,
            self.context.allow_low_disk,
        )
        for command in BOOTSTRAP_COMMANDS:
            self._which(command)

    def probe(self) -> ServiceReport:
        endpoints = {
            PIPER_SERVICE: self.context.piper,
            OWW_SERVICE: self.context.openwakeword,
        }
        return self._probe(endpoints)

    def provision_system(self) -> ProvisionResult:
        """Install the missing system packages, then check the tools they provide."""
        planner = ProvisioningPlanner(
            self.backend,
            self.context.apt_stamp,
            install_optional=self.context.install_optional,
        )
        result = planner.apply(planner.plan())
        for command in PROVISIONED_COMMANDS:
            self._which(command)
        return result

    def prepare_workspace(self) -> None:
        sync_repository(self.context.repo_dir, runner=self._run, online=self._online)
        create_venv(self.context.venv_dir, runner=self._run)

    def provision_python(self, services: ServiceReport) -> None:
        """
        Install the venv's Python packages and openWakeWord itself.

        Raises:
            ProvisioningError: If pip fails after its fallback, or if
                openwakeword is still not importable at the end
        """
        pip = PipInstaller(self.context.venv_dir, runner=self._run)
        pip.bootstrap()
        pip.ensure_tflite_runtime(self.backend)

        packages = plan_python_packages(services)
        logger.info("Installing Python dependencies (prefer wheels).")
        if not pip.install(packages):
            raise ProvisioningError(f"pip install failed for: {' '.join(packages)}")

        pip.ensure_torch()

        if should_install_openwakeword(services, pip.import_check("openwakeword")):
            logger.info("Installing openWakeWord (editable).")
            pip.install_editable(self.context.repo_dir)

        if not pip.import_check("openwakeword"):
            raise ProvisioningError("openwakeword not importable inside venv.")

    def synthesize_config(self) -> SynthesisResult:
        """
        Write the run's training config into a fresh run directory.

        Raises:
            SessionExistsError: If a session or run directory with this
                identity appeared while provisioning
        """
        run_dir = self.context.run_dir
        self.supervisor.ensure_available(self.context.session_name)
        try:
            run_dir.mkdir(parents=True)
        except FileExistsError:
            raise SessionExistsError(self.context.session_name) from None
        params = SynthesisParams(
            wake_phrase=self.context.wake_phrase,
            model_slug=self.context.model_slug,
            epochs=self.context.epochs,
            output_dir=str(run_dir),
            dataset_path=str(
                run_dir / Config.DATASET_DIR_NAME / Config.DATASET_MANIFEST_NAME
            ),
        )
        result = synthesize(
            self.context.template_path, params, run_dir / Config.RUN_CONFIG_NAME
        )
        self.machine.advance(RunState.CONFIG_READY)
        return result

    def launch(self, config_path: Path) -> tuple[RunRecord, SessionHandle]:
        record = RunRecord.from_context(self.context, config_path, python=sys.executable)
        return record, self.supervisor.launch(record)

    # ------------------------------------------------------------------
    # Whole run
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        """
        Execute every step in order.

        Returns:
            RunSummary describing the launched session

        Raises:
            WakeLabError: On the first fatal condition
        """
        ctx = self.context
        logger.info(f"Workspace: {ctx.base_dir}")
        logger.info(f"Wake phrase: {ctx.wake_phrase} (slug: {ctx.model_slug})")
        logger.info(f"Profile: {ctx.train_profile} ({ctx.epochs} epochs), threads: {ctx.train_threads}")

        self.check_preconditions()
        # Same name as the launch below; fail before hours of provisioning
        self.supervisor.ensure_available(ctx.session_name)

        services = self.probe()
        logger.info(platform_summary())

        system_packages = self.provision_system()
        self.prepare_workspace()
        self.provision_python(services)

        synthesis = self.synthesize_config()
        record, handle = self.launch(synthesis.config_path)

        return RunSummary(
            context=ctx,
            services=services,
            record=record,
            handle=handle,
            synthesis=synthesis,
            system_packages=system_packages,
        )
