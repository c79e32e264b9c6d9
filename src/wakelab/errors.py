"""
Exception hierarchy for WakeLab.

Every orchestration step raises one of these explicitly so the CLI can decide
how to report it. Best-effort steps never raise; they log a warning instead.
"""


class WakeLabError(Exception):
    """Base class for all WakeLab errors."""


# ============================================================================
# Fatal preconditions (raised before the detached session is started)
# ============================================================================


class PreconditionError(WakeLabError):
    """A precondition for starting a run is not met."""


class MissingCommandError(PreconditionError):
    """A required executable is not available on PATH."""

    def __init__(self, command: str) -> None:
        super().__init__(f"Missing required command: {command}")
        self.command = command


class InsufficientDiskError(PreconditionError):
    """Free disk space is below the configured minimum."""

    def __init__(self, path: str, available_gb: int, min_gb: int) -> None:
        super().__init__(
            f"Insufficient free disk at {path}: {available_gb}GB available, "
            f"need >= {min_gb}GB. (Override: --allow-low-disk or ALLOW_LOW_DISK=1)"
        )
        self.path = path
        self.available_gb = available_gb
        self.min_gb = min_gb


class InvalidInputError(PreconditionError):
    """User input failed validation."""


class TemplateNotFoundError(PreconditionError):
    """The training config template does not exist."""


class SessionExistsError(PreconditionError):
    """A detached session with the same name is already running."""

    def __init__(self, name: str) -> None:
        super().__init__(f"tmux session already exists: {name}")
        self.name = name


class SessionLaunchError(PreconditionError):
    """The session multiplexer refused to start the detached session."""


# ============================================================================
# Provisioning
# ============================================================================


class ProvisioningError(WakeLabError):
    """Installing a required package or component failed."""


# ============================================================================
# Mid-run failures (only visible inside the detached session)
# ============================================================================


class RunError(WakeLabError):
    """A failure while executing the training phases."""


class PhaseFailedError(RunError):
    """A training phase exited with a non-zero status."""

    def __init__(self, phase: str, returncode: int) -> None:
        super().__init__(f"Phase '{phase}' failed with exit code {returncode}")
        self.phase = phase
        self.returncode = returncode


class ArtifactCopyError(RunError):
    """A produced model artifact could not be copied to the output directory."""


class InvalidTransitionError(RunError):
    """The run state machine was asked to make an illegal transition."""
