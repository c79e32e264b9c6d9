"""
Provisioning of system and Python packages.

This module computes what is missing on the host and installs only that:

- System packages in three tiers (required, optional, best-effort) through a
  package backend (apt by default)
- Python packages inside the training venv, with narrowly scoped fallbacks
- Skipping of components whose job is already done by a reachable
  collaborator service

The package index is refreshed at most once per workspace; a marker file
records that it happened.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

from ..config import APT_PACKAGES, PIP_PACKAGES
from ..errors import ProvisioningError
from .probe import OWW_SERVICE, PIPER_SERVICE, ServiceReport
from .shell import CommandRunner, run_command

logger = logging.getLogger(__name__)


class PackageTier(str, Enum):
    """How much a package matters to the run."""

    REQUIRED = "required"
    OPTIONAL = "optional"
    BEST_EFFORT = "best_effort"


# ============================================================================
# Package backends
# ============================================================================


class PackageBackend(Protocol):
    """What the planner needs from a system package manager."""

    def is_installed(self, package: str) -> bool: ...

    def is_available(self, package: str) -> bool: ...

    def refresh_index(self) -> None: ...

    def install(self, packages: list[str]) -> bool: ...


class AptBackend:
    """Package backend for Debian, Ubuntu and Raspberry Pi OS."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        is_root: Optional[bool] = None,
    ) -> None:
        self._run = runner
        self._is_root = os.geteuid() == 0 if is_root is None else is_root

    def _privileged(self, cmd: list[str]) -> list[str]:
        if self._is_root:
            return cmd
        if not shutil.which("sudo"):
            raise ProvisioningError(
                "Not root and sudo not found. Install sudo or run as root."
            )
        return ["sudo", *cmd]

    def is_installed(self, package: str) -> bool:
        code, _, _ = self._run(["dpkg", "-s", package], capture=True)
        return code == 0

    def is_available(self, package: str) -> bool:
        code, _, _ = self._run(["apt-cache", "show", package], capture=True)
        return code == 0

    def refresh_index(self) -> None:
        logger.info("Running apt-get update ...")
        code, _, _ = self._run(self._privileged(["apt-get", "update", "-y"]))
        if code != 0:
            raise ProvisioningError(f"apt-get update failed (exit={code})")

    def install(self, packages: list[str]) -> bool:
        if not packages:
            return True
        code, _, _ = self._run(
            self._privileged(
                ["apt-get", "install", "-y", "--no-install-recommends", *packages]
            )
        )
        return code == 0


# ============================================================================
# Plan
# ============================================================================


@dataclass
class PackageStatus:
    """State of one package at planning time."""

    name: str
    tier: PackageTier
    installed: bool


@dataclass
class ProvisionPlan:
    """Packages partitioned by tier, with their current install state."""

    required: list[PackageStatus] = field(default_factory=list)
    optional: list[PackageStatus] = field(default_factory=list)
    best_effort: list[PackageStatus] = field(default_factory=list)

    def missing(self, tier: PackageTier) -> list[str]:
        return [p.name for p in getattr(self, tier.value) if not p.installed]

    @property
    def is_satisfied(self) -> bool:
        return not any(self.missing(tier) for tier in PackageTier)


@dataclass
class ProvisionResult:
    """What apply() actually did."""

    installed: list[str] = field(default_factory=list)
    unavailable: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    index_refreshed: bool = False


class ProvisioningPlanner:
    """
    Plans and applies the missing subset of system packages.

    Required packages are installed unconditionally and a failure is fatal.
    Optional and best-effort packages are installed only when the index
    offers them, in one batch per tier, and never abort the run.
    """

    def __init__(
        self,
        backend: PackageBackend,
        stamp_path: Path,
        install_optional: bool = True,
        packages: Optional[dict[str, list[str]]] = None,
    ) -> None:
        """
        Initialize the planner.

        Args:
            backend: System package manager adapter
            stamp_path: Marker file recording that the index was refreshed
            install_optional: Whether optional and best-effort tiers apply
            packages: Tier name -> package names (defaults to APT_PACKAGES)
        """
        self.backend = backend
        self.stamp_path = stamp_path
        self.install_optional = install_optional
        self.packages = packages if packages is not None else APT_PACKAGES
        self._refreshed = False

    def plan(self) -> ProvisionPlan:
        """Query the backend for the current state of every listed package."""
        plan = ProvisionPlan()
        for tier in PackageTier:
            statuses = [
                PackageStatus(name, tier, self.backend.is_installed(name))
                for name in self.packages.get(tier.value, [])
            ]
            setattr(plan, tier.value, statuses)
        return plan

    def refresh_index_once(self) -> bool:
        """Refresh the package index unless the marker says it already ran."""
        if self._refreshed or self.stamp_path.exists():
            return False
        self.backend.refresh_index()
        self.stamp_path.parent.mkdir(parents=True, exist_ok=True)
        self.stamp_path.touch()
        self._refreshed = True
        return True

    def apply(self, plan: ProvisionPlan) -> ProvisionResult:
        """
        Install what the plan reports as missing.

        Raises:
            ProvisioningError: If the required batch fails to install
        """
        result = ProvisionResult()

        missing = plan.missing(PackageTier.REQUIRED)
        if missing:
            result.index_refreshed |= self.refresh_index_once()
            logger.info(f"Installing required packages: {' '.join(missing)}")
            if not self.backend.install(missing):
                raise ProvisioningError(
                    f"Failed to install required packages: {' '.join(missing)}"
                )
            result.installed.extend(missing)
        else:
            logger.info("Required packages already installed.")

        if not self.install_optional:
            logger.info("Skipping optional packages (install_optional=0).")
            return result

        self._apply_optional(plan, PackageTier.OPTIONAL, result)
        self._apply_optional(plan, PackageTier.BEST_EFFORT, result)
        return result

    def _apply_optional(
        self,
        plan: ProvisionPlan,
        tier: PackageTier,
        result: ProvisionResult,
    ) -> None:
        missing = plan.missing(tier)
        if not missing:
            return

        result.index_refreshed |= self.refresh_index_once()
        available = [name for name in missing if self.backend.is_available(name)]
        result.unavailable.extend(name for name in missing if name not in available)
        if not available:
            if tier is PackageTier.BEST_EFFORT:
                logger.info(f"Best-effort packages not offered on this OS: {' '.join(missing)}")
            return

        if tier is PackageTier.BEST_EFFORT:
            logger.info(
                "Installing additional non-essential packages available on this OS: "
                f"{' '.join(available)}"
            )
        else:
            logger.info(f"Installing optional packages: {' '.join(available)}")

        if self.backend.install(available):
            result.installed.extend(available)
        else:
            result.failed.extend(available)
            logger.warning(f"Optional package install failed (continuing): {' '.join(available)}")


# ============================================================================
# Collaborator-aware component decisions
# ============================================================================


def plan_python_packages(services: ServiceReport) -> list[str]:
    """Pip packages for the venv; local TTS is skipped if wyoming-piper answers."""
    packages = list(PIP_PACKAGES["base"])
    if services.reachable(PIPER_SERVICE):
        logger.info("Wyoming piper detected; skipping piper-tts install.")
    else:
        packages.append(PIP_PACKAGES["tts"])
    return packages


def should_install_openwakeword(services: ServiceReport, importable: bool) -> bool:
    """The editable install is skipped only if the service answers and the module imports."""
    if services.reachable(OWW_SERVICE) and importable:
        logger.info(
            "Wyoming openwakeword detected and openwakeword importable; "
            "skipping editable install."
        )
        return False
    return True


# ============================================================================
# Python packages inside the venv
# ============================================================================

PIP_ENV = {"PIP_DISABLE_PIP_VERSION_CHECK": "1", "PIP_NO_INPUT": "1"}


class PipInstaller:
    """Installs Python packages with the venv's interpreter."""

    def __init__(self, venv_dir: Path, runner: CommandRunner = run_command) -> None:
        self.venv_dir = venv_dir
        self._run = runner

    @property
    def python(self) -> Path:
        return self.venv_dir / "bin" / "python"

    def _pip(self, *args: str) -> int:
        cmd = [
            str(self.python), "-m", "pip", "install",
            "--no-input", "--disable-pip-version-check", *args,
        ]
        code, _, _ = self._run(cmd, env=PIP_ENV)
        return code

    def bootstrap(self) -> None:
        """Upgrade pip, setuptools and wheel; fatal on failure."""
        if self._pip("-U", *PIP_PACKAGES["bootstrap"]) != 0:
            raise ProvisioningError("pip bootstrap/upgrade failed.")

    def install(self, packages: list[str]) -> bool:
        """Install packages, preferring wheels and retrying once without that preference."""
        if not packages:
            return True
        if self._pip("--prefer-binary", *packages) == 0:
            return True
        logger.warning(
            f"pip prefer-binary failed for: {' '.join(packages)}; retrying without prefer-binary."
        )
        return self._pip(*packages) == 0

    def install_editable(self, path: Path) -> None:
        """Editable install of a checkout, retrying once without dependency resolution."""
        if self._pip("-e", str(path)) == 0:
            return
        logger.warning("Editable install failed. Retrying without dependency resolution (--no-deps).")
        if self._pip("-e", str(path), "--no-deps") != 0:
            raise ProvisioningError(f"Failed to install openWakeWord from {path}")

    def import_check(self, module: str) -> bool:
        """Whether the venv interpreter can import module."""
        code, _, _ = self._run([str(self.python), "-c", f"import {module}"], capture=True)
        return code == 0

    def ensure_torch(self) -> bool:
        """Best-effort torch install; training fails later if it really is needed."""
        if self.import_check("torch"):
            return True
        logger.info("torch not importable yet; attempting pip install torch + torchaudio.")
        if self.install(PIP_PACKAGES["torch"]):
            return True
        logger.warning(
            "torch install failed. If training requires torch, resolve the torch "
            "installation for this platform (64-bit strongly recommended)."
        )
        return False

    def ensure_tflite_runtime(self, backend: PackageBackend) -> bool:
        """Best-effort tflite-runtime through the system package, if offered."""
        module = "tflite_runtime.interpreter"
        package = "python3-tflite-runtime"
        if self.import_check(module):
            logger.info("tflite-runtime already importable; skipping install.")
            return True
        if not backend.is_available(package):
            logger.info("tflite-runtime not available for this OS/Python/arch; skipping (OK for training).")
            return True
        if not backend.is_installed(package):
            logger.info(f"Installing tflite-runtime via {package}...")
            backend.install([package])
        if self.import_check(module):
            return True
        logger.warning("tflite-runtime setup failed; continuing without it.")
        return False
