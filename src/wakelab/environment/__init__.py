"""
Host environment module for WakeLab.

This module probes collaborator services, gates on disk space and
provisions system and Python packages for training.
"""

from .probe import (
    OWW_SERVICE,
    PIPER_SERVICE,
    ServiceReport,
    ServiceStatus,
    probe,
    probe_services,
)
from .provisioning import (
    AptBackend,
    PackageBackend,
    PackageTier,
    PipInstaller,
    ProvisioningPlanner,
    ProvisionPlan,
    ProvisionResult,
    plan_python_packages,
    should_install_openwakeword,
)
from .resources import GateResult, check, enforce, free_disk_gb, require_command
from .shell import run_command
from .workspace import create_venv, sync_repository

__all__ = [
    # Probing
    "OWW_SERVICE",
    "PIPER_SERVICE",
    "ServiceReport",
    "ServiceStatus",
    "probe",
    "probe_services",
    # Resources
    "GateResult",
    "check",
    "enforce",
    "free_disk_gb",
    "require_command",
    # Provisioning
    "AptBackend",
    "PackageBackend",
    "PackageTier",
    "PipInstaller",
    "ProvisioningPlanner",
    "ProvisionPlan",
    "ProvisionResult",
    "plan_python_packages",
    "should_install_openwakeword",
    # Workspace
    "create_venv",
    "run_command",
    "sync_repository",
]
