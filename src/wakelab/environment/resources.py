"""
Resource and platform checks that run before any expensive work.
"""

import logging
import platform
import shutil
import socket
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from ..errors import InsufficientDiskError, MissingCommandError

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024**3


class GateResult(str, Enum):
    """Outcome of a resource check."""

    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


def free_disk_gb(path: Union[str, Path]) -> int:
    """Free space at path, rounded down to whole gigabytes."""
    return shutil.disk_usage(str(path)).free // BYTES_PER_GB


def check(
    path: Union[str, Path],
    min_gb: int,
    allow_low: bool = False,
    available_gb: Optional[int] = None,
) -> GateResult:
    """
    Compare free disk space at path against a threshold.

    Args:
        path: Any path on the filesystem to check
        min_gb: Minimum whole gigabytes required
        allow_low: Demote a failure to a warning
        available_gb: Pre-computed free space (measured at path if None)

    Returns:
        OK when available >= min_gb, otherwise FAIL (or WARN if allow_low)
    """
    if available_gb is None:
        available_gb = free_disk_gb(path)
    if available_gb >= min_gb:
        return GateResult.OK
    return GateResult.WARN if allow_low else GateResult.FAIL


def enforce(path: Union[str, Path], min_gb: int, allow_low: bool = False) -> GateResult:
    """Run the disk check, warning or raising according to the result."""
    available = free_disk_gb(path)
    result = check(path, min_gb, allow_low, available_gb=available)
    if result is GateResult.FAIL:
        raise InsufficientDiskError(str(path), available, min_gb)
    if result is GateResult.WARN:
        logger.warning(
            f"Free disk at {path} is {available}GB (<{min_gb}GB). "
            "Continuing due to --allow-low-disk."
        )
    else:
        logger.debug(f"Free disk at {path}: {available}GB (need {min_gb}GB)")
    return result


def require_command(name: str) -> str:
    """Return the path of an executable, raising if it is not on PATH."""
    found = shutil.which(name)
    if not found:
        raise MissingCommandError(name)
    return found


def is_raspberry_pi(model_file: Path = Path("/proc/device-tree/model")) -> bool:
    """Check the device-tree model string for a Raspberry Pi."""
    try:
        return "raspberry pi" in model_file.read_text(errors="ignore").lower()
    except OSError:
        return False


def os_id(os_release: Path = Path("/etc/os-release")) -> str:
    """The ID field of os-release, or ``unknown``."""
    try:
        for line in os_release.read_text().splitlines():
            if line.startswith("ID="):
                return line.split("=", 1)[1].strip().strip('"') or "unknown"
    except OSError:
        pass
    return "unknown"


def platform_summary() -> str:
    """One-line description of the host, logged at startup."""
    pi = "Raspberry Pi detected" if is_raspberry_pi() else "not identified as Raspberry Pi"
    return f"Platform: {pi}; Arch: {platform.machine()}; OS: {os_id()}"


def have_internet_dns(host: str = "github.com") -> bool:
    """Lightweight connectivity check; does not guarantee full access."""
    try:
        socket.getaddrinfo(host, None)
        return True
    except OSError:
        return False
