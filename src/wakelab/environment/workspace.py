"""
Workspace setup: the openWakeWord checkout and the training venv.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from ..config import Config
from ..errors import PreconditionError, ProvisioningError
from .resources import have_internet_dns
from .shell import CommandRunner, run_command

logger = logging.getLogger(__name__)


def sync_repository(
    repo_dir: Path,
    url: str = Config.OWW_REPO_URL,
    runner: CommandRunner = run_command,
    online: Optional[bool] = None,
) -> None:
    """
    Clone the repository, or fast-forward an existing checkout.

    A failed update keeps the existing checkout; a failed clone is fatal.
    """
    if online is None:
        online = have_internet_dns()

    if (repo_dir / ".git").is_dir():
        logger.info(f"openWakeWord repo already present: {repo_dir}")
        if not online:
            logger.info("No DNS resolution detected; skipping repo update.")
            return
        logger.info("Attempting fast-forward update (git pull --ff-only)...")
        code, _, _ = runner(["git", "pull", "--ff-only"], cwd=repo_dir)
        if code != 0:
            logger.warning("git pull failed (continuing with existing checkout).")
        return

    if not online:
        raise PreconditionError(
            "No DNS resolution detected; cannot clone repos. "
            f"Fix networking or pre-clone openWakeWord into {repo_dir}."
        )
    logger.info(f"Cloning openWakeWord into {repo_dir} ...")
    code, _, _ = runner(["git", "clone", "--depth", "1", url, str(repo_dir)])
    if code != 0:
        raise ProvisioningError("git clone failed.")


def create_venv(venv_dir: Path, runner: CommandRunner = run_command) -> None:
    """Create the training venv with access to apt-installed site packages."""
    if venv_dir.is_dir():
        logger.info(f"Venv already exists: {venv_dir}")
        return
    logger.info(f"Creating venv: {venv_dir}")
    code, _, stderr = runner(
        [sys.executable, "-m", "venv", "--system-site-packages", str(venv_dir)],
        capture=True,
    )
    if code != 0:
        raise ProvisioningError(f"venv creation failed: {stderr.strip()}")
