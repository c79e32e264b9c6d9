"""
Subprocess helper shared by the provisioning and session code.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# (cmd, cwd, capture, env) -> (exit code, stdout, stderr)
CommandRunner = Callable[..., Tuple[int, str, str]]

COMMAND_NOT_FOUND = 127


def run_command(
    cmd: list,
    cwd: Optional[Path] = None,
    capture: bool = False,
    env: Optional[dict] = None,
) -> Tuple[int, str, str]:
    """Run a command and return exit code, stdout, stderr."""
    logger.debug(f"Running command: {' '.join(str(c) for c in cmd)}")
    try:
        result = subprocess.run(
            [str(c) for c in cmd],
            cwd=cwd,
            capture_output=capture,
            text=True,
            env={**os.environ, **(env or {})},
        )
    except OSError as e:
        logger.debug(f"Command could not be started: {e}")
        return COMMAND_NOT_FOUND, "", str(e)

    stdout = result.stdout if capture else ""
    stderr = result.stderr if capture else ""
    logger.debug(f"Command completed with return code: {result.returncode}")
    return result.returncode, stdout, stderr
