#!/usr/bin/env python3
"""
WakeLab command line interface.

Bootstraps a wake word training workspace and starts a detached training run.

Usage:
    wakelab                                   # Prompts for phrase/profile/threads on a TTY
    wakelab --wake-phrase "hey jarvis" --train-profile tiny
    wakelab --base-dir /srv/wakeword --allow-low-disk
    wakelab --help                            # Show all flags

Every flag has an environment variable equivalent (see --help); flags win
over the environment, which wins over the built-in defaults.
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, TextIO

from .config import ENV_VARS, INPUT_DEFAULTS, TRAINING_PROFILES
from .errors import WakeLabError
from .pipeline import Orchestrator
from .schemas import build_run_context

logger = logging.getLogger("wakelab")

LOG_FORMAT = "[%(asctime)s] [wakelab] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


# =============================================================================
# Logging
# =============================================================================


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Set up console and (optionally) file logging for the wakelab logger.

    Args:
        debug: Show DEBUG messages on the console
        log_dir: Directory for a timestamped DEBUG-level log file

    Returns:
        Path of the log file, or None if only console logging is active
    """
    root = logging.getLogger("wakelab")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.propagate = False

    console_formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    console_formatter.converter = time.gmtime
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)

    if log_dir is None:
        return None

    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"wakelab_{stamp}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
    root.addHandler(file_handler)

    logger.debug(f"Logging initialized. Log file: {log_file}")
    logger.debug(f"Python version: {sys.version}")
    return log_file


# =============================================================================
# Arguments
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Every flag defaults to None so unset flags fall through to the environment."""
    parser = argparse.ArgumentParser(
        prog="wakelab",
        description="Bootstrap an openWakeWord training workspace and start a training run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Environment variables:
  {', '.join(sorted(ENV_VARS.values()))}

Dataset options (environment only):
  POSITIVE_SOURCES, NEGATIVE_SOURCES, MAX_POSITIVE_SAMPLES,
  MAX_NEGATIVE_SAMPLES, MIN_PER_SOURCE, DATASET_SEED
        """,
    )

    workspace = parser.add_argument_group("workspace")
    workspace.add_argument(
        "--destination", "--base-dir", dest="base_dir", metavar="DIR",
        help="Workspace root (default: ~/wakeword_lab)",
    )
    workspace.add_argument("--runs-dir", metavar="DIR", help="Default: <base>/training_runs")
    workspace.add_argument("--logs-dir", metavar="DIR", help="Default: <base>/logs")
    workspace.add_argument("--venv-dir", metavar="DIR", help="Default: <base>/venv")
    workspace.add_argument(
        "--oww-repo-dir", dest="repo_dir", metavar="DIR", help="Default: <base>/openWakeWord"
    )
    workspace.add_argument(
        "--custom-models-dir", metavar="DIR", help="Default: <base>/custom_models"
    )
    workspace.add_argument("--data-dir", metavar="DIR", help="Default: <base>/data")
    workspace.add_argument("--umask", help="File creation mask in octal (default: 022)")

    resources = parser.add_argument_group("resources")
    resources.add_argument(
        "--min-free-disk-gb", metavar="GB", help="Minimum free disk space (default: 8)"
    )
    resources.add_argument(
        "--allow-low-disk", action="store_const", const="1",
        help="Continue with a warning when disk space is low",
    )
    resources.add_argument(
        "--install-optional-apt", dest="install_optional", choices=["0", "1"],
        help="Install optional and best-effort system packages (default: 1)",
    )

    training = parser.add_argument_group("training")
    training.add_argument("--wake-phrase", help="Phrase to detect (prompted if omitted)")
    training.add_argument(
        "--train-profile", metavar="PROFILE",
        help=f"Training intensity: {', '.join(TRAINING_PROFILES)} (prompted if omitted)",
    )
    training.add_argument("--train-threads", metavar="N", help="Training threads")

    services = parser.add_argument_group("collaborator services")
    services.add_argument("--wyoming-piper-host", dest="piper_host", metavar="HOST")
    services.add_argument("--wyoming-piper-port", dest="piper_port", metavar="PORT")
    services.add_argument("--wyoming-oww-host", dest="oww_host", metavar="HOST")
    services.add_argument("--wyoming-oww-port", dest="oww_port", metavar="PORT")

    parser.add_argument(
        "--debug", action="store_const", const="1", help="Verbose console logging"
    )
    return parser


def prompt_value(question: str, default: str, stream: TextIO = sys.stdin) -> str:
    """Ask for a value on the terminal; Enter or EOF keeps the default."""
    print(f"{question} [{default}]: ", end="", flush=True)
    line = stream.readline()
    if not line:
        print()
        return default
    return line.strip() or default


def interactive_defaults(
    values: dict[str, Any],
    environ: Mapping[str, str],
    interactive: bool,
    stream: TextIO = sys.stdin,
) -> dict[str, Any]:
    """
    Fill in wake phrase, profile and threads when neither flag nor env sets them.

    Prompts only when interactive; otherwise uses the defaults.
    """
    fallbacks = {
        "wake_phrase": ("Wake phrase", INPUT_DEFAULTS["wake_phrase"]),
        "train_profile": (
            f"Training profile ({'/'.join(TRAINING_PROFILES)})",
            INPUT_DEFAULTS["train_profile"],
        ),
        "train_threads": ("Training threads", str(os.cpu_count() or 1)),
    }
    filled = dict(values)
    for name, (question, default) in fallbacks.items():
        if filled.get(name) is not None or environ.get(ENV_VARS[name], "") != "":
            continue
        filled[name] = prompt_value(question, default, stream) if interactive else default
    return filled


# =============================================================================
# Entry point
# =============================================================================


def run(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    args = build_parser().parse_args(argv)
    environ = os.environ if environ is None else environ

    setup_logging(debug=bool(args.debug))

    values = interactive_defaults(vars(args), environ, interactive=sys.stdin.isatty())
    context = build_run_context(values, environ)
    # Before the log dir creates the first workspace directory
    os.umask(context.umask)
    setup_logging(debug=context.debug, log_dir=context.logs_dir)

    summary = Orchestrator(context).run()
    print()
    for line in summary.lines():
        print(line)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    try:
        return run(argv)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        logger.error("Interrupted by user")
        return EXIT_INTERRUPTED
    except WakeLabError as e:
        logger.error(f"FATAL: {e}")
        return EXIT_FAILURE
    except Exception as e:
        logger.error(f"FATAL: {e}")
        logger.debug("Unexpected error", exc_info=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
