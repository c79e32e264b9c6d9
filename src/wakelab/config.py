"""
Configuration settings for WakeLab.

This module centralizes the built-in defaults (workspace layout, disk
threshold, collaborator service endpoints, training profiles and package
lists) and defines the immutable RunContext that every component receives.

Settings are layered in a fixed order: built-in default < environment
variable < command-line flag.
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# Workspace layout, relative to the workspace root
WORKSPACE_CONFIG: Dict[str, Any] = {
    "base_dir": "~/wakeword_lab",
    "runs_dir": "training_runs",
    "logs_dir": "logs",
    "venv_dir": "venv",
    "repo_dir": "openWakeWord",
    "custom_models_dir": "custom_models",
    "data_dir": "data",
    "umask": "022",
}

# Disk space gate
DISK_CONFIG: Dict[str, Any] = {
    "min_free_disk_gb": 8,  # Provisioning plus training easily takes tens of GB
    "allow_low_disk": False,
}

# Collaborator services (Wyoming protocol servers)
SERVICE_CONFIG: Dict[str, Any] = {
    "piper_host": "127.0.0.1",
    "piper_port": 10200,  # wyoming-piper
    "oww_host": "127.0.0.1",
    "oww_port": 10400,  # wyoming-openwakeword
    "probe_timeout": 1.0,  # Seconds
}

# Training profile -> epoch count
TRAINING_PROFILES: Dict[str, int] = {
    "tiny": 10,
    "medium": 25,
    "large": 50,
}

# Interactive defaults
INPUT_DEFAULTS: Dict[str, Any] = {
    "wake_phrase": "hey assistant",
    "train_profile": "medium",
}

# System packages, partitioned by tier
APT_PACKAGES: Dict[str, list[str]] = {
    "required": [
        "ca-certificates",
        "curl",
        "git",
        "tmux",
        "build-essential",
        "pkg-config",
        "python3-venv",
        "python3-pip",
        "python3-dev",
        "ffmpeg",
        "sox",
        "libsndfile1",
        "libsndfile1-dev",
        "libasound2-dev",
        "libffi-dev",
        "libssl-dev",
        "jq",
    ],
    # Prebuilt wheels are slow or missing on ARM; the distro builds are faster
    "optional": [
        "python3-numpy",
        "python3-scipy",
        "python3-yaml",
        "python3-soundfile",
    ],
    # May or may not exist on the running distro
    "best_effort": [
        "libspeexdsp-dev",
        "python3-torch",
        "python3-torchaudio",
        "python3-onnxruntime",
    ],
}

# Python packages installed into the training venv
PIP_PACKAGES: Dict[str, Any] = {
    "base": [
        "pyyaml",
        "numpy",
        "scipy",
        "soundfile",
        "resampy",
        "tqdm",
        "matplotlib",
        "scikit-learn",
        "onnx",
        "onnxruntime",
        "datasets",
        "speechbrain",
    ],
    "tts": "piper-tts",  # Skipped when wyoming-piper is reachable
    "torch": ["torch", "torchaudio"],
    "bootstrap": ["pip", "setuptools", "wheel"],
}

# openWakeWord checkout and training entry point
OPENWAKEWORD_CONFIG: Dict[str, Any] = {
    "repo_url": "https://github.com/dscripka/openWakeWord.git",
    "template": "examples/custom_model.yml",
    "train_script": "openwakeword/train.py",
    "phase_flags": {
        "generate_clips": "--generate_clips",
        "augment_clips": "--augment_clips",
        "train_model": "--train_model",
    },
    "artifact_extensions": [".tflite", ".onnx"],
}

# Dataset manifest generation
DATASET_CONFIG: Dict[str, Any] = {
    "audio_extensions": [".wav", ".flac", ".mp3", ".ogg", ".m4a"],
    "seed": 42,
}

# Setting name -> environment variable
ENV_VARS: Dict[str, str] = {
    "base_dir": "BASE_DIR",
    "runs_dir": "RUNS_DIR",
    "logs_dir": "LOGS_DIR",
    "venv_dir": "VENV_DIR",
    "repo_dir": "OWW_REPO_DIR",
    "custom_models_dir": "CUSTOM_MODELS_DIR",
    "data_dir": "DATA_DIR",
    "min_free_disk_gb": "MIN_FREE_DISK_GB",
    "allow_low_disk": "ALLOW_LOW_DISK",
    "install_optional": "INSTALL_OPTIONAL_APT",
    "wake_phrase": "WAKE_PHRASE",
    "train_profile": "TRAIN_PROFILE",
    "train_threads": "TRAIN_THREADS",
    "piper_host": "WYOMING_PIPER_HOST",
    "piper_port": "WYOMING_PIPER_PORT",
    "oww_host": "WYOMING_OPENWAKEWORD_HOST",
    "oww_port": "WYOMING_OPENWAKEWORD_PORT",
    "umask": "UMASK",
    "debug": "WAKELAB_DEBUG",
}

# Settings whose built-in default is applied after layering
LAYER_DEFAULTS: Dict[str, Any] = {
    "base_dir": WORKSPACE_CONFIG["base_dir"],
    "min_free_disk_gb": DISK_CONFIG["min_free_disk_gb"],
    "allow_low_disk": "0",
    "install_optional": "1",
    "piper_host": SERVICE_CONFIG["piper_host"],
    "piper_port": SERVICE_CONFIG["piper_port"],
    "oww_host": SERVICE_CONFIG["oww_host"],
    "oww_port": SERVICE_CONFIG["oww_port"],
    "umask": WORKSPACE_CONFIG["umask"],
    "debug": "0",
}

RUN_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"


class Config:
    """Configuration class for WakeLab."""

    # Workspace
    DEFAULT_BASE_DIR = WORKSPACE_CONFIG["base_dir"]
    DEFAULT_UMASK = WORKSPACE_CONFIG["umask"]
    APT_STAMP_NAME = ".apt_updated"

    # Disk
    MIN_FREE_DISK_GB = DISK_CONFIG["min_free_disk_gb"]

    # Services
    PIPER_HOST = SERVICE_CONFIG["piper_host"]
    PIPER_PORT = SERVICE_CONFIG["piper_port"]
    OWW_HOST = SERVICE_CONFIG["oww_host"]
    OWW_PORT = SERVICE_CONFIG["oww_port"]
    PROBE_TIMEOUT = SERVICE_CONFIG["probe_timeout"]

    # Training
    PROFILES = TRAINING_PROFILES
    DEFAULT_WAKE_PHRASE = INPUT_DEFAULTS["wake_phrase"]
    DEFAULT_PROFILE = INPUT_DEFAULTS["train_profile"]

    # openWakeWord
    OWW_REPO_URL = OPENWAKEWORD_CONFIG["repo_url"]
    OWW_TEMPLATE = OPENWAKEWORD_CONFIG["template"]
    OWW_TRAIN_SCRIPT = OPENWAKEWORD_CONFIG["train_script"]
    PHASE_FLAGS = OPENWAKEWORD_CONFIG["phase_flags"]
    ARTIFACT_EXTENSIONS = tuple(OPENWAKEWORD_CONFIG["artifact_extensions"])

    # Run directory layout
    RUN_CONFIG_NAME = "training_config.yml"
    RUN_LOG_NAME = "training.log"
    RUN_RECORD_NAME = "run.json"
    RUN_SCRIPT_NAME = "run_training.sh"
    START_MARKER_NAME = ".start_time"
    COMPLETED_MARKER_NAME = ".completed"
    DATASET_DIR_NAME = "dataset"
    DATASET_MANIFEST_NAME = "dataset.json"

    # Dataset
    AUDIO_EXTENSIONS = tuple(DATASET_CONFIG["audio_extensions"])
    DATASET_SEED = DATASET_CONFIG["seed"]


def expand_tilde(path: str) -> str:
    """Expand a leading ``~`` to the user's home directory."""
    return os.path.expanduser(path)


def slugify(text: str) -> str:
    """Lowercase, turn runs of non-alphanumerics into ``_`` and trim them."""
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Format a run timestamp such as ``20250101T120000Z``."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(RUN_TIMESTAMP_FORMAT)


def resolve_layers(
    cli: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    """
    Merge settings from their three sources.

    A CLI value wins when it is not None, then a non-empty environment
    variable, then the built-in default (which is None for settings that are
    derived later or prompted for).

    Args:
        cli: Parsed flag values keyed by setting name (None = not given)
        environ: Environment mapping, usually ``os.environ``

    Returns:
        Raw setting values keyed by setting name
    """
    resolved: dict[str, Any] = {}
    for name, env_var in ENV_VARS.items():
        value = cli.get(name)
        if value is None:
            env_value = environ.get(env_var, "")
            value = env_value if env_value != "" else None
        if value is None:
            value = LAYER_DEFAULTS.get(name)
        resolved[name] = value
    return resolved


@dataclass(frozen=True)
class ServiceEndpoint:
    """A host:port pair to probe."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class DatasetOptions:
    """Inputs for the dataset manifest generator, read from the environment."""

    positive_sources: str = ""
    negative_sources: str = ""
    max_positives: str = ""
    max_negatives: str = ""
    min_per_source: str = ""
    seed: int = DATASET_CONFIG["seed"]

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "DatasetOptions":
        seed = environ.get("DATASET_SEED", "")
        return cls(
            positive_sources=environ.get("POSITIVE_SOURCES", ""),
            negative_sources=environ.get("NEGATIVE_SOURCES", ""),
            max_positives=environ.get("MAX_POSITIVE_SAMPLES", ""),
            max_negatives=environ.get("MAX_NEGATIVE_SAMPLES", ""),
            min_per_source=environ.get("MIN_PER_SOURCE", ""),
            seed=int(seed) if seed.strip().isdigit() else DATASET_CONFIG["seed"],
        )


@dataclass(frozen=True)
class RunContext:
    """
    Everything a run needs, fixed once the orchestration plan is made.

    Built by ``RunRequest.to_context`` and passed explicitly to each
    component; nothing reads global state after this point.
    """

    base_dir: Path
    runs_dir: Path
    logs_dir: Path
    venv_dir: Path
    repo_dir: Path
    custom_models_dir: Path
    data_dir: Path
    min_free_disk_gb: int
    allow_low_disk: bool
    install_optional: bool
    wake_phrase: str
    model_slug: str
    train_profile: str
    epochs: int
    train_threads: int
    piper: ServiceEndpoint
    openwakeword: ServiceEndpoint
    umask: int
    run_timestamp: str
    debug: bool = False
    dataset: DatasetOptions = field(default_factory=DatasetOptions)

    @property
    def run_id(self) -> str:
        return f"{self.model_slug}_{self.run_timestamp}"

    @property
    def run_dir(self) -> Path:
        return self.runs_dir / self.run_id

    @property
    def session_name(self) -> str:
        return f"wakeword_{self.run_id}"

    @property
    def apt_stamp(self) -> Path:
        return self.logs_dir / Config.APT_STAMP_NAME

    @property
    def template_path(self) -> Path:
        return self.repo_dir / Config.OWW_TEMPLATE

    @property
    def workspace_dirs(self) -> list[Path]:
        """Directories created before any other work."""
        return [
            self.base_dir,
            self.runs_dir,
            self.logs_dir,
            self.custom_models_dir,
            self.data_dir,
        ]


def ensure_directories(context: RunContext) -> None:
    """Create the workspace directories if they don't exist."""
    for directory in context.workspace_dirs:
        directory.mkdir(parents=True, exist_ok=True)
