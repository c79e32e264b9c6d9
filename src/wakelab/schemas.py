"""
Pydantic schemas for WakeLab user input.

RunRequest validates the layered settings (flags, environment, defaults and
interactive answers) before anything expensive happens, and turns them into
the immutable RunContext.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import (
    TRAINING_PROFILES,
    WORKSPACE_CONFIG,
    DatasetOptions,
    RunContext,
    ServiceEndpoint,
    expand_tilde,
    resolve_layers,
    slugify,
    utc_timestamp,
)
from .errors import InvalidInputError


class TrainProfile(str, Enum):
    """Training intensity profile."""

    TINY = "tiny"
    MEDIUM = "medium"
    LARGE = "large"

    @property
    def epochs(self) -> int:
        return TRAINING_PROFILES[self.value]


class RunRequest(BaseModel):
    """Validated settings for a single orchestration run."""

    base_dir: str = Field(default=WORKSPACE_CONFIG["base_dir"], min_length=1)
    runs_dir: Optional[str] = None
    logs_dir: Optional[str] = None
    venv_dir: Optional[str] = None
    repo_dir: Optional[str] = None
    custom_models_dir: Optional[str] = None
    data_dir: Optional[str] = None

    min_free_disk_gb: int = Field(default=8, ge=0)
    allow_low_disk: bool = False
    install_optional: bool = True

    wake_phrase: str = Field(..., description="Phrase the model should detect")
    train_profile: TrainProfile = TrainProfile.MEDIUM
    train_threads: int = Field(default=1, ge=1)

    piper_host: str = Field(default="127.0.0.1", min_length=1)
    piper_port: int = Field(default=10200, ge=1, le=65535)
    oww_host: str = Field(default="127.0.0.1", min_length=1)
    oww_port: int = Field(default=10400, ge=1, le=65535)

    umask: int = Field(default=0o022, ge=0, le=0o777)
    debug: bool = False

    @field_validator("base_dir")
    @classmethod
    def validate_base_dir(cls, v: str) -> str:
        """Reject an empty or root workspace."""
        v = v.strip()
        if not v:
            raise ValueError("Base directory must not be empty")
        if v == "/":
            raise ValueError("Base directory must not be '/'. Set BASE_DIR to a safe path")
        return v

    @field_validator("wake_phrase")
    @classmethod
    def validate_wake_phrase(cls, v: str) -> str:
        """Trim the phrase and make sure it yields a usable slug."""
        v = v.strip()
        if not v:
            raise ValueError("Wake phrase must not be empty")
        if not slugify(v):
            raise ValueError(f"Wake phrase '{v}' has no letters or digits")
        return v

    @field_validator("umask", mode="before")
    @classmethod
    def parse_umask(cls, v: Any) -> Any:
        """Accept umask strings in octal notation, e.g. ``022``."""
        if isinstance(v, str):
            try:
                return int(v.strip(), 8)
            except ValueError as exc:
                raise ValueError(f"umask must be octal, got '{v}'") from exc
        return v

    def _subdir(self, base: Path, value: Optional[str], key: str) -> Path:
        if value:
            return Path(expand_tilde(value))
        return base / WORKSPACE_CONFIG[key]

    def to_context(
        self,
        now: Optional[datetime] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RunContext:
        """
        Freeze the request into a RunContext.

        Args:
            now: Clock reading used for the run timestamp (UTC now if None)
            environ: Environment for dataset options (empty if None)

        Returns:
            The immutable RunContext
        """
        base = Path(expand_tilde(self.base_dir))
        return RunContext(
            base_dir=base,
            runs_dir=self._subdir(base, self.runs_dir, "runs_dir"),
            logs_dir=self._subdir(base, self.logs_dir, "logs_dir"),
            venv_dir=self._subdir(base, self.venv_dir, "venv_dir"),
            repo_dir=self._subdir(base, self.repo_dir, "repo_dir"),
            custom_models_dir=self._subdir(
                base, self.custom_models_dir, "custom_models_dir"
            ),
            data_dir=self._subdir(base, self.data_dir, "data_dir"),
            min_free_disk_gb=self.min_free_disk_gb,
            allow_low_disk=self.allow_low_disk,
            install_optional=self.install_optional,
            wake_phrase=self.wake_phrase,
            model_slug=slugify(self.wake_phrase),
            train_profile=self.train_profile.value,
            epochs=self.train_profile.epochs,
            train_threads=self.train_threads,
            piper=ServiceEndpoint(self.piper_host, self.piper_port),
            openwakeword=ServiceEndpoint(self.oww_host, self.oww_port),
            umask=self.umask,
            run_timestamp=utc_timestamp(now),
            debug=self.debug,
            dataset=DatasetOptions.from_environ(environ or {}),
        )


def parse_run_request(values: Mapping[str, Any]) -> RunRequest:
    """
    Validate raw settings, dropping unset ones so model defaults apply.

    Raises:
        InvalidInputError: With one line per offending setting
    """
    data = {key: value for key, value in values.items() if value is not None}
    try:
        return RunRequest(**data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise InvalidInputError(f"Invalid settings: {problems}") from exc


def build_run_context(
    cli: Mapping[str, Any],
    environ: Mapping[str, str],
    now: Optional[datetime] = None,
) -> RunContext:
    """
    Layer, validate and freeze the settings for one run.

    Args:
        cli: Flag values (and interactive answers) keyed by setting name
        environ: Environment mapping, usually ``os.environ``
        now: Clock reading for the run timestamp

    Raises:
        InvalidInputError: If any setting fails validation
    """
    request = parse_run_request(resolve_layers(cli, environ))
    return request.to_context(now=now, environ=environ)
