"""Configuration models for a Marathon job.

Defines Pydantic v2 models for everything a job needs: remote locations
and patterns, local directories, retry policy, transfer and crypto
settings, interruption polling, and the fan-out workload. A ``JobConfig``
is built once before the job starts and handed to every component.

Sources, lowest to highest precedence: model defaults, an optional YAML
file, ``MARATHON_*`` environment variables, then the command line.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from marathon.core.exceptions import ConfigurationError
from marathon.core.logging import get_logger
from marathon.execution.retry import POLICY_PRESETS, RetryPolicy

_logger = get_logger("config")


class CleanupMode(str, Enum):
    """Which local artifacts survive the end of a job."""

    KEEP = "keep"
    OUTPUT = "output"
    GPG = "gpg"
    ALL = "all"


class RetryPolicyConfig(BaseModel):
    """Ambient retry policy for the job.

    When ``profile`` names a preset, the preset supplies every value not
    set explicitly alongside it.
    """

    model_config = ConfigDict(frozen=True)

    profile: Literal["critical", "normal", "batch"] | None = Field(
        default=None,
        description="Named preset chosen by job criticality",
    )
    max_attempts: int = Field(default=3, ge=0, description="Retries after the first call")
    initial_delay: float = Field(default=60.0, ge=0, description="Seconds before the first retry")
    max_delay: float = Field(default=3600.0, ge=0, description="Ceiling for any single wait")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Wait multiplier per retry")

    def to_policy(self) -> RetryPolicy:
        explicit = {
            name: getattr(self, name)
            for name in ("max_attempts", "initial_delay", "max_delay", "backoff_factor")
            if name in self.model_fields_set
        }
        if self.profile is not None:
            base = POLICY_PRESETS[self.profile]
            values = {
                "max_attempts": base.max_attempts,
                "initial_delay": base.initial_delay,
                "max_delay": base.max_delay,
                "backoff_factor": base.backoff_factor,
                **explicit,
            }
        else:
            values = {
                "max_attempts": self.max_attempts,
                "initial_delay": self.initial_delay,
                "max_delay": self.max_delay,
                "backoff_factor": self.backoff_factor,
            }
        return RetryPolicy(**values)


class TransferConfig(BaseModel):
    """How data moves between remote storage and the workspace."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["rclone", "local"] = Field(
        default="rclone",
        description="rclone for remote storage, local for plain directories",
    )
    rclone_binary: str = Field(default="rclone")
    rclone_config: Path | None = Field(
        default=None,
        description="rclone.conf to pass with --config",
    )
    inbound_transfers: int = Field(default=8, ge=1, description="Parallel downloads")
    outbound_transfers: int = Field(default=8, ge=1, description="Parallel uploads")
    nice: int = Field(default=19, ge=0, le=19, description="Scheduling niceness for transfers")


class CryptoConfig(BaseModel):
    """GPG identities used to decrypt inputs and sign/encrypt outputs."""

    model_config = ConfigDict(frozen=True)

    gpg_binary: str = Field(default="gpg")
    sign_key: str | None = Field(default=None, description="Local user id for --sign")
    recipient: str | None = Field(default=None, description="Recipient for --encrypt")
    nice: int = Field(default=19, ge=0, le=19)


class InterruptionConfig(BaseModel):
    """Cloud interruption notice polling (EC2 spot instance-action)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=True)
    token_url: str = Field(default="http://169.254.169.254/latest/api/token")
    instance_action_url: str = Field(
        default="http://169.254.169.254/latest/meta-data/spot/instance-action",
    )
    token_ttl_seconds: int = Field(default=21600, ge=1)
    connect_timeout: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0, description="Seconds between checks")


class FanOutConfig(BaseModel):
    """The parallel workload run once per input file."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(
        default="",
        description="Command template; {} is the input path, {.} drops the "
        "extension, {/} is the base name",
    )
    max_workers: int = Field(default=4, ge=1, description="Concurrent units")
    stop_grace: float = Field(
        default=5.0,
        ge=0,
        description="Seconds between the driver's soft and hard stop signals",
    )
    nice: int = Field(default=0, ge=0, le=19)


class JobConfig(BaseModel):
    """Complete, immutable configuration of one job."""

    model_config = ConfigDict(frozen=True)

    job_name: str = Field(min_length=1, description="Job name used in paths and ids")
    cleanup_mode: CleanupMode = Field(default=CleanupMode.KEEP)
    input: str = Field(default="", description="Remote location of inputs")
    output: str = Field(default="", description="Remote location for results and logs")
    inglob: str = Field(default="*", description="Input file pattern")
    outglob: str = Field(default="*", description="Result file pattern")
    workspace: Path = Field(default=Path("/mnt/data/marathon/work"))
    logspace: Path = Field(default=Path("/mnt/data/marathon/log"))
    reports_dir: Path | None = Field(
        default=None,
        description="Job/error indexes and metrics; defaults to <logspace>/reports",
    )
    ramdisk_root: Path = Field(default=Path("/dev/shm"))
    encrypt: bool = Field(default=False, description="Sign and encrypt results")
    workfactor: float = Field(
        default=1.0,
        ge=0,
        description="Workspace bytes needed per input byte",
    )
    check_disk_space: bool = Field(default=True)
    resource_poll_interval: float = Field(default=10.0, gt=0)
    sync_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between output syncs while the workload runs",
    )
    worker_grace_period: float = Field(
        default=3.0,
        ge=0,
        description="Seconds a registered worker gets between SIGTERM and SIGKILL",
    )
    write_metadata: bool = Field(default=True, description="Write manifest and indexes")
    power_off_command: list[str] = Field(default=["sudo", "shutdown", "now"])
    retry: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    interruption: InterruptionConfig = Field(default_factory=InterruptionConfig)
    fanout: FanOutConfig = Field(default_factory=FanOutConfig)

    @field_validator("job_name")
    @classmethod
    def _job_name_is_path_safe(cls, v: str) -> str:
        if "/" in v or v in (".", ".."):
            raise ValueError(f"job name must be a single path component: {v!r}")
        return v

    @model_validator(mode="after")
    def _check_encryption_identities(self) -> JobConfig:
        if self.encrypt and not (self.crypto.sign_key and self.crypto.recipient):
            raise ValueError("encryption requires crypto.sign_key and crypto.recipient")
        if self.cleanup_mode is CleanupMode.GPG and not self.encrypt:
            _logger.warning(
                "config.gpg_cleanup_without_encryption",
                message="cleanup mode 'gpg' keeps only encrypted results; "
                "with encryption off no results are kept locally",
            )
        return self

    @property
    def reports_path(self) -> Path:
        return self.reports_dir or self.logspace / "reports"

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.retry.to_policy()


# ─── Loading ───────────────────────────────────────────────────────────

ENV_PREFIX = "MARATHON_"

# Environment variable suffix -> dotted config path
ENV_FIELDS: dict[str, str] = {
    "INPUT": "input",
    "OUTPUT": "output",
    "INGLOB": "inglob",
    "OUTGLOB": "outglob",
    "WORKSPACE": "workspace",
    "LOGSPACE": "logspace",
    "REPORTS": "reports_dir",
    "ENCRYPT": "encrypt",
    "WORKFACTOR": "workfactor",
    "WAIT": "resource_poll_interval",
    "SYNC_INTERVAL": "sync_interval",
    "WORKER_GRACE": "worker_grace_period",
    "MAX_WORKERS": "fanout.max_workers",
    "COMMAND": "fanout.command",
    "STOP_GRACE": "fanout.stop_grace",
    "MAX_RETRIES": "retry.max_attempts",
    "INITIAL_RETRY_DELAY": "retry.initial_delay",
    "MAX_RETRY_DELAY": "retry.max_delay",
    "RETRY_BACKOFF_FACTOR": "retry.backoff_factor",
    "RETRY_PROFILE": "retry.profile",
    "TRANSFER_BACKEND": "transfer.backend",
    "RCLONE_CONFIG": "transfer.rclone_config",
    "INBOUND_TRANSFERS": "transfer.inbound_transfers",
    "OUTBOUND_TRANSFERS": "transfer.outbound_transfers",
    "GPG_SIGN": "crypto.sign_key",
    "GPG_RECIPIENT": "crypto.recipient",
    "SPOT_POLL_INTERVAL": "interruption.poll_interval",
    "SPOT_CHECK": "interruption.enabled",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


def _coerce_env_value(path: str, raw: str) -> Any:
    # Pydantic parses numbers and paths from strings; flags accept the
    # shell-style "yes"/"no" the job scripts have always used.
    if path in ("encrypt", "interruption.enabled"):
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"{ENV_PREFIX}{path}: expected yes/no, got {raw!r}")
    return raw


def _set_dotted(target: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[leaf] = value


def env_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect configuration overrides from ``MARATHON_*`` variables."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for suffix, path in ENV_FIELDS.items():
        raw = env.get(f"{ENV_PREFIX}{suffix}")
        if raw is None:
            continue
        _set_dotted(overrides, path, _coerce_env_value(path, raw))
    return overrides


def _deep_merge(base: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config_file(config_file: Path) -> dict[str, Any]:
    """Read a YAML configuration file into a plain mapping."""
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigurationError(f"cannot read config file {config_file}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {config_file}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {config_file} must contain a mapping")
    return data


def load_job_config(
    job_name: str,
    cleanup_mode: CleanupMode | str,
    *,
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> JobConfig:
    """Build the job's configuration from every source.

    Raises:
        ConfigurationError: If a source is unreadable or the merged values
            fail validation.
    """
    data: dict[str, Any] = {}
    if config_file is not None:
        data = read_config_file(config_file)
    data = _deep_merge(data, env_overrides(environ))
    data["job_name"] = job_name
    data["cleanup_mode"] = cleanup_mode

    try:
        config = JobConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    _logger.debug(
        "config.loaded",
        job_name=config.job_name,
        cleanup_mode=config.cleanup_mode.value,
        config_file=str(config_file) if config_file else None,
    )
    return config


__all__ = [
    "CleanupMode",
    "CryptoConfig",
    "ENV_FIELDS",
    "ENV_PREFIX",
    "FanOutConfig",
    "InterruptionConfig",
    "JobConfig",
    "RetryPolicyConfig",
    "TransferConfig",
    "env_overrides",
    "load_job_config",
    "read_config_file",
]
