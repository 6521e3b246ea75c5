"""Configuration management for the release audit controller."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)

LOCAL_VERIFY_IMAGE = "local"


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class AuditSettings(BaseModel):
    """Verification and signing behaviour.

    ``cli_image`` pins the verification tool image for every release. The
    special value ``local`` runs the tool as a subprocess of the controller
    instead of dispatching a cluster job.
    """

    cli_image: str | None = Field(default=None)
    job_namespace: str = Field(default="ci-release")
    verify_command: str = Field(default="oc")
    verify_timeout_seconds: int = Field(default=600, ge=1, le=7200)
    max_unfinished_jobs: int = Field(default=2, ge=1, le=100)
    requeue_delay_seconds: float = Field(default=10.0, gt=0, le=3600)
    failure_cooldown_hours: float = Field(default=12.0, gt=0)
    upload_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    workers: int = Field(default=4, ge=1, le=64)

    @field_validator("cli_image")
    @classmethod
    def _blank_image_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class StorageSettings(BaseModel):
    backend: Literal["sqlite", "s3"] = Field(default="sqlite")
    sqlite_path: str = Field(default="./data/signatures.sqlite")
    sqlite_wal: bool = Field(default=True)
    s3_bucket: str | None = Field(default=None)
    s3_prefix: str = Field(default="signatures")
    s3_region: str | None = Field(default=None)


class ClusterSettings(BaseModel):
    kubectl: str = Field(default="kubectl")
    timeout_seconds: int = Field(default=30, ge=1, le=300)


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1024, le=65535)
    status_enabled: bool = Field(default=True)


class Settings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


ENV_KEYS = {
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "cli_image": "AUDIT_CLI_IMAGE",
    "job_namespace": "AUDIT_JOB_NAMESPACE",
    "verify_command": "AUDIT_VERIFY_COMMAND",
    "verify_timeout": "AUDIT_VERIFY_TIMEOUT_SECONDS",
    "max_unfinished_jobs": "AUDIT_MAX_UNFINISHED_JOBS",
    "requeue_delay": "AUDIT_REQUEUE_DELAY_SECONDS",
    "failure_cooldown": "AUDIT_FAILURE_COOLDOWN_HOURS",
    "upload_timeout": "AUDIT_UPLOAD_TIMEOUT_SECONDS",
    "workers": "AUDIT_WORKERS",
    "store": "SIGNATURE_STORE",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "s3_bucket": "SIGNATURE_S3_BUCKET",
    "s3_prefix": "SIGNATURE_S3_PREFIX",
    "aws_region": "AWS_REGION",
    "kubectl": "KUBECTL",
    "kubectl_timeout": "KUBECTL_TIMEOUT_SECONDS",
    "host": "STATUS_HOST",
    "port": "STATUS_PORT",
    "status_enabled": "STATUS_ENABLED",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    return str((_project_root() / candidate).resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "audit": {
            "cli_image": os.getenv(ENV_KEYS["cli_image"]),
            "job_namespace": os.getenv(
                ENV_KEYS["job_namespace"], AuditSettings().job_namespace
            ),
            "verify_command": os.getenv(
                ENV_KEYS["verify_command"], AuditSettings().verify_command
            ),
            "verify_timeout_seconds": _env_int(
                ENV_KEYS["verify_timeout"], AuditSettings().verify_timeout_seconds
            ),
            "max_unfinished_jobs": _env_int(
                ENV_KEYS["max_unfinished_jobs"], AuditSettings().max_unfinished_jobs
            ),
            "requeue_delay_seconds": _env_float(
                ENV_KEYS["requeue_delay"], AuditSettings().requeue_delay_seconds
            ),
            "failure_cooldown_hours": _env_float(
                ENV_KEYS["failure_cooldown"], AuditSettings().failure_cooldown_hours
            ),
            "upload_timeout_seconds": _env_float(
                ENV_KEYS["upload_timeout"], AuditSettings().upload_timeout_seconds
            ),
            "workers": _env_int(ENV_KEYS["workers"], AuditSettings().workers),
        },
        "storage": {
            "backend": os.getenv(ENV_KEYS["store"], StorageSettings().backend),
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool(ENV_KEYS["sqlite_wal"], StorageSettings().sqlite_wal),
            "s3_bucket": os.getenv(ENV_KEYS["s3_bucket"], "").strip() or None,
            "s3_prefix": os.getenv(ENV_KEYS["s3_prefix"], StorageSettings().s3_prefix),
            "s3_region": os.getenv(ENV_KEYS["aws_region"]) or os.getenv("AWS_DEFAULT_REGION"),
        },
        "cluster": {
            "kubectl": os.getenv(ENV_KEYS["kubectl"], ClusterSettings().kubectl),
            "timeout_seconds": _env_int(
                ENV_KEYS["kubectl_timeout"], ClusterSettings().timeout_seconds
            ),
        },
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "status_enabled": _env_bool(
                ENV_KEYS["status_enabled"], ServerSettings().status_enabled
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.storage.backend == "s3" and not settings.storage.s3_bucket:
        raise RuntimeError(
            "Invalid configuration: SIGNATURE_S3_BUCKET is required for SIGNATURE_STORE=s3"
        )

    if settings.storage.backend == "sqlite":
        Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
