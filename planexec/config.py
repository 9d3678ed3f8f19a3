from __future__ import annotations

import os
from enum import Enum
from typing import Any, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from planexec.logging import get_logger
from planexec.service.errors import PlanConfigurationError

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_PARALLEL_EXECUTION_LIMIT = 5


class StoreBackend(str, Enum):
    """Durable store implementations the runtime can wire in."""

    MEMORY = "memory"
    REDIS = "redis"


class ExecutionConfig(BaseModel):
    """Per-run execution policy."""

    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    retry_delay_ms: float = Field(DEFAULT_RETRY_DELAY_MS, ge=0)
    enable_rollback: bool = True
    continue_on_error: bool = False
    parallel_execution_limit: int = Field(DEFAULT_PARALLEL_EXECUTION_LIMIT, ge=1)
    execution_timeout_ms: Optional[float] = Field(None, gt=0)

    model_config = ConfigDict(extra="forbid", frozen=True)

    def merged(self, overrides: Optional[Mapping[str, Any]] = None) -> "ExecutionConfig":
        """Return a validated copy with ``overrides`` applied (None values ignored)."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return ExecutionConfig(**data)


def build_execution_config(
    defaults: ExecutionConfig, overrides: Optional[Mapping[str, Any]] = None
) -> ExecutionConfig:
    """Merge caller overrides onto defaults; invalid values are configuration errors."""
    try:
        return defaults.merged(overrides)
    except ValidationError as exc:
        raise PlanConfigurationError(
            "invalid execution config",
            detail={"errors": [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]},
        ) from exc


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the execution engine."""

    max_retries: int = env_field(DEFAULT_MAX_RETRIES, "EXECUTION_MAX_RETRIES")
    retry_delay_ms: float = env_field(DEFAULT_RETRY_DELAY_MS, "EXECUTION_RETRY_DELAY_MS")
    enable_rollback: bool = env_field(True, "EXECUTION_ENABLE_ROLLBACK")
    continue_on_error: bool = env_field(False, "EXECUTION_CONTINUE_ON_ERROR")
    parallel_execution_limit: int = env_field(
        DEFAULT_PARALLEL_EXECUTION_LIMIT, "EXECUTION_PARALLEL_LIMIT"
    )
    execution_timeout_ms: float | None = env_field(
        None,
        "EXECUTION_TIMEOUT_MS",
        description="Wall-clock budget for a whole run; unset means no limit",
    )
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for the memory store's JSON state file; unset keeps state in memory only",
    )
    tool_workers: int = env_field(8, "TOOL_WORKERS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("execution_timeout_ms", mode="before")
    @classmethod
    def _blank_timeout(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def execution_defaults(self) -> ExecutionConfig:
        """Default per-run policy derived from settings."""
        try:
            return ExecutionConfig(
                max_retries=self.max_retries,
                retry_delay_ms=self.retry_delay_ms,
                enable_rollback=self.enable_rollback,
                continue_on_error=self.continue_on_error,
                parallel_execution_limit=self.parallel_execution_limit,
                execution_timeout_ms=self.execution_timeout_ms,
            )
        except ValidationError as exc:
            logger.error("execution_defaults_invalid", error=str(exc))
            raise


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
