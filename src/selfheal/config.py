"""
Configuration management for selfheal

Provides pydantic-based configuration with environment variable support
and YAML file loading capabilities.
"""

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict

from .models import Severity
from .observability.config import TelemetryConfig


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class DetectionConfig(BaseModel):
    """Pattern scan defaults"""

    default_time_window_minutes: int = Field(default=60, gt=0)
    min_severity: Optional[Severity] = None


class ExecutorConfig(BaseModel):
    """Action execution settings"""

    default_timeout_seconds: float = Field(default=60.0, gt=0)


class RollbackConfig(BaseModel):
    """Rollback eligibility policy"""

    max_rollback_window_hours: float = Field(default=24.0, ge=0)
    require_approval: bool = False
    non_rollbackable_action_types: list[str] = Field(default_factory=list)


class EscalationConfig(BaseModel):
    """Escalation notice settings"""

    high_priority_level: int = Field(default=3, ge=1)
    max_suggested_actions: int = Field(default=3, ge=0)


class SafetyPolicy(BaseModel):
    """Guard rails checked before a pattern-triggered action runs"""

    enabled: bool = True
    max_actions_per_hour: int = Field(default=100, ge=0)
    max_concurrent_executions: int = Field(default=10, ge=0)
    max_affected_entities: int = Field(default=50, ge=0)
    min_action_cooldown_minutes: float = Field(default=5.0, ge=0)
    require_approval_types: list[str] = Field(default_factory=list)
    require_approval_severities: list[Severity] = Field(
        default_factory=lambda: [Severity.CRITICAL]
    )
    # UTC hours 0-23 and weekdays 0-6 (Monday is 0)
    blocked_hours: list[int] = Field(default_factory=list)
    blocked_days: list[int] = Field(default_factory=list)

    @field_validator("blocked_hours")
    @classmethod
    def hours_in_range(cls, hours: list[int]) -> list[int]:
        if any(not 0 <= hour <= 23 for hour in hours):
            raise ValueError("blocked_hours must be between 0 and 23")
        return hours

    @field_validator("blocked_days")
    @classmethod
    def days_in_range(cls, days: list[int]) -> list[int]:
        if any(not 0 <= day <= 6 for day in days):
            raise ValueError("blocked_days must be between 0 (Monday) and 6 (Sunday)")
        return days


class StorageConfig(BaseModel):
    """Storage backend configuration"""

    backend: str = "memory"  # "memory" or "redis"
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "selfheal:"
    socket_timeout: float = 5.0


class SelfHealConfig(BaseSettings):
    """Main selfheal configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SELFHEAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    safety: SafetyPolicy = Field(default_factory=SafetyPolicy)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    log_level: str = "INFO"

    @classmethod
    def load_from_file(cls, config_path: str = "selfheal.yml") -> "SelfHealConfig":
        """Load configuration from YAML; SELFHEAL_* environment variables win"""
        config_file = Path(config_path)
        config_data: dict[str, Any] = {}

        if config_file.exists():
            with open(config_file, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}

        return cls(**_merge(config_data, EnvSettingsSource(cls)()))


# Global configuration instance
_config: Optional[SelfHealConfig] = None


def get_config() -> SelfHealConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = SelfHealConfig.load_from_file()
    return _config


def set_config(config: SelfHealConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
