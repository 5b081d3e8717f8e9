"""
Configuration management for incidentops

Provides pydantic-based configuration with environment variable support
and YAML file loading capabilities.
"""

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMRouterConfig(BaseModel):
    """Single model router configuration"""

    provider: str = "openai"  # "openai", "local", "mock"
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, gt=0)
    timeout: float = Field(default=60.0, gt=0)


class LLMConfig(BaseModel):
    """Model routing configuration"""

    primary: str = "primary"
    fallback: str = "fallback"
    routers: dict[str, LLMRouterConfig] = Field(
        default_factory=lambda: {
            "primary": LLMRouterConfig(),
            "fallback": LLMRouterConfig(model="gpt-4o-mini", max_tokens=3000),
        }
    )
    # Retry settings for transient capacity errors
    capacity_retry_attempts: int = Field(default=3, ge=1)
    capacity_retry_base_delay: float = Field(default=1.0, ge=0.0)


class WorkflowConfig(BaseModel):
    """Incident lifecycle settings

    Two escalation tables exist. ``processing_time_limits`` is checked by the
    orchestrator between pipeline phases; ``idle_escalation_thresholds`` is
    used by the store sweep for incidents sitting without resolution.
    Values are minutes keyed by severity.
    """

    processing_time_limits: dict[str, float] = Field(
        default_factory=lambda: {"P0": 2, "P1": 5, "P2": 15, "P3": 30}
    )
    idle_escalation_thresholds: dict[str, float] = Field(
        default_factory=lambda: {"P0": 5, "P1": 15, "P2": 60, "P3": 240}
    )
    max_failed_attempts: int = Field(default=3, ge=1)


class RemediationConfig(BaseModel):
    """Remediation execution settings"""

    tool_service: str = "remediation"
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    attempt_timeout: float = Field(default=30.0, gt=0)
    breaker_failure_threshold: int = Field(default=3, ge=1)
    breaker_reset_timeout: float = Field(default=60.0, gt=0)
    max_restart_attempts: int = Field(default=3, ge=1)
    max_autonomous_replicas: int = Field(default=10, ge=1)
    rollback_timeout: float = Field(default=300.0, gt=0)
    notification_recipient: str = "sre-team"
    notification_retry_attempts: int = Field(default=2, ge=1)
    notification_retry_delay: float = Field(default=0.5, ge=0.0)
    # Treat tool results without an explicit success signal as failures
    require_explicit_success: bool = False


class StorageConfig(BaseModel):
    """Incident store configuration"""

    backend: str = "memory"  # "memory" or "redis"
    max_incidents: int = Field(default=10000, gt=0)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    key_prefix: str = "incidentops:incident:"


class TelemetryConfig(BaseModel):
    """Telemetry and observability configuration"""

    otlp_endpoint: Optional[str] = None
    enable_metrics: bool = False
    enable_tracing: bool = False
    service_name: str = "incidentops"
    environment: str = "development"


class PerformanceConfig(BaseModel):
    """Performance settings"""

    gather_timeout: float = 10.0
    max_concurrent_incidents: int = 5
    max_log_lines: int = 20


class IncidentOpsConfig(BaseSettings):
    """Main incidentops configuration"""

    model_config = SettingsConfigDict(
        env_prefix="INCIDENTOPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)

    log_level: str = "INFO"

    @classmethod
    def load_from_file(
        cls, config_path: str = "incidentops.yml"
    ) -> "IncidentOpsConfig":
        """Load configuration from YAML file with environment variable override"""
        config_file = Path(config_path)
        config_data: dict[str, Any] = {}

        if config_file.exists():
            with open(config_file, encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def get_llm_router_config(
        self, router_name: Optional[str] = None
    ) -> LLMRouterConfig:
        """Get model router configuration"""
        router_name = router_name or self.llm.primary
        if router_name not in self.llm.routers:
            raise ValueError(f"LLM router '{router_name}' not found in configuration")
        return self.llm.routers[router_name]


_config: Optional[IncidentOpsConfig] = None


def get_config() -> IncidentOpsConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = IncidentOpsConfig.load_from_file()
    return _config


def set_config(config: IncidentOpsConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
