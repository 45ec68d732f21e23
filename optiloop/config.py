"""Global configuration: loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings

from optiloop.exceptions import ConfigurationError


class OptiloopSettings(BaseSettings):
    workspace_dir: Path = Path(".optiloop")
    db_path: Path = Path(".optiloop/optiloop.db")
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8430

    # Feature flags; each one has a safe "off" behavior
    orchestration_enabled: bool = True
    autonomy_enabled: bool = True
    federation_enabled: bool = True

    # Orchestrator stream
    stream_backend: str = "memory"  # "memory" | "redis"
    redis_url: str = "redis://localhost:6379/0"
    stream_key: str = "ai:orchestrator:events"
    stream_max_length: int = 200

    # Control loop
    loop_default_interval_ms: int = 300_000
    loop_history_limit: int = 50
    loop_adaptive_interval: bool = False

    # Federation
    federation_tenant_id: str = "local"
    federation_secret: str = ""
    federation_endpoints: str = ""  # Comma-separated peer base URLs
    federation_recent_limit: int = 25
    federation_timeout_seconds: float = 5.0
    federation_broadcast_interval_s: int = 0  # 0 = no periodic re-broadcast

    model_config = {"env_prefix": "OPTILOOP_"}

    @property
    def endpoint_list(self) -> list[str]:
        return [e.strip() for e in self.federation_endpoints.split(",") if e.strip()]

    def require_federation_secret(self) -> None:
        """Fail fast when federation is on but cannot sign anything."""
        if self.federation_enabled and not self.federation_secret:
            raise ConfigurationError(
                "Federation is enabled but OPTILOOP_FEDERATION_SECRET is not set"
            )


settings = OptiloopSettings()
