from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    model_config = SettingsConfigDict(env_file=(".env",), env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_date_format: str = "%Y-%m-%d %H:%M:%S"

    host: str = "0.0.0.0"
    port: int = Field(default=8000, alias="APP_PORT")
    allowed_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # Upstream cluster API
    development: bool = Field(default=False, description="Talk to DEV_KUBE_API_URL without TLS checks or header passthrough")
    dev_kube_api_url: str = "http://127.0.0.1:8001"
    kubernetes_service_host: str | None = None
    kubernetes_service_port: int = 443
    kube_config_path: str | None = Field(default=None, alias="KUBE_CONFIG_PATH")
    kube_context: str | None = None
    service_account_dir: str = "/var/run/secrets/kubernetes.io/serviceaccount"
    # Comma separated list of browser request headers forwarded to the cluster API
    allowed_auth_headers: str = ""
    upstream_timeout_seconds: float = 5.0
    # Idle connections kept in the pool; total connections are uncapped
    upstream_max_keepalive: int = Field(default=20, ge=0)

    # List-then-watch relay timings
    watch_rotation_seconds: float = Field(default=600.0, description="Replace the upstream watch even when healthy")
    watch_error_retry_seconds: float = 1.2
    watch_open_retry_seconds: float = 2.0
    heartbeat_interval_seconds: float = 25.0
    max_send_failures: int = Field(default=3, ge=1)

    @field_validator("development", mode="before")
    @classmethod
    def _parse_development(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() in {"true", "1", "yes"}
        return value

    @computed_field
    @property
    def is_debug(self) -> bool:
        return self.app_env == "development"

    @computed_field
    @property
    def allowed_header_names(self) -> frozenset[str]:
        return frozenset(h.strip().lower() for h in self.allowed_auth_headers.split(",") if h.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
