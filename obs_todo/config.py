from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    service_name: str = Field(default="obs-todo-app", alias="OTEL_SERVICE_NAME")
    otlp_endpoint: str = Field(default="http://localhost:4318/v1/traces", alias="OTEL_EXPORTER_OTLP_ENDPOINT")
    tracing_enabled: bool = Field(default=True, alias="TRACING_ENABLED")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=5000, alias="PORT")

    cors_allowed_origins: str = Field(default="", alias="CORS_ALLOWED_ORIGINS")
    csp_extra_origins: str = Field(default="", alias="CSP_EXTRA_ORIGINS")
    max_body_bytes: int = Field(default=10 * 1024, alias="MAX_BODY_BYTES")
    rate_limit_window_seconds: int = Field(default=15 * 60, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_mutation_max_requests: int = Field(default=20, alias="RATE_LIMIT_MUTATION_MAX_REQUESTS")
    trust_proxy_headers: bool = Field(default=False, alias="TRUST_PROXY_HEADERS")

    # Unmatched paths fragment the route label by literal path unless collapsed.
    metrics_collapse_unmatched_routes: bool = Field(default=False, alias="METRICS_COLLAPSE_UNMATCHED_ROUTES")

    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_allowed_origins)

    @property
    def csp_origin_list(self) -> list[str]:
        return _split_csv(self.csp_extra_origins)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
