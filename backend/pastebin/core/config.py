from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_DIR = Path(__file__).resolve().parents[2]
REPO_ROOT = BACKEND_DIR.parent
ENV_FILES = [REPO_ROOT / ".env", BACKEND_DIR / ".env"]

for env_path in ENV_FILES:
    if env_path.exists():
        load_dotenv(env_path, override=False)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, extra="allow", populate_by_name=True)

    app_name: str = Field(default="dup", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")

    # Rate limit store; both values are required, otherwise limiting fails open
    redis_url: str = Field(default="", alias="REDIS_URL")
    redis_token: str = Field(default="", alias="REDIS_TOKEN")

    # Platform markers used to decide whether proxy headers can be trusted
    vercel_url: str = Field(default="", alias="VERCEL_URL")
    cf_pages: str = Field(default="", alias="CF_PAGES")
    trust_proxy_headers: Optional[bool] = Field(default=None, alias="TRUST_PROXY_HEADERS")

    jwt_secret: str = Field(default="", alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_expires_minutes: int = Field(default=60, alias="JWT_EXPIRES_MINUTES")

    backend_cors_origins_raw: str = Field(default="http://localhost:3000", alias="BACKEND_CORS_ORIGINS")

    # Abuse tracking
    abuse_track_authenticated_ip: bool = Field(default=False, alias="ABUSE_TRACK_AUTHENTICATED_IP")

    # Monitoring
    rate_limit_event_max_pending: int = Field(default=1000, ge=1, alias="RATE_LIMIT_EVENT_MAX_PENDING")
    rate_limit_cleanup_interval_seconds: int = Field(
        default=3600, ge=1, alias="RATE_LIMIT_CLEANUP_INTERVAL_SECONDS"
    )
    enable_prometheus_metrics: bool = Field(default=True, alias="ENABLE_PROMETHEUS_METRICS")
    prometheus_metrics_path: str = Field(default="/metrics/prometheus", alias="PROMETHEUS_METRICS_PATH")

    @property
    def backend_cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.backend_cors_origins_raw.split(",") if origin.strip()]

    @property
    def store_configured(self) -> bool:
        return bool(self.redis_url and self.redis_token)

    @property
    def behind_trusted_proxy(self) -> bool:
        if self.trust_proxy_headers is not None:
            return self.trust_proxy_headers
        return self.app_env == "production" and bool(self.vercel_url or self.cf_pages)


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET is required in environment or .env")
    return settings
