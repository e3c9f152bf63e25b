"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    app_secret_key: str
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Webhook ingress
    allow_unsigned_webhooks: bool = False
    webhook_rate_limit_per_minute: int = 300
    trusted_proxies: str = ""  # Comma-separated proxy IPs/CIDRs allowed to set X-Forwarded-For

    # Pipeline
    dedup_window_seconds: int = 86400  # 24h - covers provider retry schedules
    allowed_currencies: str = "KES,UGX,TZS,RWF,USD"  # Comma-separated ISO codes
    default_currency: str = "KES"
    default_phone_region: str = "KE"
    stale_received_seconds: int = 60
    dispatch_retry_seconds: int = 30

    # Reconciliation (downstream matching service)
    reconciliation_url: str = ""
    reconciliation_timeout_seconds: float = 10.0
    reconciliation_max_retries: int = 5
    reconciliation_retry_minutes: int = 5
    match_confidence_threshold: int = 80
    partial_match_threshold: int = 50

    # Monitoring
    events_page_size_max: int = 100
    realtime_buffer_size: int = 10

    # Operator auth
    dashboard_jwt_secret: str = ""
    dashboard_jwt_expiry_hours: int = 24
    allowed_origins: str = ""  # Comma-separated CORS origins

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def currency_whitelist(self) -> set[str]:
        return {c.strip().upper() for c in self.allowed_currencies.split(",") if c.strip()}

    @property
    def trusted_proxy_list(self) -> list[str]:
        return [p.strip() for p in self.trusted_proxies.split(",") if p.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
