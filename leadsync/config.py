from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    admin_api_secret: str | None = None
    log_level: str = "INFO"

    # Tenants
    tenants_file: str = "config/clients.json"
    tenant_refresh_interval_seconds: int = 300

    # Google Sheets
    google_credentials_b64: str | None = None
    google_credentials_json: str | None = None
    google_service_account_file: str = "config/google-credentials.json"
    sheets_timezone: str = "America/Sao_Paulo"
    sheets_max_retries: int = 3
    sheets_retry_base_seconds: float = 2.0
    sheets_retry_max_seconds: float = 16.0

    # Kommo
    kommo_client_secret: str | None = None
    kommo_access_token: str | None = None
    kommo_subdomain: str | None = None
    kommo_api_timeout_seconds: float = 10.0

    # Guards
    dedup_window_seconds: float = 30.0
    webhook_rate_limit_window_seconds: float = 60.0
    webhook_rate_limit_max_requests: int = 60
    webhook_rate_limit_sweep_interval_seconds: float = 300.0

    # Dispatcher
    workers_enabled: bool = True
    queue_max_attempts: int = 3
    queue_backoff_base_seconds: float = 2.0
    queue_backoff_max_seconds: float = 60.0
    queue_backlog_alert_threshold: int = 100
    tintim_lane_concurrency: int = 3
    tintim_lane_rate_per_second: float = 10.0
    kommo_lane_concurrency: int = 2
    kommo_lane_rate_per_second: float = 5.0

    # Alerts
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    alert_cooldown_seconds: float = 1800.0
    alert_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
