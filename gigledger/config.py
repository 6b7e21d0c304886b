from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "data/gigledger.db"
    host: str = "0.0.0.0"
    port: int = 8000
    currency: str = "usd"
    platform_account_id: str = "platform"
    platform_fee_percent: float = 10.0
    cancel_grace_minutes: int = 60
    cancel_fee_retention_rate: float = 0.5
    processor_backend: str = "memory"  # memory | http
    processor_url: str | None = None
    processor_api_key: str | None = None
    processor_timeout_seconds: float = 10.0
    outbox_max_attempts: int = 5
    outbox_backoff_base_seconds: float = 1.0
    outbox_backoff_cap_seconds: float = 300.0
    outbox_poll_seconds: float = 2.0
    outbox_claim_timeout_seconds: int = 300
    outbox_retention_days: int = 30
    outbox_worker_enabled: bool = True
    maintenance_interval_seconds: int = 3600
    admin_key: str | None = None
    rate_limit_write: str = "30/minute"
    rate_limit_read: str = "120/minute"
    rate_limit_admin: str = "30/minute"
    ledger_page_size: int = 50

    model_config = {"env_prefix": "GIGLEDGER_"}


settings = Settings()
