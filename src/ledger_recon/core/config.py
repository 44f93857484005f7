from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    database_url: str = "sqlite:///./ledger_recon.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    redis_url: str = "redis://localhost:6379/0"
    task_soft_time_limit_seconds: int = 900

    # Seeded on startup when set; departments are comma separated.
    init_organization_name: str | None = None
    init_departments: str = ""

    storage_backend: Literal["local", "s3"] = "local"
    local_storage_path: Path = Path(".local_storage")

    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_bucket: str = "ledger-recon"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None

    max_upload_bytes: int = 25 * 1024 * 1024

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    ai_enabled: bool = True
    ai_timeout_seconds: float = 20.0
    ai_max_chars: int = 12000

    # Ingestion
    provider_max_concurrency: int = 5
    vendor_fallback_max_length: int = 50
    fallback_category: str = "Uncategorized"
    category_rule_short_circuit: float = 0.8
    processing_stale_minutes: int = 30

    # Reconciliation
    reconcile_window_days: int = 90
    reconcile_date_tolerance_days: int = 5
    reconcile_amount_tolerance_pct: float = 0.05
    reconcile_amount_exact_tolerance: float = 0.01
    reconcile_auto_confirm_threshold: float = 0.95
    reconcile_review_threshold: float = 0.6
    reconcile_weight_amount: float = 0.5
    reconcile_weight_date: float = 0.2
    reconcile_weight_text: float = 0.3

    invoice_feed_url: str | None = None
    invoice_feed_api_key: str | None = None
    invoice_feed_source: str = "accounting"
    invoice_feed_timeout_seconds: float = 30.0


settings = Settings()
