"""
Centralized Configuration System
Environment-aware settings for the webhook pipeline and its collaborators.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Dict, Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Production-grade configuration management.
    Loads from environment variables with sensible defaults.
    """

    # ============================================
    # STORAGE
    # ============================================
    storage_backend: Literal["mongodb", "memory"] = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "crm_sync"
    mongodb_max_pool_size: int = 50
    mongodb_min_pool_size: int = 5
    mongodb_server_selection_timeout_ms: int = 5000
    mongodb_use_transactions: bool = True  # Requires a replica set

    # ============================================
    # QUEUE DEFAULTS
    # ============================================
    default_max_attempts: int = 3
    retry_base_delay_seconds: int = 60
    retry_max_delay_seconds: int = 3600
    default_max_runtime_seconds: float = 50.0
    processing_lease_seconds: int = 300     # Claims older than this are released
    completed_retention_hours: int = 24
    batch_sizes: Dict[str, int] = {
        "critical": 10,
        "financial": 30,
        "general": 100,
        "messages": 50,
        "appointments": 50,
        "contacts": 50,
        "projects": 50,
        "install": 5,
    }
    default_batch_size: int = 50

    # ============================================
    # SLA TARGETS (milliseconds)
    # ============================================
    sla_targets_ms: Dict[str, int] = {
        "messages": 2_000,
        "appointments": 30_000,
        "contacts": 60_000,
        "financial": 30_000,
        "critical": 30_000,
        "general": 120_000,
        "projects": 120_000,
        "install": 300_000,
    }
    default_sla_target_ms: int = 120_000

    # ============================================
    # SECURITY
    # ============================================
    cron_secret: Optional[str] = None
    scheduler_header_name: str = "x-vercel-cron"
    trust_scheduler_header: bool = False
    webhook_signing_secret: Optional[str] = None
    verify_webhook_signature: bool = False
    native_max_age_seconds: int = 300

    # ============================================
    # EXTERNAL COLLABORATORS
    # ============================================
    notification_api_url: Optional[str] = None
    notification_api_key: Optional[str] = None
    token_service_url: Optional[str] = None
    token_service_key: Optional[str] = None
    location_setup_url: Optional[str] = None
    http_timeout_seconds: float = 10.0

    # ============================================
    # USERS & CONTACTS
    # ============================================
    user_setup_token_ttl_days: int = 7
    setup_account_base_url: str = "https://app.example.com/setup-account"
    default_phone_region: str = "US"

    # ============================================
    # LOGGING
    # ============================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # Set to True for production JSON logs

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "staging", "production"] = "development"

    def batch_size_for(self, queue_type: str) -> int:
        return self.batch_sizes.get(str(queue_type), self.default_batch_size)

    def sla_target_for(self, queue_type: str) -> int:
        return self.sla_targets_ms.get(str(queue_type), self.default_sla_target_ms)


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()


# Convenience accessor for common use
settings = get_settings()
