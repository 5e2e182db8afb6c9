"""
Configuration for the batch metadata pipeline.
Covers dispatch throttling, the inference gateway, persistence and storage.
"""
import os
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class PipelineConfig(BaseSettings):
    """Pipeline configuration loaded from environment / .env"""

    # Dispatch pacing (milliseconds)
    throttle_interval_ms: int = Field(2000, env="THROTTLE_INTERVAL_MS")
    rate_limit_backoff_ms: int = Field(5000, env="RATE_LIMIT_BACKOFF_MS")

    # Inference gateway (OpenAI-compatible chat completions)
    inference_base_url: str = Field(
        "https://ai.gateway.lovable.dev/v1", env="INFERENCE_BASE_URL")
    inference_api_key: str = Field("", env="INFERENCE_API_KEY")
    inference_model: str = Field(
        "google/gemini-2.5-flash", env="INFERENCE_MODEL")
    request_timeout: int = Field(90, env="REQUEST_TIMEOUT")
    # Retries for 5xx / connection failures inside a single inference call
    retry_attempts: int = Field(2, env="RETRY_ATTEMPTS")
    retry_delay: float = Field(1.0, env="RETRY_DELAY")

    # Database
    database_url: str = Field("sqlite:///./metagen.db", env="DATABASE_URL")
    database_pool_size: int = Field(10, env="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(20, env="DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, env="DATABASE_ECHO")

    # Storage
    upload_dir: str = Field("./uploads", env="UPLOAD_DIR")
    export_dir: str = Field("./exports", env="EXPORT_DIR")
    log_dir: str = Field("./logs", env="LOG_DIR")
    public_base_url: str = Field("", env="PUBLIC_BASE_URL")
    max_upload_size: int = Field(52428800, env="MAX_UPLOAD_SIZE")  # 50MB per file
    max_inline_size: int = Field(20971520, env="MAX_INLINE_SIZE")  # 20MB data URL cap
    max_request_size: int = Field(524288000, env="MAX_REQUEST_SIZE")  # 500MB
    image_max_size: int = Field(2048, env="IMAGE_MAX_SIZE")
    download_timeout: int = Field(30, env="DOWNLOAD_TIMEOUT")

    # Naming and archives
    max_filename_length: int = Field(100, env="MAX_FILENAME_LENGTH")
    archive_include_xmp_sidecars: bool = Field(
        False, env="ARCHIVE_INCLUDE_XMP_SIDECARS")

    # History
    history_retention_days: int = Field(3, env="HISTORY_RETENTION_DAYS")

    # Credit ledger. Empty URL means the static in-process ledger is used.
    credit_ledger_url: str = Field("", env="CREDIT_LEDGER_URL")
    credit_ledger_token: str = Field("", env="CREDIT_LEDGER_TOKEN")
    # POST target for deductions; defaults to CREDIT_LEDGER_URL
    credit_ledger_charge_url: str = Field("", env="CREDIT_LEDGER_CHARGE_URL")
    default_credit_balance: int = Field(0, env="DEFAULT_CREDIT_BALANCE")
    default_unlimited_credits: bool = Field(
        False, env="DEFAULT_UNLIMITED_CREDITS")

    # Application
    secret_key: str = Field(
        "dev-secret-key-change-in-production", env="SECRET_KEY")
    development_mode: bool = Field(False, env="DEVELOPMENT_MODE")
    enable_debug_logging: bool = Field(False, env="ENABLE_DEBUG_LOGGING")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith('sqlite')

    @property
    def throttle_interval(self) -> float:
        """Inter-request delay in seconds"""
        return self.throttle_interval_ms / 1000.0

    @property
    def rate_limit_backoff(self) -> float:
        """Extended rate-limit backoff in seconds"""
        return self.rate_limit_backoff_ms / 1000.0

    def create_directories(self):
        """Create necessary directories"""
        for directory in (self.upload_dir, self.export_dir, self.log_dir):
            os.makedirs(directory, exist_ok=True)

    def get_database_config(self) -> dict:
        """Get database configuration for SQLAlchemy"""
        if self.is_sqlite:
            db_config = {
                'url': self.database_url,
                'echo': self.database_echo,
                'connect_args': {'check_same_thread': False},
            }
            if ':memory:' in self.database_url:
                from sqlalchemy.pool import StaticPool
                db_config['poolclass'] = StaticPool
            return db_config

        return {
            'url': self.database_url,
            'pool_size': self.database_pool_size,
            'max_overflow': self.database_max_overflow,
            'echo': self.database_echo,
            'pool_pre_ping': True,
            'pool_recycle': 3600
        }

    def validate_configuration(self) -> List[str]:
        """Validate configuration and return warnings"""
        warnings = []

        if not self.inference_api_key:
            warnings.append(
                "INFERENCE_API_KEY not set - inference calls will fail")

        if self.throttle_interval_ms < 0 or self.rate_limit_backoff_ms < 0:
            warnings.append("Throttle and backoff intervals must be >= 0")

        if self.throttle_interval_ms < 500 and not self.development_mode:
            warnings.append(
                "Throttle interval below 500ms may trip the shared gateway rate limit")

        if not (20 <= self.max_filename_length <= 255):
            warnings.append(
                "MAX_FILENAME_LENGTH should be between 20 and 255")

        if self.history_retention_days < 1:
            warnings.append("HISTORY_RETENTION_DAYS must be at least 1")

        if not self.credit_ledger_url and not self.default_unlimited_credits \
                and self.default_credit_balance <= 0:
            warnings.append(
                "No credit ledger configured and static balance is 0 - every batch will be rejected")

        return warnings


# Global configuration instance
config = PipelineConfig()

# Validate configuration on import
if config.enable_debug_logging:
    warnings = config.validate_configuration()
    if warnings:
        import logging
        logger = logging.getLogger(__name__)
        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")
