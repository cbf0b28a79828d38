"""Application configuration using Pydantic Settings"""


from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./escrowpay.db"
    )

    # Stripe (card rail)
    stripe_secret_key: str | None = Field(default=None)
    stripe_webhook_secret: str | None = Field(default=None)

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=True)
    app_host: str = Field(default="0.0.0.0")
    app_port: int = Field(default=8000)

    # Security
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"]
    )

    # Feature Flags
    enable_payments: bool = Field(default=False)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # Settlement policy (basis points, 10000 = 100%)
    settlement_currency: str = Field(default="TZS")
    settlement_policy_version: str = Field(default="2025-01")
    platform_fee_bps: int = Field(default=1500)  # 15% platform fee
    work_initiation_fee_bps: int = Field(default=4250)  # 42.5% kept by vendor once work starts

    # Invoices
    invoice_due_days: int = Field(default=7)
    invoice_number_prefix: str = Field(default="INV")
    invoice_number_max_attempts: int = Field(default=5)

    # Retries
    provider_max_retries: int = Field(default=3)
    provider_retry_base_delay: float = Field(default=0.5)
    optimistic_lock_retries: int = Field(default=5)

    @field_validator('settlement_currency')
    @classmethod
    def validate_settlement_currency(cls, v):
        """Currency codes are three upper-case letters"""
        if len(v) != 3 or not v.isalpha():
            raise ValueError('settlement_currency must be a 3-letter currency code')
        return v.upper()

    def is_payments_configured(self) -> bool:
        """Check if payments/Stripe is properly configured"""
        return all([
            self.enable_payments,
            self.stripe_secret_key,
            self.stripe_webhook_secret
        ])

    def validate_configuration(self) -> dict[str, list[str]]:
        """Validate configuration and return any issues"""
        issues = {"errors": [], "warnings": []}

        # Payment configuration validation
        if self.enable_payments:
            if not self.stripe_secret_key:
                issues["errors"].append("Payments enabled but stripe_secret_key not configured")
            if not self.stripe_webhook_secret:
                issues["errors"].append("Payments enabled but stripe_webhook_secret not configured")

        # Fee validation
        for name in ("platform_fee_bps", "work_initiation_fee_bps"):
            value = getattr(self, name)
            if value < 0 or value > 10000:
                issues["errors"].append(f"{name} must be between 0 and 10000, got {value}")
        if self.platform_fee_bps + self.work_initiation_fee_bps > 10000:
            issues["errors"].append(
                "platform_fee_bps + work_initiation_fee_bps must not exceed 10000, got "
                f"{self.platform_fee_bps + self.work_initiation_fee_bps}"
            )

        if self.invoice_number_max_attempts < 1:
            issues["errors"].append("invoice_number_max_attempts must be at least 1")

        # Security warnings
        if self.app_env == "production":
            if self.app_debug:
                issues["warnings"].append("Debug mode enabled in production")
            if self.database_url.startswith("sqlite"):
                issues["warnings"].append("SQLite database used in production")

        return issues


settings = Settings()
