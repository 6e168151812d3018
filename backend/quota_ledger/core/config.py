"""Application configuration"""

from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Storage Quota Ledger API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Security
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_MINUTES: int = 1440  # 24 hours

    # Database
    DATABASE_URL: str

    # Mail hosting control plane (Mailcow API)
    MAILCOW_API_URL: str = "https://mail.example.net"
    MAILCOW_API_KEY: str = ""
    MAILCOW_TIMEOUT_SECONDS: float = 15.0

    # Expected DNS records for hosted domains
    # WHY: Customers point their zone at our mail cluster; verification
    # compares what the resolver returns against these values.
    MAIL_MX_HOST: str = "mail.example.net"
    MAIL_SPF_INCLUDE: str = "_spf.example.net"
    DKIM_SELECTOR: str = "dkim"
    DKIM_KEY_SIZE: int = 2048
    DMARC_POLICY_RECORD: str = "v=DMARC1; p=quarantine; adkim=s; aspf=s"
    DNS_TIMEOUT_SECONDS: float = 5.0

    # Mailbox defaults applied when a domain is created
    DEFAULT_MAILBOX_QUOTA_MB: int = 1024
    MAX_MAILBOX_QUOTA_MB: int = 10240
    DEFAULT_MAX_MAILBOXES: int = 10000

    # Payment gateway (Razorpay)
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None
    PAYMENT_GATEWAY_TIMEOUT_SECONDS: float = 20.0

    # Billing
    BILLING_CURRENCY: str = "INR"
    GST_RATE: Decimal = Decimal("0.18")
    STORAGE_PRICE_PER_GB: Decimal = Decimal("10.00")
    INVOICE_DUE_DAYS: int = 7

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    RECONCILIATION_INTERVAL_SECONDS: int = 600
    OVERDUE_CHECK_INTERVAL_SECONDS: int = 3600

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @property
    def webhook_secret(self) -> str:
        """
        Secret used to sign gateway webhook bodies.

        WHY: Accounts without a dedicated webhook secret sign webhooks with
        the API key secret.
        """
        return self.RAZORPAY_WEBHOOK_SECRET or self.RAZORPAY_KEY_SECRET

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


settings = Settings()
