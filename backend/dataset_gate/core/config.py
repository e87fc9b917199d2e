"""Application configuration loaded from environment variables.

Settings for the object store layout, download tokens, the payment gateway,
admin re-issuance and rate limiting. Uses pydantic-settings for validation
and .env file support.
"""

import re
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Minimum length for ADMIN_REMINT_SECRET in production (256 bits = 32 bytes)
_MIN_ADMIN_SECRET_LENGTH = 32

# Prices are configured as plain decimal strings, e.g. "9.00"
_PRICE_PATTERN = re.compile(r"^\d+\.\d{2}$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # CORS
    # Default allows the Astro dev server; production sets the site origin.
    allowed_origins: list[str] = ["http://localhost:4321"]

    # Object store
    # "memory" keeps everything in-process (local development only).
    store_backend: Literal["s3", "memory"] = "s3"
    s3_bucket_name: str = ""
    s3_region: str = "us-east-1"
    s3_endpoint: str = ""  # leave unset for AWS S3
    s3_force_path_style: bool = False  # R2 / MinIO
    s3_access_key_id: str = ""
    s3_secret_access_key: SecretStr = SecretStr("")
    s3_server_side_encryption: str = "AES256"
    store_timeout_seconds: float = 5.0
    store_max_attempts: int = 2

    # Object layout
    tokens_json_prefix: str = "tokens/"
    tokens_state_prefix: str = "tokens-state/"
    orders_prefix: str = "orders/"
    s3_manifest_key: str = "exports/manifest.json"
    csv_object_key: str = "exports/brands-latest.csv"

    # Download tokens
    token_ttl_seconds: int = 86_400
    max_token_uses: int = Field(
        default=3,
        validation_alias=AliasChoices("max_token_uses", "max_redemptions"),
    )
    download_ttl_seconds: int = 900
    download_filename: str = "vanished-brands.csv"
    download_content_type: str = "text/csv; charset=utf-8"
    # Clock-skew smoothing between issuer and redeemer, not a security boundary
    grace_period_seconds: float = 5.0
    cas_max_attempts: int = 5
    cas_backoff_min_ms: int = 40
    cas_backoff_max_ms: int = 180
    limit_retry_after_seconds: int = 86_400

    # Payments
    payment_provider: Literal["paypal", "mock"] = "paypal"
    paypal_env: Literal["sandbox", "live"] = "sandbox"
    paypal_client_id: str = ""
    paypal_client_secret: SecretStr = SecretStr("")
    paypal_webhook_id: str = ""
    price_usd: str = "9.00"
    paypal_currency: str = "USD"
    product_description: str = "Vanished Brands CSV"
    brand_name: str = "Vanished Brands"
    payment_timeout_seconds: float = 10.0

    # Admin
    admin_remint_secret: SecretStr = SecretStr("")

    # Rate Limiting (advisory only, never the overuse guard)
    # Format: "count/period" (e.g., "20/minute")
    rate_limit_enabled: bool = True
    rate_limit_downloads: str = "20/minute"
    rate_limit_checkout: str = "20/minute"
    # "memory://" is per-process; "redis://host:6379" shares counters
    rate_limit_storage_uri: str = "memory://"

    @property
    def paypal_base_url(self) -> str:
        """PayPal REST API base URL for the configured environment."""
        if self.paypal_env == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @model_validator(mode="after")
    def check_invariants(self) -> "Settings":
        """Validate configuration invariants and production requirements.

        Checks (all environments):
        - Token and download TTLs are positive
        - max_token_uses and cas_max_attempts are at least 1
        - CAS backoff bounds are ordered and non-negative
        - Grace period is non-negative
        - Price is a two-decimal amount
        - CORS origins contain no wildcard

        Checks (production):
        - S3 backend has a bucket
        - Admin secret is set and long enough
        - PayPal credentials and webhook id are set
        - In-memory store and mock gateway are not used
        """
        if self.token_ttl_seconds <= 0 or self.download_ttl_seconds <= 0:
            msg = (
                "TOKEN_TTL_SECONDS and DOWNLOAD_TTL_SECONDS must be positive. "
                f"Got: {self.token_ttl_seconds}, {self.download_ttl_seconds}"
            )
            raise ValueError(msg)
        if self.max_token_uses < 1:
            msg = f"MAX_TOKEN_USES must be at least 1. Got: {self.max_token_uses}"
            raise ValueError(msg)
        if self.cas_max_attempts < 1:
            msg = f"CAS_MAX_ATTEMPTS must be at least 1. Got: {self.cas_max_attempts}"
            raise ValueError(msg)
        if not 0 <= self.cas_backoff_min_ms <= self.cas_backoff_max_ms:
            msg = (
                "CAS backoff bounds must satisfy 0 <= min <= max. "
                f"Got: {self.cas_backoff_min_ms}, {self.cas_backoff_max_ms}"
            )
            raise ValueError(msg)
        if self.grace_period_seconds < 0:
            msg = (
                "GRACE_PERIOD_SECONDS cannot be negative. "
                f"Got: {self.grace_period_seconds}"
            )
            raise ValueError(msg)
        if not _PRICE_PATTERN.match(self.price_usd):
            msg = f"PRICE_USD must look like '9.00'. Got: {self.price_usd!r}"
            raise ValueError(msg)
        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "Set it to the site origin(s)."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.store_backend == "memory":
                msg = "STORE_BACKEND=memory cannot be used in production."
                raise ValueError(msg)
            if not self.s3_bucket_name:
                msg = "S3_BUCKET_NAME must be set in production."
                raise ValueError(msg)
            if self.payment_provider == "mock":
                msg = "PAYMENT_PROVIDER=mock cannot be used in production."
                raise ValueError(msg)
            if (
                not self.paypal_client_id
                or not self.paypal_client_secret.get_secret_value()
                or not self.paypal_webhook_id
            ):
                msg = (
                    "PAYPAL_CLIENT_ID, PAYPAL_CLIENT_SECRET and PAYPAL_WEBHOOK_ID "
                    "must be set in production."
                )
                raise ValueError(msg)
            admin_secret = self.admin_remint_secret.get_secret_value()
            if len(admin_secret) < _MIN_ADMIN_SECRET_LENGTH:
                msg = (
                    f"ADMIN_REMINT_SECRET must be at least {_MIN_ADMIN_SECRET_LENGTH} "
                    'characters in production. Generate with: python -c "import '
                    'secrets; print(secrets.token_hex(32))"'
                )
                raise ValueError(msg)

        return self


settings = Settings()
