"""
Application settings.

All configuration is read by Pydantic Settings from environment variables and
the project-level .env file, with type validation and defaults so that the
package imports cleanly in a bare environment (tests, one-off scripts).

Key ideas:
- BaseSettings: reads fields from the environment automatically
- computed_field: derived values built from other fields
- model_validator: cross-field checks run after loading
"""
import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    Parse a CORS origins value.

    Accepts either a comma separated string
    ("http://localhost:3000,http://localhost:3001") or a list.

    Raises:
        ValueError: when the value is neither
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


def parse_int_list(v: Any) -> list[int] | Any:
    """Accept "60,300,1800" as well as a JSON list for retry schedules."""
    if isinstance(v, str) and not v.startswith("["):
        return [int(i.strip()) for i in v.split(",") if i.strip()]
    return v


class Settings(BaseSettings):
    """
    Engine configuration.

    Sources, highest priority first:
    1. environment variables
    2. the .env file
    3. defaults declared here
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "storefront"
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "storefront"
    # Full URL override (e.g. sqlite:///./storefront.db for local runs).
    DATABASE_URL: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            PostgresDsn.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # SMTP (receipt emails)
    EMAILS_ENABLED: bool = False  # when off, receipts are logged instead of sent
    SMTP_TLS: bool = True
    SMTP_SSL: bool = False
    SMTP_PORT: int = 587
    SMTP_HOST: str | None = None
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    EMAILS_FROM_EMAIL: str | None = None
    EMAILS_FROM_NAME: str | None = None

    # Redis (rate limiting)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_CHECKOUT_PER_WINDOW: int = 10
    RATE_LIMIT_LICENSE_PER_WINDOW: int = 30

    # Payment provider
    PAYMENT_PROVIDER_MOCK: bool = True  # local development without real sessions
    PAYMENT_PROVIDER_BASE_URL: str = "https://api.stripe.com"
    PAYMENT_PROVIDER_API_KEY: str | None = None
    PAYMENT_WEBHOOK_SECRET: str | None = None
    PAYMENT_WEBHOOK_TOLERANCE_SECONDS: int = 300
    CHECKOUT_SUCCESS_URL: str = "http://localhost:5173/thanks"
    CHECKOUT_CANCEL_URL: str = "http://localhost:5173/"
    CHECKOUT_ATTEMPT_TTL_MINUTES: int = 24 * 60

    # Job ledger
    JOB_LEASE_SECONDS: int = 5 * 60
    JOB_MAX_ATTEMPTS: int = 8
    JOB_BACKOFF_BASE_SECONDS: int = 15
    JOB_BACKOFF_MAX_SECONDS: int = 6 * 60 * 60
    JOB_CLAIM_BATCH_SIZE: int = 10
    JOB_POLL_INTERVAL_SECONDS: float = 2.0

    # Inbound events
    EVENT_REPLAY_DELAY_SECONDS: int = 60
    EVENT_ANOMALY_AFTER_HOURS: int = 72

    # Licensing
    LICENSE_OFFLINE_GRACE_DAYS: int = 14
    LICENSE_STALE_ACTIVATION_DAYS: int = 90
    LICENSE_ACTIVATION_OVERFLOW: Literal["reject", "replace_oldest"] = "reject"
    LICENSE_DEFAULT_ACTIVATION_LIMIT: int = 3

    # Refunds: revoke entitlements on partial refunds of single-item orders
    PARTIAL_REFUND_REVOKES: bool = True

    # Affiliates
    AFFILIATE_HOLDING_DAYS: int = 30
    AFFILIATE_COMMISSION_CAP_CENTS: int | None = None
    AFFILIATE_MIN_PAYOUT_CENTS: int = 0

    # Outbound webhooks
    WEBHOOK_MAX_ATTEMPTS: int = 6
    WEBHOOK_RETRY_SCHEDULE_SECONDS: Annotated[
        list[int] | str, BeforeValidator(parse_int_list)
    ] = [60, 5 * 60, 30 * 60, 2 * 60 * 60, 8 * 60 * 60]
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # GitHub repository invites
    GITHUB_API_BASE_URL: str = "https://api.github.com"
    GITHUB_TOKEN: str | None = None
    GITHUB_INVITE_PERMISSION: str = "pull"

    # Operator surface (dashboard) bearer tokens must carry this subject
    OPERATOR_SUBJECT: str = "creator"

    # Catalog seed file; None → storefront/config/catalog.json
    CATALOG_PATH: str | None = None

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        Refuse the placeholder value "changethis" outside local environments.

        Locally only a warning is emitted.

        Raises:
            ValueError: in staging/production when the placeholder is used
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("PAYMENT_WEBHOOK_SECRET", self.PAYMENT_WEBHOOK_SECRET)
        return self


settings = Settings()  # type: ignore
