from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
DEFAULT_DATA_DIR = Path.home() / ".trip-deposits-data"

# selection links never live shorter than this, whatever the env says
MIN_TOKEN_HOURS = 2


def _split(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").replace(",", " ").split() if part.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(ENV_FILE), env_file_encoding="utf-8", extra="ignore")

    DEBUG: bool = False

    DATA_DIR: Path | None = None
    DATABASE_URL: str | None = None

    CORS_ALLOW_ORIGINS: str = ""

    AUTH0_DOMAIN: str | None = None
    AUTH0_AUDIENCE: str | None = None
    AUTH0_BYPASS: bool = False
    AUTH0_BYPASS_SUBJECT: str = "local-dev-user"
    # scopes granting access to every partner's fulfillments, space or comma separated
    ADMIN_SCOPES: str = "trips:admin"

    DEPOSITS_ENABLED: bool = True
    PAYMENT_PROVIDER: Literal["mock", "stripe"] = "mock"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_API_BASE: str = "https://api.stripe.com"
    PAYMENT_TIMEOUT_SECONDS: float = 15.0
    PAYMENT_RETRY_ATTEMPTS: int = 3
    DEFAULT_CURRENCY: str = "EUR"

    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 120
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    # IPs/CIDRs whose X-Forwarded-For is honoured; "*" trusts any peer
    TRUSTED_PROXIES: str = ""

    SELECTION_LINK_BASE_URL: str = "https://cypruseye.com/trip-date-selection.html"
    DEPOSIT_REDIRECT_BASE_URL: str = "https://cypruseye.com/deposit.html"
    TRIP_DATE_SELECTION_TOKEN_HOURS: int = 72

    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_RELEASE: str | None = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2

    @field_validator("DATA_DIR", mode="before")
    @classmethod
    def _blank_data_dir(cls, value: object) -> object:
        # an empty DATA_DIR= line would otherwise resolve to the working directory
        if isinstance(value, str) and value.strip() in {"", ".", "./"}:
            return None
        return value

    @property
    def allow_origins(self) -> list[str]:
        return _split(self.CORS_ALLOW_ORIGINS)

    @property
    def admin_scopes(self) -> set[str]:
        return set(_split(self.ADMIN_SCOPES))

    @property
    def token_ttl_hours(self) -> int:
        return max(MIN_TOKEN_HOURS, self.TRIP_DATE_SELECTION_TOKEN_HOURS or 72)

    @property
    def data_dir(self) -> Path:
        path = Path(self.DATA_DIR).expanduser().resolve() if self.DATA_DIR else DEFAULT_DATA_DIR
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL or f"sqlite:///{self.data_dir / 'trip_deposits.db'}"

    @property
    def async_database_url(self) -> str:
        url = self.database_url
        for sync_prefix, async_prefix in (
            ("sqlite:///", "sqlite+aiosqlite:///"),
            ("postgresql://", "postgresql+asyncpg://"),
        ):
            if url.startswith(sync_prefix):
                return async_prefix + url[len(sync_prefix) :]
        return url

    @property
    def auth0_issuer(self) -> str | None:
        if not self.AUTH0_DOMAIN:
            return None
        host = self.AUTH0_DOMAIN.removeprefix("https://").removeprefix("http://").rstrip("/")
        return f"https://{host}/"


settings = Settings()
