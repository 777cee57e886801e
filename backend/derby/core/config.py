from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("sslmode", "require")
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    normalized = urlunparse(
        parsed._replace(
            scheme=scheme,
            query=new_query,
        )
    )
    return normalized


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///./data/derby.db",
        description="SQLAlchemy compatible database URL",
    )
    supabase_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Supabase pooled Postgres connection string for production runs",
    )

    solana_rpc_url: AnyUrl | str = Field(
        default="https://api.mainnet-beta.solana.com",
        description="Solana JSON-RPC endpoint used for deposits, verification and payouts",
    )
    rpc_timeout_seconds: float = Field(
        default=15.0,
        description="Transport timeout applied to every RPC request",
        gt=0,
    )
    rpc_commitment: str = Field(
        default="confirmed",
        description="Commitment level requested from the RPC node",
    )
    confirmation_timeout_seconds: float = Field(
        default=60.0,
        description="How long to poll for a submitted transaction before giving up",
        gt=0,
    )
    confirmation_poll_seconds: float = Field(
        default=1.0,
        description="Delay between signature status polls while waiting for confirmation",
        gt=0,
    )

    house_fee_percent: float = Field(
        default=5.0,
        description="Percentage of the losing pool retained by the house",
        ge=0,
        le=100,
    )
    round_duration_seconds: int = Field(
        default=300,
        description="Length of the betting window of each race",
        ge=1,
    )
    min_round_spacing_seconds: int | None = Field(
        default=None,
        description="Minimum gap between two race starts (defaults to the round duration)",
        ge=0,
    )
    settling_timeout_seconds: int = Field(
        default=120,
        description="A race left in racing longer than this is settled again by the scheduler",
        ge=1,
    )
    deposit_scan_limit: int = Field(
        default=10,
        description="Number of recent signatures inspected per horse wallet on each scan",
        ge=1,
        le=1000,
    )

    payout_max_transfers_per_tx: int = Field(
        default=20,
        description="Maximum number of transfer instructions packed into one payout transaction",
        ge=1,
    )
    payout_max_retries: int = Field(
        default=3,
        description="Retries attempted for a failed payout batch before it is reported failed",
        ge=0,
    )
    payout_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between payout retries",
    )
    payout_batch_delay_seconds: float = Field(
        default=0.5,
        description="Pause between successful payout batches to stay under RPC rate limits",
        ge=0,
    )
    payout_resolution_timeout_seconds: float = Field(
        default=120.0,
        description="How long to track an unconfirmed payout transaction before giving up without resending",
        gt=0,
    )
    payout_priority_fee_micro_lamports: int = Field(
        default=1000,
        description="Compute unit price attached to payout transactions",
        ge=0,
    )
    payout_fee_estimate_lamports: int = Field(
        default=5000,
        description="Estimated network fee reserved per payout batch during the balance pre-check",
        ge=0,
    )

    verify_attempts: int = Field(
        default=5,
        description="Attempts made to fetch a bettor's transaction before rejecting it",
        ge=1,
    )
    verify_delay_seconds: float = Field(
        default=2.0,
        description="Delay between transaction verification attempts",
        ge=0,
    )

    house_wallet_private_key: str | None = Field(
        default=None,
        description="Base58 secret key of the wallet that pays winners",
    )
    cron_secret: str | None = Field(
        default=None,
        description="Bearer token expected on scheduler, monitor and payout triggers",
    )
    admin_secret: str | None = Field(
        default=None,
        description="Shared secret required by administrative wallet initialization",
    )
    wallet_provider_url: AnyUrl | str | None = Field(
        default="https://pumpportal.fun/api/create-wallet",
        description="Remote wallet provider; blank falls back to local keypair generation",
    )

    @field_validator("database_url", "supabase_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://") or value.startswith(
            "postgresql+asyncpg://"
        ):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @field_validator("wallet_provider_url", mode="before")
    @classmethod
    def _blank_provider_disables(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("payout_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("PAYOUT_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("PAYOUT_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("PAYOUT_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("PAYOUT_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "PAYOUT_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @model_validator(mode="after")
    def _default_round_spacing(self) -> "Settings":
        if self.min_round_spacing_seconds is None:
            self.min_round_spacing_seconds = self.round_duration_seconds
        return self

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.supabase_db_url:
                raise ValueError(
                    "SUPABASE_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.supabase_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def fee_rate(self) -> float:
        return self.house_fee_percent / 100.0

    def payout_backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based); doubles past the configured list."""

        schedule = tuple(float(value) for value in self.payout_retry_backoff_seconds) or (1.0,)
        if attempt <= len(schedule):
            return schedule[max(attempt, 1) - 1]
        return schedule[-1] * (2 ** (attempt - len(schedule)))


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
