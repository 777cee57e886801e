from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


class Horse(BaseModel):
    """Public view of a horse; signing keys are never part of it."""

    id: int
    name: str
    color: str | None = None
    emoji: str | None = None
    wallet_address: str
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class HorseWithOdds(Horse):
    total_bets: float = 0.0
    odds: float | None = None
    percentage: float = 0.0


class HorseList(BaseModel):
    horses: list[HorseWithOdds]
    total_pool: float | None = None


class Race(BaseModel):
    id: str
    race_number: int
    status: str
    winning_horse_id: int | None = None
    final_positions: list[int] = Field(default_factory=list)
    total_pool: float
    started_at: datetime
    betting_ends_at: datetime
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("total_pool", mode="before")
    @classmethod
    def _coerce_pool(cls, value: Any) -> float:
        return _as_float(value) or 0.0

    @field_validator("final_positions", mode="before")
    @classmethod
    def _default_positions(cls, value: Any) -> list[int]:
        return list(value or [])


class CurrentRace(BaseModel):
    race: Race | None = None


class PayoutEntry(BaseModel):
    wallet: str
    amount: float
    status: str | None = None
    tx_signature: str | None = None


class RaceDetail(Race):
    winning_horse_name: str | None = None
    payouts: list[PayoutEntry] = Field(default_factory=list)


class HorseSummary(BaseModel):
    name: str
    color: str | None = None
    emoji: str | None = None

    model_config = {"from_attributes": True}


class Bet(BaseModel):
    id: str
    race_id: str
    horse_id: int
    bettor_wallet: str
    amount: float
    tx_signature: str | None = None
    status: str
    payout: float = 0.0
    created_at: datetime
    horse: HorseSummary | None = None

    model_config = {"from_attributes": True}

    @field_validator("amount", "payout", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> float:
        return _as_float(value) or 0.0


class BetList(BaseModel):
    bets: list[Bet]


class BetRequest(BaseModel):
    race_id: str | None = Field(default=None, alias="raceId")
    horse_id: int | None = Field(default=None, alias="horseId")
    tx_signature: str | None = Field(default=None, alias="txSignature")
    bettor_wallet: str | None = Field(default=None, alias="bettorWallet")

    model_config = {"populate_by_name": True}


class BetReceipt(BaseModel):
    success: bool = True
    bet_id: str
    race_id: str
    horse_id: int
    amount: float
    tx_signature: str
    duplicate: bool = False


class TickSummary(BaseModel):
    ok: bool
    settled: int
    started_race_id: str | None = None
    deposits_recorded: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime
    duration_ms: int


class MonitorSummary(BaseModel):
    ok: bool
    race_id: str | None = None
    recorded: int = 0
    skipped_known: int = 0
    skipped_early: int = 0
    skipped_late: int = 0
    skipped_other: int = 0
    failures: list[dict[str, Any]] = Field(default_factory=list)


class PayoutRunRequest(BaseModel):
    race_id: str | None = None
    retry_failed: bool = False


class PayoutRunSummary(BaseModel):
    ok: bool
    races: int
    claimed: int
    successful: int
    failed: int
    signatures: list[str] = Field(default_factory=list)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    requeued: int = 0


class InitWalletsRequest(BaseModel):
    secret: str | None = None
    only_placeholders: bool = Field(default=False, alias="onlyPlaceholders")

    model_config = {"populate_by_name": True}


class WalletInitResult(BaseModel):
    horse_id: int
    horse_name: str
    success: bool
    wallet_address: str | None = None
    previous_wallet: str | None = None
    source: str | None = None
    error: str | None = None


class InitWalletsResponse(BaseModel):
    message: str | None = None
    results: list[WalletInitResult] = Field(default_factory=list)
