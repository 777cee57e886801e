from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class RaceStatus(str, Enum):
    """Race lifecycle; the only valid path is BETTING -> RACING -> FINISHED."""

    BETTING = "betting"
    RACING = "racing"
    FINISHED = "finished"

    # Generic lifecycle names used by the settlement engine.
    OPEN = "betting"
    SETTLING = "racing"
    CLOSED = "finished"


class BetStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    LOST = "lost"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return uuid4().hex


SOL_AMOUNT = Numeric(20, 9, asdecimal=False)


class Horse(Base):
    __tablename__ = "horses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    emoji: Mapped[str | None] = mapped_column(String, nullable=True)
    wallet_address: Mapped[str] = mapped_column(String, nullable=False, default="")
    wallet_private_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="horse")


class Race(Base):
    __tablename__ = "races"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    race_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=RaceStatus.BETTING.value)
    winning_horse_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("horses.id"), nullable=True
    )
    final_positions: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    total_pool: Mapped[float] = mapped_column(SOL_AMOUNT, nullable=False, default=0.0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    betting_ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    winning_horse: Mapped[Horse | None] = relationship("Horse")
    bets: Mapped[list["Bet"]] = relationship("Bet", back_populates="race")
    payouts: Mapped[list["Payout"]] = relationship("Payout", back_populates="race")


class Bet(Base):
    __tablename__ = "bets"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    race_id: Mapped[str] = mapped_column(String, ForeignKey("races.id"), nullable=False, index=True)
    horse_id: Mapped[int] = mapped_column(Integer, ForeignKey("horses.id"), nullable=False)
    bettor_wallet: Mapped[str] = mapped_column(String, nullable=False, index=True)
    amount: Mapped[float] = mapped_column(SOL_AMOUNT, nullable=False)
    # One on-chain transfer can back at most one bet.
    tx_signature: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=BetStatus.CONFIRMED.value)
    payout: Mapped[float] = mapped_column(SOL_AMOUNT, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    race: Mapped[Race] = relationship("Race", back_populates="bets")
    horse: Mapped[Horse] = relationship("Horse", back_populates="bets")


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    race_id: Mapped[str] = mapped_column(String, ForeignKey("races.id"), nullable=False)
    bet_id: Mapped[str] = mapped_column(String, ForeignKey("bets.id"), nullable=False, unique=True)
    recipient_wallet: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(SOL_AMOUNT, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default=PayoutStatus.PENDING.value)
    tx_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    race: Mapped[Race] = relationship("Race", back_populates="payouts")
