from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from derby.models import Horse as HorseRow
from derby.schemas import Bet, BetRequest, Horse, InitWalletsRequest, Race


def test_horse_schema_never_exposes_signing_keys():
    """The public horse view drops the private key and provider API key."""
    row = HorseRow(
        id=1,
        name="Thunder",
        color="#ff0000",
        emoji="⚡",
        wallet_address="Wallet111",
        wallet_private_key="secret",
        api_key="api",
    )
    payload = Horse.model_validate(row).model_dump()
    assert payload["wallet_address"] == "Wallet111"
    assert "wallet_private_key" not in payload
    assert "api_key" not in payload


def test_bet_request_accepts_camel_and_snake_case():
    camel = BetRequest.model_validate(
        {"raceId": "r1", "horseId": 3, "txSignature": "sig", "bettorWallet": "w"}
    )
    snake = BetRequest.model_validate(
        {"race_id": "r1", "horse_id": 3, "tx_signature": "sig", "bettor_wallet": "w"}
    )
    assert camel == snake
    assert camel.horse_id == 3


def test_bet_request_allows_missing_fields_for_service_validation():
    request = BetRequest.model_validate({"raceId": "r1"})
    assert request.horse_id is None
    assert request.tx_signature is None


def test_numeric_amounts_are_coerced_to_float():
    bet = Bet(
        id="b1",
        race_id="r1",
        horse_id=1,
        bettor_wallet="w",
        amount=Decimal("1.250000000"),
        status="confirmed",
        payout=None,
        created_at=datetime.now(),
    )
    assert isinstance(bet.amount, float)
    assert bet.amount == 1.25
    assert bet.payout == 0.0


def test_race_schema_defaults_positions():
    race = Race(
        id="r1",
        race_number=1,
        status="betting",
        final_positions=None,
        total_pool=Decimal("0"),
        started_at=datetime.now(),
        betting_ends_at=datetime.now(),
    )
    assert race.final_positions == []
    assert race.total_pool == 0.0


def test_init_wallets_request_alias():
    request = InitWalletsRequest.model_validate({"secret": "s", "onlyPlaceholders": True})
    assert request.only_placeholders is True
