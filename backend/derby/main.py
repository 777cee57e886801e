from __future__ import annotations

import hmac
from collections.abc import Iterator
from typing import Annotated

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from chain.base import ChainClient
from chain.client import SolanaRpcClient
from chain.keys import WalletProvider

from . import schemas
from .core.config import Settings, get_settings, settings
from .db import get_db, get_session_factory, init_db, session_scope
from .models import RaceStatus
from .repositories import RaceRepository
from .services.betting import BettingService
from .services.deposits import DepositReconciler
from .services.disbursement import DisbursementPipeline, PayoutService
from .services.errors import BetRejected, ConfigurationError, NotFoundError
from .services.odds import RaceViewService
from .services.scheduler import RoundScheduler
from .services.settlement import SettlementEngine
from .services.wallets import WalletService

app = FastAPI(title="Derby API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Dependencies (overridden in tests)


def _settings() -> Settings:
    return get_settings()


def _session_factory() -> sessionmaker[Session]:
    return get_session_factory()


def _chain_client(config: Settings = Depends(_settings)) -> Iterator[ChainClient]:
    client = SolanaRpcClient(
        rpc_url=str(config.solana_rpc_url),
        commitment=config.rpc_commitment,
        timeout=config.rpc_timeout_seconds,
        confirmation_timeout=config.confirmation_timeout_seconds,
        confirmation_poll=config.confirmation_poll_seconds,
    )
    try:
        yield client
    finally:
        client.close()


def _wallet_provider(config: Settings = Depends(_settings)) -> Iterator[WalletProvider]:
    provider = WalletProvider(
        url=str(config.wallet_provider_url) if config.wallet_provider_url else None,
        timeout=config.rpc_timeout_seconds,
    )
    with provider:
        yield provider


def _view_service(db=Depends(get_db)) -> RaceViewService:
    return RaceViewService(db)


def _reconciler(
    factory: sessionmaker[Session] = Depends(_session_factory),
    chain: ChainClient = Depends(_chain_client),
    config: Settings = Depends(_settings),
) -> DepositReconciler:
    return DepositReconciler(factory, chain, settings=config)


def _scheduler(
    factory: sessionmaker[Session] = Depends(_session_factory),
    reconciler: DepositReconciler = Depends(_reconciler),
    config: Settings = Depends(_settings),
) -> RoundScheduler:
    engine = SettlementEngine(factory, settings=config)
    return RoundScheduler(factory, engine=engine, reconciler=reconciler, settings=config)


def _payout_service(
    factory: sessionmaker[Session] = Depends(_session_factory),
    chain: ChainClient = Depends(_chain_client),
    config: Settings = Depends(_settings),
) -> PayoutService:
    pipeline = DisbursementPipeline(chain, settings=config)
    return PayoutService(factory, pipeline, settings=config)


def _betting_service(
    factory: sessionmaker[Session] = Depends(_session_factory),
    chain: ChainClient = Depends(_chain_client),
    config: Settings = Depends(_settings),
) -> BettingService:
    return BettingService(factory, chain, settings=config)


def _require_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
    config: Settings = Depends(_settings),
) -> None:
    """Reject trigger calls without the configured bearer token."""

    if not config.cron_secret:
        return
    expected = f"Bearer {config.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ----------------------------------------------------------------------
# Triggers


@app.api_route(
    "/cron",
    methods=["GET", "POST"],
    response_model=schemas.TickSummary,
    tags=["triggers"],
    dependencies=[Depends(_require_cron_secret)],
)
def run_tick(scheduler: RoundScheduler = Depends(_scheduler)):
    """Run one scheduler tick: reconcile, settle and open the next race."""

    try:
        summary = scheduler.tick()
    except Exception as exc:  # noqa: BLE001 - the trigger always answers with JSON
        logger.exception("Scheduler tick failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})
    return summary.to_dict()


@app.get(
    "/monitor",
    response_model=schemas.MonitorSummary,
    tags=["triggers"],
    dependencies=[Depends(_require_cron_secret)],
)
def monitor_deposits(
    factory: sessionmaker[Session] = Depends(_session_factory),
    reconciler: DepositReconciler = Depends(_reconciler),
):
    """Pick up direct deposits for the race currently taking bets."""

    with session_scope(factory) as session:
        race = RaceRepository(session).current()
        target = (
            (race.id, race.started_at, race.betting_ends_at)
            if race and race.status == RaceStatus.BETTING.value
            else None
        )

    if target is None:
        return schemas.MonitorSummary(ok=True)

    race_id, started_at, betting_ends_at = target
    try:
        result = reconciler.reconcile(race_id, betting_ends_at, started_at=started_at)
    except Exception as exc:  # noqa: BLE001 - the trigger always answers with JSON
        logger.exception("Deposit monitor failed for race {}", race_id)
        return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})
    return schemas.MonitorSummary(ok=not result.failures, race_id=race_id, **result.to_dict())


@app.post(
    "/payouts/run",
    response_model=schemas.PayoutRunSummary,
    tags=["triggers"],
    dependencies=[Depends(_require_cron_secret)],
)
def run_payouts(
    request: schemas.PayoutRunRequest | None = Body(default=None),
    service: PayoutService = Depends(_payout_service),
):
    """Disburse pending payouts, optionally requeueing a race's failed ones first."""

    request = request or schemas.PayoutRunRequest()
    requeued = 0
    if request.retry_failed:
        if not request.race_id:
            raise HTTPException(status_code=400, detail="race_id is required to retry failed payouts")
        requeued = service.retry_failed(request.race_id)

    try:
        summary = service.run(request.race_id)
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return schemas.PayoutRunSummary(**summary.to_dict(), requeued=requeued)


# ----------------------------------------------------------------------
# Races, horses and bets


@app.get("/race", response_model=schemas.CurrentRace, tags=["races"])
def current_race(service: RaceViewService = Depends(_view_service)):
    """Return the race currently betting or racing; null between races."""

    return schemas.CurrentRace(race=service.current_race())


@app.get("/results", response_model=list[schemas.RaceDetail], tags=["races"])
def recent_results(
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    service: RaceViewService = Depends(_view_service),
):
    """Most recently finished races, newest first."""

    return service.recent_results(limit)


@app.get("/races/{race_id}", response_model=schemas.RaceDetail, tags=["races"])
def get_race(race_id: str, service: RaceViewService = Depends(_view_service)):
    race = service.race_detail(race_id)
    if not race:
        raise HTTPException(status_code=404, detail="Race not found")
    return race


@app.get("/horses", response_model=schemas.HorseList, tags=["horses"])
def list_horses(
    race_id: Annotated[str | None, Query(description="Add pool totals and odds for this race")] = None,
    service: RaceViewService = Depends(_view_service),
):
    return service.horses(race_id)


@app.get("/bets", response_model=schemas.BetList, tags=["bets"])
def list_bets(
    race_id: Annotated[str | None, Query(description="Race filter")] = None,
    wallet: Annotated[str | None, Query(description="Bettor wallet filter")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    service: RaceViewService = Depends(_view_service),
):
    return schemas.BetList(bets=service.bets(race_id=race_id, wallet=wallet, limit=limit))


@app.post("/bets", response_model=schemas.BetReceipt, tags=["bets"])
def place_bet(request: schemas.BetRequest, service: BettingService = Depends(_betting_service)):
    """Record a bet after verifying its transfer to the horse wallet on chain."""

    try:
        placed = service.place_bet(
            race_id=request.race_id,
            horse_id=request.horse_id,
            tx_signature=request.tx_signature,
            bettor_wallet=request.bettor_wallet,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except BetRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return placed.to_dict()


# ----------------------------------------------------------------------
# Administration


@app.post("/admin/init-wallets", response_model=schemas.InitWalletsResponse, tags=["admin"])
def init_wallets(
    request: schemas.InitWalletsRequest,
    factory: sessionmaker[Session] = Depends(_session_factory),
    provider: WalletProvider = Depends(_wallet_provider),
    config: Settings = Depends(_settings),
):
    """Replace horse receiving wallets; requires the admin secret."""

    if not config.admin_secret or not request.secret or not hmac.compare_digest(request.secret, config.admin_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")

    results = WalletService(factory, provider).initialize(only_placeholders=request.only_placeholders)
    if not results:
        return schemas.InitWalletsResponse(message="No horses needed a wallet.")
    return schemas.InitWalletsResponse(
        results=[schemas.WalletInitResult(**result.to_dict()) for result in results]
    )
