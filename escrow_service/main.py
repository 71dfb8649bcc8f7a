#!/usr/bin/env python3
"""
Escrow Service
HTTP surface of the P2P escrow core: trades, wallets and swaps.

Run with `uvicorn --factory escrow_service.main:create_app`.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

import jwt
from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from common.circuit_breaker import CircuitBreaker, advertisement_directory_config, get_all_circuit_breakers
from common.documentation import (OPEN_TRADE_DOCS, RELEASE_DOCS, SERVICE_DOCS, SWAP_DOCS,
                                  create_custom_openapi)
from common.error_handling import add_error_handlers
from common.redis_client import IdempotencyCache
from common.retry import ADVERTISEMENT_RETRY_CONFIG, retry_async
from common.schemas import (AddressesOut, BalanceOut, DisputeTrade, ExecuteSwap, LedgerEntryOut, OpenTrade,
                            SwapOut, SwapQuote, SwapsPage, TradeOut, TradesPage, TransactionsPage, WalletsOut)
from common.security import user_id_from_bearer
from common.settings import Settings, settings
from common.tracing import escrow_tracer, get_trace_headers, tracing_middleware
from escrow_service import state_machine
from escrow_service.collaborators import (AdvertisementDirectory, DemoWalletProvisioner,
                                          HttpAdvertisementDirectory, LocalProofStorage)
from escrow_service.db import make_engine
from escrow_service.domain import AdvertisementSnapshot, parse_asset
from escrow_service.ledger_store import LedgerStore
from escrow_service.state_machine import TradeAction
from escrow_service.swaps import SwapEngine
from escrow_service.trades import TradeEngine
from escrow_service.wallet import WalletService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@dataclass
class EscrowServices:
    """Everything the routes need, wired once per application"""
    store: LedgerStore
    wallet: WalletService
    trades: TradeEngine
    swaps: SwapEngine
    directory: AdvertisementDirectory
    proofs: LocalProofStorage
    idempotency: Optional[IdempotencyCache] = None
    ads_breaker: Optional[CircuitBreaker] = None

    def __post_init__(self):
        if self.ads_breaker is None:
            self.ads_breaker = CircuitBreaker("advertisement_directory", advertisement_directory_config())

    @classmethod
    def build(cls, store: LedgerStore, directory: AdvertisementDirectory, config: Settings = None,
              proofs: LocalProofStorage = None, idempotency: IdempotencyCache = None) -> "EscrowServices":
        config = config or settings
        wallet = WalletService(store, provisioner=DemoWalletProvisioner(config.btc_network), config=config)
        return cls(
            store=store,
            wallet=wallet,
            trades=TradeEngine(store, wallet),
            swaps=SwapEngine(store, wallet, config=config),
            directory=directory,
            proofs=proofs or LocalProofStorage(config.upload_path, config.max_file_size),
            idempotency=idempotency,
        )

    @classmethod
    def from_settings(cls, config: Settings = None) -> "EscrowServices":
        config = config or settings
        return cls.build(
            store=LedgerStore(make_engine(config.sqlalchemy_url)),
            directory=HttpAdvertisementDirectory(config.ads_service_url, config.ads_timeout_seconds),
            config=config,
            idempotency=IdempotencyCache(),
        )

def get_services(request: Request) -> EscrowServices:
    return request.app.state.services

# Authentication dependency
def current_user(authorization: Optional[str] = Header(None, description="Bearer token")) -> str:
    """Resolve the caller's user id from the JWT `sub` claim"""
    try:
        return user_id_from_bearer(authorization)
    except (ValueError, jwt.InvalidTokenError) as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")

async def lookup_advertisement(services: EscrowServices, advertisement_id: str,
                               headers: Dict[str, str]) -> AdvertisementSnapshot:
    return await retry_async(services.ads_breaker.call, ADVERTISEMENT_RETRY_CONFIG,
                             services.directory.get_active_advertisement, advertisement_id, headers)

async def run_idempotent(services: EscrowServices, user_id: str, operation: str, key: Optional[str],
                         action: Callable[[], Awaitable[dict]]) -> dict:
    """Run action once per Idempotency-Key, replaying the stored body afterwards"""
    cache = services.idempotency
    if not key or cache is None:
        return await action()

    stored = await run_in_threadpool(cache.claim, user_id, operation, key)
    if stored is not None:
        logger.info(f"🔁 Replaying {operation} for idempotency key {key}")
        return stored
    try:
        body = await action()
    except Exception:
        await run_in_threadpool(cache.release, user_id, operation, key)
        raise
    await run_in_threadpool(cache.complete, user_id, operation, key, body)
    return body

def trade_body(trade) -> dict:
    return TradeOut.model_validate(trade).model_dump(mode="json")

def swap_body(swap) -> dict:
    return SwapOut.model_validate(swap).model_dump(mode="json")

health_router = APIRouter(tags=["Health"])
wallets_router = APIRouter(prefix="/wallets", tags=["Wallets"])
trades_router = APIRouter(prefix="/trades", tags=["Trades"])
swaps_router = APIRouter(prefix="/swaps", tags=["Swaps"])

@health_router.get("/health")
def health(services: EscrowServices = Depends(get_services)):
    """Liveness plus a database round trip"""
    services.store.ping()
    return {
        "ok": True,
        "status": "healthy",
        "service": "escrow",
        "database": "ok",
        "redis": services.idempotency.ping() if services.idempotency else None,
        "circuit_breakers": get_all_circuit_breakers(services.ads_breaker),
    }

# Wallets

@wallets_router.get("", response_model=WalletsOut)
def list_wallets(user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    balances = services.wallet.list_balances(user_id)
    return WalletsOut(user_id=user_id,
                      balances=[BalanceOut(asset=asset.value, amount=amount) for asset, amount in balances.items()])

@wallets_router.post("/demo-balance", response_model=WalletsOut)
def demo_balance(user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    """Top up demo balances (disabled in production)"""
    balances = services.wallet.seed_demo_balances(user_id)
    return WalletsOut(user_id=user_id,
                      balances=[BalanceOut(asset=asset.value, amount=amount) for asset, amount in balances.items()])

@wallets_router.post("/generate", response_model=AddressesOut)
def generate_wallets(user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    addresses, generated = services.wallet.provision_addresses(user_id)
    return AddressesOut(addresses=addresses, generated=generated)

@wallets_router.get("/{asset}", response_model=BalanceOut)
def get_wallet(asset: str, user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    asset = parse_asset(asset)
    return BalanceOut(asset=asset.value, amount=services.wallet.get_balance(user_id, asset))

@wallets_router.get("/{asset}/transactions", response_model=TransactionsPage)
def wallet_transactions(
    asset: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    asset = parse_asset(asset)
    entries, total = services.wallet.list_entries(user_id, asset, page, limit)
    return TransactionsPage(
        asset=asset.value,
        transactions=[LedgerEntryOut.model_validate(e) for e in entries],
        page=page,
        limit=limit,
        total=total,
    )

# Trades

@trades_router.post("", status_code=201, response_model=TradeOut, description=OPEN_TRADE_DOCS)
async def open_trade(
    body: OpenTrade,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    async def action() -> dict:
        snapshot = await lookup_advertisement(services, body.advertisement_id, get_trace_headers(request))
        trade = await run_in_threadpool(services.trades.open_trade, snapshot, user_id, body.amount)
        return trade_body(trade)

    result = await run_idempotent(services, user_id, "open_trade", idempotency_key, action)
    return JSONResponse(status_code=201, content=result)

@trades_router.get("/my", response_model=TradesPage)
def my_trades(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    trades, total = services.trades.list_trades(user_id, page, limit)
    return TradesPage(trades=[TradeOut.model_validate(t) for t in trades], page=page, limit=limit, total=total)

@trades_router.get("/{trade_id}", response_model=TradeOut)
def get_trade(trade_id: str, user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    return TradeOut.model_validate(services.trades.get_trade(trade_id, user_id))

@trades_router.post("/{trade_id}/payment-proof", response_model=TradeOut)
async def upload_payment_proof(
    trade_id: str,
    proof: UploadFile = File(..., description="jpeg, png, gif or pdf"),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    """Buyer uploads proof of the fiat payment; the trade becomes PAID"""
    # Reject early so files are only stored for allowed transitions
    trade = await run_in_threadpool(services.trades.get_trade, trade_id, user_id)
    state_machine.apply(TradeAction.SUBMIT_PROOF, trade.trade_status, user_id, trade.buyer_id, trade.seller_id)

    content = await proof.read()
    proof_ref = await run_in_threadpool(services.proofs.store_payment_proof, content, proof.content_type,
                                        proof.filename)
    try:
        trade = await run_in_threadpool(services.trades.submit_payment_proof, trade_id, user_id, proof_ref)
    except Exception:
        # A concurrent cancel or dispute won the trade row
        await run_in_threadpool(services.proofs.discard, proof_ref)
        raise
    return TradeOut.model_validate(trade)

@trades_router.post("/{trade_id}/release", response_model=TradeOut, description=RELEASE_DOCS)
def release_trade(trade_id: str, user_id: str = Depends(current_user),
                  services: EscrowServices = Depends(get_services)):
    return TradeOut.model_validate(services.trades.release(trade_id, user_id))

@trades_router.post("/{trade_id}/dispute", response_model=TradeOut)
def dispute_trade(trade_id: str, body: DisputeTrade, user_id: str = Depends(current_user),
                  services: EscrowServices = Depends(get_services)):
    return TradeOut.model_validate(services.trades.dispute(trade_id, user_id, body.reason))

@trades_router.post("/{trade_id}/cancel", response_model=TradeOut)
def cancel_trade(trade_id: str, user_id: str = Depends(current_user),
                 services: EscrowServices = Depends(get_services)):
    return TradeOut.model_validate(services.trades.cancel(trade_id, user_id))

# Swaps

@swaps_router.get("/quote", response_model=SwapQuote)
def swap_quote(
    from_asset: str = Query(...),
    to_asset: str = Query(...),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    from_asset, to_asset = parse_asset(from_asset), parse_asset(to_asset)
    return SwapQuote(from_asset=from_asset.value, to_asset=to_asset.value,
                     rate=services.swaps.quote(from_asset, to_asset))

@swaps_router.post("", status_code=201, response_model=SwapOut, description=SWAP_DOCS)
async def execute_swap(
    body: ExecuteSwap,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    async def action() -> dict:
        swap = await run_in_threadpool(services.swaps.execute_swap, user_id, body.from_asset, body.to_asset,
                                       body.from_amount)
        return swap_body(swap)

    result = await run_idempotent(services, user_id, "execute_swap", idempotency_key, action)
    return JSONResponse(status_code=201, content=result)

@swaps_router.get("/my", response_model=SwapsPage)
def my_swaps(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user),
    services: EscrowServices = Depends(get_services),
):
    swaps, total = services.swaps.list_swaps(user_id, page, limit)
    return SwapsPage(swaps=[SwapOut.model_validate(s) for s in swaps], page=page, limit=limit, total=total)

@swaps_router.get("/{swap_id}", response_model=SwapOut)
def get_swap(swap_id: str, user_id: str = Depends(current_user), services: EscrowServices = Depends(get_services)):
    return SwapOut.model_validate(services.swaps.get_swap(swap_id, user_id))

def create_app(services: EscrowServices = None) -> FastAPI:
    services = services or EscrowServices.from_settings()
    services.store.create_schema()

    app = FastAPI(title="Escrow Service", version="1.0.0")
    app.state.services = services

    # Add tracing middleware
    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, escrow_tracer)

    add_error_handlers(app)
    for router in (health_router, wallets_router, trades_router, swaps_router):
        app.include_router(router)
    app.openapi = lambda: create_custom_openapi(app, "Escrow Service", "1.0.0", SERVICE_DOCS)

    logger.info("🚀 Escrow service ready")
    return app

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("escrow_service.main:create_app", factory=True, host="0.0.0.0", port=8000)
