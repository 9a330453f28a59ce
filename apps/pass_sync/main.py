# apps/pass_sync/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.db import create_supabase
from apps.pass_sync.routes.checkin import router as checkin_router
from apps.pass_sync.routes.health import router as health_router
from apps.pass_sync.routes.passes import router as passes_router
from apps.pass_sync.services.ledger.web3_client import Web3LedgerClient
from apps.pass_sync.services.passes.pass_builder import PassBuilder
from apps.pass_sync.services.passes.pass_state_repository import SupabasePassStateRepository
from apps.pass_sync.services.passes.push import ApnsPushSender
from apps.pass_sync.services.passes.subscription_repository import SupabaseSubscriptionRepository
from apps.pass_sync.services.registry import PassServices
from apps.pass_sync.utils.envelope import install_error_handlers

log = logging.getLogger("pass_sync.main")


async def build_services(settings: Settings) -> PassServices:
    sb = await create_supabase(settings)
    return PassServices.wire(
        settings,
        ledger=Web3LedgerClient.from_settings(settings),
        pass_states=SupabasePassStateRepository(sb),
        subscriptions=SupabaseSubscriptionRepository(sb),
        push=ApnsPushSender.from_settings(settings),
        pass_builder=PassBuilder.from_settings(settings),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    services: Optional[PassServices] = app.state.services
    if services is None:
        services = await build_services(settings)
        app.state.services = services

    # unreachable ledger at boot is fatal
    await services.ledger.ping()

    services.fanout.start()
    if settings.ledger_consumer_enabled:
        services.consumer.start()
    else:
        log.info("[MAIN] ledger consumer disabled")
    if settings.reconciliation_enabled:
        services.scheduler.start()
    else:
        log.info("[MAIN] reconciliation disabled")

    log.info(f"[MAIN] pass sync {settings.version} online")
    try:
        yield
    finally:
        await services.scheduler.shutdown()
        await services.consumer.stop()
        await services.fanout.stop()
        await services.push.aclose()
        log.info("[MAIN] pass sync stopped")


def create_app(services: Optional[PassServices] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(
        title="WaveX Pass Sync",
        version=settings.version,
        description="Wallet pass synchronisation and event check-in over the WaveX ledger",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    # -------------------------------------------------------------------
    # Error handling (stable envelopes, no stack leaks)
    # -------------------------------------------------------------------
    install_error_handlers(app)

    # -------------------------------------------------------------------
    # Routers
    # -------------------------------------------------------------------
    app.include_router(health_router)
    app.include_router(passes_router)
    app.include_router(checkin_router)

    @app.get("/")
    async def root():
        return {
            "status": "Pass Sync Online",
            "routes": ["/health", "/v1/devices", "/v1/passes", "/v1/log", "/access", "/checkin"],
        }

    return app


app = create_app()
