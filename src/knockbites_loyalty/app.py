from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .workers import LedgerReconciliationWorker, ReferralExpirationWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    referral_worker = ReferralExpirationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.referral_expiration_interval_seconds,
        batch_size=settings.referral_expiration_batch_size,
    )
    reconciliation_worker = LedgerReconciliationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.ledger_reconciliation_interval_seconds,
        batch_size=settings.ledger_reconciliation_batch_size,
    )
    app.state.referral_expiration_worker = referral_worker
    app.state.ledger_reconciliation_worker = reconciliation_worker

    referral_enabled = settings.referral_expiration_worker_enabled
    if referral_enabled:
        referral_worker.start()
    else:
        logger.info(
            "Referral expiration worker disabled",
            reason="referral_expiration_worker_enabled is false",
        )

    reconciliation_enabled = settings.ledger_reconciliation_worker_enabled
    if reconciliation_enabled:
        reconciliation_worker.start()
    else:
        logger.info(
            "Ledger reconciliation worker disabled",
            reason="ledger_reconciliation_worker_enabled is false",
        )

    try:
        yield
    finally:
        if referral_enabled and referral_worker.is_running:
            await referral_worker.stop()
        if reconciliation_enabled and reconciliation_worker.is_running:
            await reconciliation_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the KnockBites loyalty service."""
    configure_logging(
        service_name="knockbites-loyalty",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="KnockBites Loyalty API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="knockbites-loyalty",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
