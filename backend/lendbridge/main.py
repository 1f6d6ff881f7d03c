import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lendbridge.api.routes.loans import router as loans_router
from lendbridge.api.routes.partner import router as partner_router
from lendbridge.api.routes.rates import router as rates_router
from lendbridge.api.routes.wallet import router as wallet_router
from lendbridge.core.config import settings
from lendbridge.core.errors import LendingError
from lendbridge.core.logging_setup import configure_logging
from lendbridge.db.session import create_all, make_engine, make_sessionmaker
from lendbridge.services.container import build_services
from lendbridge.services.rate_feed import rate_sync_loop

logger = logging.getLogger(__name__)

app = FastAPI(title="lendbridge")

origins = [o.strip() for o in (settings.cors_origins or "").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LendingError)
async def _lending_error(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.get("/health")
@app.get("/api/health")
def health():
    return {"status": "ok"}

app.include_router(rates_router)
app.include_router(loans_router)
app.include_router(wallet_router)
app.include_router(partner_router)

@app.on_event("startup")
async def _startup():
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    if settings.db_auto_create:
        await create_all(engine)
    sv = build_services(settings, make_sessionmaker(engine), engine=engine)
    app.state.services = sv

    app.state.rate_task = None
    if settings.rate_sync_enabled:
        app.state.rate_task = asyncio.create_task(
            rate_sync_loop(sv.feed, settings.rate_sync_interval_seconds, max_age=sv.lending.policy.rate_max_age)
        )
    logger.info("lendbridge started: %s/%s, ltv %s", settings.collateral_currency, settings.loan_currency, settings.default_ltv_ratio)

@app.on_event("shutdown")
async def _shutdown():
    task = getattr(app.state, "rate_task", None)
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    sv = getattr(app.state, "services", None)
    if sv is not None and sv.engine is not None:
        await sv.engine.dispose()
