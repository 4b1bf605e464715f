import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from creditsync.api.router import api_router
from creditsync.config import settings
from creditsync.core.database import init_db
from creditsync.services.container import build_services

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Routers whose every call is logged, not just failures
AUDITED_PREFIXES = ("/api/v1/webhooks", "/api/v1/cron", "/api/v1/admin")

QUIET_LOGGERS = ("httpx", "httpcore", "stripe", "apscheduler", "uvicorn.access")


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the service graph onto app.state and run the maintenance scheduler."""
    from creditsync.services.scheduler import scheduler

    setup_logging()
    if settings.debug:
        await init_db()
    services = build_services(settings)
    app.state.services = services
    scheduler.start(services)
    logger.info(f"creditsync started (stripe: {'on' if settings.stripe_enabled else 'off'})")
    try:
        yield
    finally:
        scheduler.stop()
        logger.info("creditsync stopped")


app = FastAPI(
    title="creditsync API",
    description="Credit ledger and Stripe subscription reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log failed requests and every webhook, cron and admin call."""
    response = await call_next(request)
    path = request.url.path
    if response.status_code >= 400 or path.startswith(AUDITED_PREFIXES):
        logger.info(f"{request.method} {path} → {response.status_code}")
    return response


app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
