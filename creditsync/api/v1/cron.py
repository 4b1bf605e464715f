"""Cron endpoints - protected by shared secret, not user auth.

These endpoints are called by external schedulers, not by human users.
They bypass Supabase JWT auth and instead validate a shared secret via
the X-Cron-Secret header. The in-process scheduler runs the same jobs.
"""

import logging
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from creditsync.api.deps import AppServices, DbSession
from creditsync.config.settings import settings

logger = logging.getLogger(__name__)


def _verify_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    """Validate the X-Cron-Secret header against the configured secret."""
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )
    if x_cron_secret != settings.cron_secret:
        logger.warning("[CRON] Rejected request with invalid cron secret")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid cron secret",
        )


router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    dependencies=[Depends(_verify_cron_secret)],
)


def _report_response(report: Any) -> dict[str, Any] | JSONResponse:
    body = asdict(report)
    if report.failed:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
    return body


@router.post("/check-expirations", response_model=None)
async def check_expirations(
    db: DbSession,
    services: AppServices,
) -> dict[str, Any] | JSONResponse:
    """Fix active subscriptions whose billing period ended without an event."""
    logger.info("[CRON] check-expirations triggered")
    report = await services.reconciliation.check_expirations(db)
    return _report_response(report)


@router.post("/reconcile", response_model=None)
async def reconcile(
    db: DbSession,
    services: AppServices,
    batch_size: int | None = Query(default=None, ge=1, le=100),
    cursor: str | None = Query(default=None, min_length=1),
) -> dict[str, Any] | JSONResponse:
    """
    Reconcile one batch of subscriptions against Stripe.

    Re-invoke with `cursor=next_cursor` while `has_more` is true.
    """
    logger.info(f"[CRON] reconcile triggered (cursor={cursor}, batch_size={batch_size})")
    report = await services.reconciliation.reconcile(db, batch_size=batch_size, cursor=cursor)
    return _report_response(report)


@router.post("/recover-webhooks", response_model=None)
async def recover_webhooks(
    db: DbSession,
    services: AppServices,
) -> dict[str, Any] | JSONResponse:
    """Retry failed, recoverable webhook events."""
    logger.info("[CRON] recover-webhooks triggered")
    report = await services.reconciliation.recover_webhooks(db)
    return _report_response(report)
