"""Stripe webhook endpoint."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse

from creditsync.api.deps import AppServices, DbSession
from creditsync.config import settings
from creditsync.core.exceptions import WebhookValidationError
from creditsync.domain import webhook_event_ops

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=None)
async def handle_stripe_webhook(
    request: Request,
    db: DbSession,
    services: AppServices,
) -> dict[str, Any] | JSONResponse:
    """
    Handle Stripe webhook events.

    Verifies the signature, skips events already processed, and dispatches
    through the handler registry. A failing handler rolls back its writes and
    queues the event for the recovery job; the non-2xx response also makes
    Stripe redeliver it. No user authentication (verified by Stripe signature).
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhooks not configured",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        event = services.stripe.construct_webhook_event(payload, sig_header)
    except ValueError:
        raise HTTPException(400, "Invalid webhook signature") from None
    except WebhookValidationError as e:
        raise HTTPException(400, e.message) from None

    logger.info(f"Received Stripe webhook: {event.type} ({event.id})")

    if await webhook_event_ops.is_completed(db, event.id):
        logger.info(f"Skipping duplicate webhook: {event.id}")
        return {"received": True, "status": "already_processed"}

    try:
        handled = await services.dispatcher.dispatch(db, event)
        if handled:
            await webhook_event_ops.mark_completed(db, event.id, event.type)
        await db.commit()
    except Exception as e:
        await db.rollback()
        recoverable = not isinstance(e, WebhookValidationError)
        if recoverable:
            logger.exception(f"Webhook {event.type} ({event.id}) failed: {e}")
        else:
            logger.error(f"Webhook {event.type} ({event.id}) rejected as malformed: {e}")

        try:
            await webhook_event_ops.record_failure(
                db,
                event_id=event.id,
                event_type=event.type,
                error_message=str(e),
                recoverable=recoverable,
            )
            await db.commit()
        except Exception as record_error:
            logger.error(f"Could not record failed webhook {event.id}: {record_error}")
            await db.rollback()

        return JSONResponse(
            status_code=(
                status.HTTP_500_INTERNAL_SERVER_ERROR
                if recoverable
                else status.HTTP_400_BAD_REQUEST
            ),
            content={"received": True, "error": str(e), "recoverable": recoverable},
        )

    return {"received": True, "status": "ok" if handled else "ignored"}
