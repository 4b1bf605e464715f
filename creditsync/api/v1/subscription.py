"""Subscription plan change endpoints for authenticated users."""

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from stripe import StripeError

from creditsync.api.deps import AppServices, CurrentProfile, DbSession
from creditsync.core.exceptions import PlanChangeError, UnknownPriceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class PlanChangeRequest(BaseModel):
    target_price_id: str


class PlanChangeResponse(BaseModel):
    subscription_id: str
    status: str
    current_price_id: str
    new_price_id: str
    effective_immediately: bool
    effective_date: datetime | None = None
    schedule_id: str | None = None
    credits_added: int = 0
    credit_reason: str | None = None


class CancelScheduledResponse(BaseModel):
    subscription_id: str
    message: str


@router.post("/change", response_model=PlanChangeResponse)
async def change_plan(
    data: PlanChangeRequest,
    profile: CurrentProfile,
    db: DbSession,
    services: AppServices,
) -> PlanChangeResponse:
    """
    Move the caller's subscription to another plan.

    Upgrades take effect immediately; downgrades are scheduled for the end
    of the current billing period.
    """
    try:
        result = await services.subscription_change.change_plan(
            db, profile.id, data.target_price_id
        )
    except PlanChangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": e.message},
        ) from None
    except UnknownPriceError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_PRICE", "message": e.message},
        ) from None
    except StripeError as e:
        logger.error(f"[PLAN_CHANGE] Stripe error for user {profile.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider error, please try again",
        ) from None

    return PlanChangeResponse(
        subscription_id=result.subscription_id,
        status=result.status,
        current_price_id=result.current_price_id,
        new_price_id=result.new_price_id,
        effective_immediately=result.effective_immediately,
        effective_date=result.effective_date,
        schedule_id=result.schedule_id,
        credits_added=result.credits_added,
        credit_reason=result.credit_reason,
    )


@router.post("/cancel-scheduled", response_model=CancelScheduledResponse)
async def cancel_scheduled_change(
    profile: CurrentProfile,
    db: DbSession,
    services: AppServices,
) -> CancelScheduledResponse:
    """Cancel a pending downgrade."""
    try:
        subscription_id = await services.subscription_change.cancel_scheduled_change(
            db, profile.id
        )
    except PlanChangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": e.message},
        ) from None
    except StripeError as e:
        logger.error(f"[PLAN_CHANGE] Stripe error canceling scheduled change: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider error, please try again",
        ) from None

    return CancelScheduledResponse(
        subscription_id=subscription_id,
        message="Scheduled change canceled successfully",
    )
