"""Admin endpoints: manual credit adjustments and ledger/job observability.

All endpoints require a profile with role=admin (checked against the database).
"""

import logging
import uuid as uuid_pkg
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from creditsync.api.deps import AdminProfile, AppServices, DbSession
from creditsync.core.exceptions import LedgerError, NotFoundError
from creditsync.domain import credit_transaction_ops, profile_ops, sync_run_ops
from creditsync.models.billing import TransactionType
from creditsync.services.ledger import ClawbackPool, admin_ref

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ─────────────────────────────────────────────────────────────────────────────
# Request/Response Schemas
# ─────────────────────────────────────────────────────────────────────────────


class CreditAdjustmentRequest(BaseModel):
    """Signed credit adjustment for one user."""

    user_id: uuid_pkg.UUID
    amount: int  # positive grants purchased credits, negative claws back
    reason: str = Field(min_length=1, max_length=255)

    @field_validator("amount")
    @classmethod
    def amount_not_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount must be non-zero")
        return value


class CreditAdjustmentResponse(BaseModel):
    user_id: uuid_pkg.UUID
    reference_id: str
    amount_requested: int
    amount_applied: int
    subscription_credits_balance: int
    purchased_credits_balance: int


class SyncRunInfo(BaseModel):
    id: uuid_pkg.UUID
    job_type: str
    status: str
    records_processed: int
    records_fixed: int
    discrepancies_found: int
    error_message: str | None
    metadata: dict[str, Any] | None
    started_at: datetime
    completed_at: datetime | None


class CreditTransactionInfo(BaseModel):
    id: uuid_pkg.UUID
    amount: int
    transaction_type: str
    credit_pool: str
    reference_id: str
    description: str | None
    created_at: datetime


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────


@router.post("/credits/adjust", response_model=CreditAdjustmentResponse)
async def adjust_credits(
    data: CreditAdjustmentRequest,
    admin: AdminProfile,
    db: DbSession,
    services: AppServices,
) -> CreditAdjustmentResponse:
    """
    Grant or remove credits for a user through the ledger.

    Positive amounts are granted to the purchased pool as a bonus; negative
    amounts are clawed back subscription pool first. Each adjustment gets
    its own admin_ reference.
    """
    if await profile_ops.get_balances(db, data.user_id) is None:
        raise NotFoundError("Profile")

    ref_id = admin_ref()
    description = f"Admin adjustment by {admin.id}: {data.reason}"

    try:
        if data.amount > 0:
            grant = await services.ledger.add_purchased_credits(
                db,
                data.user_id,
                data.amount,
                ref_id,
                description,
                transaction_type=TransactionType.BONUS.value,
            )
            applied = data.amount if grant.applied else 0
        else:
            result = await services.ledger.clawback_credits(
                db,
                data.user_id,
                -data.amount,
                description,
                ref_id,
                pool=ClawbackPool.AUTO,
            )
            if not result.success:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=result.error_message or "Clawback failed",
                )
            applied = -result.credits_clawed_back
    except LedgerError as e:
        logger.error(f"Admin credit adjustment for {data.user_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Ledger update failed",
        ) from e

    balances = await profile_ops.get_balances(db, data.user_id) or (0, 0)
    logger.info(
        f"Admin {admin.id} adjusted credits for {data.user_id} by {applied} "
        f"(requested {data.amount}, {ref_id}): {data.reason}"
    )

    return CreditAdjustmentResponse(
        user_id=data.user_id,
        reference_id=ref_id,
        amount_requested=data.amount,
        amount_applied=applied,
        subscription_credits_balance=balances[0],
        purchased_credits_balance=balances[1],
    )


@router.get("/sync-runs", response_model=list[SyncRunInfo])
async def list_sync_runs(
    _admin: AdminProfile,
    db: DbSession,
    job_type: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
) -> list[SyncRunInfo]:
    """Most recent maintenance job runs, newest first."""
    runs = await sync_run_ops.list_recent(db, job_type=job_type, limit=limit)
    return [
        SyncRunInfo(
            id=run.id,
            job_type=run.job_type,
            status=run.status,
            records_processed=run.records_processed,
            records_fixed=run.records_fixed,
            discrepancies_found=run.discrepancies_found,
            error_message=run.error_message,
            metadata=run.run_metadata,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )
        for run in runs
    ]


@router.get("/users/{user_id}/transactions", response_model=list[CreditTransactionInfo])
async def list_user_transactions(
    user_id: uuid_pkg.UUID,
    _admin: AdminProfile,
    db: DbSession,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[CreditTransactionInfo]:
    """Ledger history for one user, newest first."""
    transactions = await credit_transaction_ops.list_for_user(db, user_id, skip=skip, limit=limit)
    return [
        CreditTransactionInfo(
            id=tx.id,
            amount=tx.amount,
            transaction_type=tx.transaction_type,
            credit_pool=tx.credit_pool,
            reference_id=tx.reference_id,
            description=tx.description,
            created_at=tx.created_at,
        )
        for tx in transactions
    ]
