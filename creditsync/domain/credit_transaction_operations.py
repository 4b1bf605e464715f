"""Domain operations for CreditTransaction model (read side only)."""

import uuid as uuid_pkg

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.domain.base_operations import BaseOperations
from creditsync.models.billing import CreditTransaction


class CreditTransactionOperations(BaseOperations[CreditTransaction]):
    """Ledger history queries. Inserts happen inside the ledger procedures."""

    def __init__(self) -> None:
        super().__init__(CreditTransaction)

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: uuid_pkg.UUID,
        skip: int = 0,
        limit: int = 50,
    ) -> list[CreditTransaction]:
        statement = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())  # type: ignore[attr-defined]
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(statement)
        return list(result.scalars().all())


credit_transaction_ops = CreditTransactionOperations()
