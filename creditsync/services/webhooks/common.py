"""Helpers shared by the webhook handlers."""

import logging
import uuid as uuid_pkg

from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.core.exceptions import ProfileNotFoundError, WebhookValidationError
from creditsync.domain import profile_ops

logger = logging.getLogger(__name__)


async def require_user_id(
    db: AsyncSession,
    customer_id: str | None,
    *,
    source: str,
    log_prefix: str = "",
) -> uuid_pkg.UUID:
    """
    Resolve a Stripe customer to a user ID or raise.

    A missing customer ID is a malformed payload (WebhookValidationError);
    an unknown customer raises ProfileNotFoundError so the delivery is retried.
    """
    prefix = f"{log_prefix} " if log_prefix else ""
    if not customer_id:
        logger.error(f"{prefix}No customer ID on {source}")
        raise WebhookValidationError(f"Missing customer ID on {source}")

    user_id = await profile_ops.get_user_id_by_customer(db, customer_id)
    if user_id is None:
        logger.error(f"{prefix}No profile found for customer {customer_id} ({source})")
        raise ProfileNotFoundError(customer_id)
    return user_id
