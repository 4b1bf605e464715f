from creditsync.models.billing import (
    CreditPool,
    CreditTransaction,
    DisputeEvent,
    DisputeEventStatus,
    TransactionType,
)
from creditsync.models.profile import DisputeStatus, Profile, ProfileRole
from creditsync.models.subscription import (
    RECONCILABLE_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from creditsync.models.sync import (
    SyncJobType,
    SyncRun,
    SyncRunStatus,
    WebhookEvent,
    WebhookEventStatus,
)

__all__ = [
    # Profile
    "Profile",
    "ProfileRole",
    "DisputeStatus",
    # Subscription
    "Subscription",
    "SubscriptionStatus",
    "RECONCILABLE_STATUSES",
    # Billing
    "CreditTransaction",
    "CreditPool",
    "TransactionType",
    "DisputeEvent",
    "DisputeEventStatus",
    # Sync
    "SyncRun",
    "SyncJobType",
    "SyncRunStatus",
    "WebhookEvent",
    "WebhookEventStatus",
]
