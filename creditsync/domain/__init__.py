from creditsync.domain.credit_transaction_operations import credit_transaction_ops
from creditsync.domain.dispute_operations import dispute_ops
from creditsync.domain.profile_operations import profile_ops
from creditsync.domain.subscription_operations import subscription_ops
from creditsync.domain.sync_run_operations import sync_run_ops
from creditsync.domain.webhook_event_operations import webhook_event_ops

__all__ = [
    "credit_transaction_ops",
    "dispute_ops",
    "profile_ops",
    "subscription_ops",
    "sync_run_ops",
    "webhook_event_ops",
]
