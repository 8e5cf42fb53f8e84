import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

from common.error_handling import CallbackError, ErrorCodes, NotFoundError
from payment_service.models import Profile, SubscriptionPayment, utcnow
from payment_service.store import PaymentStore

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30
# Mkulima (farmer) plans are sold by the year
TIER_PERIOD_DAYS = {"mkulima": 365}

def period_days(tier: str) -> int:
    return TIER_PERIOD_DAYS.get(tier.strip().lower(), DEFAULT_PERIOD_DAYS)

def display_name(profile: Optional[Profile]) -> str:
    if profile is None:
        return "Unknown User"
    return profile.full_name or profile.username or profile.email or "Unknown User"

class SubscriptionActivator:
    """
    Applies a completed payment's tier to the owner's profile.

    Activation is derived from ``status == "completed"`` plus an unset
    ``tier_activated_at``, so it can be replayed at any time: a failure
    after the payment write leaves the payment outstanding for ``resync``.
    """

    def __init__(self, store: PaymentStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock

    def activate(self, payment: SubscriptionPayment) -> bool:
        if payment.status != "completed" or payment.tier_activated_at is not None or not payment.tier:
            return False

        now = self.clock()
        days = period_days(payment.tier)
        updated = self.store.update_profile_subscription(
            payment.user_id, payment.tier, now, now + timedelta(days=days), days,
        )
        if not updated:
            raise NotFoundError(f"Profile {payment.user_id} not found", code=ErrorCodes.PROFILE_NOT_FOUND)

        self.store.mark_tier_activated(payment.id, now)
        logger.info(f"Activated {payment.tier} tier for user {payment.user_id} ({days} days)", extra={
            "payment_id": payment.id,
        })
        return True

    def resync(self) -> Dict:
        """Activate every completed payment whose tier was never applied."""
        activated, failed = [], []
        for payment in self.store.outstanding_activations():
            try:
                if self.activate(payment):
                    activated.append(payment.id)
            except CallbackError as exc:
                logger.error(f"Tier activation failed for payment {payment.id}: {exc.message}", extra={
                    "error_code": exc.code,
                })
                failed.append({"payment_id": payment.id, "error": exc.code})
        return {"activated": activated, "failed": failed}
