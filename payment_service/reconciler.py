"""
Payment reconciliation: maps a decoded STK callback onto its pending
payment and moves it to a terminal state at most once.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from common.error_handling import CallbackError, NotFoundError
from common.schemas import FailedStkCallback, SuccessfulStkCallback
from payment_service.models import SubscriptionPayment, utcnow
from payment_service.store import PaymentStore
from payment_service.subscriptions import SubscriptionActivator, display_name

logger = logging.getLogger(__name__)

StkCallback = Union[SuccessfulStkCallback, FailedStkCallback]

def idempotency_key(callback: StkCallback) -> str:
    return f"{callback.MerchantRequestID}:{callback.CheckoutRequestID}:{callback.ResultCode}"

@dataclass
class ReconcileResult:
    status: str  # processed|duplicate
    result_desc: str
    payment: Optional[SubscriptionPayment] = None
    details: Dict[str, Any] = field(default_factory=dict)

class PaymentReconciler:
    def __init__(self, store: PaymentStore, activator: SubscriptionActivator, clock: Callable = utcnow):
        self.store = store
        self.activator = activator
        self.clock = clock

    def reconcile(self, callback: StkCallback) -> ReconcileResult:
        if self.store.has_processed_callback(idempotency_key(callback)):
            return self._duplicate(callback, "identical callback already processed")

        payment = self.store.find_payment(callback.MerchantRequestID, callback.CheckoutRequestID)
        if payment is None:
            raise NotFoundError("Payment record not found")
        if payment.status != "pending":
            return self._duplicate(callback, f"payment already {payment.status}")

        now = self.clock()
        if isinstance(callback, SuccessfulStkCallback):
            fields = dict(
                result_code=0,
                mpesa_receipt_number=callback.receipt_number,
                transaction_amount=callback.amount,
                payer_phone=callback.phone_number,
                completed_at=now,
            )
            new_status = "completed"
        else:
            fields = dict(
                result_code=callback.ResultCode,
                failure_reason=callback.ResultDesc,
                completed_at=now,
            )
            new_status = "failed"

        # The payment row is the durable source of truth; anything derived comes after it.
        if not self.store.transition_payment(payment.id, new_status, **fields):
            return self._duplicate(callback, "payment settled by a concurrent callback")

        payment = self.store.get_payment(payment.id)
        user_name = self._user_name(payment.user_id)

        if new_status == "failed":
            logger.info(
                f"Payment failed for user {payment.user_id} ({user_name}): "
                f"{callback.ResultDesc} (Code: {callback.ResultCode})",
                extra={"checkout_request_id": callback.CheckoutRequestID},
            )
            return ReconcileResult("processed", "Failure notification received", payment, {
                "userId": payment.user_id,
                "userName": user_name,
                "failureReason": callback.ResultDesc,
            })

        try:
            self.activator.activate(payment)
        except CallbackError as exc:
            # payment stays completed; the tier is picked up by the next resync
            logger.error(f"Tier activation deferred for payment {payment.id}: {exc.message}", extra={
                "error_code": exc.code,
                "checkout_request_id": callback.CheckoutRequestID,
            })

        logger.info(
            f"Payment successful for user {payment.user_id} ({user_name}), "
            f"tier: {payment.tier}, receipt: {callback.receipt_number}",
            extra={"checkout_request_id": callback.CheckoutRequestID},
        )
        return ReconcileResult("processed", "Payment received and processed", payment, {
            "userId": payment.user_id,
            "userName": user_name,
            "tier": payment.tier,
            "receipt": callback.receipt_number,
        })

    def _duplicate(self, callback: StkCallback, reason: str) -> ReconcileResult:
        logger.info(f"Duplicate callback for {callback.CheckoutRequestID}: {reason}", extra={
            "checkout_request_id": callback.CheckoutRequestID,
        })
        payment = self.store.find_payment(callback.MerchantRequestID, callback.CheckoutRequestID)
        return ReconcileResult("duplicate", "Duplicate callback ignored", payment)

    def _user_name(self, user_id: str) -> str:
        try:
            return display_name(self.store.get_profile(user_id))
        except CallbackError:
            return display_name(None)
