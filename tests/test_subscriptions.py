"""
Unit tests for subscription tier activation and resync
"""
import unittest
from datetime import datetime, timedelta
from decimal import Decimal

from common.error_handling import ErrorCodes, NotFoundError
from payment_service.models import Profile, SubscriptionPayment
from payment_service.store import InMemoryPaymentStore
from payment_service.subscriptions import SubscriptionActivator, display_name, period_days

FIXED_NOW = datetime(2024, 3, 1, 12, 0, 0)


class TestTierRules(unittest.TestCase):

    def test_period_days(self):
        self.assertEqual(period_days("mkulima"), 365)
        self.assertEqual(period_days(" Mkulima "), 365)
        self.assertEqual(period_days("pro"), 30)
        self.assertEqual(period_days("biashara"), 30)

    def test_display_name_fallback(self):
        self.assertEqual(display_name(Profile(id="U1", full_name="Achieng Otieno", username="achie")), "Achieng Otieno")
        self.assertEqual(display_name(Profile(id="U1", username="achie", email="a@example.com")), "achie")
        self.assertEqual(display_name(Profile(id="U1", email="a@example.com")), "a@example.com")
        self.assertEqual(display_name(Profile(id="U1")), "Unknown User")
        self.assertEqual(display_name(None), "Unknown User")


class TestSubscriptionActivator(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryPaymentStore()
        self.activator = SubscriptionActivator(self.store, clock=lambda: FIXED_NOW)

    def completed_payment(self, user_id, tier, checkout):
        payment = self.store.create_payment(SubscriptionPayment(
            merchant_request_id=f"M-{checkout}", checkout_request_id=checkout, user_id=user_id,
            tier=tier, amount=Decimal("1500"),
        ))
        self.store.transition_payment(payment.id, "completed", completed_at=FIXED_NOW)
        return self.store.get_payment(payment.id)

    def test_activates_once(self):
        self.store.save_profile(Profile(id="U1"))
        payment = self.completed_payment("U1", "mkulima", "C1")

        self.assertTrue(self.activator.activate(payment))
        profile = self.store.get_profile("U1")
        self.assertEqual(profile.subscription_tier, "mkulima")
        self.assertEqual(profile.subscription_expiry, FIXED_NOW + timedelta(days=365))
        self.assertEqual(profile.subscription_period_days, 365)

        self.assertFalse(self.activator.activate(self.store.get_payment(payment.id)))

    def test_skips_payments_that_are_not_completed(self):
        self.store.save_profile(Profile(id="U1"))
        pending = self.store.create_payment(SubscriptionPayment(
            merchant_request_id="M1", checkout_request_id="C1", user_id="U1", tier="pro", amount=Decimal("100"),
        ))
        self.assertFalse(self.activator.activate(pending))
        self.assertIsNone(self.store.get_profile("U1").subscription_tier)

    def test_missing_profile(self):
        payment = self.completed_payment("ghost", "pro", "C1")
        with self.assertRaises(NotFoundError) as ctx:
            self.activator.activate(payment)
        self.assertEqual(ctx.exception.code, ErrorCodes.PROFILE_NOT_FOUND)
        self.assertIsNone(self.store.get_payment(payment.id).tier_activated_at)

    def test_resync_picks_up_outstanding_activations(self):
        self.store.save_profile(Profile(id="U1"))
        ok = self.completed_payment("U1", "pro", "C1")
        orphan = self.completed_payment("ghost", "pro", "C2")

        result = self.activator.resync()

        self.assertEqual(result["activated"], [ok.id])
        self.assertEqual(result["failed"], [{"payment_id": orphan.id, "error": ErrorCodes.PROFILE_NOT_FOUND}])
        self.assertEqual(self.store.get_profile("U1").subscription_tier, "pro")

        # the orphan stays outstanding until its profile exists
        self.store.save_profile(Profile(id="ghost"))
        self.assertEqual(self.activator.resync(), {"activated": [orphan.id], "failed": []})
        self.assertEqual(self.activator.resync(), {"activated": [], "failed": []})


if __name__ == '__main__':
    unittest.main()
