"""
Storage interface for the payment callback pipeline.

Correctness under concurrent callbacks comes from the store, not from
in-process locks: payment transitions are conditional updates and nonce
inserts rely on a uniqueness constraint.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, inspect, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.error_handling import PersistenceError
from payment_service.db import make_session_factory
from payment_service.models import Base, CallbackNonce, CallbackRecord, Profile, SubscriptionPayment, utcnow

logger = logging.getLogger(__name__)

class PaymentStore(ABC):
    """PendingPayment, CallbackRecord and NonceLedger tables plus the owner profiles"""

    def create_schema(self) -> None:
        pass

    # Payments
    @abstractmethod
    def create_payment(self, payment: SubscriptionPayment) -> SubscriptionPayment: ...

    @abstractmethod
    def get_payment(self, payment_id: int) -> Optional[SubscriptionPayment]: ...

    @abstractmethod
    def find_payment(self, merchant_request_id: str, checkout_request_id: str) -> Optional[SubscriptionPayment]: ...

    @abstractmethod
    def transition_payment(self, payment_id: int, status: str, **fields) -> bool:
        """Move a payment out of ``pending``. False if it was already terminal."""

    @abstractmethod
    def mark_tier_activated(self, payment_id: int, activated_at: datetime) -> bool: ...

    @abstractmethod
    def outstanding_activations(self) -> List[SubscriptionPayment]:
        """Completed payments whose subscription tier was never applied."""

    # Audit log
    @abstractmethod
    def append_callback_record(self, record: CallbackRecord) -> None: ...

    @abstractmethod
    def has_processed_callback(self, idempotency_key: str) -> bool: ...

    @abstractmethod
    def callback_records(self, checkout_request_id: Optional[str] = None) -> List[CallbackRecord]: ...

    # Nonce ledger
    @abstractmethod
    def nonce_seen(self, nonce: str, since: datetime) -> bool: ...

    @abstractmethod
    def insert_nonce(self, nonce: str, seen_at: datetime) -> bool:
        """False when the nonce is already recorded."""

    @abstractmethod
    def prune_nonces(self, before: datetime) -> int: ...

    # Profiles
    @abstractmethod
    def save_profile(self, profile: Profile) -> Profile: ...

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]: ...

    @abstractmethod
    def update_profile_subscription(self, user_id: str, tier: str, activated_at: datetime,
                                    expiry: datetime, period_days: int) -> bool: ...


class SqlAlchemyPaymentStore(PaymentStore):

    def __init__(self, engine, session_factory):
        self.engine = engine
        self.Session = session_factory

    @classmethod
    def from_url(cls, url: str) -> "SqlAlchemyPaymentStore":
        engine, session_factory = make_session_factory(url)
        return cls(engine, session_factory)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def _write(self, what: str, fn):
        try:
            with self.Session() as db:
                result = fn(db)
                db.commit()
                return result
        except SQLAlchemyError as e:
            logger.error(f"Store write failed ({what}): {e}")
            raise PersistenceError(f"Failed to {what}", original_error=e)

    def _read(self, what: str, fn):
        try:
            with self.Session() as db:
                return fn(db)
        except SQLAlchemyError as e:
            logger.error(f"Store read failed ({what}): {e}")
            raise PersistenceError(f"Failed to {what}", original_error=e)

    def create_payment(self, payment):
        def _insert(db):
            db.add(payment)
            db.flush()
            return payment
        return self._write("create payment record", _insert)

    def get_payment(self, payment_id):
        return self._read("load payment", lambda db: db.get(SubscriptionPayment, payment_id))

    def find_payment(self, merchant_request_id, checkout_request_id):
        stmt = select(SubscriptionPayment).where(
            SubscriptionPayment.merchant_request_id == merchant_request_id,
            SubscriptionPayment.checkout_request_id == checkout_request_id,
        )
        return self._read("look up payment", lambda db: db.execute(stmt).scalars().first())

    def transition_payment(self, payment_id, status, **fields):
        stmt = (
            update(SubscriptionPayment)
            .where(SubscriptionPayment.id == payment_id, SubscriptionPayment.status == "pending")
            .values(status=status, **fields)
        )
        return self._write("update payment status", lambda db: db.execute(stmt).rowcount == 1)

    def mark_tier_activated(self, payment_id, activated_at):
        stmt = (
            update(SubscriptionPayment)
            .where(SubscriptionPayment.id == payment_id, SubscriptionPayment.tier_activated_at.is_(None))
            .values(tier_activated_at=activated_at)
        )
        return self._write("mark tier activated", lambda db: db.execute(stmt).rowcount == 1)

    def outstanding_activations(self):
        stmt = (
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.status == "completed",
                SubscriptionPayment.tier_activated_at.is_(None),
                SubscriptionPayment.tier.is_not(None),
            )
            .order_by(SubscriptionPayment.completed_at)
        )
        return self._read("list outstanding activations", lambda db: list(db.execute(stmt).scalars()))

    def append_callback_record(self, record):
        self._write("append callback record", lambda db: db.add(record))

    def has_processed_callback(self, idempotency_key):
        stmt = select(CallbackRecord.id).where(
            CallbackRecord.idempotency_key == idempotency_key,
            CallbackRecord.processing_status == "processed",
        ).limit(1)
        return self._read("check callback history", lambda db: db.execute(stmt).first() is not None)

    def callback_records(self, checkout_request_id=None):
        stmt = select(CallbackRecord).order_by(CallbackRecord.id)
        if checkout_request_id is not None:
            stmt = stmt.where(CallbackRecord.checkout_request_id == checkout_request_id)
        return self._read("list callback records", lambda db: list(db.execute(stmt).scalars()))

    def nonce_seen(self, nonce, since):
        stmt = select(CallbackNonce.nonce).where(CallbackNonce.nonce == nonce, CallbackNonce.seen_at >= since)
        return self._read("check nonce", lambda db: db.execute(stmt).first() is not None)

    def insert_nonce(self, nonce, seen_at):
        try:
            with self.Session() as db:
                db.add(CallbackNonce(nonce=nonce, seen_at=seen_at))
                db.commit()
                return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            logger.error(f"Store write failed (record nonce): {e}")
            raise PersistenceError("Failed to record nonce", original_error=e)

    def prune_nonces(self, before):
        stmt = delete(CallbackNonce).where(CallbackNonce.seen_at < before)
        return self._write("prune nonces", lambda db: db.execute(stmt).rowcount)

    def save_profile(self, profile):
        return self._write("save profile", lambda db: db.merge(profile))

    def get_profile(self, user_id):
        return self._read("load profile", lambda db: db.get(Profile, user_id))

    def update_profile_subscription(self, user_id, tier, activated_at, expiry, period_days):
        stmt = (
            update(Profile)
            .where(Profile.id == user_id)
            .values(
                subscription_tier=tier,
                subscription_activated_at=activated_at,
                subscription_expiry=expiry,
                subscription_period_days=period_days,
            )
        )
        return self._write("activate subscription tier", lambda db: db.execute(stmt).rowcount == 1)


class InMemoryPaymentStore(PaymentStore):
    """Dict-backed store for tests and local runs. Hands out copies, never live rows.

    Conditional writes hold a lock, since routes call the store from the threadpool.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._record_ids = itertools.count(1)
        self.payments: Dict[int, SubscriptionPayment] = {}
        self.records: List[CallbackRecord] = []
        self.nonces: Dict[str, datetime] = {}
        self.profiles: Dict[str, Profile] = {}

    @staticmethod
    def _copy(obj):
        if obj is None:
            return None
        columns = inspect(type(obj)).column_attrs
        return type(obj)(**{c.key: getattr(obj, c.key) for c in columns})

    def create_payment(self, payment):
        with self._lock:
            for existing in self.payments.values():
                if (existing.merchant_request_id, existing.checkout_request_id) == (
                        payment.merchant_request_id, payment.checkout_request_id):
                    raise PersistenceError("Failed to create payment record: duplicate correlation identifiers")
            payment.id = next(self._ids)
            if payment.status is None:
                payment.status = "pending"
            if payment.created_at is None:
                payment.created_at = utcnow()
            self.payments[payment.id] = self._copy(payment)
        return payment

    def get_payment(self, payment_id):
        with self._lock:
            return self._copy(self.payments.get(payment_id))

    def find_payment(self, merchant_request_id, checkout_request_id):
        with self._lock:
            for payment in self.payments.values():
                if (payment.merchant_request_id == merchant_request_id
                        and payment.checkout_request_id == checkout_request_id):
                    return self._copy(payment)
        return None

    def transition_payment(self, payment_id, status, **fields):
        with self._lock:
            payment = self.payments.get(payment_id)
            if payment is None or payment.status != "pending":
                return False
            payment.status = status
            for name, value in fields.items():
                setattr(payment, name, value)
            return True

    def mark_tier_activated(self, payment_id, activated_at):
        with self._lock:
            payment = self.payments.get(payment_id)
            if payment is None or payment.tier_activated_at is not None:
                return False
            payment.tier_activated_at = activated_at
            return True

    def outstanding_activations(self):
        with self._lock:
            return [
                self._copy(p) for p in self.payments.values()
                if p.status == "completed" and p.tier_activated_at is None and p.tier
            ]

    def append_callback_record(self, record):
        with self._lock:
            record.id = next(self._record_ids)
            if record.received_at is None:
                record.received_at = utcnow()
            self.records.append(self._copy(record))

    def has_processed_callback(self, idempotency_key):
        with self._lock:
            return any(
                r.idempotency_key == idempotency_key and r.processing_status == "processed"
                for r in self.records
            )

    def callback_records(self, checkout_request_id=None):
        with self._lock:
            return [
                self._copy(r) for r in self.records
                if checkout_request_id is None or r.checkout_request_id == checkout_request_id
            ]

    def nonce_seen(self, nonce, since):
        with self._lock:
            seen_at = self.nonces.get(nonce)
        return seen_at is not None and seen_at >= since

    def insert_nonce(self, nonce, seen_at):
        with self._lock:
            if nonce in self.nonces:
                return False
            self.nonces[nonce] = seen_at
            return True

    def prune_nonces(self, before):
        with self._lock:
            stale = [n for n, seen_at in self.nonces.items() if seen_at < before]
            for nonce in stale:
                del self.nonces[nonce]
            return len(stale)

    def save_profile(self, profile):
        with self._lock:
            self.profiles[profile.id] = self._copy(profile)
        return profile

    def get_profile(self, user_id):
        with self._lock:
            return self._copy(self.profiles.get(user_id))

    def update_profile_subscription(self, user_id, tier, activated_at, expiry, period_days):
        with self._lock:
            profile = self.profiles.get(user_id)
            if profile is None:
                return False
            profile.subscription_tier = tier
            profile.subscription_activated_at = activated_at
            profile.subscription_expiry = expiry
            profile.subscription_period_days = period_days
            return True
