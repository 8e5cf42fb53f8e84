from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Numeric, Text, JSON, Boolean, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def utcnow() -> datetime:
    # naive UTC throughout; SQLite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)

class SubscriptionPayment(Base):
    """A push payment awaiting its gateway callback. Never deleted."""
    __tablename__ = "subscription_payments"
    __table_args__ = (
        UniqueConstraint("merchant_request_id", "checkout_request_id", name="uq_payment_correlation"),
    )
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    merchant_request_id = Column(String(64), nullable=False)
    checkout_request_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    tier = Column(String(32))
    amount = Column(Numeric(12, 2), nullable=False)
    phone_number = Column(String(16))
    payment_method = Column(String(16), default="mpesa")
    status = Column(String(16), nullable=False, default="pending")  # pending|completed|failed
    result_code = Column(Integer)
    mpesa_receipt_number = Column(String(32))
    transaction_amount = Column(Numeric(12, 2))
    payer_phone = Column(String(16))
    failure_reason = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    tier_activated_at = Column(DateTime)

class CallbackRecord(Base):
    """Append-only audit log: one row per inbound callback, whatever the outcome."""
    __tablename__ = "mpesa_callbacks"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    endpoint = Column(String(32), nullable=False)
    merchant_request_id = Column(String(64), index=True)
    checkout_request_id = Column(String(64), index=True)
    result_code = Column(Integer)
    idempotency_key = Column(String(160), index=True)
    raw_payload = Column(JSON)
    signature_valid = Column(Boolean, nullable=True)
    nonce = Column(String(128))
    callback_timestamp = Column(String(64))
    processing_status = Column(String(16), nullable=False)  # processed|duplicate|failed
    error_code = Column(String(32))
    error = Column(Text)
    trace_id = Column(String(32))
    received_at = Column(DateTime, nullable=False, default=utcnow)

class CallbackNonce(Base):
    __tablename__ = "callback_nonces"
    nonce = Column(String(128), primary_key=True)
    seen_at = Column(DateTime, nullable=False, index=True)

class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String(64), primary_key=True)
    full_name = Column(String(255))
    username = Column(String(64))
    email = Column(String(255))
    subscription_tier = Column(String(32))
    subscription_activated_at = Column(DateTime)
    subscription_expiry = Column(DateTime)
    subscription_period_days = Column(Integer)
