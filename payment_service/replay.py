"""
Replay protection for gateway callbacks.

Checks run cheapest first: header presence, timestamp parsing and
staleness are decided before the nonce ledger is consulted, so a flood of
stale or malformed callbacks never reaches the store.
"""
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import redis

from common.error_handling import ErrorCodes, PersistenceError, ReplayError
from common.redis_client import RedisClient
from payment_service.store import PaymentStore

logger = logging.getLogger(__name__)

MIN_REPLAY_WINDOW_SECONDS = 30
MAX_NONCE_LENGTH = 128
# epoch values this large are milliseconds (1e11 s is the year 5138)
_MILLISECONDS_THRESHOLD = 1e11
_NUMERIC = re.compile(r"^-?\d+(\.\d+)?$")

def parse_callback_timestamp(value: str) -> float:
    """Epoch seconds, epoch milliseconds or ISO-8601 -> epoch seconds. Naive ISO is UTC."""
    text = value.strip()
    if _NUMERIC.match(text):
        number = float(text)
        return number / 1000.0 if abs(number) >= _MILLISECONDS_THRESHOLD else number
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()

def _as_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, timezone.utc).replace(tzinfo=None)

class NonceLedger(ABC):
    @abstractmethod
    def seen(self, nonce: str, since: float) -> bool: ...

    @abstractmethod
    def remember(self, nonce: str, seen_at: float, window_seconds: int) -> bool:
        """Record the nonce; False if it was recorded concurrently."""

class StoreNonceLedger(NonceLedger):
    """callback_nonces table; pruned by age on every insert"""

    def __init__(self, store: PaymentStore):
        self.store = store

    def seen(self, nonce, since):
        return self.store.nonce_seen(nonce, _as_datetime(since))

    def remember(self, nonce, seen_at, window_seconds):
        self.store.prune_nonces(_as_datetime(seen_at - window_seconds))
        return self.store.insert_nonce(nonce, _as_datetime(seen_at))

class RedisNonceLedger(NonceLedger):
    def __init__(self, client: RedisClient):
        self.client = client

    def seen(self, nonce, since):
        try:
            return self.client.nonce_seen(nonce)
        except redis.RedisError as e:
            raise PersistenceError("Nonce ledger unavailable", original_error=e)

    def remember(self, nonce, seen_at, window_seconds):
        try:
            return self.client.remember_nonce(nonce, _as_datetime(seen_at), window_seconds)
        except redis.RedisError as e:
            raise PersistenceError("Nonce ledger unavailable", original_error=e)

@dataclass
class ReplayConfig:
    window_seconds: int = 300
    require_nonce: bool = True

    def __post_init__(self):
        self.window_seconds = max(int(self.window_seconds), MIN_REPLAY_WINDOW_SECONDS)

class ReplayGuard:
    def __init__(self, ledger: NonceLedger, config: ReplayConfig, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.config = config
        self.clock = clock

    def check(self, nonce: Optional[str], timestamp: Optional[str]) -> None:
        """Raise ReplayError unless the (nonce, timestamp) pair is fresh; records the nonce on success."""
        nonce = (nonce or "").strip() or None
        timestamp = (timestamp or "").strip() or None

        if self.config.require_nonce and (nonce is None or timestamp is None):
            raise ReplayError(ErrorCodes.MISSING_NONCE, "Missing nonce/timestamp")
        if nonce is not None and len(nonce) > MAX_NONCE_LENGTH:
            raise ReplayError(ErrorCodes.INVALID_NONCE, "Nonce too long")

        now = self.clock()
        window = self.config.window_seconds

        if timestamp is not None:
            try:
                sent_at = parse_callback_timestamp(timestamp)
            except (ValueError, OverflowError):
                raise ReplayError(ErrorCodes.INVALID_TIMESTAMP, f"Unparseable timestamp: {timestamp[:64]}")
            if abs(now - sent_at) > window:
                raise ReplayError(ErrorCodes.STALE_TIMESTAMP, "Stale callback timestamp")

        if nonce is None:
            return

        if self.ledger.seen(nonce, now - window):
            raise ReplayError(ErrorCodes.REPLAY_DETECTED, "Replay detected")
        if not self.ledger.remember(nonce, now, window):
            # lost the race to a concurrent request carrying the same nonce
            raise ReplayError(ErrorCodes.REPLAY_DETECTED, "Replay detected")
        logger.debug(f"Accepted callback nonce {nonce[:16]}")
