"""
Redis client utilities for the callback nonce ledger
"""
import redis
from datetime import datetime
from typing import Optional
from .settings import settings

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: Optional[str] = None, client=None):
        self.client = client or redis.Redis.from_url(url or settings.redis_url, decode_responses=True)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # Callback nonces. Errors propagate: a ledger that cannot answer must not let callbacks through.
    @staticmethod
    def _nonce_key(nonce: str) -> str:
        return f"callback_nonce:{nonce}"

    def nonce_seen(self, nonce: str) -> bool:
        """Key expiry does the pruning, so presence means seen within the window"""
        return self.client.exists(self._nonce_key(nonce)) > 0

    def remember_nonce(self, nonce: str, seen_at: datetime, ttl_seconds: int) -> bool:
        """Atomic SET NX; False if another request recorded the nonce first"""
        return bool(self.client.set(self._nonce_key(nonce), seen_at.isoformat(), nx=True, ex=ttl_seconds))
