"""
Unit tests for callback replay protection
"""
import unittest
from datetime import datetime, timezone

import redis

from common.error_handling import ErrorCodes, PersistenceError, ReplayError
from common.redis_client import RedisClient
from payment_service.replay import (
    MIN_REPLAY_WINDOW_SECONDS, RedisNonceLedger, ReplayConfig, ReplayGuard, StoreNonceLedger,
    parse_callback_timestamp,
)
from payment_service.store import InMemoryPaymentStore

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeRedis:
    """exists / SET NX EX, enough for the nonce ledger"""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def exists(self, key):
        return 1 if key in self.data else 0

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True


class BrokenRedis:
    def exists(self, key):
        raise redis.ConnectionError("connection refused")

    def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


class TestParseCallbackTimestamp(unittest.TestCase):

    def test_epoch_seconds(self):
        self.assertEqual(parse_callback_timestamp("1700000000"), 1700000000.0)
        self.assertEqual(parse_callback_timestamp(" 1700000000.5 "), 1700000000.5)

    def test_epoch_milliseconds(self):
        self.assertEqual(parse_callback_timestamp("1700000000000"), 1700000000.0)

    def test_iso_8601(self):
        self.assertEqual(parse_callback_timestamp("2023-11-14T22:13:20Z"), NOW)
        self.assertEqual(parse_callback_timestamp("2023-11-15T01:13:20+03:00"), NOW)

    def test_naive_iso_is_utc(self):
        self.assertEqual(parse_callback_timestamp("2023-11-14T22:13:20"), NOW)

    def test_garbage(self):
        for value in ("yesterday", "2023-13-45T00:00:00Z", "2023-11-14T25:00:00"):
            with self.assertRaises(ValueError):
                parse_callback_timestamp(value)


class TestReplayConfig(unittest.TestCase):

    def test_window_floor(self):
        self.assertEqual(ReplayConfig(window_seconds=5).window_seconds, MIN_REPLAY_WINDOW_SECONDS)
        self.assertEqual(ReplayConfig(window_seconds=0).window_seconds, MIN_REPLAY_WINDOW_SECONDS)
        self.assertEqual(ReplayConfig(window_seconds=600).window_seconds, 600)


class TestReplayGuard(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryPaymentStore()
        self.clock = FakeClock()
        self.guard = ReplayGuard(StoreNonceLedger(self.store), ReplayConfig(window_seconds=300), self.clock)

    def assertRejected(self, code, nonce, timestamp):
        with self.assertRaises(ReplayError) as ctx:
            self.guard.check(nonce, timestamp)
        self.assertEqual(ctx.exception.code, code)
        return ctx.exception

    def test_fresh_nonce_accepted_and_recorded(self):
        self.guard.check("n-1", str(int(NOW)))
        self.assertIn("n-1", self.store.nonces)

    def test_missing_headers(self):
        exc = self.assertRejected(ErrorCodes.MISSING_NONCE, None, str(int(NOW)))
        self.assertEqual(exc.status_code, 401)
        self.assertRejected(ErrorCodes.MISSING_NONCE, "n-1", None)
        self.assertRejected(ErrorCodes.MISSING_NONCE, "  ", str(int(NOW)))

    def test_optional_headers(self):
        guard = ReplayGuard(StoreNonceLedger(self.store), ReplayConfig(require_nonce=False), self.clock)
        guard.check(None, None)
        guard.check(None, str(int(NOW)))
        self.assertEqual(self.store.nonces, {})
        with self.assertRaises(ReplayError):
            guard.check(None, str(int(NOW - 301)))

    def test_unparseable_timestamp(self):
        exc = self.assertRejected(ErrorCodes.INVALID_TIMESTAMP, "n-1", "not-a-time")
        self.assertEqual(exc.status_code, 401)

    def test_stale_timestamp_rejected_before_nonce_lookup(self):
        self.assertRejected(ErrorCodes.STALE_TIMESTAMP, "n-1", str(int(NOW - 301)))
        self.assertRejected(ErrorCodes.STALE_TIMESTAMP, "n-2", str(int(NOW + 301)))
        self.assertEqual(self.store.nonces, {})

    def test_edge_of_window_accepted(self):
        self.guard.check("n-1", str(int(NOW - 300)))

    def test_reused_nonce_within_window(self):
        self.guard.check("n-1", str(int(NOW)))
        self.clock.now += 10
        exc = self.assertRejected(ErrorCodes.REPLAY_DETECTED, "n-1", str(int(self.clock.now)))
        self.assertEqual(exc.status_code, 409)

    def test_new_nonce_after_accepted_one(self):
        self.guard.check("n-1", str(int(NOW)))
        self.clock.now += 10
        self.guard.check("n-2", str(int(self.clock.now)))

    def test_nonce_forgotten_after_window(self):
        self.guard.check("n-1", str(int(NOW)))
        self.clock.now += 301
        self.guard.check("n-1", str(int(self.clock.now)))

    def test_concurrent_insert_loses(self):
        # another request recorded the nonce between the lookup and the insert
        ledger = StoreNonceLedger(self.store)
        ledger.seen = lambda nonce, since: False
        self.store.insert_nonce("n-1", datetime.fromtimestamp(NOW, timezone.utc).replace(tzinfo=None))
        guard = ReplayGuard(ledger, ReplayConfig(), self.clock)
        with self.assertRaises(ReplayError) as ctx:
            guard.check("n-1", str(int(NOW)))
        self.assertEqual(ctx.exception.code, ErrorCodes.REPLAY_DETECTED)

    def test_oversized_nonce(self):
        self.assertRejected(ErrorCodes.INVALID_NONCE, "x" * 129, str(int(NOW)))


class TestRedisNonceLedger(unittest.TestCase):

    def test_set_nx_with_window_ttl(self):
        fake = FakeRedis()
        guard = ReplayGuard(RedisNonceLedger(RedisClient(client=fake)), ReplayConfig(window_seconds=120), FakeClock())
        guard.check("n-1", str(int(NOW)))
        self.assertEqual(fake.ttls["callback_nonce:n-1"], 120)

        with self.assertRaises(ReplayError) as ctx:
            guard.check("n-1", str(int(NOW)))
        self.assertEqual(ctx.exception.code, ErrorCodes.REPLAY_DETECTED)

    def test_unavailable_redis_fails_closed(self):
        guard = ReplayGuard(RedisNonceLedger(RedisClient(client=BrokenRedis())), ReplayConfig(), FakeClock())
        with self.assertRaises(PersistenceError):
            guard.check("n-1", str(int(NOW)))


if __name__ == '__main__':
    unittest.main()
