import unittest

from redis.exceptions import ConnectionError as RedisConnectionError

from weather_consensus.cache_store import RedisCacheStore


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.expires = {}

    def set(self, key, value):
        self.store[key] = value

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.expires[key] = ttl

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        self.store.pop(key, None)
        self.expires.pop(key, None)

    def scan_iter(self, pattern):
        prefix = pattern.rstrip("*")
        return [k for k in list(self.store.keys()) if k.startswith(prefix)]


class BrokenRedis:
    def get(self, key):
        raise RedisConnectionError("down")

    def set(self, key, value):
        raise RedisConnectionError("down")

    def delete(self, key):
        raise RedisConnectionError("down")

    def scan_iter(self, pattern):
        raise RedisConnectionError("down")


class TestRedisCacheStore(unittest.TestCase):
    def test_round_trip_uses_prefix(self):
        client = FakeRedis()
        store = RedisCacheStore(client, prefix="wc:")
        store.save("forecast", {"version": 1})

        self.assertIn("wc:forecast", client.store)
        self.assertIsInstance(client.store["wc:forecast"], bytes)
        self.assertEqual(store.load("forecast"), {"version": 1})
        self.assertEqual(client.expires, {})

    def test_ttl_uses_setex(self):
        client = FakeRedis()
        store = RedisCacheStore(client, prefix="wc:", ttl_seconds=600)
        store.save("forecast", {"version": 1})
        self.assertEqual(client.expires["wc:forecast"], 600)

    def test_decodes_str_payloads(self):
        client = FakeRedis()
        client.store["wc:meta"] = '{"models": {}}'
        self.assertEqual(RedisCacheStore(client, prefix="wc:").load("meta"), {"models": {}})

    def test_corrupt_payload_is_discarded(self):
        client = FakeRedis()
        client.store["wc:meta"] = b"\xff\xfe"
        self.assertIsNone(RedisCacheStore(client, prefix="wc:").load("meta"))

    def test_clear_only_touches_prefix(self):
        client = FakeRedis()
        client.store["other:key"] = b"{}"
        store = RedisCacheStore(client, prefix="wc:")
        store.save("a", {})
        store.save("b", {})
        store.clear()
        self.assertEqual(list(client.store), ["other:key"])

    def test_connection_errors_are_swallowed(self):
        store = RedisCacheStore(BrokenRedis())
        self.assertIsNone(store.load("forecast"))
        store.save("forecast", {"version": 1})
        store.delete("forecast")
        store.clear()


if __name__ == "__main__":
    unittest.main()
