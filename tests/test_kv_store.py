import unittest
from unittest.mock import MagicMock, patch

import redis

from kv_store import KeyValueStore


class InMemoryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = KeyValueStore(None)

    def test_backend_is_memory_without_url(self) -> None:
        self.assertEqual(self.store.backend, "memory")

    def test_expiry(self) -> None:
        with patch("kv_store.time.time", return_value=1000.0):
            self.store.set("k", "v", ex=5)
        with patch("kv_store.time.time", return_value=1004.0):
            self.assertEqual(self.store.get("k"), "v")
        with patch("kv_store.time.time", return_value=1006.0):
            self.assertIsNone(self.store.get("k"))

    def test_json_round_trip_and_bad_json(self) -> None:
        self.store.set_json("j", {"a": [1, 2]})
        self.assertEqual(self.store.get_json("j"), {"a": [1, 2]})
        self.store.set("bad", "{not json")
        self.assertIsNone(self.store.get_json("bad"))

    def test_delete(self) -> None:
        self.store.set("gone", "1")
        self.store.delete("gone")
        self.assertIsNone(self.store.get("gone"))


class RedisFallbackTests(unittest.TestCase):
    def test_redis_errors_fall_back_to_local(self) -> None:
        store = KeyValueStore(None)
        client = MagicMock()
        client.set.side_effect = redis.exceptions.ConnectionError("down")
        client.get.side_effect = redis.exceptions.ConnectionError("down")
        store._redis = client

        self.assertEqual(store.backend, "redis")
        store.set("a", "1")
        self.assertEqual(store.get("a"), "1")

    def test_redis_used_when_healthy(self) -> None:
        store = KeyValueStore(None)
        client = MagicMock()
        client.get.return_value = "from-redis"
        store._redis = client

        store.set("a", "1", ex=10)
        client.set.assert_called_once_with("a", "1", ex=10)
        self.assertEqual(store.get("a"), "from-redis")


if __name__ == "__main__":
    unittest.main()
