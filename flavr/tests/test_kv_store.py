"""TTL key-value store tests."""

from unittest.mock import MagicMock

from flavr.core.kv_store import InMemoryTTLStore, RedisTTLStore


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_in_memory_entries_expire():
    clock = FakeClock()
    kv = InMemoryTTLStore(time_fn=clock)
    kv.set("lock", "a", 30)

    clock.now += 29
    assert kv.get("lock") == "a"
    clock.now += 1
    assert kv.get("lock") is None


def test_in_memory_only_if_absent():
    clock = FakeClock()
    kv = InMemoryTTLStore(time_fn=clock)

    assert kv.set("lock", "a", 30, only_if_absent=True) is True
    assert kv.set("lock", "b", 30, only_if_absent=True) is False
    assert kv.get("lock") == "a"

    clock.now += 31
    assert kv.set("lock", "b", 30, only_if_absent=True) is True


def test_in_memory_delete():
    kv = InMemoryTTLStore()
    kv.set("k", "v", 10)
    kv.delete("k")
    kv.delete("missing")
    assert kv.get("k") is None


def test_redis_store_uses_set_nx_with_expiry():
    client = MagicMock()
    client.set.return_value = None
    kv = RedisTTLStore(client=client)

    assert kv.set("lock:subscription-sync", "tok", 3600, only_if_absent=True) is False
    client.set.assert_called_once_with("flavr:lock:subscription-sync", "tok", ex=3600, nx=True)


def test_redis_store_get_and_delete():
    client = MagicMock()
    client.get.return_value = b"tok"
    kv = RedisTTLStore(client=client, prefix="test:")

    assert kv.get("k") == "tok"
    kv.delete("k")
    client.get.assert_called_once_with("test:k")
    client.delete.assert_called_once_with("test:k")


def test_in_memory_delete_if_equals():
    kv = InMemoryTTLStore()
    kv.set("lock", "mine", 30)

    assert kv.delete_if_equals("lock", "theirs") is False
    assert kv.get("lock") == "mine"
    assert kv.delete_if_equals("lock", "mine") is True
    assert kv.get("lock") is None
    assert kv.delete_if_equals("lock", "mine") is False


def test_redis_delete_if_equals_is_one_script_call():
    client = MagicMock()
    client.eval.return_value = 0
    kv = RedisTTLStore(client=client)

    assert kv.delete_if_equals("lock:subscription-sync", "tok") is False
    script, numkeys, key, value = client.eval.call_args.args
    assert "GET" in script and "DEL" in script
    assert (numkeys, key, value) == (1, "flavr:lock:subscription-sync", "tok")
    client.delete.assert_not_called()
