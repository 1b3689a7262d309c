from conftest import FakeClock
from watchtower.services.cache import MemoryLRUCache


def make_cache(max_bytes=100, max_items=10, ttl=60, clock=None):
    return MemoryLRUCache(max_bytes, max_items, ttl, clock=clock or FakeClock())


def test_get_returns_stored_value():
    cache = make_cache()
    cache.set("a", b"1234")
    assert cache.get("a") == b"1234"
    assert cache.total_bytes == 4
    assert "a" in cache


def test_byte_budget_evicts_least_recently_used():
    cache = make_cache(max_bytes=10)
    cache.set("a", b"xxxx")
    cache.set("b", b"xxxx")
    cache.get("a")
    cache.set("c", b"xxxx")

    assert cache.keys() == ["a", "c"]
    assert cache.total_bytes == 8


def test_total_size_never_exceeds_budget():
    cache = make_cache(max_bytes=50, max_items=1000)
    for i in range(200):
        cache.set(f"k{i}", b"x" * (i % 17 + 1))
        assert cache.total_bytes <= 50
    assert cache.total_bytes == sum(len(cache.get(k)) for k in cache.keys())


def test_oversized_value_is_rejected():
    cache = make_cache(max_bytes=10)
    cache.set("small", b"xx")
    assert cache.set("huge", b"x" * 11) is False
    assert "huge" not in cache
    assert cache.get("small") == b"xx"


def test_replacing_a_key_updates_size():
    cache = make_cache()
    cache.set("a", b"x" * 10)
    cache.set("a", b"x" * 3)
    assert cache.total_bytes == 3
    assert len(cache) == 1


def test_item_count_bound():
    cache = make_cache(max_bytes=1000, max_items=3)
    for key in "abcd":
        cache.set(key, b"x")
    assert cache.keys() == ["b", "c", "d"]


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = make_cache(ttl=60, clock=clock)
    cache.set("a", b"x")

    clock.advance(59)
    assert cache.get("a") == b"x"

    clock.advance(1)
    assert cache.get("a") is None
    assert cache.total_bytes == 0


def test_expired_entries_are_swept_on_insert():
    clock = FakeClock()
    cache = make_cache(ttl=10, clock=clock)
    cache.set("old", b"xxxx")
    clock.advance(11)
    cache.set("new", b"x")
    assert cache.keys() == ["new"]
    assert cache.total_bytes == 1


def test_delete_and_clear():
    cache = make_cache()
    cache.set("a", b"x")
    cache.set("b", b"xy")
    cache.delete("a")
    cache.delete("missing")
    assert cache.keys() == ["b"]

    cache.clear()
    assert len(cache) == 0
    assert cache.stats() == {
        "memorySize": 0,
        "memoryItems": 0,
        "memoryMaxSize": 100,
        "memoryMaxItems": 10,
    }


def test_custom_size_function():
    cache = MemoryLRUCache(max_bytes=10, max_items=10, ttl_seconds=60, size_of=lambda v: v["size"])
    cache.set("a", {"size": 6})
    cache.set("b", {"size": 6})
    assert cache.keys() == ["b"]


def test_make_key_is_stable_md5():
    assert MemoryLRUCache.make_key("/library/1/thumb") == MemoryLRUCache.make_key("/library/1/thumb")
    assert len(MemoryLRUCache.make_key("x")) == 32
