"""
Tests for the quote/sentiment cache.

Covers TTL boundaries, key layout, the shared file backends and error
propagation.
"""

import json
from unittest.mock import MagicMock

import pytest

from core.exceptions import CacheError
from infra.quote_cache import (
    PRICE_TTL_SECONDS,
    CacheKind,
    JsonFileCacheBackend,
    MemoryCacheBackend,
    QuoteCache,
    SQLiteCacheBackend,
    cache_key,
    create_quote_cache_from_config,
)


def test_cache_key_layout():
    assert cache_key(CacheKind.PRICE, "PHA") == "price:PHA"
    assert cache_key(CacheKind.SENTIMENT, "SUI") == "sentiment:SUI"


def test_price_ttl_is_five_minutes():
    assert PRICE_TTL_SECONDS == 300


class TestTTL:
    """Entries live while elapsed < ttl and are gone at elapsed >= ttl"""

    def test_hit_just_before_expiry(self, memory_cache, clock):
        memory_cache.set(CacheKind.PRICE, "PHA", 0.21, ttl_seconds=300)
        clock.advance(299.999)
        assert memory_cache.get(CacheKind.PRICE, "PHA") == 0.21

    def test_miss_at_exact_expiry(self, memory_cache, clock):
        memory_cache.set(CacheKind.PRICE, "PHA", 0.21, ttl_seconds=300)
        clock.advance(300)
        assert memory_cache.get(CacheKind.PRICE, "PHA") is None

    def test_miss_for_unknown_key(self, memory_cache):
        assert memory_cache.get(CacheKind.SENTIMENT, "NOPE") is None

    def test_kinds_do_not_collide(self, memory_cache):
        memory_cache.set(CacheKind.PRICE, "SUI", 3.1, ttl_seconds=300)
        memory_cache.set(CacheKind.SENTIMENT, "SUI", 0.64, ttl_seconds=3600)
        assert memory_cache.get(CacheKind.PRICE, "SUI") == 3.1
        assert memory_cache.get(CacheKind.SENTIMENT, "SUI") == 0.64

    def test_set_overwrites_and_restarts_ttl(self, memory_cache, clock):
        memory_cache.set(CacheKind.PRICE, "PHA", 0.20, ttl_seconds=300)
        clock.advance(200)
        memory_cache.set(CacheKind.PRICE, "PHA", 0.22, ttl_seconds=300)
        clock.advance(200)
        assert memory_cache.get(CacheKind.PRICE, "PHA") == 0.22

    def test_ttl_remaining(self, memory_cache, clock):
        memory_cache.set(CacheKind.SENTIMENT, "DUSK", 0.4, ttl_seconds=3600)
        clock.advance(600)
        assert memory_cache.ttl_remaining(CacheKind.SENTIMENT, "DUSK") == pytest.approx(3000)
        clock.advance(3000)
        assert memory_cache.ttl_remaining(CacheKind.SENTIMENT, "DUSK") is None

    def test_purge_expired(self, memory_cache, clock):
        memory_cache.set(CacheKind.PRICE, "PHA", 0.2, ttl_seconds=10)
        memory_cache.set(CacheKind.SENTIMENT, "PHA", 0.5, ttl_seconds=100)
        clock.advance(50)
        assert memory_cache.purge_expired() == 1
        assert memory_cache.get(CacheKind.SENTIMENT, "PHA") == 0.5


class TestSharedBackends:
    """Two cache instances over one file see each other's writes"""

    @pytest.mark.parametrize("backend_cls,filename", [
        (JsonFileCacheBackend, "cache.json"),
        (SQLiteCacheBackend, "cache.db"),
    ])
    def test_shared_between_instances(self, tmp_path, clock, backend_cls, filename):
        path = tmp_path / filename
        writer = QuoteCache(backend=backend_cls(path), clock=clock)
        reader = QuoteCache(backend=backend_cls(path), clock=clock)

        writer.set(CacheKind.PRICE, "SUI", 3.05, ttl_seconds=300)
        assert reader.get(CacheKind.PRICE, "SUI") == 3.05

        clock.advance(300)
        assert reader.get(CacheKind.PRICE, "SUI") is None
        assert reader.purge_expired() == 1

    def test_json_backend_leaves_no_temp_files(self, tmp_path, clock):
        path = tmp_path / "cache.json"
        cache = QuoteCache(backend=JsonFileCacheBackend(path), clock=clock)
        cache.set(CacheKind.PRICE, "PHA", 0.2, ttl_seconds=300)
        cache.set(CacheKind.PRICE, "SUI", 3.0, ttl_seconds=300)

        assert [p.name for p in tmp_path.iterdir()] == ["cache.json"]
        data = json.loads(path.read_text())
        assert set(data) == {"price:PHA", "price:SUI"}

    def test_corrupt_json_file_raises_cache_error(self, tmp_path, clock):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        cache = QuoteCache(backend=JsonFileCacheBackend(path), clock=clock)
        with pytest.raises(CacheError) as exc_info:
            cache.get(CacheKind.PRICE, "PHA")
        assert exc_info.value.key == "price:PHA"


class TestErrors:
    """Backend failures surface as CacheError, never as a miss"""

    def test_read_failure(self, clock):
        backend = MagicMock()
        backend.describe.return_value = "broken"
        backend.read.side_effect = OSError("disk gone")
        cache = QuoteCache(backend=backend, clock=clock)

        with pytest.raises(CacheError) as exc_info:
            cache.get(CacheKind.PRICE, "PHA")
        assert exc_info.value.operation == "get"
        assert isinstance(exc_info.value.original, OSError)

    def test_write_failure(self, clock):
        backend = MagicMock()
        backend.describe.return_value = "broken"
        backend.write.side_effect = OSError("read-only")
        cache = QuoteCache(backend=backend, clock=clock)

        with pytest.raises(CacheError) as exc_info:
            cache.set(CacheKind.SENTIMENT, "SUI", 0.5, ttl_seconds=60)
        assert exc_info.value.operation == "set"
        assert exc_info.value.key == "sentiment:SUI"


class TestFactory:
    def test_default_is_memory(self):
        assert create_quote_cache_from_config(None).describe() == "memory"

    def test_sqlite(self, tmp_path):
        cache = create_quote_cache_from_config({"cache_backend": "sqlite", "cache_path": str(tmp_path / "c.db")})
        assert cache.describe().startswith("sqlite:")

    def test_json(self, tmp_path):
        cache = create_quote_cache_from_config({"cache_backend": "json", "cache_path": str(tmp_path / "c.json")})
        assert cache.describe().startswith("json:")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unsupported cache backend"):
            create_quote_cache_from_config({"cache_backend": "redis"})

    def test_memory_backend_is_isolated(self):
        a = QuoteCache(backend=MemoryCacheBackend())
        b = QuoteCache(backend=MemoryCacheBackend())
        a.set(CacheKind.PRICE, "PHA", 1.0, ttl_seconds=60)
        assert b.get(CacheKind.PRICE, "PHA") is None
