"""
Tests for the request deduplication cache.
"""

import threading

from auditpipe.core.dedup import DedupCache, DedupKey, normalize_url


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestDedupKey:
    """Test key normalisation."""

    def test_url_normalisation(self) -> None:
        assert normalize_url("/API/Cidadao/") == "/api/cidadao"
        assert normalize_url("/api/cidadao?b=2&a=1") == "/api/cidadao?a=1&b=2"
        assert normalize_url("") == "/"

    def test_equivalent_requests_share_digest(self) -> None:
        first = DedupKey.build("get", "/api/cidadao/1?b=2&a=1", "u1", "10.0.0.1")
        second = DedupKey.build("GET", "/API/cidadao/1/?a=1&b=2", "u1", "10.0.0.1")

        assert first.digest == second.digest

    def test_ids_users_and_ips_keep_requests_apart(self) -> None:
        base = DedupKey.build("GET", "/api/cidadao/1", "u1", "10.0.0.1")

        assert base.digest != DedupKey.build("GET", "/api/cidadao/2", "u1", "10.0.0.1").digest
        assert base.digest != DedupKey.build("GET", "/api/cidadao/1", "u2", "10.0.0.1").digest
        assert base.digest != DedupKey.build("GET", "/api/cidadao/1", "u1", "10.0.0.2").digest
        assert base.digest != DedupKey.build("POST", "/api/cidadao/1", "u1", "10.0.0.1").digest

    def test_missing_identity_defaults(self) -> None:
        key = DedupKey.build("GET", "/x", None, None)

        assert key.user_id == "anonymous"
        assert key.client_ip == "unknown"


class TestDedupCache:
    """Test TTL window behaviour."""

    def test_check_and_mark_within_window(self) -> None:
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=5.0, clock=clock)
        key = DedupKey.build("GET", "/api/cidadao/1", "u1", "ip")

        assert cache.check_and_mark(key) is not None
        assert cache.is_processed(key)
        clock.now += 4.9
        assert cache.check_and_mark(key) is None

    def test_entry_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=5.0, clock=clock)
        key = DedupKey.build("GET", "/api/cidadao/1", "u1", "ip")

        cache.mark_processed(key)
        clock.now += 5.0

        assert not cache.is_processed(key)
        assert cache.check_and_mark(key) is not None

    def test_clear_allows_new_event_set(self) -> None:
        cache = DedupCache()
        key = DedupKey.build("GET", "/x", "u", "ip")

        cache.check_and_mark(key)
        cache.clear()

        assert len(cache) == 0
        assert cache.check_and_mark(key) is not None

    def test_sweep_removes_expired_entries(self) -> None:
        clock = FakeClock()
        cache = DedupCache(ttl_seconds=5.0, clock=clock)
        cache.mark_processed(DedupKey.build("GET", "/a", "u", "ip"))
        clock.now += 3
        cache.mark_processed(DedupKey.build("GET", "/b", "u", "ip"))
        clock.now += 3

        assert cache.sweep() == 1
        assert len(cache) == 1

    def test_oldest_entries_evicted_at_capacity(self) -> None:
        cache = DedupCache(max_entries=2)
        keys = [DedupKey.build("GET", f"/item/{i}", "u", "ip") for i in range(3)]
        for key in keys:
            cache.mark_processed(key)

        assert len(cache) == 2
        assert not cache.is_processed(keys[0])
        assert cache.is_processed(keys[2])

    def test_concurrent_identical_requests_get_one_token(self) -> None:
        cache = DedupCache(ttl_seconds=60)
        key = DedupKey.build("POST", "/api/pagamento", "u1", "10.0.0.1")
        tokens = []
        barrier = threading.Barrier(16)

        def worker() -> None:
            barrier.wait()
            tokens.append(cache.check_and_mark(key))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([token for token in tokens if token is not None]) == 1
