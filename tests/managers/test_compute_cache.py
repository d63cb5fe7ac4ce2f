"""
Unit tests for ComputeCache.
"""

import pytest

from compute_orchestrator.managers.cache import ComputeCache
from compute_orchestrator.managers.types import ComputeInfo


def make_info(compute_id="c1", pod_name="preset-web-00001"):
    return ComputeInfo(
        compute_id=compute_id,
        name=pod_name,
        preset_id="web",
        deployment_name="preset-web",
        pod_name=pod_name,
        labels={"app": "compute", "presetId": "web", "computeId": compute_id},
    )


@pytest.mark.unit
class TestComputeCache:

    def test_put_and_get(self):
        cache = ComputeCache()
        cache.put(make_info())

        info = cache.get("c1")

        assert info.compute_id == "c1"
        assert "c1" in cache
        assert len(cache) == 1

    def test_get_missing(self):
        assert ComputeCache().get("nope") is None

    def test_entries_are_copied(self):
        cache = ComputeCache()
        original = make_info()
        cache.put(original)

        original.labels["team"] = "mutated"
        fetched = cache.get("c1")
        fetched.labels["other"] = "mutated"

        assert cache.get("c1").labels == {"app": "compute", "presetId": "web", "computeId": "c1"}

    def test_put_replaces_entry(self):
        cache = ComputeCache()
        cache.put(make_info(pod_name="old"))
        cache.put(make_info(pod_name="new"))

        assert cache.get("c1").pod_name == "new"
        assert len(cache) == 1

    def test_put_many_and_ids(self):
        cache = ComputeCache()
        cache.put_many([make_info("c1"), make_info("c2")])

        assert sorted(cache.ids()) == ["c1", "c2"]

    def test_evict(self):
        cache = ComputeCache()
        cache.put(make_info())

        cache.evict("c1")
        cache.evict("c1")

        assert "c1" not in cache

    def test_clear(self):
        cache = ComputeCache()
        cache.put_many([make_info("c1"), make_info("c2")])

        cache.clear()

        assert len(cache) == 0


@pytest.mark.unit
class TestEvictionGenerations:
    """put_many(since=...) never restores an id evicted after the listing began."""

    def test_evicted_during_listing_is_skipped(self):
        cache = ComputeCache()
        cache.put(make_info("c1"))
        since = cache.generation()

        cache.evict("c1")
        stored = cache.put_many([make_info("c1"), make_info("c2")], since=since)

        assert stored == 1
        assert "c1" not in cache
        assert "c2" in cache

    def test_evicted_before_listing_is_stored(self):
        cache = ComputeCache()
        cache.evict("c1")
        since = cache.generation()

        cache.put_many([make_info("c1")], since=since)

        assert "c1" in cache

    def test_put_is_unconditional(self):
        cache = ComputeCache()
        since = cache.generation()
        cache.evict("c1")

        cache.put(make_info("c1"))
        cache.put_many([make_info("c1", pod_name="stale")], since=since)

        assert cache.get("c1").pod_name == "preset-web-00001"

    def test_tombstones_are_bounded(self):
        cache = ComputeCache(max_tombstones=2)
        since = cache.generation()
        for compute_id in ("c1", "c2", "c3"):
            cache.evict(compute_id)

        cache.put_many([make_info("c1"), make_info("c3")], since=since)

        assert "c1" in cache
        assert "c3" not in cache
