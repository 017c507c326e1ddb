"""
Tests for the maintenance jobs: profile drift recompute and ANN index
compaction.
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import TEST_DIM, TEST_MODEL, make_recipe, unit
from services.reco.jobs.index_compaction import (
    compaction_loop,
    run_index_compaction,
    tombstone_ratio,
)
from services.reco.jobs.profile_recompute import run_profile_recompute


def _fill(store, n: int) -> None:
    for i in range(n):
        store.upsert(f"r{i}", unit(TEST_DIM, i % TEST_DIM, wobble=0.01 * i), TEST_MODEL, f"h{i}")


# ---------------------------------------------------------------------------
# Profile recompute
# ---------------------------------------------------------------------------

class TestProfileRecompute:
    @pytest.mark.asyncio
    async def test_recomputes_missing_then_skips_clean(self, storage, profiles):
        storage.put_recipe(make_recipe("a1", "u1", categories=("italian",)))
        storage.put_recipe(make_recipe("b1", "u2", categories=("thai",)))

        first = await run_profile_recompute(storage, profiles)
        assert first["status"] == "success"
        assert first["users"] == 2
        assert first["recomputed"] == 2

        second = await run_profile_recompute(storage, profiles)
        assert second["recomputed"] == 0
        assert second["skipped"] == 2

    @pytest.mark.asyncio
    async def test_recomputes_only_drifted_profiles(self, storage, profiles):
        storage.put_recipe(make_recipe("a1", "u1", categories=("italian",)))
        storage.put_recipe(make_recipe("b1", "u2", categories=("thai",)))
        await run_profile_recompute(storage, profiles)

        extra = make_recipe("a2", "u1", categories=("italian",))
        storage.put_recipe(extra)
        await profiles.apply_incremental("u1", extra)

        result = await run_profile_recompute(storage, profiles)
        assert result["recomputed"] == 1
        assert result["skipped"] == 1
        assert (await storage.get_profile("u1")).updates_since_recompute == 0

    @pytest.mark.asyncio
    async def test_force_recomputes_everyone(self, storage, profiles):
        storage.put_recipe(make_recipe("a1", "u1"))
        await run_profile_recompute(storage, profiles)
        result = await run_profile_recompute(storage, profiles, force=True)
        assert result["recomputed"] == 1
        assert result["skipped"] == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_run(self, storage, profiles, monkeypatch):
        storage.put_recipe(make_recipe("a1", "u1"))
        storage.put_recipe(make_recipe("b1", "u2"))
        original = profiles.recompute

        async def flaky(user_id: str):
            if user_id == "u1":
                raise RuntimeError("storage hiccup")
            return await original(user_id)

        monkeypatch.setattr(profiles, "recompute", flaky)
        result = await run_profile_recompute(storage, profiles)
        assert result["failed"] == 1
        assert result["recomputed"] == 1


# ---------------------------------------------------------------------------
# Index compaction
# ---------------------------------------------------------------------------

class TestIndexCompaction:
    @pytest.mark.asyncio
    async def test_skips_without_tombstones(self, store):
        _fill(store, 10)
        result = await run_index_compaction(store, min_tombstone_ratio=0.1)
        assert result["status"] == "skipped"
        assert result["tombstones"] == 0

    @pytest.mark.asyncio
    async def test_skips_below_ratio_unless_forced(self, store):
        _fill(store, 10)
        store.delete("r0")
        assert tombstone_ratio(store) == pytest.approx(0.1)

        skipped = await run_index_compaction(store, min_tombstone_ratio=0.5)
        assert skipped["status"] == "skipped"

        forced = await run_index_compaction(store, min_tombstone_ratio=0.5, force=True)
        assert forced["status"] == "success"
        assert forced["removed"] == 1
        assert forced["live"] == 9
        assert store.tombstones == 0

    @pytest.mark.asyncio
    async def test_compacts_above_ratio(self, store):
        _fill(store, 10)
        store.delete_many(["r1", "r2", "r3"])
        result = await run_index_compaction(store, min_tombstone_ratio=0.2)
        assert result["status"] == "success"
        assert result["removed"] == 3
        assert [rid for rid, _ in store.query(unit(TEST_DIM, 4, wobble=0.04), 1)] == ["r4"]

    @pytest.mark.asyncio
    async def test_loop_runs_until_stopped(self, store):
        _fill(store, 10)
        store.delete_many(["r1", "r2", "r3", "r4", "r5"])
        stop = asyncio.Event()
        task = asyncio.ensure_future(compaction_loop(store, stop, 0.01, 0.1))
        try:
            for _ in range(200):
                if store.tombstones == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            stop.set()
            await asyncio.wait_for(task, 1.0)
        assert store.tombstones == 0
        assert len(store) == 5
