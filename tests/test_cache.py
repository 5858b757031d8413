"""Tests for grocery_sync.cache module."""

from __future__ import annotations

import asyncio

import pytest

from grocery_sync.cache import ABSENT, CacheKey, CacheKind, EntityCache
from grocery_sync.errors import ApiError, ErrorKind
from grocery_sync.transport import CancelToken

LIST_1 = CacheKey.grocery_list(1)
LIST_2 = CacheKey.grocery_list(2)

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestCacheKey:
    """Tests for CacheKey."""

    def test_equal_keys_hash_equal(self) -> None:
        """Test structurally equal keys address the same entry."""
        assert CacheKey.grocery_list(1) == CacheKey(CacheKind.GROCERY_LIST, 1)
        assert hash(CacheKey.grocery_list(1)) == hash(CacheKey.grocery_list(1))

    def test_scopes_do_not_collide(self) -> None:
        """Test the same id in different kinds gives different keys."""
        assert CacheKey.family_lists(1) != CacheKey.family_pantry(1)
        assert CacheKey.grocery_list(1) != CacheKey.family_lists(1)


# ---------------------------------------------------------------------------
# Plain reads and writes
# ---------------------------------------------------------------------------


class TestEntityCacheBasics:
    """Tests for get, set, invalidate and subscriptions."""

    def test_absent_key(self) -> None:
        """Test an absent key reads as default and stale."""
        cache = EntityCache()
        assert cache.get(LIST_1) is None
        assert cache.get(LIST_1, "fallback") == "fallback"
        assert LIST_1 not in cache
        assert cache.is_stale(LIST_1) is True

    def test_set_and_get(self) -> None:
        """Test a stored value is fresh."""
        cache = EntityCache()
        cache.set(LIST_1, "v1")
        assert cache.get(LIST_1) == "v1"
        assert LIST_1 in cache
        assert cache.is_stale(LIST_1) is False

    def test_invalidate_and_reset(self) -> None:
        """Test invalidate marks stale and set clears it."""
        cache = EntityCache()
        cache.set(LIST_1, "v1")
        cache.invalidate(LIST_1)
        assert cache.is_stale(LIST_1) is True
        assert cache.get(LIST_1) == "v1"
        cache.set(LIST_1, "v2")
        assert cache.is_stale(LIST_1) is False

    def test_invalidate_kind(self) -> None:
        """Test invalidate_kind only touches keys of that kind."""
        cache = EntityCache()
        cache.set(LIST_1, "a")
        cache.set(LIST_2, "b")
        cache.set(CacheKey.personal_lists(), [])
        cache.invalidate_kind(CacheKind.GROCERY_LIST)
        assert cache.is_stale(LIST_1)
        assert cache.is_stale(LIST_2)
        assert not cache.is_stale(CacheKey.personal_lists())

    def test_delete_and_clear(self) -> None:
        """Test delete and clear remove entries."""
        cache = EntityCache()
        cache.set(LIST_1, "a")
        cache.set(LIST_2, "b")
        cache.delete(LIST_1)
        assert cache.keys() == [LIST_2]
        cache.clear()
        assert cache.keys() == []

    def test_subscribe_and_unsubscribe(self) -> None:
        """Test listeners see changes until unsubscribed."""
        cache = EntityCache()
        seen: list[tuple[CacheKey, object]] = []
        unsubscribe = cache.subscribe(
            LIST_1, lambda key, entry: seen.append((key, entry and entry.value))
        )

        cache.set(LIST_1, "a")
        cache.set(LIST_2, "ignored")
        cache.delete(LIST_1)
        unsubscribe()
        cache.set(LIST_1, "after")

        assert seen == [(LIST_1, "a"), (LIST_1, None)]


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class TestGetOrFetch:
    """Tests for get_or_fetch."""

    @pytest.mark.asyncio()
    async def test_fresh_value_skips_loader(self) -> None:
        """Test a fresh entry is returned without loading."""
        cache = EntityCache()
        cache.set(LIST_1, "cached")

        async def loader() -> str:
            raise AssertionError("should not load")

        assert await cache.get_or_fetch(LIST_1, loader) == "cached"

    @pytest.mark.asyncio()
    async def test_concurrent_fetches_share_one_load(self) -> None:
        """Test concurrent readers of a key share one load."""
        cache = EntityCache()
        loads = 0

        async def loader() -> str:
            nonlocal loads
            loads += 1
            await asyncio.sleep(0.01)
            return "server"

        results = await asyncio.gather(
            *(cache.get_or_fetch(LIST_1, loader) for _ in range(4))
        )
        assert results == ["server"] * 4
        assert loads == 1
        assert cache.get(LIST_1) == "server"

    @pytest.mark.asyncio()
    async def test_stale_value_reloaded(self) -> None:
        """Test a stale entry is fetched again."""
        cache = EntityCache()
        cache.set(LIST_1, "old")
        cache.invalidate(LIST_1)

        async def loader() -> str:
            return "new"

        assert await cache.get_or_fetch(LIST_1, loader) == "new"
        assert cache.is_stale(LIST_1) is False

    @pytest.mark.asyncio()
    async def test_failed_load_not_cached(self) -> None:
        """Test a failing loader leaves the key absent and can be retried."""
        cache = EntityCache()

        async def failing() -> str:
            raise RuntimeError("boom")

        async def working() -> str:
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_fetch(LIST_1, failing)
        assert LIST_1 not in cache
        assert await cache.get_or_fetch(LIST_1, working) == "ok"

    @pytest.mark.asyncio()
    async def test_fetch_during_write_is_discarded(self) -> None:
        """Test a load finishing mid-write does not overwrite the write."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")
        cache.invalidate(LIST_1)
        write = await cache.begin_optimistic(LIST_1, lambda _v: "optimistic")

        async def loader() -> str:
            return "server"

        assert await cache.get_or_fetch(LIST_1, loader) == "server"
        assert cache.get(LIST_1) == "optimistic"
        cache.rollback(write)
        assert cache.get(LIST_1) == "v0"

    @pytest.mark.asyncio()
    async def test_cancelled_caller_does_not_cancel_shared_load(self) -> None:
        """Test one caller's token only abandons that caller's wait."""
        cache = EntityCache()
        release = asyncio.Event()

        async def loader() -> str:
            await release.wait()
            return "server"

        token = CancelToken()
        impatient = asyncio.create_task(
            cache.get_or_fetch(LIST_1, loader, cancel=token)
        )
        patient = asyncio.create_task(cache.get_or_fetch(LIST_1, loader))
        await asyncio.sleep(0.01)

        token.cancel()
        with pytest.raises(ApiError) as exc_info:
            await impatient
        release.set()

        assert exc_info.value.kind is ErrorKind.CANCELLED
        assert await patient == "server"
        assert cache.get(LIST_1) == "server"

    @pytest.mark.asyncio()
    async def test_already_cancelled_token_skips_load(self) -> None:
        """Test a cancelled token fails before any load starts."""
        cache = EntityCache()
        token = CancelToken()
        token.cancel()

        async def loader() -> str:
            raise AssertionError("should not load")

        with pytest.raises(ApiError):
            await cache.get_or_fetch(LIST_1, loader, cancel=token)


# ---------------------------------------------------------------------------
# Optimistic writes
# ---------------------------------------------------------------------------


class TestOptimisticWrites:
    """Tests for begin_optimistic, commit and rollback."""

    @pytest.mark.asyncio()
    async def test_value_visible_before_commit(self) -> None:
        """Test readers see the optimistic value immediately."""
        cache = EntityCache()
        cache.set(LIST_1, [1, 2])
        write = await cache.begin_optimistic(LIST_1, lambda v: [*v, 3])

        assert cache.get(LIST_1) == [1, 2, 3]
        assert cache.entry(LIST_1).previous_snapshot == [1, 2]
        assert cache.is_writing(LIST_1)
        cache.commit(write)

    @pytest.mark.asyncio()
    async def test_commit_without_server_value_marks_stale(self) -> None:
        """Test committing keeps the optimistic value and marks it stale."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")
        write = await cache.begin_optimistic(LIST_1, lambda _v: "v1")
        cache.commit(write)

        entry = cache.entry(LIST_1)
        assert entry.value == "v1"
        assert entry.stale is True
        assert entry.previous_snapshot is ABSENT
        assert not cache.is_writing(LIST_1)

    @pytest.mark.asyncio()
    async def test_commit_with_server_value(self) -> None:
        """Test a server value replaces the optimistic one and is fresh."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")
        write = await cache.begin_optimistic(LIST_1, lambda _v: "v1")
        cache.commit(write, server_value="server")

        assert cache.get(LIST_1) == "server"
        assert cache.is_stale(LIST_1) is False

    @pytest.mark.asyncio()
    async def test_rollback_restores_exact_snapshot(self) -> None:
        """Test rollback puts back the very object that was replaced."""
        cache = EntityCache()
        original = {"items": [1, 2]}
        cache.set(LIST_1, original)
        write = await cache.begin_optimistic(
            LIST_1, lambda v: {"items": [*v["items"], 3]}
        )
        cache.rollback(write)

        assert cache.get(LIST_1) is original
        assert original == {"items": [1, 2]}
        assert cache.entry(LIST_1).previous_snapshot is ABSENT
        assert not cache.is_writing(LIST_1)

    @pytest.mark.asyncio()
    async def test_rollback_of_new_key_removes_it(self) -> None:
        """Test rolling back a write to an absent key leaves it absent."""
        cache = EntityCache()
        write = await cache.begin_optimistic(LIST_1, lambda _v: "created")
        assert cache.get(LIST_1) == "created"
        cache.rollback(write)
        assert LIST_1 not in cache

    @pytest.mark.asyncio()
    async def test_updater_none_on_absent_key(self) -> None:
        """Test an updater returning None for an absent key stores nothing."""
        cache = EntityCache()
        write = await cache.begin_optimistic(LIST_1, lambda _v: None)
        assert LIST_1 not in cache
        cache.commit(write)
        assert LIST_1 not in cache

    @pytest.mark.asyncio()
    async def test_updater_error_releases_lock(self) -> None:
        """Test a failing updater does not leave the key locked."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")

        def broken(_v: object) -> object:
            raise ValueError("bad update")

        with pytest.raises(ValueError, match="bad update"):
            await cache.begin_optimistic(LIST_1, broken)
        assert not cache.is_writing(LIST_1)
        assert cache.get(LIST_1) == "v0"

    @pytest.mark.asyncio()
    async def test_second_writer_waits_in_order(self) -> None:
        """Test a later write on the same key waits and sees the first result."""
        cache = EntityCache()
        cache.set(LIST_1, ["a"])
        first = await cache.begin_optimistic(LIST_1, lambda v: [*v, "b"])

        second_task = asyncio.create_task(
            cache.begin_optimistic(LIST_1, lambda v: [*v, "c"])
        )
        await asyncio.sleep(0.01)
        assert not second_task.done()

        cache.commit(first, server_value=["a", "b"])
        second = await second_task
        assert cache.get(LIST_1) == ["a", "b", "c"]
        assert second.snapshot == ["a", "b"]
        cache.rollback(second)
        assert cache.get(LIST_1) == ["a", "b"]

    @pytest.mark.asyncio()
    async def test_writes_on_other_keys_do_not_wait(self) -> None:
        """Test locks are per key."""
        cache = EntityCache()
        first = await cache.begin_optimistic(LIST_1, lambda _v: "x")
        second = await asyncio.wait_for(
            cache.begin_optimistic(LIST_2, lambda _v: "y"), timeout=1
        )
        cache.commit(first)
        cache.commit(second)

    @pytest.mark.asyncio()
    async def test_settled_writes_drop_their_locks(self) -> None:
        """Test no lock outlives the writers that used it."""
        cache = EntityCache()
        first = await cache.begin_optimistic(LIST_1, lambda _v: "a")
        queued = asyncio.create_task(
            cache.begin_optimistic(LIST_1, lambda _v: "b")
        )
        await asyncio.sleep(0.01)
        other = await cache.begin_optimistic(LIST_2, lambda _v: "c")

        cache.commit(first)
        cache.rollback(await queued)
        cache.commit(other, server_value="c")

        assert cache._locks == {}
        assert cache._lock_users == {}

    @pytest.mark.asyncio()
    async def test_cancelled_waiting_writer_drops_its_claim(self) -> None:
        """Test a writer cancelled while queued does not pin the lock."""
        cache = EntityCache()
        first = await cache.begin_optimistic(LIST_1, lambda _v: "a")
        queued = asyncio.create_task(
            cache.begin_optimistic(LIST_1, lambda _v: "b")
        )
        await asyncio.sleep(0.01)

        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued
        cache.commit(first)

        assert cache._locks == {}
        assert not cache.is_writing(LIST_1)

    @pytest.mark.asyncio()
    async def test_settle_twice_is_noop(self) -> None:
        """Test a settled write ignores further commit / rollback calls."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")
        write = await cache.begin_optimistic(LIST_1, lambda _v: "v1")
        cache.commit(write, server_value="v1")
        cache.rollback(write)
        assert cache.get(LIST_1) == "v1"

    @pytest.mark.asyncio()
    async def test_context_manager_rolls_back_on_error(self) -> None:
        """Test the optimistic() block rolls back when it raises."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")

        with pytest.raises(RuntimeError):
            async with cache.optimistic(LIST_1, lambda _v: "v1"):
                assert cache.get(LIST_1) == "v1"
                raise RuntimeError("request failed")

        assert cache.get(LIST_1) == "v0"
        assert not cache.is_writing(LIST_1)

    @pytest.mark.asyncio()
    async def test_context_manager_commits(self) -> None:
        """Test the optimistic() block stores a replaced value on exit."""
        cache = EntityCache()
        cache.set(LIST_1, "v0")

        async with cache.optimistic(LIST_1, lambda _v: "v1") as write:
            write.value = "server"

        assert cache.get(LIST_1) == "server"
        assert cache.is_stale(LIST_1) is False
