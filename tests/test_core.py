"""wabridge – Core primitives.

Tests: keyed locks, reply timers, tenant registries, AI conversation
history.
"""

import asyncio

import pytest

from wabridge.core.keyed_lock import KeyedLock
from wabridge.core.registry import Registry
from wabridge.core.timers import ReplyScheduler
from wabridge.memory.context import ConversationContext


# ──────────────────────────────────────────
# KeyedLock
# ──────────────────────────────────────────


class TestKeyedLock:
    @pytest.mark.anyio
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str, pause: float) -> None:
            async with locks.hold("t1:chat"):
                order.append(f"{name}-in")
                await asyncio.sleep(pause)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", 0.02), worker("b", 0))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.anyio
    async def test_different_keys_run_concurrently(self) -> None:
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("t1:a"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def other() -> None:
            async with locks.hold("t1:b"):
                inside.set()

        await asyncio.gather(holder(), other())

    @pytest.mark.anyio
    async def test_entries_are_released(self) -> None:
        locks = KeyedLock()
        async with locks.hold("k"):
            assert locks.is_locked("k")
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_locked("k")

    @pytest.mark.anyio
    async def test_released_after_exception(self) -> None:
        locks = KeyedLock()
        with pytest.raises(ValueError):
            async with locks.hold("k"):
                raise ValueError("boom")
        assert len(locks) == 0


# ──────────────────────────────────────────
# ReplyScheduler
# ──────────────────────────────────────────


class TestReplyScheduler:
    @pytest.mark.anyio
    async def test_action_runs_after_delay(self) -> None:
        scheduler = ReplyScheduler()
        fired: list[str] = []

        async def action() -> None:
            fired.append("sent")

        scheduler.schedule("t1", "c1", 0.01, action)
        assert scheduler.pending("t1") == 1
        await scheduler.drain()
        assert fired == ["sent"]
        assert scheduler.pending("t1") == 0

    @pytest.mark.anyio
    async def test_cancel_tenant_only_hits_that_tenant(self) -> None:
        scheduler = ReplyScheduler()
        fired: list[str] = []

        def make(tag: str):
            async def action() -> None:
                fired.append(tag)
            return action

        scheduler.schedule("t1", "c1", 10, make("t1"))
        scheduler.schedule("t1", "c2", 10, make("t1"))
        scheduler.schedule("t2", "c1", 0, make("t2"))

        assert scheduler.cancel_tenant("t1") == 2
        await scheduler.drain()
        assert fired == ["t2"]
        assert scheduler.pending("t1") == 0

    @pytest.mark.anyio
    async def test_failing_action_is_contained(self) -> None:
        scheduler = ReplyScheduler()

        async def action() -> None:
            raise RuntimeError("connection closed")

        task = scheduler.schedule("t1", "c1", 0, action)
        await scheduler.drain()
        assert task.exception() is None

    @pytest.mark.anyio
    async def test_pending_per_chat(self) -> None:
        scheduler = ReplyScheduler()

        async def noop() -> None:
            return None

        scheduler.schedule("t1", "c1", 10, noop)
        scheduler.schedule("t1", "c2", 10, noop)
        assert scheduler.pending("t1", "c1") == 1
        assert scheduler.pending("t1") == 2
        scheduler.cancel_tenant("t1")
        await scheduler.drain()


# ──────────────────────────────────────────
# Registry
# ──────────────────────────────────────────


class TestRegistry:
    def test_factory_creates_once(self) -> None:
        registry: Registry[list] = Registry(list)
        first = registry.get_or_create("t1")
        first.append("x")
        assert registry.get_or_create("t1") == ["x"]
        assert "t1" in registry
        assert len(registry) == 1

    def test_without_factory(self) -> None:
        registry: Registry[int] = Registry()
        assert registry.get("t1") is None
        with pytest.raises(KeyError):
            registry.get_or_create("t1")
        registry.set("t1", 3)
        assert registry.items() == [("t1", 3)]

    def test_pop_and_iterate(self) -> None:
        registry: Registry[int] = Registry(int)
        for tenant in ("a", "b"):
            registry.get_or_create(tenant)
        for tenant in registry:
            registry.pop(tenant)
        assert registry.keys() == []
        assert registry.pop("a") is None


# ──────────────────────────────────────────
# ConversationContext
# ──────────────────────────────────────────


class TestConversationContext:
    def test_turns_are_bounded(self) -> None:
        context = ConversationContext(max_turns=3)
        for i in range(5):
            context.add_turn("t1", "u1", "user", f"m{i}")
        history = context.get_context("t1", "u1")
        assert [turn["content"] for turn in history] == ["m2", "m3", "m4"]

    def test_tenants_are_isolated(self) -> None:
        context = ConversationContext()
        context.add_turn("t1", "u1", "user", "halo")
        assert context.get_context("t2", "u1") == []

    def test_clear_tenant(self) -> None:
        context = ConversationContext()
        context.add_turn("t1", "u1", "user", "a")
        context.add_turn("t1", "u2", "user", "b")
        context.add_turn("t2", "u1", "user", "c")
        context.clear_tenant("t1")
        assert context.get_user_count() == 1

    def test_expired_history_is_dropped(self) -> None:
        context = ConversationContext(ttl_seconds=60)
        context.add_turn("t1", "u1", "user", "lama")
        context._last_access[context.key("t1", "u1")] -= 120
        assert context.get_context("t1", "u1") == []
