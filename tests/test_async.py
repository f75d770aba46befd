"""Tests for asynchronous definitions."""

import asyncio

import pytest

from podgraph import (
    AsyncData,
    AsyncError,
    AsyncLoading,
    Container,
    NodeState,
    UsageError,
    provider,
    state_provider,
)


class TestAsyncDefinitions:
    @pytest.mark.asyncio
    async def test_pending_then_ready(self):
        @provider
        async def todos(ref):
            await asyncio.sleep(0)
            return ["buy milk", "walk dog"]

        c = Container()
        seen = []
        c.listen(todos, lambda prev, value: seen.append(value), fire_immediately=True)
        assert c.read(todos) == AsyncLoading()
        assert c.node_state(todos) is NodeState.PENDING

        assert await c.resolve(todos) == ["buy milk", "walk dog"]
        assert seen == [AsyncLoading(), AsyncData(["buy milk", "walk dog"])]
        assert c.read(todos) == AsyncData(["buy milk", "walk dog"])
        assert c.node_state(todos) is NodeState.READY

    @pytest.mark.asyncio
    async def test_error(self):
        @provider
        async def failing(ref):
            await asyncio.sleep(0)
            raise ConnectionError("offline")

        c = Container()
        seen = []
        c.listen(failing, lambda prev, value: seen.append(value))
        with pytest.raises(ConnectionError):
            await c.resolve(failing)
        value = c.read(failing)
        assert isinstance(value, AsyncError)
        assert isinstance(value.error, ConnectionError)
        assert c.node_state(failing) is NodeState.ERROR
        assert len(seen) == 1 and seen[0].has_error

    def test_needs_running_loop(self):
        @provider
        async def remote(ref):
            return 1

        c = Container()
        with pytest.raises(UsageError):
            c.read(remote)
        assert c.node_state(remote) is NodeState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_stale_completion_discarded(self):
        gate = asyncio.Event()
        version = {"n": 0}

        @provider
        async def slow(ref):
            n = version["n"]
            if n == 0:
                await gate.wait()
            return n

        c = Container()
        seen = []
        c.listen(slow, lambda prev, value: seen.append(value))
        await asyncio.sleep(0)

        version["n"] = 1
        c.invalidate(slow)  # supersedes generation 1 while it waits
        gate.set()
        assert await c.resolve(slow) == 1
        await asyncio.sleep(0)
        assert seen == [AsyncLoading(), AsyncData(1)]
        assert c.read(slow) == AsyncData(1)

    @pytest.mark.asyncio
    async def test_dispose_while_pending(self):
        gate = asyncio.Event()
        alive_after = []

        @provider(auto_dispose=True)
        async def slow(ref):
            await gate.wait()
            alive_after.append(ref.mounted)
            return 1

        c = Container()
        sub = c.listen(slow, lambda prev, value: None)
        await asyncio.sleep(0)
        sub.close()
        assert not c.exists(slow)

        gate.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert alive_after == [False]

    @pytest.mark.asyncio
    async def test_watch_after_await(self):
        multiplier = state_provider(lambda ref: 2)

        @provider
        async def scaled(ref):
            await asyncio.sleep(0)
            return ref.watch(multiplier) * 10

        c = Container()
        c.listen(scaled, lambda prev, value: None)
        assert await c.resolve(scaled) == 20

        c.set(multiplier, 3)
        assert c.read(scaled) == AsyncLoading()
        assert await c.resolve(scaled) == 30

    @pytest.mark.asyncio
    async def test_future_of_other_async(self):
        @provider
        async def user(ref):
            await asyncio.sleep(0)
            return "ada"

        @provider
        async def greeting(ref):
            name = await ref.future(user)
            return f"hello {name}"

        c = Container()
        assert await c.resolve(greeting) == "hello ada"

    @pytest.mark.asyncio
    async def test_sync_dependent_sees_async_value(self):
        @provider
        async def count(ref):
            await asyncio.sleep(0)
            return 3

        label = provider(
            lambda ref: ref.watch(count).when(
                data=lambda n: f"{n} items",
                error=lambda e: "failed",
                loading=lambda: "loading",
            )
        )

        c = Container()
        seen = []
        c.listen(label, lambda prev, value: seen.append(value), fire_immediately=True)
        await c.resolve(count)
        assert seen == ["loading", "3 items"]

    @pytest.mark.asyncio
    async def test_container_dispose_cancels(self):
        gate = asyncio.Event()
        cancelled = []

        @provider
        async def forever(ref):
            try:
                await gate.wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        c = Container()
        c.read(forever)
        await asyncio.sleep(0)
        c.dispose()
        await asyncio.sleep(0)
        assert cancelled == [True]
