from __future__ import annotations

import asyncio
from typing import List

import pytest

from localchain.runtime.single_writer import SerialQueue


@pytest.mark.asyncio
async def test_hold_admits_in_fifo_order() -> None:
    q = SerialQueue("t")
    order: List[int] = []
    inside = 0
    max_inside = 0

    async def _worker(i: int) -> None:
        nonlocal inside, max_inside
        async with q.hold():
            inside += 1
            max_inside = max(max_inside, inside)
            order.append(i)
            await asyncio.sleep(0)
            inside -= 1

    await asyncio.gather(*(_worker(i) for i in range(10)))

    assert order == list(range(10))
    assert max_inside == 1


@pytest.mark.asyncio
async def test_hold_is_reentrant_for_the_holding_task() -> None:
    q = SerialQueue("t")

    async with q.hold():
        assert q.held_by_current_task() is True
        async with q.hold():
            assert q.held_by_current_task() is True
        assert q.held_by_current_task() is True

    assert q.held_by_current_task() is False


@pytest.mark.asyncio
async def test_hold_is_released_after_exception() -> None:
    q = SerialQueue("t")

    with pytest.raises(RuntimeError):
        async with q.hold():
            raise RuntimeError("boom")

    async def _take() -> bool:
        async with q.hold():
            return True

    assert await asyncio.wait_for(_take(), timeout=5) is True


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_block_the_queue() -> None:
    q = SerialQueue("t")
    release = asyncio.Event()

    async def _holder() -> None:
        async with q.hold():
            await release.wait()

    async def _waiter() -> None:
        async with q.hold():
            pass

    h = asyncio.create_task(_holder())
    await asyncio.sleep(0)
    w = asyncio.create_task(_waiter())
    await asyncio.sleep(0)
    w.cancel()
    release.set()
    await h
    with pytest.raises(asyncio.CancelledError):
        await w

    async def _take() -> bool:
        async with q.hold():
            return True

    assert await asyncio.wait_for(_take(), timeout=5) is True


@pytest.mark.asyncio
async def test_spawned_task_does_not_inherit_the_hold() -> None:
    q = SerialQueue("t")
    events: List[str] = []

    async def _child() -> None:
        assert q.held_by_current_task() is False
        async with q.hold():
            events.append("child")

    async with q.hold():
        child = asyncio.create_task(_child())
        await asyncio.sleep(0.05)
        assert events == []
        assert not child.done()
        events.append("parent")

    await asyncio.wait_for(child, timeout=5)
    assert events == ["parent", "child"]
