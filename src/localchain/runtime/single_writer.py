# src/localchain/runtime/single_writer.py
from __future__ import annotations

import asyncio
import threading
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional


class SerialQueue:
    """
    Single-writer admission queue.

    Within one event loop, waiters are admitted in FIFO order (asyncio.Lock
    wakes waiters in arrival order). Across threads, each running its own
    loop, a threading.Lock keeps the critical section exclusive.

    Holding is re-entrant for the task that already holds the queue. Tasks it
    spawns are not the holder and wait their turn like any other caller.
    """

    def __init__(self, name: str) -> None:
        self.name = str(name)
        self._mutex = threading.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._fifo_guard = threading.Lock()
        self._fifo: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
            weakref.WeakKeyDictionary()
        )

    def _loop_fifo(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        with self._fifo_guard:
            lock = self._fifo.get(loop)
            if lock is None:
                lock = asyncio.Lock()
                self._fifo[loop] = lock
            return lock

    def held_by_current_task(self) -> bool:
        owner = self._owner
        return owner is not None and owner is asyncio.current_task()

    async def _acquire_mutex(self) -> None:
        if self._mutex.acquire(blocking=False):
            return
        fut = asyncio.ensure_future(asyncio.to_thread(self._mutex.acquire))
        try:
            await asyncio.shield(fut)
        except asyncio.CancelledError:
            # The worker thread still takes the mutex; hand it back once it does.
            fut.add_done_callback(lambda f: self._mutex.release() if not f.cancelled() and f.result() else None)
            raise

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        if self.held_by_current_task():
            yield
            return

        async with self._loop_fifo():
            await self._acquire_mutex()
            self._owner = asyncio.current_task()
            try:
                yield
            finally:
                self._owner = None
                self._mutex.release()
