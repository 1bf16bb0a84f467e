from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Hashable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class UserLocks:
    """
    Per-key FIFO serialization for async work.

    Calls for the same key run one at a time in arrival order; calls for different keys
    never wait on each other. The chain for a key is dropped once it drains.
    """

    def __init__(self) -> None:
        self._tails: dict[Hashable, asyncio.Future] = {}

    def is_busy(self, key: Hashable) -> bool:
        tail = self._tails.get(key)
        return tail is not None and not tail.done()

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        prev = self._tails.get(key)
        gate: asyncio.Future = loop.create_future()
        self._tails[key] = gate

        def _release(_: object = None) -> None:
            if not gate.done():
                gate.set_result(None)
            if self._tails.get(key) is gate:
                del self._tails[key]

        try:
            if prev is not None and not prev.done():
                logger.debug("Waiting for previous call to finish (key=%s)", key)
                await asyncio.shield(prev)
            return await fn()
        finally:
            if prev is not None and not prev.done():
                # Cancelled while queued: keep our place until the predecessor finishes.
                prev.add_done_callback(_release)
            else:
                _release()
