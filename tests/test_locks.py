from __future__ import annotations

import asyncio

import pytest

from we_account_engine.locks import UserLocks


def test_same_user_calls_never_overlap_and_keep_order() -> None:
    async def _run() -> list[tuple[str, int]]:
        locks = UserLocks()
        events: list[tuple[str, int]] = []

        async def job(i: int) -> int:
            events.append(("start", i))
            await asyncio.sleep(0.01)
            events.append(("end", i))
            return i

        results = await asyncio.gather(*(locks.run("u1", lambda i=i: job(i)) for i in range(4)))
        assert results == [0, 1, 2, 3]
        assert not locks.is_busy("u1")
        return events

    events = asyncio.run(_run())
    expected: list[tuple[str, int]] = []
    for i in range(4):
        expected += [("start", i), ("end", i)]
    assert events == expected


def test_failure_releases_the_lock() -> None:
    async def _run() -> str:
        locks = UserLocks()

        async def boom() -> str:
            await asyncio.sleep(0)
            raise RuntimeError("boom")

        async def ok() -> str:
            return "ok"

        first = asyncio.ensure_future(locks.run("u1", boom))
        second = asyncio.ensure_future(locks.run("u1", ok))
        with pytest.raises(RuntimeError):
            await first
        return await asyncio.wait_for(second, timeout=1)

    assert asyncio.run(_run()) == "ok"


def test_different_users_run_concurrently() -> None:
    async def _run() -> bool:
        locks = UserLocks()
        a_started = asyncio.Event()
        b_started = asyncio.Event()

        async def a() -> None:
            a_started.set()
            await asyncio.wait_for(b_started.wait(), timeout=1)

        async def b() -> None:
            b_started.set()
            await asyncio.wait_for(a_started.wait(), timeout=1)

        await asyncio.gather(locks.run("u1", a), locks.run("u2", b))
        return a_started.is_set() and b_started.is_set()

    assert asyncio.run(_run()) is True


def test_cancelled_waiter_does_not_jump_the_queue() -> None:
    async def _run() -> list[str]:
        locks = UserLocks()
        order: list[str] = []
        release = asyncio.Event()

        async def slow() -> None:
            order.append("slow-start")
            await release.wait()
            order.append("slow-end")

        async def quick(name: str) -> None:
            order.append(name)

        first = asyncio.ensure_future(locks.run("u1", slow))
        await asyncio.sleep(0)
        cancelled = asyncio.ensure_future(locks.run("u1", lambda: quick("cancelled")))
        await asyncio.sleep(0)
        third = asyncio.ensure_future(locks.run("u1", lambda: quick("third")))
        await asyncio.sleep(0)

        cancelled.cancel()
        await asyncio.sleep(0.01)
        assert "third" not in order

        release.set()
        await first
        await third
        return order

    assert asyncio.run(_run()) == ["slow-start", "slow-end", "third"]
