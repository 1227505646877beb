from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from daomerge.observability import configure_logging
from daomerge.serializer import MERGE_CRITICAL_SECTION, ExecutionSerializer


def test_bodies_never_interleave_and_run_in_arrival_order() -> None:
    serializer = ExecutionSerializer()
    trace: list[str] = []

    def body(name: str) -> Callable[[], Awaitable[str]]:
        async def run() -> str:
            trace.append(f"{name}:start")
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            trace.append(f"{name}:end")
            return name

        return run

    async def scenario() -> list[str]:
        tasks = [
            asyncio.create_task(serializer.run_exclusive(MERGE_CRITICAL_SECTION, body(name)))
            for name in ("a", "b", "c")
        ]
        return list(await asyncio.gather(*tasks))

    results = asyncio.run(scenario())

    assert results == ["a", "b", "c"]
    assert trace == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]


def test_distinct_keys_do_not_block_each_other() -> None:
    serializer = ExecutionSerializer()
    trace: list[str] = []

    async def scenario() -> None:
        release = asyncio.Event()

        async def holder() -> None:
            trace.append("one:start")
            await release.wait()
            trace.append("one:end")

        async def other() -> None:
            trace.append("two:ran")
            release.set()

        await asyncio.gather(
            serializer.run_exclusive("one", holder),
            serializer.run_exclusive("two", other),
        )

    asyncio.run(scenario())

    assert trace == ["one:start", "two:ran", "one:end"]


def test_exception_releases_section() -> None:
    serializer = ExecutionSerializer()

    async def boom() -> None:
        raise RuntimeError("boom")

    async def ok() -> str:
        return "ok"

    async def scenario() -> str:
        with pytest.raises(RuntimeError, match="boom"):
            await serializer.run_exclusive("k", boom)
        assert serializer.is_busy("k") is False
        return await serializer.run_exclusive("k", ok)

    assert asyncio.run(scenario()) == "ok"


def test_busy_and_waiting_counters() -> None:
    serializer = ExecutionSerializer()
    observed: dict[str, object] = {}

    async def scenario() -> None:
        release = asyncio.Event()

        async def holder() -> None:
            await release.wait()

        async def waiter() -> None:
            return None

        first = asyncio.create_task(serializer.run_exclusive("k", holder))
        await asyncio.sleep(0)
        second = asyncio.create_task(serializer.run_exclusive("k", waiter))
        await asyncio.sleep(0)
        observed["busy"] = serializer.is_busy("k")
        observed["waiting"] = serializer.waiting("k")
        release.set()
        await asyncio.gather(first, second)
        observed["busy_after"] = serializer.is_busy("k")
        observed["waiting_after"] = serializer.waiting("k")

    asyncio.run(scenario())

    assert observed == {"busy": True, "waiting": 1, "busy_after": False, "waiting_after": 0}
    assert serializer.is_busy("never-used") is False
    assert serializer.waiting("never-used") == 0


def test_entering_section_is_logged(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    serializer = ExecutionSerializer()

    async def noop() -> None:
        return None

    asyncio.run(serializer.run_exclusive(MERGE_CRITICAL_SECTION, noop))

    stderr = capsys.readouterr().err
    assert "event=critical_section_entered" in stderr
    assert "key=merge" in stderr
    assert "event=critical_section_released" in stderr
