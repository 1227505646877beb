from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence
from types import SimpleNamespace
from typing import cast

import pytest
from web3 import AsyncWeb3

from daomerge.abi import MERGE_EVENT_NAME, MERGE_PULL_REQUEST_ABI
from daomerge.config import ChainConfig
from daomerge.ingress import (
    EventIngress,
    MalformedEventError,
    RawLog,
    Web3LogSource,
    decode_merge_log,
)
from daomerge.models import AuthorizationEvent, MergeOutcome
from daomerge.observability import configure_logging


_CONTRACT = "0x000000000000000000000000000000000000dead"


def _log(
    number: str = "42",
    *,
    sha: object = "c1pher",
    block: int = 10,
    index: int = 0,
    tx: object = "0xfeed",
) -> dict[str, object]:
    return {
        "args": {"owner": "acme", "repo": "widgets", "pull_number": number, "sha": sha},
        "address": _CONTRACT,
        "transactionHash": tx,
        "blockNumber": block,
        "logIndex": index,
    }


def test_decode_merge_log_builds_event() -> None:
    event = decode_merge_log(_log(tx=bytes.fromhex("feed")))

    assert event == AuthorizationEvent(
        ref=event.ref,
        encrypted_commit_sha="c1pher",
        source_address=_CONTRACT,
        transaction_hash="0xfeed",
        block_number=10,
    )
    assert event.ref.dedup_key == "acme/widgets#42"


def test_decode_keeps_pull_number_as_text() -> None:
    event = decode_merge_log(_log("007"))

    assert event.ref.pull_number == "007"
    assert event.ref.dedup_key == "acme/widgets#007"


@pytest.mark.parametrize("sha", ["", None, 5])
def test_decode_treats_missing_sha_as_absent(sha: object) -> None:
    assert decode_merge_log(_log(sha=sha)).encrypted_commit_sha is None


@pytest.mark.parametrize("missing", ["owner", "repo", "pull_number"])
def test_decode_rejects_missing_reference_fields(missing: str) -> None:
    raw = _log()
    args = dict(cast(dict[str, object], raw["args"]))
    args[missing] = ""
    raw["args"] = args

    with pytest.raises(MalformedEventError, match=missing):
        decode_merge_log(raw)


def test_decode_rejects_log_without_args() -> None:
    with pytest.raises(MalformedEventError, match="no decoded args"):
        decode_merge_log({"blockNumber": 1})


def test_abi_fragment_describes_merge_event() -> None:
    (fragment,) = MERGE_PULL_REQUEST_ABI
    assert fragment["name"] == MERGE_EVENT_NAME == "MergePullRequest"
    assert fragment["type"] == "event"
    inputs = cast(list[dict[str, object]], fragment["inputs"])
    assert [item["name"] for item in inputs] == ["owner", "repo", "pull_number", "sha"]
    assert {item["type"] for item in inputs} == {"string"}


class FakeEventFilter:
    def __init__(self, logs: list[dict[str, object]]) -> None:
        self.logs = logs
        self.ranges: list[tuple[int, int]] = []

    async def get_logs(self, *, from_block: int, to_block: int) -> list[dict[str, object]]:
        self.ranges.append((from_block, to_block))
        return [log for log in self.logs if from_block <= cast(int, log["blockNumber"]) <= to_block]


class FakeEth:
    def __init__(self, event_filter: FakeEventFilter) -> None:
        self.head = 0
        self.contract_kwargs: dict[str, object] = {}
        self._event_filter = event_filter

    @property
    def block_number(self) -> Awaitable[int]:
        async def current() -> int:
            return self.head

        return current()

    def contract(self, **kwargs: object) -> SimpleNamespace:
        self.contract_kwargs = kwargs
        return SimpleNamespace(events=SimpleNamespace(**{MERGE_EVENT_NAME: self._event_filter}))


class FakeProvider:
    def __init__(self) -> None:
        self.disconnected = False

    async def disconnect(self) -> None:
        self.disconnected = True


class FakeWeb3:
    def __init__(self, logs: list[dict[str, object]]) -> None:
        self.event_filter = FakeEventFilter(logs)
        self.eth = FakeEth(self.event_filter)
        self.provider = FakeProvider()


def _chain(**overrides: object) -> ChainConfig:
    values: dict[str, object] = {
        "network": "amoy",
        "contract_address": _CONTRACT,
        "rpc_url": "http://localhost:8545",
        "poll_interval_seconds": 0.01,
        "confirmations": 0,
        "max_block_range": 100,
        "start_block": None,
    }
    values.update(overrides)
    return ChainConfig(**values)  # type: ignore[arg-type]


def _source(fake: FakeWeb3, **overrides: object) -> Web3LogSource:
    return Web3LogSource(_chain(**overrides), w3=cast(AsyncWeb3, fake))


def test_source_binds_checksummed_contract_address() -> None:
    fake = FakeWeb3([])

    _source(fake)

    assert fake.eth.contract_kwargs["address"] == AsyncWeb3.to_checksum_address(_CONTRACT)
    assert fake.eth.contract_kwargs["abi"] == MERGE_PULL_REQUEST_ABI


def test_source_without_start_block_begins_after_current_head() -> None:
    fake = FakeWeb3([_log(block=5), _log("43", block=11)])
    source = _source(fake)
    fake.eth.head = 10

    first = asyncio.run(source.fetch_batch())
    fake.eth.head = 12
    second = asyncio.run(source.fetch_batch())

    assert first == []
    assert [cast(dict[str, object], log["args"])["pull_number"] for log in second] == ["43"]
    assert fake.event_filter.ranges == [(11, 12)]
    assert source.next_block == 13


def test_source_orders_logs_and_caps_block_range() -> None:
    logs = [_log("b", block=3, index=1), _log("a", block=3, index=0), _log("c", block=1)]
    fake = FakeWeb3(logs)
    source = _source(fake, start_block=0, max_block_range=5)
    fake.eth.head = 20

    batch = asyncio.run(source.fetch_batch())

    assert [cast(dict[str, object], log["args"])["pull_number"] for log in batch] == [
        "c",
        "a",
        "b",
    ]
    assert fake.event_filter.ranges == [(0, 4)]
    assert source.next_block == 5


def test_source_respects_confirmations() -> None:
    fake = FakeWeb3([])
    source = _source(fake, start_block=10, confirmations=3)
    fake.eth.head = 12

    assert asyncio.run(source.fetch_batch()) == []
    assert fake.event_filter.ranges == []
    assert source.next_block == 10


def test_source_close_disconnects_provider() -> None:
    fake = FakeWeb3([])

    asyncio.run(_source(fake).close())

    assert fake.provider.disconnected is True


class ScriptedSource:
    def __init__(self, *batches: Sequence[RawLog] | Exception) -> None:
        self.batches = list(batches)
        self.closed = False
        self.polls = 0

    async def fetch_batch(self) -> Sequence[RawLog]:
        self.polls += 1
        if not self.batches:
            return []
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[AuthorizationEvent] = []
        self.on_event: object = None

    async def __call__(self, event: AuthorizationEvent) -> MergeOutcome:
        self.events.append(event)
        await asyncio.sleep(0)
        callback = self.on_event
        if callable(callback):
            callback(event)
        if event.ref.pull_number == "boom":
            raise RuntimeError("handler exploded")
        return MergeOutcome.succeeded()


def test_process_batch_handles_events_in_order_and_skips_malformed(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    handler = RecordingHandler()

    async def scenario() -> list[MergeOutcome]:
        ingress = EventIngress(ScriptedSource(), handler, poll_interval_seconds=0.01)
        return await ingress.process_batch([_log("1"), {"transactionHash": "0xbad"}, _log("2")])

    outcomes = asyncio.run(scenario())

    assert [event.ref.pull_number for event in handler.events] == ["1", "2"]
    assert outcomes == [MergeOutcome.succeeded(), MergeOutcome.succeeded()]
    stderr = capsys.readouterr().err
    assert "event=ingress_event_malformed" in stderr
    assert "transaction_hash=0xbad" in stderr


def test_handler_exception_becomes_failed_outcome() -> None:
    handler = RecordingHandler()

    async def scenario() -> list[MergeOutcome]:
        ingress = EventIngress(ScriptedSource(), handler, poll_interval_seconds=0.01)
        return await ingress.process_batch([_log("boom"), _log("2")])

    outcomes = asyncio.run(scenario())

    assert outcomes == [MergeOutcome.failed("handler exploded"), MergeOutcome.succeeded()]


def test_run_consumes_batches_until_stopped() -> None:
    handler = RecordingHandler()
    source = ScriptedSource(RuntimeError("rpc down"), [_log("1"), _log("2")], [_log("3")])

    async def scenario() -> None:
        ingress = EventIngress(source, handler, poll_interval_seconds=0.001)

        def stop_after_third(event: AuthorizationEvent) -> None:
            if event.ref.pull_number == "3":
                ingress.stop()

        handler.on_event = stop_after_third
        await asyncio.wait_for(ingress.run(), timeout=5)

    asyncio.run(scenario())

    assert [event.ref.pull_number for event in handler.events] == ["1", "2", "3"]
    assert source.closed is True


def test_stop_drops_events_not_yet_started(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    handler = RecordingHandler()
    source = ScriptedSource([_log("1", tx="0x01"), _log("2", tx="0x02"), _log("3", tx="0x03")])

    async def scenario() -> None:
        ingress = EventIngress(source, handler, poll_interval_seconds=0.001)

        def stop_on_first(event: AuthorizationEvent) -> None:
            if event.ref.pull_number == "1":
                ingress.stop()

        handler.on_event = stop_on_first
        await asyncio.wait_for(ingress.run(), timeout=5)
        assert ingress.stopping is True

    asyncio.run(scenario())

    assert [event.ref.pull_number for event in handler.events] == ["1"]
    stderr = capsys.readouterr().err
    assert stderr.count("event=ingress_event_dropped") == 2
    assert "transaction_hash=0x02" in stderr
    assert "transaction_hash=0x03" in stderr
    assert "event=ingress_stopped" in stderr
    assert source.closed is True


def test_poll_failure_is_logged_and_retried(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    handler = RecordingHandler()
    source = ScriptedSource(RuntimeError("rpc down"), [_log("1")])

    async def scenario() -> None:
        ingress = EventIngress(source, handler, poll_interval_seconds=0.001)
        handler.on_event = lambda _event: ingress.stop()
        await asyncio.wait_for(ingress.run(), timeout=5)

    asyncio.run(scenario())

    assert source.polls >= 2
    assert [event.ref.pull_number for event in handler.events] == ["1"]
    stderr = capsys.readouterr().err
    assert "event=chain_poll_failed" in stderr
    assert "error=\"rpc down\"" in stderr
