from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
import logging
from typing import Protocol, cast

from web3 import AsyncHTTPProvider, AsyncWeb3

from daomerge.abi import MERGE_EVENT_NAME, MERGE_PULL_REQUEST_ABI
from daomerge.config import ChainConfig
from daomerge.models import AuthorizationEvent, MergeOutcome, PullRequestRef
from daomerge.observability import log_event, warn_event


LOGGER = logging.getLogger("daomerge.ingress")

RawLog = Mapping[str, object]
EventHandler = Callable[[AuthorizationEvent], Awaitable[MergeOutcome]]


class MalformedEventError(ValueError):
    """A chain log is missing a field the merge workflow needs."""


class LogSource(Protocol):
    async def fetch_batch(self) -> Sequence[RawLog]: ...

    async def close(self) -> None: ...


def decode_merge_log(log: RawLog) -> AuthorizationEvent:
    args = log.get("args")
    if not isinstance(args, Mapping):
        raise MalformedEventError("Log has no decoded args")
    args_map = cast(Mapping[str, object], args)

    ref = PullRequestRef(
        owner=_require_text(args_map, "owner"),
        repo=_require_text(args_map, "repo"),
        pull_number=_require_text(args_map, "pull_number"),
    )
    sha = args_map.get("sha")
    block_number = log.get("blockNumber")
    return AuthorizationEvent(
        ref=ref,
        encrypted_commit_sha=sha if isinstance(sha, str) and sha else None,
        source_address=_as_hex_text(log.get("address")),
        transaction_hash=_as_hex_text(log.get("transactionHash")),
        block_number=block_number if isinstance(block_number, int) else None,
    )


class Web3LogSource:
    """Polls the authorization contract for MergePullRequest logs.

    The cursor starts at ``chain.start_block`` or, when unset, just past the chain
    head observed on the first poll. A failed poll leaves the cursor unchanged so
    the same range is retried.
    """

    def __init__(self, chain: ChainConfig, *, w3: AsyncWeb3 | None = None) -> None:
        self._chain = chain
        self._w3 = w3 if w3 is not None else AsyncWeb3(AsyncHTTPProvider(chain.rpc_url))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(chain.contract_address),
            abi=MERGE_PULL_REQUEST_ABI,
        )
        self._next_block = chain.start_block

    @property
    def next_block(self) -> int | None:
        return self._next_block

    async def fetch_batch(self) -> Sequence[RawLog]:
        head = await self._w3.eth.block_number
        latest = head - self._chain.confirmations
        if self._next_block is None:
            self._next_block = latest + 1
            log_event(LOGGER, "ingress_cursor_initialized", next_block=self._next_block)
            return []
        if latest < self._next_block:
            return []

        from_block = self._next_block
        to_block = min(latest, from_block + self._chain.max_block_range - 1)
        event = getattr(self._contract.events, MERGE_EVENT_NAME)
        logs = await event.get_logs(from_block=from_block, to_block=to_block)
        self._next_block = to_block + 1
        ordered = sorted(logs, key=_log_position)
        log_event(
            LOGGER,
            "chain_logs_fetched",
            from_block=from_block,
            to_block=to_block,
            count=len(ordered),
        )
        return ordered

    async def close(self) -> None:
        await self._w3.provider.disconnect()


class EventIngress:
    """Moves log batches from a source to the merge handler through a bounded queue.

    Batches are handled in arrival order and events within a batch one at a time:
    event N+1 is not started until the handler returned for event N. After
    ``stop()`` polling ends, the in-flight event finishes, and events not yet
    started are dropped and logged.
    """

    def __init__(
        self,
        source: LogSource,
        handler: EventHandler,
        *,
        poll_interval_seconds: float,
        queue_size: int = 16,
    ) -> None:
        self._source = source
        self._handler = handler
        self._poll_interval_seconds = poll_interval_seconds
        self._queue: asyncio.Queue[Sequence[RawLog] | None] = asyncio.Queue(maxsize=queue_size)
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        if not self._stopping.is_set():
            log_event(LOGGER, "ingress_stop_requested")
        self._stopping.set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def run(self) -> None:
        log_event(LOGGER, "ingress_started", poll_interval_seconds=self._poll_interval_seconds)
        producer = asyncio.create_task(self._produce(), name="daomerge-ingress-poll")
        try:
            await self._consume()
        finally:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            await self._source.close()
            log_event(LOGGER, "ingress_stopped")

    async def process_batch(self, logs: Sequence[RawLog]) -> list[MergeOutcome]:
        outcomes: list[MergeOutcome] = []
        for index, raw in enumerate(logs):
            if self._stopping.is_set():
                self._log_dropped(logs[index:])
                break
            outcome = await self._process_one(raw)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def _produce(self) -> None:
        while not self._stopping.is_set():
            try:
                batch = await self._source.fetch_batch()
            except Exception as exc:  # noqa: BLE001
                warn_event(
                    LOGGER,
                    "chain_poll_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                batch = ()
            if batch:
                await self._queue.put(batch)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval_seconds)
            except TimeoutError:
                pass
        await self._queue.put(None)

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            await self.process_batch(batch)
            if self._stopping.is_set():
                self._drain_queue_as_dropped()
                return

    async def _process_one(self, raw: RawLog) -> MergeOutcome | None:
        try:
            event = decode_merge_log(raw)
        except MalformedEventError as exc:
            warn_event(
                LOGGER,
                "ingress_event_malformed",
                error=str(exc),
                transaction_hash=_as_hex_text(raw.get("transactionHash")),
            )
            return None
        try:
            return await self._handler(event)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "ingress_event_failed",
                dedup_key=event.ref.dedup_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return MergeOutcome.failed(str(exc))

    def _drain_queue_as_dropped(self) -> None:
        while True:
            try:
                batch = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if batch:
                self._log_dropped(batch)

    def _log_dropped(self, logs: Sequence[RawLog]) -> None:
        for raw in logs:
            warn_event(
                LOGGER,
                "ingress_event_dropped",
                reason="shutdown",
                transaction_hash=_as_hex_text(raw.get("transactionHash")),
                block_number=raw.get("blockNumber"),
            )


def _require_text(args: Mapping[str, object], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedEventError(f"Log arg {key!r} is missing or empty")
    return value


def _as_hex_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes | bytearray):
        return "0x" + bytes(value).hex()
    return str(value)


def _log_position(log: RawLog) -> tuple[int, int]:
    block_number = log.get("blockNumber")
    log_index = log.get("logIndex")
    return (
        block_number if isinstance(block_number, int) else 0,
        log_index if isinstance(log_index, int) else 0,
    )
