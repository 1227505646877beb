from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
import signal
from typing import Protocol

from daomerge.commit_codec import CommitHashCodec
from daomerge.config import AppConfig, Secrets
from daomerge.github_gateway import GitHubGateway
from daomerge.ingress import EventIngress, LogSource, Web3LogSource
from daomerge.ledger import DedupLedger, InMemoryDedupLedger
from daomerge.observability import log_event
from daomerge.orchestrator import CommitDecoder, HostingApi, MergeOrchestrator
from daomerge.reporter import CommentPoster, NotificationReporter
from daomerge.serializer import ExecutionSerializer


LOGGER = logging.getLogger("daomerge.service_runner")
_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _GitHubClient(HostingApi, CommentPoster, Protocol):
    pass


@dataclass(frozen=True)
class ServiceRunner:
    config: AppConfig
    secrets: Secrets
    github: _GitHubClient | None = None
    codec: CommitDecoder | None = None
    source: LogSource | None = None
    ledger: DedupLedger | None = None
    install_signal_handlers: bool = True

    def build_orchestrator(self) -> tuple[MergeOrchestrator, NotificationReporter]:
        github = self._effective_github()
        merge = self.config.merge
        reporter = NotificationReporter(github, dao_name=merge.dao_name, dao_url=merge.dao_url)
        orchestrator = MergeOrchestrator(
            github=github,
            codec=self._effective_codec(),
            ledger=self.ledger if self.ledger is not None else InMemoryDedupLedger(),
            serializer=ExecutionSerializer(),
            reporter=reporter,
            allowed_states=merge.allowed_states,
            pre_approval_states=merge.pre_approval_states,
            merge_method=merge.merge_method,
            require_commit_binding=merge.require_commit_binding,
        )
        return orchestrator, reporter

    async def run(self) -> None:
        orchestrator, reporter = self.build_orchestrator()
        source = self.source if self.source is not None else Web3LogSource(self.config.chain)
        ingress = EventIngress(
            source,
            orchestrator.handle,
            poll_interval_seconds=self.config.chain.poll_interval_seconds,
            queue_size=self.config.merge.queue_size,
        )
        log_event(
            LOGGER,
            "agent_starting",
            network=self.config.chain.network,
            chain_id=self.config.chain.chain_id,
            contract_address=self.config.chain.contract_address,
            merge_method=self.config.merge.merge_method,
        )
        remove_handlers = self._install_stop_handlers(ingress.stop)
        try:
            await ingress.run()
        finally:
            remove_handlers()
            await reporter.drain()
            log_event(LOGGER, "agent_stopped")

    def _effective_codec(self) -> CommitDecoder:
        if self.codec is not None:
            return self.codec
        return CommitHashCodec(self.secrets.encryption_key)

    def _effective_github(self) -> _GitHubClient:
        if self.github is not None:
            return self.github
        return GitHubGateway(
            token=self.secrets.github_token,
            gh_binary=self.config.github.gh_binary,
        )

    def _install_stop_handlers(self, stop: Callable[[], None]) -> Callable[[], None]:
        if not self.install_signal_handlers:
            return lambda: None
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in _STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, stop)
            except (NotImplementedError, RuntimeError):
                log_event(LOGGER, "signal_handler_unavailable", signal=sig.name)
                continue
            installed.append(sig)

        def remove() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return remove


def run_agent(config: AppConfig, secrets: Secrets) -> None:
    asyncio.run(ServiceRunner(config=config, secrets=secrets).run())
