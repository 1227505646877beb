from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from daomerge.models import MergeOutcome, PullRequestRef, ReportContext
from daomerge.observability import log_event, warn_event


LOGGER = logging.getLogger("daomerge.reporter")


class ReportingError(RuntimeError):
    """Posting the outcome comment failed. Never changes a recorded outcome."""


class CommentPoster(Protocol):
    async def post_issue_comment(self, ref: PullRequestRef, body: str) -> None: ...


class NotificationReporter:
    def __init__(
        self,
        poster: CommentPoster,
        *,
        dao_name: str = "SecureSECO DAO",
        dao_url: str = "https://dao.secureseco.org/",
    ) -> None:
        self._poster = poster
        self._dao_name = dao_name
        self._dao_url = dao_url
        self._pending: set[asyncio.Task[None]] = set()

    def report(self, ref: PullRequestRef, outcome: MergeOutcome, context: ReportContext) -> None:
        """Schedule the outcome comment and return without waiting for it."""
        body = render_outcome_comment(
            outcome, context, dao_name=self._dao_name, dao_url=self._dao_url
        )
        task = asyncio.get_running_loop().create_task(self._post(ref, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*tuple(self._pending), return_exceptions=True)

    def pending_count(self) -> int:
        return len(self._pending)

    async def _post(self, ref: PullRequestRef, body: str) -> None:
        try:
            await self._post_or_raise(ref, body)
        except ReportingError as exc:
            warn_event(
                LOGGER,
                "report_failed",
                dedup_key=ref.dedup_key,
                error_type=type(exc.__cause__).__name__,
                error=str(exc),
            )
            return
        log_event(LOGGER, "report_posted", dedup_key=ref.dedup_key)

    async def _post_or_raise(self, ref: PullRequestRef, body: str) -> None:
        try:
            await self._poster.post_issue_comment(ref, body)
        except Exception as exc:  # noqa: BLE001
            raise ReportingError(f"Could not comment on pull request {ref.dedup_key}: {exc}") from exc


def render_outcome_comment(
    outcome: MergeOutcome,
    context: ReportContext,
    *,
    dao_name: str,
    dao_url: str,
) -> str:
    if outcome.success:
        lines = [f"This pull request has been merged by the [{dao_name}]({dao_url})."]
    else:
        lines = ["This pull request could **not** be merged."]

    provenance = _render_provenance(context)
    if provenance:
        lines.extend(["", *provenance])

    if not outcome.success:
        lines.extend(["", "Error:", "```", outcome.failure_reason or "unknown failure", "```"])
    return "\n".join(lines)


def _render_provenance(context: ReportContext) -> list[str]:
    out: list[str] = []
    if context.source_address:
        out.append(f"Executed by: `{context.source_address}`")
    if context.transaction_hash:
        out.append(f"Transaction hash: `{context.transaction_hash}`")
    return out
