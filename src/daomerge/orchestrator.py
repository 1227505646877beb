from __future__ import annotations

import asyncio
from collections.abc import Iterable
import logging
from typing import Protocol

from daomerge.config import DEFAULT_ALLOWED_STATES
from daomerge.github_gateway import GitHubApiError
from daomerge.ledger import DedupLedger
from daomerge.models import (
    AuthorizationEvent,
    MergeMethod,
    MergeOutcome,
    MergeResult,
    PullRequestRef,
    PullRequestSnapshot,
    ReportContext,
    ReviewResult,
)
from daomerge.observability import log_event, logging_event_context, warn_event
from daomerge.serializer import MERGE_CRITICAL_SECTION, ExecutionSerializer


LOGGER = logging.getLogger("daomerge.orchestrator")
_APPROVED_REVIEW_STATE = "APPROVED"


class MergeWorkflowError(RuntimeError):
    """Base class for failures that abort one merge workflow."""


class NotMergeableError(MergeWorkflowError):
    def __init__(self, ref: PullRequestRef, snapshot: PullRequestSnapshot) -> None:
        super().__init__(
            f"Pull request is not mergeable: ({ref.dedup_key}). "
            f"Mergeable = {_render_flag(snapshot.mergeable)}, State = {snapshot.mergeable_state}"
        )
        self.mergeable = snapshot.mergeable
        self.mergeable_state = snapshot.mergeable_state


class PullRequestClosedError(MergeWorkflowError):
    def __init__(self, ref: PullRequestRef, snapshot: PullRequestSnapshot) -> None:
        super().__init__(
            f"Pull request is not open: ({ref.dedup_key}). "
            f"State = {snapshot.state}, Merged = {_render_flag(snapshot.merged)}"
        )
        self.state = snapshot.state
        self.merged = snapshot.merged


class CommitHashMismatchError(MergeWorkflowError):
    """The pull request head is not the commit the authorization was issued for."""


class ApprovalFailedError(MergeWorkflowError):
    pass


class MergeFailedError(MergeWorkflowError):
    pass


class HostingApi(Protocol):
    async def get_pull_request(self, ref: PullRequestRef) -> PullRequestSnapshot: ...

    async def approve_pull_request(self, ref: PullRequestRef) -> ReviewResult: ...

    async def merge_pull_request(
        self,
        ref: PullRequestRef,
        *,
        sha: str | None = None,
        merge_method: MergeMethod = "merge",
    ) -> MergeResult: ...


class CommitDecoder(Protocol):
    def decrypt(self, ciphertext: str) -> str: ...


class OutcomeReporter(Protocol):
    def report(
        self, ref: PullRequestRef, outcome: MergeOutcome, context: ReportContext
    ) -> None: ...


class MergeOrchestrator:
    """Turns one authorization event into at most one verified merge.

    Steps run strictly in order inside the process-wide merge section: fetch the
    pull request, check it is mergeable, check its head against the decrypted
    commitment, approve, fetch again and repeat both checks, merge with the head
    sha pinned, then record success. Any failure ends the run. The outcome is
    always handed to the reporter, except for events already merged, which are
    dropped silently.
    """

    def __init__(
        self,
        *,
        github: HostingApi,
        codec: CommitDecoder,
        ledger: DedupLedger,
        serializer: ExecutionSerializer,
        reporter: OutcomeReporter,
        allowed_states: Iterable[str] = DEFAULT_ALLOWED_STATES,
        pre_approval_states: Iterable[str] = (),
        merge_method: MergeMethod = "merge",
        require_commit_binding: bool = True,
        critical_section: str = MERGE_CRITICAL_SECTION,
    ) -> None:
        self._github = github
        self._codec = codec
        self._ledger = ledger
        self._serializer = serializer
        self._reporter = reporter
        self._allowed_states = frozenset(state.lower() for state in allowed_states)
        self._pre_approval_states = self._allowed_states | frozenset(
            state.lower() for state in pre_approval_states
        )
        self._merge_method = merge_method
        self._require_commit_binding = require_commit_binding
        self._critical_section = critical_section

    async def handle(self, event: AuthorizationEvent) -> MergeOutcome:
        ref = event.ref
        with logging_event_context(ref.dedup_key):
            if self._ledger.is_merged(ref):
                log_event(
                    LOGGER,
                    "merge_skipped_duplicate",
                    dedup_key=ref.dedup_key,
                    stage="fast_path",
                    transaction_hash=event.transaction_hash,
                )
                return MergeOutcome.already_merged()

            log_event(
                LOGGER,
                "authorization_received",
                dedup_key=ref.dedup_key,
                source_address=event.source_address,
                transaction_hash=event.transaction_hash,
                block_number=event.block_number,
            )
            try:
                return await self._serializer.run_exclusive(
                    self._critical_section, lambda: self._handle_exclusive(event)
                )
            except Exception as exc:  # noqa: BLE001
                warn_event(
                    LOGGER,
                    "merge_workflow_crashed",
                    dedup_key=ref.dedup_key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return MergeOutcome.failed(str(exc))

    async def _handle_exclusive(self, event: AuthorizationEvent) -> MergeOutcome:
        ref = event.ref
        # An identical event may have merged while this one waited for the section.
        if self._ledger.is_merged(ref):
            log_event(
                LOGGER,
                "merge_skipped_duplicate",
                dedup_key=ref.dedup_key,
                stage="critical_section",
                transaction_hash=event.transaction_hash,
            )
            return MergeOutcome.already_merged()

        try:
            await self._run_pipeline(event)
        except Exception as exc:  # noqa: BLE001
            outcome = MergeOutcome.failed(str(exc))
            warn_event(
                LOGGER,
                "merge_failed",
                dedup_key=ref.dedup_key,
                error_type=type(exc).__name__,
                reason=outcome.failure_reason,
            )
        else:
            self._ledger.mark_merged(ref)
            outcome = MergeOutcome.succeeded()
            log_event(LOGGER, "merge_completed", dedup_key=ref.dedup_key)

        self._report(ref, outcome, ReportContext.for_event(event))
        return outcome

    async def _run_pipeline(self, event: AuthorizationEvent) -> None:
        ref = event.ref

        snapshot = await self._github.get_pull_request(ref)
        self._check_mergeable(ref, snapshot, allowed=self._pre_approval_states)
        approved_sha = await self._decrypt_commitment(event)
        self._check_commit_binding(ref, approved_sha, snapshot)

        try:
            review = await self._github.approve_pull_request(ref)
        except GitHubApiError as exc:
            raise ApprovalFailedError(
                f"Pull request could not be approved: ({ref.dedup_key}). {exc}"
            ) from exc
        if review.state != _APPROVED_REVIEW_STATE:
            raise ApprovalFailedError(
                f"Pull request could not be approved: ({ref.dedup_key}). State = {review.state}"
            )
        log_event(LOGGER, "merge_approved", dedup_key=ref.dedup_key, review_id=review.review_id)

        # Approval can move mergeable_state (e.g. out of "unknown" or "blocked"),
        # and the head may have moved while we approved: check the fresh copy.
        fresh = await self._github.get_pull_request(ref)
        self._check_mergeable(ref, fresh, allowed=self._allowed_states)
        self._check_commit_binding(ref, approved_sha, fresh)

        try:
            result = await self._github.merge_pull_request(
                ref,
                sha=approved_sha if approved_sha is not None else fresh.head_sha,
                merge_method=self._merge_method,
            )
        except GitHubApiError as exc:
            raise MergeFailedError(
                f"Pull request could not be merged: ({ref.dedup_key}). {exc}"
            ) from exc
        if not result.merged:
            raise MergeFailedError(
                f"Pull request could not be merged: ({ref.dedup_key}). "
                f"Merged = false, Message = {result.message or '<none>'}"
            )

    def _check_mergeable(
        self, ref: PullRequestRef, snapshot: PullRequestSnapshot, *, allowed: frozenset[str]
    ) -> None:
        if snapshot.merged or snapshot.state != "open":
            raise PullRequestClosedError(ref, snapshot)
        if snapshot.mergeable is not True or snapshot.mergeable_state not in allowed:
            raise NotMergeableError(ref, snapshot)
        log_event(
            LOGGER,
            "merge_state_accepted",
            dedup_key=ref.dedup_key,
            mergeable_state=snapshot.mergeable_state,
        )

    async def _decrypt_commitment(self, event: AuthorizationEvent) -> str | None:
        if event.encrypted_commit_sha is None:
            if self._require_commit_binding:
                raise CommitHashMismatchError(
                    f"Authorization for ({event.ref.dedup_key}) carries no commit hash; "
                    "cannot verify the approved commit"
                )
            return None
        # PBKDF2 key derivation is CPU bound; keep it off the event loop.
        return await asyncio.to_thread(self._codec.decrypt, event.encrypted_commit_sha)

    def _check_commit_binding(
        self, ref: PullRequestRef, approved_sha: str | None, snapshot: PullRequestSnapshot
    ) -> None:
        if approved_sha is None:
            return
        if snapshot.head_sha != approved_sha:
            raise CommitHashMismatchError(
                f"Pull request commit hash does not match: ({ref.dedup_key}). "
                "You should not push anything else after submitting the pull request along "
                f"with the proposal. Approved: {approved_sha}, Current head: {snapshot.head_sha}"
            )
        log_event(LOGGER, "commit_binding_verified", dedup_key=ref.dedup_key, head_sha=approved_sha)

    def _report(self, ref: PullRequestRef, outcome: MergeOutcome, context: ReportContext) -> None:
        try:
            self._reporter.report(ref, outcome, context)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "report_failed",
                dedup_key=ref.dedup_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )


def _render_flag(value: bool | None) -> str:
    if value is None:
        return "null"
    return "true" if value else "false"
