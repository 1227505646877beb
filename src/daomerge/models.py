from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


MergeMethod = Literal["merge", "squash", "rebase"]


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    pull_number: str

    @property
    def dedup_key(self) -> str:
        return f"{self.owner}/{self.repo}#{self.pull_number}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class AuthorizationEvent:
    ref: PullRequestRef
    encrypted_commit_sha: str | None
    source_address: str
    transaction_hash: str
    block_number: int | None = None


@dataclass(frozen=True)
class MergeOutcome:
    success: bool
    failure_reason: str | None = None
    duplicate: bool = False

    @classmethod
    def succeeded(cls) -> MergeOutcome:
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> MergeOutcome:
        return cls(success=False, failure_reason=reason or "unknown failure")

    @classmethod
    def already_merged(cls) -> MergeOutcome:
        return cls(success=True, duplicate=True)


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    head_sha: str
    mergeable: bool | None
    mergeable_state: str
    state: str
    merged: bool


@dataclass(frozen=True)
class ReviewResult:
    review_id: int | None
    state: str


@dataclass(frozen=True)
class MergeResult:
    merged: bool
    sha: str | None
    message: str


@dataclass(frozen=True)
class ReportContext:
    source_address: str | None
    transaction_hash: str | None

    @classmethod
    def for_event(cls, event: AuthorizationEvent) -> ReportContext:
        return cls(source_address=event.source_address, transaction_hash=event.transaction_hash)
