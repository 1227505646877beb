from __future__ import annotations

from dataclasses import FrozenInstanceError

from hypothesis import given, strategies as st
import pytest

from daomerge.models import AuthorizationEvent, MergeOutcome, PullRequestRef, ReportContext


@given(
    st.text(min_size=1, alphabet=st.characters(exclude_characters="/#")),
    st.text(min_size=1, alphabet=st.characters(exclude_characters="/#")),
    st.text(min_size=1),
)
def test_dedup_key_is_owner_repo_and_number(owner: str, repo: str, number: str) -> None:
    ref = PullRequestRef(owner=owner, repo=repo, pull_number=number)

    assert ref.dedup_key == f"{owner}/{repo}#{number}"
    assert ref.full_name == f"{owner}/{repo}"


def test_refs_are_frozen_and_hashable() -> None:
    ref = PullRequestRef("acme", "widgets", "42")

    with pytest.raises(FrozenInstanceError):
        ref.pull_number = "43"  # type: ignore[misc]
    assert {ref, PullRequestRef("acme", "widgets", "42")} == {ref}


def test_outcome_constructors() -> None:
    assert MergeOutcome.succeeded() == MergeOutcome(success=True)
    assert MergeOutcome.failed("nope") == MergeOutcome(success=False, failure_reason="nope")
    assert MergeOutcome.failed("").failure_reason == "unknown failure"
    duplicate = MergeOutcome.already_merged()
    assert duplicate.success is True
    assert duplicate.duplicate is True


def test_report_context_from_event() -> None:
    event = AuthorizationEvent(
        ref=PullRequestRef("acme", "widgets", "42"),
        encrypted_commit_sha=None,
        source_address="0xabc",
        transaction_hash="0xfeed",
    )

    assert ReportContext.for_event(event) == ReportContext(
        source_address="0xabc", transaction_hash="0xfeed"
    )
