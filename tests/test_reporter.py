from __future__ import annotations

import asyncio

import pytest

from daomerge.models import MergeOutcome, PullRequestRef, ReportContext
from daomerge.observability import configure_logging
from daomerge.reporter import NotificationReporter, render_outcome_comment


_REF = PullRequestRef("acme", "widgets", "42")
_CONTEXT = ReportContext(source_address="0xabc", transaction_hash="0xfeed")


class FakePoster:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.posted: list[tuple[PullRequestRef, str]] = []

    async def post_issue_comment(self, ref: PullRequestRef, body: str) -> None:
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("403 forbidden")
        self.posted.append((ref, body))


def test_success_comment_links_dao_and_provenance() -> None:
    body = render_outcome_comment(
        MergeOutcome.succeeded(),
        _CONTEXT,
        dao_name="SecureSECO DAO",
        dao_url="https://dao.secureseco.org/",
    )

    assert body == (
        "This pull request has been merged by the "
        "[SecureSECO DAO](https://dao.secureseco.org/).\n"
        "\n"
        "Executed by: `0xabc`\n"
        "Transaction hash: `0xfeed`"
    )


def test_failure_comment_includes_reason_block() -> None:
    body = render_outcome_comment(
        MergeOutcome.failed("Pull request is not mergeable"),
        _CONTEXT,
        dao_name="d",
        dao_url="u",
    )

    assert body.startswith("This pull request could **not** be merged.")
    assert "Executed by: `0xabc`" in body
    assert body.endswith("Error:\n```\nPull request is not mergeable\n```")


def test_missing_provenance_lines_are_omitted() -> None:
    body = render_outcome_comment(
        MergeOutcome.failed("boom"),
        ReportContext(source_address=None, transaction_hash=""),
        dao_name="d",
        dao_url="u",
    )

    assert "Executed by" not in body
    assert "Transaction hash" not in body
    assert body == "This pull request could **not** be merged.\n\nError:\n```\nboom\n```"


def test_report_returns_before_comment_is_posted() -> None:
    poster = FakePoster(delay=0.01)
    reporter = NotificationReporter(poster, dao_name="d", dao_url="u")

    async def scenario() -> tuple[int, int]:
        reporter.report(_REF, MergeOutcome.succeeded(), _CONTEXT)
        pending_before = reporter.pending_count()
        posted_before = len(poster.posted)
        await reporter.drain()
        return pending_before, posted_before

    pending_before, posted_before = asyncio.run(scenario())

    assert (pending_before, posted_before) == (1, 0)
    assert reporter.pending_count() == 0
    assert poster.posted[0][0] == _REF
    assert poster.posted[0][1].startswith("This pull request has been merged by the [d](u).")


def test_posting_failure_is_logged_and_swallowed(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    reporter = NotificationReporter(FakePoster(fail=True))

    async def scenario() -> None:
        reporter.report(_REF, MergeOutcome.failed("x"), _CONTEXT)
        await reporter.drain()

    asyncio.run(scenario())

    stderr = capsys.readouterr().err
    assert "event=report_failed" in stderr
    assert "error_type=RuntimeError" in stderr
    assert "dedup_key=acme/widgets#42" in stderr


def test_report_outside_event_loop_raises() -> None:
    reporter = NotificationReporter(FakePoster())

    with pytest.raises(RuntimeError):
        reporter.report(_REF, MergeOutcome.succeeded(), _CONTEXT)
