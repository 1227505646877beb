from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote

from daomerge.models import (
    MergeMethod,
    MergeResult,
    PullRequestRef,
    PullRequestSnapshot,
    ReviewResult,
)
from daomerge.observability import log_event
from daomerge.shell import run


LOGGER = logging.getLogger("daomerge.github_gateway")
_MERGE_REFUSED_STATUSES = {405, 409}


class GitHubApiError(RuntimeError):
    """GitHub answered with a non-2xx status or an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class _ApiResponse:
    status_code: int
    body: str


@dataclass(frozen=True)
class GitHubGateway:
    token: str | None = field(default=None, repr=False)
    gh_binary: str = "gh"

    async def get_pull_request(self, ref: PullRequestRef) -> PullRequestSnapshot:
        path = f"{_repo_path(ref.owner, ref.repo)}/pulls/{quote(ref.pull_number, safe='')}"
        payload_obj = _require_object(await self._api_json("GET", path), what="pull request")

        head = _as_object_dict(payload_obj.get("head"))
        if head is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            head_sha=_as_string(head.get("sha")),
            mergeable=_as_optional_bool(payload_obj.get("mergeable")),
            mergeable_state=_as_string(payload_obj.get("mergeable_state")).strip().lower(),
            state=_as_string(payload_obj.get("state")).strip().lower(),
            merged=_as_bool_with_default(payload_obj.get("merged"), False),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            dedup_key=ref.dedup_key,
            head_sha=snapshot.head_sha,
            mergeable=snapshot.mergeable,
            mergeable_state=snapshot.mergeable_state,
        )
        return snapshot

    async def approve_pull_request(self, ref: PullRequestRef) -> ReviewResult:
        path = f"{_repo_path(ref.owner, ref.repo)}/pulls/{quote(ref.pull_number, safe='')}/reviews"
        payload_obj = _require_object(
            await self._api_json("POST", path, payload={"event": "APPROVE"}),
            what="pull request review",
        )
        review = ReviewResult(
            review_id=_as_optional_int(payload_obj.get("id")),
            state=_as_string(payload_obj.get("state")).strip().upper(),
        )
        log_event(
            LOGGER,
            "github_review_created",
            dedup_key=ref.dedup_key,
            review_id=review.review_id,
            state=review.state,
        )
        return review

    async def merge_pull_request(
        self,
        ref: PullRequestRef,
        *,
        sha: str | None = None,
        merge_method: MergeMethod = "merge",
    ) -> MergeResult:
        path = f"{_repo_path(ref.owner, ref.repo)}/pulls/{quote(ref.pull_number, safe='')}/merge"
        request: dict[str, object] = {"merge_method": merge_method}
        if sha is not None:
            # GitHub refuses the merge with 409 when the head moved off this sha.
            request["sha"] = sha
        response = await self._api_request("PUT", path, payload=request)

        if response.status_code in _MERGE_REFUSED_STATUSES:
            message = _message_from_body(response.body)
            log_event(
                LOGGER,
                "github_pr_merge_refused",
                dedup_key=ref.dedup_key,
                status_code=response.status_code,
                message=message,
            )
            return MergeResult(merged=False, sha=None, message=message)

        payload_obj = _require_object(_decode_json(_require_success(response, path)), what="merge")
        result = MergeResult(
            merged=_as_bool_with_default(payload_obj.get("merged"), False),
            sha=_as_optional_str(payload_obj.get("sha")),
            message=_as_string(payload_obj.get("message")),
        )
        if result.merged:
            log_event(LOGGER, "github_pr_merged", dedup_key=ref.dedup_key, merge_sha=result.sha)
        else:
            log_event(
                LOGGER,
                "github_pr_merge_refused",
                dedup_key=ref.dedup_key,
                status_code=response.status_code,
                message=result.message,
            )
        return result

    async def post_issue_comment(self, ref: PullRequestRef, body: str) -> None:
        path = (
            f"{_repo_path(ref.owner, ref.repo)}/issues/{quote(ref.pull_number, safe='')}/comments"
        )
        try:
            await self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                dedup_key=ref.dedup_key,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", dedup_key=ref.dedup_key)

    async def get_branch_head_sha(self, owner: str, repo: str, branch: str) -> str:
        path = f"{_repo_path(owner, repo)}/branches/{quote(branch, safe='/')}"
        payload_obj = _require_object(await self._api_json("GET", path), what="branch")
        commit = _as_object_dict(payload_obj.get("commit"))
        sha = _as_string(commit.get("sha") if commit else None)
        if not sha:
            raise GitHubApiError(f"Could not get latest commit of {owner}/{repo}@{branch}")
        log_event(
            LOGGER,
            "github_read",
            endpoint="branch",
            repo_full_name=f"{owner}/{repo}",
            branch=branch,
            head_sha=sha,
        )
        return sha

    async def _api_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        response = await self._api_request(method, path, payload=payload)
        return _decode_json(_require_success(response, path))

    async def _api_request(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> _ApiResponse:
        method_upper = method.upper()
        cmd = [self.gh_binary, "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        env = {"GH_TOKEN": self.token} if self.token else None

        # gh exits non-zero on HTTP errors; the status line is still in the output.
        raw = await run(cmd, input_text=stdin_payload, env=env, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except GitHubApiError:
            log_event(
                LOGGER,
                "github_request_unparseable",
                method=method_upper,
                path=path,
                raw_preview=_preview_for_log(raw),
            )
            raise
        return _ApiResponse(status_code=status_code, body=body)


def _repo_path(owner: str, repo: str) -> str:
    return f"/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"


def _require_success(response: _ApiResponse, path: str) -> str:
    if 200 <= response.status_code < 300:
        return response.body
    message = _message_from_body(response.body)
    log_event(
        LOGGER,
        "github_request_failed",
        path=path,
        status_code=response.status_code,
        message=message,
    )
    raise GitHubApiError(
        f"GitHub API request failed with status {response.status_code}: {message}",
        status_code=response.status_code,
    )


def _decode_json(body: str) -> object:
    if not body.strip():
        return {}
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise GitHubApiError(f"Unexpected GitHub response: invalid JSON ({exc})") from exc


def _message_from_body(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return stripped
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None and isinstance(payload_obj.get("message"), str):
        return cast(str, payload_obj["message"])
    return stripped


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _require_object(payload: object, *, what: str) -> dict[str, object]:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise GitHubApiError(f"Unexpected GitHub response: expected object for {what}")
    return payload_obj


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return _as_int(value, field="optional int field")


def _as_optional_bool(value: object) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    raise GitHubApiError("Unexpected GitHub response type for bool field")


def _as_bool_with_default(value: object, default: bool) -> bool:
    parsed = _as_optional_bool(value)
    return default if parsed is None else parsed
