"""HTTP endpoint that hands out the encrypted head commit of a branch or pull request.

Proposal authors call ``/latestCommit`` while drafting a merge proposal and put
the returned ciphertext into the on-chain action. The agent later decrypts it
and refuses to merge any other head.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import re
import threading
import time
from typing import Protocol

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, model_validator
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from daomerge import __version__
from daomerge.config import ServiceConfig
from daomerge.models import PullRequestRef, PullRequestSnapshot
from daomerge.observability import log_event, warn_event


LOGGER = logging.getLogger("daomerge.hash_service")
_GENERIC_FAILURE_MESSAGE = "Could not get latest commit"
_PULL_REQUEST_URL_RE = re.compile(
    r"^https?://(?:www\.)?github\.com/(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+)/pull/"
    r"(?P<number>\d+)(?:[/?#].*)?$"
)


class CommitSource(Protocol):
    async def get_branch_head_sha(self, owner: str, repo: str, branch: str) -> str: ...

    async def get_pull_request(self, ref: PullRequestRef) -> PullRequestSnapshot: ...


class CommitEncrypter(Protocol):
    def encrypt(self, plain_sha: str) -> str: ...


class LatestCommitQuery(BaseModel):
    owner: str | None = Field(default=None, min_length=1)
    repo: str | None = Field(default=None, min_length=1)
    branch: str | None = Field(default=None, min_length=1)
    url: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _one_target(self) -> LatestCommitQuery:
        if self.url is not None:
            if parse_pull_request_url(self.url) is None:
                raise ValueError("url must look like https://github.com/<owner>/<repo>/pull/<n>")
            return self
        missing = [name for name in ("owner", "repo", "branch") if getattr(self, name) is None]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")
        return self

    def branch_target(self) -> tuple[str, str, str]:
        if self.owner is None or self.repo is None or self.branch is None:
            raise ValueError("query does not name a branch")
        return self.owner, self.repo, self.branch


class FixedWindowRateLimiter:
    """Allows ``limit`` requests per client in each ``window_seconds`` window."""

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def allow(self, client_key: str) -> bool:
        now = self._clock()
        with self._lock:
            started_at, count = self._windows.get(client_key, (now, 0))
            if now - started_at >= self._window_seconds:
                started_at, count = now, 0
            if count >= self._limit:
                self._windows[client_key] = (started_at, count)
                return False
            self._windows[client_key] = (started_at, count + 1)
            self._evict_expired(now)
            return True

    def _evict_expired(self, now: float) -> None:
        expired = [
            key
            for key, (started_at, _) in self._windows.items()
            if now - started_at >= self._window_seconds
        ]
        for key in expired:
            del self._windows[key]


def parse_pull_request_url(url: str) -> PullRequestRef | None:
    match = _PULL_REQUEST_URL_RE.match(url.strip())
    if match is None:
        return None
    return PullRequestRef(
        owner=match.group("owner"),
        repo=match.group("repo"),
        pull_number=match.group("number"),
    )


def create_app(
    *,
    github: CommitSource,
    codec: CommitEncrypter,
    rate_limiter: FixedWindowRateLimiter,
) -> FastAPI:
    app = FastAPI(title="daomerge commit hash service", version=__version__)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        _ = request
        return _error_response(400, _summarize_validation_errors(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        _ = request
        return _error_response(exc.status_code, str(exc.detail))

    def enforce_rate_limit(request: Request) -> None:
        client_key = request.client.host if request.client is not None else "unknown"
        if not rate_limiter.allow(client_key):
            log_event(LOGGER, "hash_service_rate_limited", client=client_key)
            raise StarletteHTTPException(status_code=429, detail="Too many requests")

    @app.get("/")
    async def health() -> dict[str, str]:
        return {"status": "ok", "message": "OK"}

    @app.get("/latestCommit", dependencies=[Depends(enforce_rate_limit)])
    async def latest_commit(
        owner: str | None = None,
        repo: str | None = None,
        branch: str | None = None,
        url: str | None = None,
    ) -> JSONResponse:
        try:
            query = LatestCommitQuery(owner=owner, repo=repo, branch=branch, url=url)
        except ValidationError as exc:
            return _error_response(400, _summarize_validation_errors(exc.errors()))

        try:
            sha = await _resolve_head_sha(github, query)
            encrypted = await asyncio.to_thread(codec.encrypt, sha)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "hash_service_lookup_failed",
                owner=query.owner,
                repo=query.repo,
                branch=query.branch,
                url=query.url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return _error_response(500, _GENERIC_FAILURE_MESSAGE)

        log_event(
            LOGGER,
            "hash_service_commit_issued",
            owner=query.owner,
            repo=query.repo,
            branch=query.branch,
            url=query.url,
        )
        return JSONResponse({"status": "ok", "data": {"sha": encrypted}})

    return app


def run_server(app: FastAPI, service: ServiceConfig) -> None:
    log_event(LOGGER, "hash_service_starting", host=service.host, port=service.port)
    uvicorn.run(app, host=service.host, port=service.port, log_config=None)


async def _resolve_head_sha(github: CommitSource, query: LatestCommitQuery) -> str:
    if query.url is not None:
        ref = parse_pull_request_url(query.url)
        if ref is None:
            raise ValueError(f"Unparseable pull request url: {query.url}")
        snapshot = await github.get_pull_request(ref)
        if not snapshot.head_sha:
            raise RuntimeError(f"Pull request {ref.dedup_key} has no head commit")
        return snapshot.head_sha
    owner, repo, branch = query.branch_target()
    return await github.get_branch_head_sha(owner, repo, branch)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


def _summarize_validation_errors(errors: object) -> str:
    if not isinstance(errors, list | tuple) or not errors:
        return "Invalid request"
    messages: list[str] = []
    for error in errors:
        if isinstance(error, dict):
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "query")
            message = str(error.get("msg", "invalid value"))
            messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "Invalid request"
