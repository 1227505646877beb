from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
import sys
from typing import NoReturn

from daomerge.commit_codec import CommitHashCodec, DecryptionError
from daomerge.config import AppConfig, ConfigurationError, load_config, load_secrets
from daomerge.github_gateway import GitHubGateway
from daomerge.hash_service import FixedWindowRateLimiter, create_app, run_server
from daomerge.observability import configure_logging
from daomerge.service_runner import run_agent


_CONFIG_ERROR_EXIT_CODE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="daomerge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Listen for on-chain merge authorizations and merge pull requests"
    )
    _add_common_arguments(run_parser)

    serve_parser = subparsers.add_parser(
        "serve", help="Serve encrypted head commits for proposal authors over HTTP"
    )
    _add_common_arguments(serve_parser)

    encrypt_parser = subparsers.add_parser(
        "encrypt", help="Encrypt a commit sha with the configured key"
    )
    _add_common_arguments(encrypt_parser)
    encrypt_parser.add_argument("--sha", type=str, required=True, help="Commit sha to encrypt")

    decrypt_parser = subparsers.add_parser(
        "decrypt", help="Decrypt a commit sha commitment with the configured key"
    )
    _add_common_arguments(decrypt_parser)
    decrypt_parser.add_argument(
        "--ciphertext", type=str, required=True, help="Hex ciphertext to decrypt"
    )

    latest_parser = subparsers.add_parser(
        "latest-commit",
        help="Print the encrypted head commit of a branch, as the HTTP endpoint would",
    )
    _add_common_arguments(latest_parser)
    latest_parser.add_argument("--owner", type=str, required=True)
    latest_parser.add_argument("--repo", type=str, required=True)
    latest_parser.add_argument("--branch", type=str, required=True)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("daomerge.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every runtime event; by default only key lifecycle events and warnings",
    )


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        _exit_with_configuration_error(exc)
    verbose_mode = "high" if getattr(args, "verbose", False) else "low"
    configure_logging(verbose_mode, state_dir=config.runtime.state_dir)

    try:
        if args.command == "run":
            _cmd_run(config)
            return
        if args.command == "serve":
            _cmd_serve(config)
            return
        if args.command == "encrypt":
            _cmd_encrypt(config, sha=str(args.sha))
            return
        if args.command == "decrypt":
            _cmd_decrypt(config, ciphertext=str(args.ciphertext))
            return
        if args.command == "latest-commit":
            _cmd_latest_commit(
                config, owner=str(args.owner), repo=str(args.repo), branch=str(args.branch)
            )
            return
    except ConfigurationError as exc:
        _exit_with_configuration_error(exc)

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig) -> None:
    secrets = load_secrets(config)
    run_agent(config, secrets)


def _cmd_serve(config: AppConfig) -> None:
    secrets = load_secrets(config, require_github_token=False)
    app = create_app(
        github=GitHubGateway(token=secrets.github_token, gh_binary=config.github.gh_binary),
        codec=CommitHashCodec(secrets.encryption_key),
        rate_limiter=FixedWindowRateLimiter(
            limit=config.service.rate_limit_requests,
            window_seconds=config.service.rate_limit_window_seconds,
        ),
    )
    run_server(app, config.service)


def _cmd_encrypt(config: AppConfig, *, sha: str) -> None:
    secrets = load_secrets(config, require_github_token=False)
    print(CommitHashCodec(secrets.encryption_key).encrypt(sha.strip()))


def _cmd_decrypt(config: AppConfig, *, ciphertext: str) -> None:
    secrets = load_secrets(config, require_github_token=False)
    try:
        print(CommitHashCodec(secrets.encryption_key).decrypt(ciphertext))
    except DecryptionError as exc:
        print(f"Could not decrypt: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


def _cmd_latest_commit(config: AppConfig, *, owner: str, repo: str, branch: str) -> None:
    secrets = load_secrets(config, require_github_token=False)
    github = GitHubGateway(token=secrets.github_token, gh_binary=config.github.gh_binary)
    sha = asyncio.run(github.get_branch_head_sha(owner, repo, branch))
    print(CommitHashCodec(secrets.encryption_key).encrypt(sha))


def _exit_with_configuration_error(exc: ConfigurationError) -> NoReturn:
    print(f"daomerge: configuration error: {exc}", file=sys.stderr)
    raise SystemExit(_CONFIG_ERROR_EXIT_CODE) from exc
