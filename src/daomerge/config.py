from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import re
import tomllib
from typing import Final, cast

from daomerge.models import MergeMethod


DEFAULT_ALLOWED_STATES: Final[tuple[str, ...]] = ("clean", "has_hooks", "unstable")
NETWORK_ENV_VAR: Final[str] = "DAOMERGE_NETWORK"
_CONTRACT_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


@dataclass(frozen=True)
class Network:
    name: str
    chain_id: int
    default_rpc_url: str


NETWORKS: Final[dict[str, Network]] = {
    "polygon": Network(name="polygon", chain_id=137, default_rpc_url="https://polygon-rpc.com"),
    "mumbai": Network(
        name="mumbai", chain_id=80001, default_rpc_url="https://rpc-mumbai.maticvigil.com"
    ),
    "amoy": Network(
        name="amoy", chain_id=80002, default_rpc_url="https://rpc-amoy.polygon.technology"
    ),
}


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path | None = None


@dataclass(frozen=True)
class ChainConfig:
    network: str
    contract_address: str
    rpc_url: str
    poll_interval_seconds: float = 5.0
    confirmations: int = 0
    max_block_range: int = 2000
    start_block: int | None = None

    @property
    def chain_id(self) -> int:
        return NETWORKS[self.network].chain_id


@dataclass(frozen=True)
class GitHubConfig:
    token_env: str = "GITHUB_TOKEN"
    gh_binary: str = "gh"


@dataclass(frozen=True)
class MergeConfig:
    allowed_states: frozenset[str] = frozenset(DEFAULT_ALLOWED_STATES)
    pre_approval_states: frozenset[str] = frozenset()
    merge_method: MergeMethod = "merge"
    require_commit_binding: bool = True
    dao_name: str = "SecureSECO DAO"
    dao_url: str = "https://dao.secureseco.org/"
    queue_size: int = 16


@dataclass(frozen=True)
class CryptoConfig:
    key_env: str = "ENCRYPTION_KEY"


@dataclass(frozen=True)
class ServiceConfig:
    host: str = "127.0.0.1"
    port: int = 5252
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0


@dataclass(frozen=True)
class AppConfig:
    chain: ChainConfig
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    crypto: CryptoConfig = field(default_factory=CryptoConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)


@dataclass(frozen=True)
class Secrets:
    encryption_key: str = field(repr=False)
    github_token: str | None = field(default=None, repr=False)


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Config file {path} is not valid TOML: {exc}") from exc

    chain = _parse_chain_config(_require_table(data, "chain"), env=env)
    runtime_data = _optional_table(data, "runtime") or {}
    github_data = _optional_table(data, "github") or {}
    merge_data = _optional_table(data, "merge") or {}
    crypto_data = _optional_table(data, "crypto") or {}
    service_data = _optional_table(data, "service") or {}

    runtime = RuntimeConfig(state_dir=_optional_path(runtime_data, "state_dir"))
    github = GitHubConfig(
        token_env=_str_with_default(github_data, "token_env", "GITHUB_TOKEN"),
        gh_binary=_str_with_default(github_data, "gh_binary", "gh"),
    )
    merge = MergeConfig(
        allowed_states=_allowed_states_with_default(
            merge_data, "allowed_states", DEFAULT_ALLOWED_STATES
        ),
        pre_approval_states=_allowed_states_with_default(
            merge_data, "pre_approval_states", (), allow_empty=True
        ),
        merge_method=_merge_method_with_default(merge_data, "merge_method", "merge"),
        require_commit_binding=_bool_with_default(merge_data, "require_commit_binding", True),
        dao_name=_str_with_default(merge_data, "dao_name", "SecureSECO DAO"),
        dao_url=_str_with_default(merge_data, "dao_url", "https://dao.secureseco.org/"),
        queue_size=_int_with_default(merge_data, "queue_size", 16),
    )
    crypto = CryptoConfig(key_env=_str_with_default(crypto_data, "key_env", "ENCRYPTION_KEY"))
    service = ServiceConfig(
        host=_str_with_default(service_data, "host", "127.0.0.1"),
        port=_int_with_default(service_data, "port", 5252),
        rate_limit_requests=_int_with_default(service_data, "rate_limit_requests", 60),
        rate_limit_window_seconds=_number_with_default(
            service_data, "rate_limit_window_seconds", 60.0
        ),
    )

    if merge.queue_size < 1:
        raise ConfigurationError("merge.queue_size must be >= 1")
    if not 0 < service.port < 65536:
        raise ConfigurationError("service.port must be between 1 and 65535")
    if service.rate_limit_requests < 1:
        raise ConfigurationError("service.rate_limit_requests must be >= 1")
    if service.rate_limit_window_seconds <= 0:
        raise ConfigurationError("service.rate_limit_window_seconds must be > 0")

    return AppConfig(
        chain=chain,
        runtime=runtime,
        github=github,
        merge=merge,
        crypto=crypto,
        service=service,
    )


def load_secrets(
    config: AppConfig,
    *,
    environ: Mapping[str, str] | None = None,
    require_github_token: bool = True,
) -> Secrets:
    env = os.environ if environ is None else environ
    encryption_key = env.get(config.crypto.key_env, "")
    if not encryption_key:
        raise ConfigurationError(f"{config.crypto.key_env} is not set")
    github_token = env.get(config.github.token_env) or None
    if require_github_token and github_token is None:
        raise ConfigurationError(f"{config.github.token_env} is not set")
    return Secrets(encryption_key=encryption_key, github_token=github_token)


def _parse_chain_config(chain_data: dict[str, object], *, env: Mapping[str, str]) -> ChainConfig:
    network_override = env.get(NETWORK_ENV_VAR, "").strip().lower()
    network = network_override or _str_with_default(chain_data, "network", "polygon").lower()
    if network not in NETWORKS:
        expected = ", ".join(sorted(NETWORKS))
        raise ConfigurationError(f"chain.network must be one of: {expected}; got {network!r}")

    contract_address = _require_str(chain_data, "contract_address")
    if not _CONTRACT_ADDRESS_RE.fullmatch(contract_address):
        raise ConfigurationError("chain.contract_address must be a 0x-prefixed 20-byte hex address")

    rpc_url = _optional_str(chain_data, "rpc_url") or NETWORKS[network].default_rpc_url
    chain = ChainConfig(
        network=network,
        contract_address=contract_address,
        rpc_url=rpc_url,
        poll_interval_seconds=_number_with_default(chain_data, "poll_interval_seconds", 5.0),
        confirmations=_int_with_default(chain_data, "confirmations", 0),
        max_block_range=_int_with_default(chain_data, "max_block_range", 2000),
        start_block=_optional_non_negative_int(chain_data, "start_block"),
    )
    if chain.poll_interval_seconds <= 0:
        raise ConfigurationError("chain.poll_interval_seconds must be > 0")
    if chain.confirmations < 0:
        raise ConfigurationError("chain.confirmations must be >= 0")
    if chain.max_block_range < 1:
        raise ConfigurationError("chain.max_block_range must be >= 1")
    return chain


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigurationError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigurationError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a boolean")
    return value


def _optional_non_negative_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(f"{key} must be an integer >= 0 if provided")
    return value


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _allowed_states_with_default(
    data: dict[str, object],
    key: str,
    default: tuple[str, ...],
    *,
    allow_empty: bool = False,
) -> frozenset[str]:
    value = data.get(key, list(default))
    if not isinstance(value, list) or (not value and not allow_empty):
        raise ConfigurationError(f"{key} must be a non-empty list of strings")
    states: set[str] = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigurationError(f"{key} must be a non-empty list of strings")
        states.add(item.strip().lower())
    return frozenset(states)


def _merge_method_with_default(
    data: dict[str, object], key: str, default: MergeMethod
) -> MergeMethod:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigurationError(f"{key} must be one of: merge, squash, rebase")
    normalized = value.strip().lower()
    if normalized not in {"merge", "squash", "rebase"}:
        raise ConfigurationError(f"{key} must be one of: merge, squash, rebase")
    return cast(MergeMethod, normalized)
