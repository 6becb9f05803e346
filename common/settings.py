"""Environment-driven configuration for the lending indexer.

Every knob has a safe default so a bare ``python -m indexer_app.main`` works
against a local SQLite file. ``IndexerSettings.from_env()`` is called once by
the composition root; values that parse but fall outside their allowed range
raise ``ConfigError`` so a misconfigured deployment fails at startup rather
than mid-sweep.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Final, Mapping, Optional

__all__ = ["ConfigError", "IndexerSettings"]

log = logging.getLogger(__name__)

DEFAULT_DB_URL: Final[str] = "sqlite:///./lending_indexer.db"
DEFAULT_BACKEND_URL: Final[str] = "http://localhost:3001"
DEFAULT_DOMA_RPC_URL: Final[str] = "https://rpc-testnet.doma.xyz"
DEFAULT_OWNERSHIP_TOKEN: Final[str] = "0x424bDf2E8a6F52Bd2c1C81D9437b0DC0309DF90f"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when an environment value is present but unusable."""


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Invalid integer for %s=%r; using default %s", name, raw, default)
        return default


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


def _get_address(env: Mapping[str, str], name: str, default: str = "") -> str:
    value = (env.get(name) or default).strip()
    if value and not _ADDRESS_RE.match(value):
        raise ConfigError(f"{name} must be a 0x-prefixed 20-byte hex address, got {value!r}")
    return value


@dataclass(frozen=True)
class ContractAddresses:
    ai_oracle: str = ""
    loan_manager: str = ""
    satoru_lending: str = ""
    dutch_auction: str = ""
    ownership_token: str = DEFAULT_OWNERSHIP_TOKEN


@dataclass(frozen=True)
class IndexerSettings:
    db_url: str = DEFAULT_DB_URL
    chain_id: int = 97476

    # liquidation monitor
    liquidation_enabled: bool = True
    liquidation_check_interval_ms: int = 300_000
    liquidation_initial_delay_ms: int = 30_000
    liquidation_buffer_hours: int = 24
    liquidation_executor_timeout_ms: int = 60_000
    liquidation_max_attempts: int = 5

    # scoring
    auto_score_submission: bool = False
    backend_api_url: str = DEFAULT_BACKEND_URL
    backend_timeout_ms: int = 30_000

    # domain resolution
    doma_rpc_url: str = DEFAULT_DOMA_RPC_URL
    resolver_timeout_ms: int = 10_000

    contracts: ContractAddresses = field(default_factory=ContractAddresses)

    # ingestion
    kafka_bootstrap: str = "localhost:9092"
    kafka_topic: str = "chain_events"
    kafka_group_id: str = "lending-indexer"
    kafka_auto_offset_reset: str = "earliest"

    log_format: str = "text"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.liquidation_check_interval_ms < 1_000:
            raise ConfigError("LIQUIDATION_CHECK_INTERVAL_MS must be at least 1000")
        if self.liquidation_initial_delay_ms < 0:
            raise ConfigError("LIQUIDATION_INITIAL_DELAY_MS must not be negative")
        if self.liquidation_buffer_hours < 0:
            raise ConfigError("LIQUIDATION_BUFFER_HOURS must not be negative")
        if self.liquidation_max_attempts < 1:
            raise ConfigError("LIQUIDATION_MAX_ATTEMPTS must be at least 1")
        for name in ("liquidation_executor_timeout_ms", "backend_timeout_ms", "resolver_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name.upper()} must be positive")
        if not self.backend_api_url.startswith(("http://", "https://")):
            raise ConfigError(f"BACKEND_API_URL must be an http(s) URL, got {self.backend_api_url!r}")
        if self.kafka_auto_offset_reset not in {"earliest", "latest"}:
            raise ConfigError("KAFKA_AUTO_OFFSET_RESET must be 'earliest' or 'latest'")

    # seconds helpers for asyncio.wait_for / APScheduler
    @property
    def backend_timeout_s(self) -> float:
        return self.backend_timeout_ms / 1000

    @property
    def resolver_timeout_s(self) -> float:
        return self.resolver_timeout_ms / 1000

    @property
    def executor_timeout_s(self) -> float:
        return self.liquidation_executor_timeout_ms / 1000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "IndexerSettings":
        env = os.environ if env is None else env
        contracts = ContractAddresses(
            ai_oracle=_get_address(env, "AI_ORACLE_ADDRESS"),
            loan_manager=_get_address(env, "LOAN_MANAGER_ADDRESS"),
            satoru_lending=_get_address(env, "SATORU_LENDING_ADDRESS"),
            dutch_auction=_get_address(env, "DUTCH_AUCTION_ADDRESS"),
            ownership_token=_get_address(
                env, "DOMA_OWNERSHIP_TOKEN_ADDRESS", DEFAULT_OWNERSHIP_TOKEN
            ),
        )
        return cls(
            db_url=env.get("INDEXER_DB_URL", DEFAULT_DB_URL),
            chain_id=_get_int(env, "CHAIN_ID", 97476),
            liquidation_enabled=_get_bool(env, "LIQUIDATION_ENABLED", True),
            liquidation_check_interval_ms=_get_int(env, "LIQUIDATION_CHECK_INTERVAL_MS", 300_000),
            liquidation_initial_delay_ms=_get_int(env, "LIQUIDATION_INITIAL_DELAY_MS", 30_000),
            liquidation_buffer_hours=_get_int(env, "LIQUIDATION_BUFFER_HOURS", 24),
            liquidation_executor_timeout_ms=_get_int(env, "LIQUIDATION_EXECUTOR_TIMEOUT_MS", 60_000),
            liquidation_max_attempts=_get_int(env, "LIQUIDATION_MAX_ATTEMPTS", 5),
            auto_score_submission=_get_bool(env, "ENABLE_AUTO_SCORE_SUBMISSION", False),
            backend_api_url=env.get("BACKEND_API_URL", DEFAULT_BACKEND_URL).rstrip("/"),
            backend_timeout_ms=_get_int(env, "BACKEND_TIMEOUT_MS", 30_000),
            doma_rpc_url=env.get("DOMA_RPC_URL", DEFAULT_DOMA_RPC_URL),
            resolver_timeout_ms=_get_int(env, "RESOLVER_TIMEOUT_MS", 10_000),
            contracts=contracts,
            kafka_bootstrap=env.get("KAFKA_BOOTSTRAP", "localhost:9092"),
            kafka_topic=env.get("KAFKA_TOPIC", "chain_events"),
            kafka_group_id=env.get("KAFKA_GROUP_ID", "lending-indexer"),
            kafka_auto_offset_reset=env.get("KAFKA_AUTO_OFFSET_RESET", "earliest").lower(),
            log_format=env.get("LOG_FORMAT", "text").lower(),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
