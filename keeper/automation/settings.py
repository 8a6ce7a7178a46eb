"""Worker configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Literal, Mapping, Optional

from keeper.chains import NETWORKS, Network

from .poller import DEFAULT_POLL_INTERVAL_MS
from .retry import DEFAULT_BASE_DELAY_MS
from .rules import SafetyConfig

KeeperMode = Literal["web3", "paper"]

DEFAULT_DATABASE_URL = "sqlite:///./data/cas.db"


class ConfigurationError(ValueError):
    """Missing or invalid worker configuration. Fatal at startup."""


@dataclass(frozen=True)
class WorkerSettings:
    network: Network
    chain_id: int
    rpc_url: str
    router_address: str
    wcfx_address: str
    database_url: str = DEFAULT_DATABASE_URL
    automation_manager_address: Optional[str] = None
    executor_private_key: Optional[str] = field(default=None, repr=False)
    keeper_mode: KeeperMode = "web3"
    max_gas_price_gwei: int = 1000
    wait_for_receipt: bool = True
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    retry_base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_concurrency: int = 4
    dry_run: bool = False
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    token_usd_prices: dict[str, Decimal] = field(default_factory=dict)
    coingecko_platform: str = "conflux"
    price_refresh_seconds: int = 300  # 0 disables CoinGecko refresh

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> WorkerSettings:
        """Read settings from `environ` (defaults to `os.environ`).

        Raises:
            ConfigurationError: a required variable is missing or a value
                does not parse.
        """
        env = os.environ if environ is None else environ

        network_name = env.get("NETWORK", "testnet").strip().lower()
        network = NETWORKS.get(network_name)
        if network is None:
            raise ConfigurationError(f"NETWORK must be one of {sorted(NETWORKS)}, got {network_name!r}")

        keeper_mode = env.get("KEEPER_MODE", "web3").strip().lower()
        if keeper_mode not in ("web3", "paper"):
            raise ConfigurationError(f"KEEPER_MODE must be 'web3' or 'paper', got {keeper_mode!r}")

        private_key = env.get("EXECUTOR_PRIVATE_KEY", "").strip() or None
        manager_address = env.get("AUTOMATION_MANAGER_ADDRESS", "").strip() or None
        if keeper_mode == "web3":
            if private_key is None:
                raise ConfigurationError("EXECUTOR_PRIVATE_KEY is required")
            if manager_address is None:
                raise ConfigurationError("AUTOMATION_MANAGER_ADDRESS is required")

        defaults = SafetyConfig()
        safety = SafetyConfig(
            max_swap_usd=_env_decimal(env, "SAFETY_MAX_SWAP_USD", defaults.max_swap_usd),
            max_slippage_bps=_env_int(env, "SAFETY_MAX_SLIPPAGE_BPS", defaults.max_slippage_bps),
            max_retries=_env_int(env, "SAFETY_MAX_RETRIES", defaults.max_retries),
            min_execution_interval_seconds=_env_int(
                env, "SAFETY_MIN_EXECUTION_INTERVAL_SECONDS", defaults.min_execution_interval_seconds
            ),
        )

        poll_interval_ms = _env_int(env, "WORKER_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS)
        if poll_interval_ms <= 0:
            raise ConfigurationError("WORKER_POLL_INTERVAL_MS must be positive")
        max_concurrency = _env_int(env, "MAX_CONCURRENCY", 4)
        if max_concurrency <= 0:
            raise ConfigurationError("MAX_CONCURRENCY must be positive")

        return cls(
            network=network.name,
            chain_id=network.chain_id,
            rpc_url=env.get(network.rpc_env_var, "").strip() or network.default_rpc_url,
            router_address=env.get("SWAPPI_ROUTER_ADDRESS", "").strip() or network.swappi_router,
            wcfx_address=env.get("WCFX_ADDRESS", "").strip() or network.wcfx,
            database_url=env.get("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
            automation_manager_address=manager_address,
            executor_private_key=private_key,
            keeper_mode=keeper_mode,  # type: ignore[arg-type]
            max_gas_price_gwei=_env_int(env, "MAX_GAS_PRICE_GWEI", 1000),
            wait_for_receipt=_env_bool(env, "WAIT_FOR_RECEIPT", True),
            poll_interval_ms=poll_interval_ms,
            retry_base_delay_ms=_env_int(env, "RETRY_BASE_DELAY_MS", DEFAULT_BASE_DELAY_MS),
            max_concurrency=max_concurrency,
            dry_run=_env_bool(env, "DRY_RUN", False),
            safety=safety,
            token_usd_prices=parse_token_prices(env.get("TOKEN_USD_PRICES", "")),
            coingecko_platform=env.get("COINGECKO_PLATFORM", "").strip() or network.coingecko_platform,
            price_refresh_seconds=_env_int(env, "PRICE_REFRESH_SECONDS", 300),
        )


def parse_token_prices(raw: str) -> dict[str, Decimal]:
    """Parse `0xabc=1.5,0xdef=0.02` into a lowercased address -> USD map."""
    prices: dict[str, Decimal] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        token, sep, value = item.partition("=")
        if not sep or not token.strip():
            raise ConfigurationError(f"TOKEN_USD_PRICES entry must be address=price, got {item!r}")
        try:
            prices[token.strip().lower()] = Decimal(value.strip())
        except InvalidOperation as e:
            raise ConfigurationError(f"Invalid USD price for {token.strip()}: {value!r}") from e
    return prices


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_decimal(env: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes")
