"""Keeper worker process.

Wires the job store, price evaluator, safety guard, retry scheduler, keeper
client and audit log into an executor, then drives it with the job poller
until SIGINT/SIGTERM.

Usage:
    cas-keeper
    cas-keeper --interval 5000 --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import logging
import os
import signal
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.engine import make_url
from web3 import AsyncHTTPProvider, AsyncWeb3

from keeper.execution import KeeperClient, PaperKeeperClient, Web3KeeperClient
from keeper.market_data import CoinGeckoTokenPriceFeed, SwappiPriceSource
from keeper.persistence.interfaces import JobStore
from keeper.storage import SqlConfig, SqlJobStore
from keeper.types import utc_now

from .audit import AuditEvent, AuditLogger
from .executor import Executor, ExecutorConfig
from .poller import JobPoller
from .pricing import DecimalsResolver, PriceEvaluator, PriceSource, default_decimals
from .retry import RetryScheduler
from .safety import SafetyGuard
from .settings import ConfigurationError, WorkerSettings


logger = logging.getLogger(__name__)


class KeeperWorker:
    """Owns every long-lived component of the worker process."""

    def __init__(
        self,
        settings: WorkerSettings,
        *,
        store: JobStore,
        price_source: PriceSource,
        keeper_client: KeeperClient,
        audit: Optional[AuditLogger] = None,
        price_feed: Optional[CoinGeckoTokenPriceFeed] = None,
        decimals_resolver: DecimalsResolver = default_decimals,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.price_source = price_source
        self.keeper_client = keeper_client
        self.audit = audit or AuditLogger()
        self.price_feed = price_feed
        self._clock = clock
        self._last_price_refresh: Optional[datetime] = None

        self.safety_guard = SafetyGuard(settings.safety, clock=clock)
        self.price_evaluator = PriceEvaluator(
            price_source,
            settings.token_usd_prices,
            decimals_resolver=decimals_resolver,
            clock=clock,
        )
        self.retry_scheduler = RetryScheduler(base_delay_ms=settings.retry_base_delay_ms, clock=clock)
        self.executor = Executor(
            store=store,
            safety_guard=self.safety_guard,
            price_evaluator=self.price_evaluator,
            retry_scheduler=self.retry_scheduler,
            keeper_client=keeper_client,
            audit_sink=self.audit,
            config=ExecutorConfig(dry_run=settings.dry_run, max_concurrency=settings.max_concurrency),
            clock=clock,
        )
        self.poller = JobPoller(self.executor, pre_tick=self.pre_tick)

    async def pre_tick(self) -> None:
        """Runs before every tick: pause sync, heartbeat, USD price refresh."""
        await self.sync_pause()
        await self.store.update_heartbeat()
        await self.refresh_prices()

    async def sync_pause(self) -> None:
        """Mirror the store's pause flag onto the safety guard."""
        paused = await self.store.get_paused()
        if paused == self.safety_guard.is_paused():
            return
        if paused:
            self.safety_guard.pause_all()
            self.audit.record(AuditEvent(event_type="global_pause", message="Global pause set", severity="warning"))
        else:
            self.safety_guard.resume_all()
            self.audit.record(AuditEvent(event_type="global_resume", message="Global pause lifted"))

    async def refresh_prices(self) -> None:
        if self.price_feed is None or self.settings.price_refresh_seconds <= 0:
            return
        now = self._clock()
        if (
            self._last_price_refresh is not None
            and (now - self._last_price_refresh).total_seconds() < self.settings.price_refresh_seconds
        ):
            return

        tokens = sorted({job.token_in.lower() for job in await self.store.get_active_jobs()})
        self._last_price_refresh = now
        if not tokens:
            return
        try:
            await self.price_feed.refresh(self.price_evaluator, tokens)
        except RuntimeError as e:
            # Stale prices stay in place; the next refresh window retries.
            logger.warning(f"USD price refresh failed: {e}")

    async def start(self) -> None:
        if isinstance(self.store, SqlJobStore):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.store.ensure_schema)
        mode = "DRY RUN" if self.settings.dry_run else self.settings.keeper_mode
        logger.info(
            f"Keeper worker starting on {self.settings.network} (chain {self.settings.chain_id}, mode {mode})"
        )
        self.poller.start(self.settings.poll_interval_ms)

    async def shutdown(self) -> None:
        await self.poller.stop()
        await self.poller.wait_for_idle()
        for resource in (self.keeper_client, self.price_feed, self.store):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result
        logger.info("Keeper worker stopped")


def build_worker(settings: WorkerSettings) -> KeeperWorker:
    """Construct a worker with the live collaborators `settings` describe."""
    _ensure_sqlite_dir(settings.database_url)
    store = SqlJobStore(config=SqlConfig(database_url=settings.database_url))

    w3 = AsyncWeb3(AsyncHTTPProvider(settings.rpc_url))
    price_source = SwappiPriceSource(
        w3=w3,
        router_address=settings.router_address,
        wcfx_address=settings.wcfx_address,
    )

    keeper_client: KeeperClient
    if settings.keeper_mode == "paper":
        keeper_client = PaperKeeperClient()
    else:
        if not settings.executor_private_key or not settings.automation_manager_address:
            raise ConfigurationError("web3 keeper mode needs EXECUTOR_PRIVATE_KEY and AUTOMATION_MANAGER_ADDRESS")
        keeper_client = Web3KeeperClient(
            w3=w3,
            private_key=settings.executor_private_key,
            contract_address=settings.automation_manager_address,
            router_address=settings.router_address,
            chain_id=settings.chain_id,
            max_gas_price_gwei=settings.max_gas_price_gwei,
            max_slippage_bps=settings.safety.max_slippage_bps,
            wait_for_receipt=settings.wait_for_receipt,
        )
        logger.info(f"Executor account: {keeper_client.address}")

    price_feed = None
    if settings.price_refresh_seconds > 0:
        price_feed = CoinGeckoTokenPriceFeed(platform=settings.coingecko_platform)

    return KeeperWorker(
        settings,
        store=store,
        price_source=price_source,
        keeper_client=keeper_client,
        audit=AuditLogger(store),
        price_feed=price_feed,
        decimals_resolver=price_source.decimals,
    )


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the automation keeper worker")
    parser.add_argument("--interval", type=int, default=None, help="Poll interval in ms (default: WORKER_POLL_INTERVAL_MS)")
    parser.add_argument("--dry-run", action="store_true", help="Evaluate jobs without submitting transactions")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO").upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    try:
        settings = WorkerSettings.from_env()
        if args.interval is not None:
            if args.interval <= 0:
                raise ConfigurationError("--interval must be positive")
            settings = replace(settings, poll_interval_ms=args.interval)
        if args.dry_run:
            settings = replace(settings, dry_run=True)
        worker = build_worker(settings)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await worker.start()
    try:
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await worker.shutdown()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
