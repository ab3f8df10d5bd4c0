#!/usr/bin/env python3
"""
Lottery reconciliation services

Entry point for the event indexer, the settlement watcher and the sync API.
Each can run alone (one process per service) or together in one process:

  walottery indexer [--once] [--max-pages N]
  walottery watcher [--once]
  walottery api
  walottery all
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, List, Optional, Set

from walottery.blockchain.client import LedgerClient, LedgerError
from walottery.lottery.indexer import EventIndexer
from walottery.lottery.store import DEFAULT_STORE_TIMEOUT, LotteryStore, StoreError, call_store
from walottery.lottery.watcher import SettlementWatcher
from walottery.utils.config import ConfigurationError, get_config_value, get_float, get_int, load_config
from walottery.utils.logger import configure_logging, get_logger
from walottery.web_server import LotteryWebServer

logger = get_logger(__name__)

SERVICES = ("indexer", "watcher", "api")
STORE_RETRY_SECONDS = 5.0


class ReconcilerApp:
    """Wires the ledger client, store and the selected services together.

    Handles graceful shutdown: loops finish their in-flight event or
    candidate, then the store connection pool and the ledger client are
    released.
    """

    def __init__(self, config: Dict[str, Any], services: Set[str]):
        self.config = config
        self.services = services
        self.running = False
        self.shutdown_requested = False

        # Both constructors validate required settings and raise ConfigurationError
        self.blockchain_client = LedgerClient(config, require_signer="watcher" in services)
        self.store = LotteryStore(
            get_config_value(config, "database.url"),
            timeout=get_float(config, "database.timeout_sec", DEFAULT_STORE_TIMEOUT),
        )

        self.indexer: Optional[EventIndexer] = None
        self.watcher: Optional[SettlementWatcher] = None
        self.web_server: Optional[LotteryWebServer] = None

        logger.info("🎲 walottery reconciler initialized (%s)", ", ".join(sorted(services)))

    def _display_config_summary(self) -> None:
        """Display key configuration options for diagnostics."""
        logger.info("=" * 60)
        logger.info("📋 CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        status = self.blockchain_client.get_client_status()
        logger.info(f"🔗 Network: {status['network']} ({status['rpcUrl']})")
        logger.info(f"📄 Contract: {status['contract']}")
        logger.info(f"📡 Event type: {status['eventType']}")
        logger.info(f"👤 Operator: {status['operator'] or 'Not configured'}")
        logger.info(f"💾 Store: {self.store.engine.url.render_as_string(hide_password=True)}")
        if self.indexer:
            logger.info(f"⏱️  Indexer: every {self.indexer.poll_interval}s, batch {self.indexer.batch_size}")
        if self.watcher:
            logger.info(f"⏱️  Watcher: every {self.watcher.poll_interval}s, batch {self.watcher.batch_size}")
        if self.web_server:
            logger.info(f"🌍 API origins: {', '.join(self.web_server.allowed_origins())}")
        logger.info("=" * 60)

    async def _initialize_store(self, retry: bool) -> None:
        while True:
            try:
                await call_store(self.store.initialize, timeout=self.store.timeout)
                return
            except StoreError as e:
                if not retry or self.shutdown_requested:
                    raise
                logger.error(f"❌ Store not ready, retrying in {STORE_RETRY_SECONDS}s: {e}")
                await asyncio.sleep(STORE_RETRY_SECONDS)

    async def initialize(self, retry: bool = False) -> None:
        await self._initialize_store(retry)
        await self.blockchain_client.initialize()

        if "indexer" in self.services:
            self.indexer = EventIndexer(self.blockchain_client, self.store, self.config)
        if "watcher" in self.services:
            self.watcher = SettlementWatcher(self.blockchain_client, self.store, self.config)
        if "api" in self.services:
            self.web_server = LotteryWebServer(self.config, self.blockchain_client, self.store)

        self._display_config_summary()

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            logger.info(f"📡 Received signal {signum}, initiating graceful shutdown...")
        self.running = False
        self.shutdown_requested = True
        if self.indexer:
            self.indexer.stop()
        if self.watcher:
            self.watcher.stop()
        if self.web_server:
            asyncio.ensure_future(self.web_server.stop())

    def exit_was_requested(self) -> bool:
        # uvicorn captures SIGINT/SIGTERM itself while serving
        return self.shutdown_requested or bool(self.web_server and self.web_server.exit_requested)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_shutdown, signum)
            except NotImplementedError:
                # Windows event loops; Ctrl+C still raises KeyboardInterrupt
                pass

    async def start(self) -> None:
        """Run the selected services until they exit or a signal arrives."""
        try:
            self._install_signal_handlers()
            await self.initialize(retry=True)
            if self.shutdown_requested:
                return
            self.running = True

            tasks: List[asyncio.Task] = []
            if self.indexer:
                tasks.append(asyncio.create_task(self.indexer.run(), name="indexer"))
            if self.watcher:
                tasks.append(asyncio.create_task(self.watcher.run(), name="watcher"))
            if self.web_server:
                host = str(get_config_value(self.config, "server.host", "0.0.0.0"))
                port = get_int(self.config, "server.port", 4000)
                tasks.append(asyncio.create_task(self.web_server.start(host=host, port=port), name="api"))

            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            if self.running:
                finished = ", ".join(t.get_name() for t in done)
                if self.exit_was_requested():
                    logger.info(f"🛑 Service {finished} is shutting down; stopping the rest")
                else:
                    logger.error(f"❌ Service {finished} exited unexpectedly; stopping the rest")
                self.request_shutdown()
            await asyncio.gather(*tasks, return_exceptions=True)
            for task in tasks:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            await self.stop()

    async def run_once(self, service: str, max_pages: Optional[int] = None) -> None:
        """Single cron-style pass of the indexer or the watcher."""
        try:
            await self.initialize()
            if service == "indexer" and self.indexer:
                stored = await self.indexer.run_once(max_pages)
                logger.info(f"✅ Indexer run stored {stored} lotteries")
            elif service == "watcher" and self.watcher:
                report = await self.watcher.process_batch()
                logger.info(f"✅ Watcher run: {report.candidates} candidates, {report.submitted} submitted")
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Release the store connection pool and the ledger client."""
        self.running = False
        try:
            await self.blockchain_client.close()
        except Exception as e:
            logger.error(f"❌ Error closing ledger client: {e}")
        try:
            await call_store(self.store.close, timeout=self.store.timeout)
            logger.info("✅ Store connections closed")
        except Exception as e:
            logger.error(f"❌ Error closing store: {e}")
        logger.info("🟢 walottery reconciler stopped")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="walottery", description="walottery off-chain reconciliation services")
    ap.add_argument("--config", help="path to a JSON config file (default config/walottery.conf)")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_i = sub.add_parser("indexer", help="mirror LotteryCreated events into the store")
    ap_i.add_argument("--once", action="store_true", help="drain available pages once and exit")
    ap_i.add_argument("--max-pages", type=int, default=None, help="page limit for --once (default INDEXER_PAGES_PER_RUN)")

    ap_w = sub.add_parser("watcher", help="submit draw transactions for expired lotteries")
    ap_w.add_argument("--once", action="store_true", help="process one batch and exit")

    sub.add_parser("api", help="serve the /lotteries sync endpoint")
    sub.add_parser("all", help="run indexer, watcher and api in one process")
    return ap


async def _main(args: argparse.Namespace) -> None:
    config = load_config(args.config)
    # LOG_LEVEL / LOG_FILE may come from .env, which load_config just read
    configure_logging()
    services = set(SERVICES) if args.cmd == "all" else {args.cmd}
    app = ReconcilerApp(config, services)
    if getattr(args, "once", False):
        await app.run_once(args.cmd, getattr(args, "max_pages", None))
    else:
        await app.start()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the reconciliation services"""
    args = build_parser().parse_args(argv)
    try:
        asyncio.run(_main(args))
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        sys.exit(1)
    except (LedgerError, StoreError) as e:
        logger.error(f"❌ Startup failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted by user")


if __name__ == "__main__":
    main()
