"""Main entry point for the fragment trade sync worker."""

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from fragment_sync.chain.abi import TradeEventAbi
from fragment_sync.chain.client import ChainClient
from fragment_sync.config import Settings, get_settings
from fragment_sync.database.repository import CheckpointError, Database
from fragment_sync.services.trade_sync import CheckpointMissingError, TradeSyncService
from fragment_sync.utils.logging import get_logger, setup_logging
from fragment_sync.web.server import WebServer
from fragment_sync.web.stats import StatsCollector

logger = get_logger(__name__)


class Application:
    """Main application orchestrator.

    Coordinates all components:
    - Database
    - Chain RPC client
    - Trade sync service
    - Monitoring web server
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db: Optional[Database] = None
        self._client: Optional[ChainClient] = None
        self._sync_service: Optional[TradeSyncService] = None
        self._stats_collector: Optional[StatsCollector] = None
        self._web_server: Optional[WebServer] = None
        self._start_time = datetime.now(timezone.utc)
        self._shutdown_event = asyncio.Event()

    @property
    def sync_service(self) -> TradeSyncService:
        if self._sync_service is None:
            raise RuntimeError("Application not initialized")
        return self._sync_service

    async def initialize(self, with_web: bool = True) -> None:
        """Initialize all components."""
        logger.info("Initializing application")
        settings = self._settings

        self._db = Database(settings.db_path)
        await self._db.initialize()

        self._client = ChainClient(
            rpc_url=settings.rpc_url,
            timeout=settings.rpc_timeout,
            rate_limit_per_sec=settings.rpc_rps,
        )

        self._sync_service = TradeSyncService(
            self._client,
            self._db,
            contract_type=settings.contract_type,
            contract_address=settings.contract_address,
            event=TradeEventAbi(settings.event_signature),
            block_step=settings.block_step,
        )

        self._stats_collector = StatsCollector(
            sync_service=self._sync_service,
            db=self._db,
            start_time=self._start_time,
        )

        # Monitoring is optional; sync keeps running without it
        if with_web and settings.web_enabled:
            self._web_server = WebServer(
                stats_collector=self._stats_collector,
                host=settings.web_host,
                port=settings.web_port,
            )
            try:
                await self._web_server.start()
            except Exception as e:
                logger.error(
                    "Failed to start web server - continuing without monitoring",
                    extra={"ctx_error": str(e), "ctx_error_type": type(e).__name__},
                )
                self._web_server = None

        logger.info("Application initialized")

    async def shutdown(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("Shutting down application")

        if self._sync_service:
            await self._sync_service.stop_periodic_sync()

        if self._web_server:
            await self._web_server.stop()

        if self._client:
            await self._client.close()

        if self._db:
            await self._db.close()

        logger.info("Application shutdown complete")

    async def run(self) -> None:
        """Run periodic sync until a shutdown is requested."""
        await self.initialize()

        await self.sync_service.start_periodic_sync(self._settings.sync_interval_sec)
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request application shutdown."""
        self._shutdown_event.set()


# Global application instance for signal handlers
_app: Optional[Application] = None


def _handle_signal(signum: int, frame) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown")
    if _app:
        _app.request_shutdown()


async def run_forever(settings: Settings) -> None:
    """Run the periodic sync worker."""
    global _app

    logger.info(
        "Starting fragment trade sync",
        extra={
            "ctx_rpc_url": settings.rpc_url,
            "ctx_contract_type": settings.contract_type,
            "ctx_contract_address": settings.contract_address,
            "ctx_db_path": settings.db_path,
            "ctx_block_step": settings.block_step,
            "ctx_web_addr": f"http://{settings.web_host}:{settings.web_port}"
            if settings.web_enabled
            else "disabled",
        },
    )

    _app = Application(settings)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        await _app.run()
    finally:
        await _app.shutdown()


async def sync_once(settings: Settings) -> int:
    """Run a single pass and print its result."""
    app = Application(settings)
    try:
        await app.initialize(with_web=False)
        result = await app.sync_service.run_pass()
    except CheckpointMissingError as e:
        logger.error("Cannot sync without a checkpoint", extra={"ctx_error": str(e)})
        return 2
    finally:
        await app.shutdown()

    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


async def init_checkpoint(settings: Settings, block: int, force: bool) -> int:
    """Seed the checkpoint for the configured contract type."""
    db = Database(settings.db_path)
    try:
        await db.initialize()
        checkpoint = await db.set_checkpoint(settings.contract_type, block, force=force)
    except CheckpointError as e:
        logger.error("Checkpoint not changed", extra={"ctx_error": str(e)})
        return 1
    finally:
        await db.close()

    print(json.dumps(checkpoint.model_dump(mode="json"), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fragment-sync",
        description="Reconcile fragment market trade events into queryable state.",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run periodic sync (default)")
    sub.add_parser("sync-once", help="Run one reconciliation pass and exit")

    init = sub.add_parser("init-checkpoint", help="Seed the sync checkpoint")
    init.add_argument("--block", type=int, required=True, help="Last block treated as already synced")
    init.add_argument("--force", action="store_true", help="Allow moving the checkpoint backwards")

    return parser


def cli_main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        settings.log_level,
        settings.log_format,
        static_fields={"service": "fragment-sync", "contract_type": settings.contract_type},
    )

    exit_code = 0
    try:
        if args.command == "sync-once":
            exit_code = asyncio.run(sync_once(settings))
        elif args.command == "init-checkpoint":
            exit_code = asyncio.run(init_checkpoint(settings, args.block, args.force))
        else:
            asyncio.run(run_forever(settings))
    except KeyboardInterrupt:
        pass
    sys.exit(exit_code)


if __name__ == "__main__":
    cli_main()
