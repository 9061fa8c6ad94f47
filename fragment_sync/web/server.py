"""Monitoring HTTP endpoints for the sync worker.

- GET /api/health  - 200 with status "ok" while passes succeed, 503 "degraded"
  before the first checkpoint or after a failed pass
- GET /api/metrics - full metrics snapshot including the last pass result
"""

from __future__ import annotations

from typing import Optional

from aiohttp import web

from fragment_sync.utils.logging import get_logger
from fragment_sync.web.stats import StatsCollector

logger = get_logger(__name__)

COLLECTOR_KEY = web.AppKey("stats_collector", StatsCollector)

routes = web.RouteTableDef()


@routes.get("/api/health")
async def handle_health(request: web.Request) -> web.Response:
    try:
        metrics = await request.app[COLLECTOR_KEY].collect()
    except Exception as e:
        logger.error("Health check failed", extra={"ctx_error": str(e)})
        return web.json_response({"status": "error", "message": str(e)}, status=500)

    sync = metrics.sync
    last_pass = sync.last_result
    payload = {
        "status": "ok" if sync.healthy else "degraded",
        "contract_type": sync.contract_type,
        "checkpoint_block": sync.checkpoint_block,
        "lag_blocks": sync.lag_blocks,
        "consecutive_failures": sync.consecutive_failures,
        "last_pass_at": last_pass.finished_at.isoformat() if last_pass else None,
        "uptime_seconds": round(metrics.uptime_seconds, 1),
    }
    return web.json_response(payload, status=200 if sync.healthy else 503)


@routes.get("/api/metrics")
async def handle_metrics(request: web.Request) -> web.Response:
    try:
        return web.json_response(await request.app[COLLECTOR_KEY].collect_dict())
    except Exception as e:
        logger.error("Metrics collection failed", extra={"ctx_error": str(e)})
        return web.json_response(
            {"error": "metrics_collection_failed", "message": str(e)},
            status=500,
        )


def create_app(stats_collector: StatsCollector) -> web.Application:
    app = web.Application()
    app[COLLECTOR_KEY] = stats_collector
    app.add_routes(routes)
    return app


class WebServer:
    """Runs the monitoring app next to the sync loop.

    Example:
        server = WebServer(stats_collector, host="127.0.0.1", port=8080)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        stats_collector: StatsCollector,
        host: str = "127.0.0.1",
        port: int = 8080,
    ) -> None:
        self.host = host
        self.port = port
        self.app = create_app(stats_collector)
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind and serve.

        Raises:
            OSError: If the port is already in use.
        """
        if self._runner is not None:
            logger.warning("Web server already running")
            return

        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self.host, self.port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner

        logger.info("Web server started", extra={"ctx_host": self.host, "ctx_port": self.port})

    async def stop(self) -> None:
        if self._runner is None:
            return
        # Cleanup stops every site of the runner
        await self._runner.cleanup()
        self._runner = None
        logger.info("Web server stopped")


__all__ = ["WebServer", "create_app", "COLLECTOR_KEY"]
