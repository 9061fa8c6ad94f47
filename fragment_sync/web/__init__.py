"""Web monitoring server and statistics collection utilities."""

from fragment_sync.web.server import WebServer
from fragment_sync.web.stats import StatsCollector

__all__ = [
    "WebServer",
    "StatsCollector",
]
