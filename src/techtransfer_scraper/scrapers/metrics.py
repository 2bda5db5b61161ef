"""
Sinks for dispatcher metrics events.

An event is a flat key-value record. Shipping events to a collector is the
job of whatever sink the caller plugs in.
"""

import threading
from typing import Any, Dict, List, Protocol

from ..utils.logging import get_logger

logger = get_logger(__name__)


class MetricsSink(Protocol):
    def emit(self, event: Dict[str, Any]) -> None:
        ...


class LoggingMetricsSink:
    """Writes each event as a structured log line."""

    def __init__(self, logger_name: str = "techtransfer_scraper.metrics"):
        self._logger = get_logger(logger_name)

    def emit(self, event: Dict[str, Any]) -> None:
        self._logger.info("scrape_metrics", **event)


class InMemoryMetricsSink:
    """Collects events in memory; safe to share between threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[Dict[str, Any]] = []

    def emit(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(event))

    @property
    def events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class NullMetricsSink:
    def emit(self, event: Dict[str, Any]) -> None:
        pass


def emit_safely(sink: MetricsSink, event: Dict[str, Any]) -> None:
    """Emit an event; a broken sink is logged and never fails the scrape."""
    try:
        sink.emit(event)
    except Exception as e:
        logger.error("Error in metrics sink", error=str(e), sink=sink.__class__.__name__)
