"""
Worker: periodic re-matching of orders waiting in ready_for_pickup.
- Runs a matching pass every REMATCH interval; orders with no driver stay in the pool.
- Prometheus /metrics on the worker metrics port (dispatch outcomes, ready orders waiting).
- Graceful shutdown on SIGTERM.
Run: python -m orderflow.worker
"""
import asyncio
import logging
import signal
import sys
import threading

from orderflow.config import settings
from orderflow.dispatch import DispatchMatcher
from orderflow.metrics import ready_orders_waiting
from orderflow.services import build_services, close_services

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


async def rematch_once(matcher: DispatchMatcher) -> int:
    """One matching pass; returns the number of orders assigned."""
    assigned = await matcher.run_pass()
    waiting = await matcher.waiting_orders()
    ready_orders_waiting.set(waiting)
    if assigned or waiting:
        logger.info("Matching pass: assigned=%d waiting=%d", len(assigned), waiting)
    return len(assigned)


async def run_worker(shutdown_event: asyncio.Event, matcher: DispatchMatcher | None = None) -> None:
    owns_services = matcher is None
    if matcher is None:
        if settings.store_backend == "memory":
            logger.warning("In-memory store: the worker only sees orders created in its own process")
        matcher = (await build_services(settings)).matcher
    logger.info("Re-matching every %.1fs ...", settings.rematch_interval_sec)
    try:
        while not shutdown_event.is_set():
            try:
                await rematch_once(matcher)
            except Exception as e:
                logger.exception("Matching pass failed: %s", e)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=settings.rematch_interval_sec)
            except asyncio.TimeoutError:
                pass
    finally:
        if owns_services:
            await close_services()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
