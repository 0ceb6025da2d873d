import asyncio

from prometheus_client import REGISTRY

from _helper import add_driver, build_services, ready_order
from orderflow.config import settings
from orderflow.models import OrderStatus
from orderflow.worker import rematch_once, run_worker


class StopAfter:
    """Matcher stand-in that sets the shutdown event after n passes; the first
    pass can be made to fail."""

    def __init__(self, matcher, stop: asyncio.Event, passes: int, fail_first: bool = False) -> None:
        self._matcher = matcher
        self._stop = stop
        self._left = passes
        self._fail_first = fail_first
        self.calls = 0

    async def run_pass(self):
        self.calls += 1
        self._left -= 1
        if self._left <= 0:
            self._stop.set()
        if self._fail_first and self.calls == 1:
            raise RuntimeError("database went away")
        return await self._matcher.run_pass()

    async def waiting_orders(self):
        return await self._matcher.waiting_orders()


def gauge_value() -> float:
    return REGISTRY.get_sample_value("ready_orders_waiting")


def test_rematch_once_assigns_and_reports_waiting():
    async def scenario():
        services = build_services(auto_dispatch=False)
        for _ in range(3):
            await ready_order(services)
        await add_driver(services, "d1")

        assert await rematch_once(services.matcher) == 1
        assert gauge_value() == 2
        assert await rematch_once(services.matcher) == 0

    asyncio.run(scenario())


def test_run_worker_stops_on_shutdown(monkeypatch):
    monkeypatch.setattr(settings, "rematch_interval_sec", 0.01)

    async def scenario():
        services = build_services(auto_dispatch=False)
        order = await ready_order(services)
        await add_driver(services, "d1")
        stop = asyncio.Event()
        matcher = StopAfter(services.matcher, stop, passes=1)

        await asyncio.wait_for(run_worker(stop, matcher=matcher), timeout=5)
        assert matcher.calls == 1
        assert (await services.store.get_order(order.id)).status == OrderStatus.OUT_FOR_DELIVERY

    asyncio.run(scenario())


def test_run_worker_survives_failed_pass(monkeypatch):
    monkeypatch.setattr(settings, "rematch_interval_sec", 0.01)

    async def scenario():
        services = build_services(auto_dispatch=False)
        order = await ready_order(services)
        await add_driver(services, "d1")
        stop = asyncio.Event()
        matcher = StopAfter(services.matcher, stop, passes=2, fail_first=True)

        await asyncio.wait_for(run_worker(stop, matcher=matcher), timeout=5)
        assert matcher.calls == 2
        assert (await services.store.get_order(order.id)).driver_id == "d1"

    asyncio.run(scenario())
