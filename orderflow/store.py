"""
Order store: the only writer of order and driver state.

Writes take a pure `change` function and run it inside the store's atomic
section (per-order lock, then the driver lock when a driver is involved).
Whatever `change` raises aborts the write with nothing persisted. Lock order is
always order -> driver.
"""
import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from orderflow.errors import NotFound
from orderflow.models import Driver, Order, OrderStatus, StatusChange

OrderChange = Callable[[Order, Driver | None], tuple[Order, Driver | None]]
AssignChange = Callable[[Order, Driver], tuple[Order, Driver]]
DriverChange = Callable[[Driver], Driver]

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class OrderFilter:
    customer_id: str | None = None
    driver_id: str | None = None
    status: OrderStatus | None = None
    restaurant_id: str | None = None
    # with customer_id: also match orders placed at these restaurants
    managed_restaurant_ids: frozenset[str] = frozenset()
    # with driver_id: also match unassigned ready_for_pickup orders
    include_ready_pool: bool = False

    def matches(self, order: Order) -> bool:
        if self.status is not None and order.status != self.status:
            return False
        if self.restaurant_id is not None and order.restaurant_id != self.restaurant_id:
            return False
        if self.customer_id is not None:
            own = order.customer_id == self.customer_id
            managed = order.restaurant_id in self.managed_restaurant_ids
            if not (own or managed):
                return False
        if self.driver_id is not None:
            assigned = order.driver_id == self.driver_id
            pooled = (
                self.include_ready_pool
                and order.status == OrderStatus.READY_FOR_PICKUP
                and order.driver_id is None
            )
            if not (assigned or pooled):
                return False
        return True


def dispatch_order_key(driver: Driver) -> tuple[datetime, str]:
    """First available, first served; id breaks exact ties."""
    return (driver.available_since or _NEVER, driver.id)


def reprovision(stored: Driver, incoming: Driver) -> Driver:
    """Profile and flags from incoming; the in-flight slot and queue position stay as stored."""
    if incoming.is_available and not stored.is_available:
        available_since = incoming.available_since
    else:
        available_since = stored.available_since
    return incoming.model_copy(
        update={"active_order_id": stored.active_order_id, "available_since": available_since}
    )


class OrderStore:
    async def insert_order(self, order: Order, actor_id: str | None, notes: str | None = None) -> Order:
        raise NotImplementedError

    async def get_order(self, order_id: str) -> Order | None:
        raise NotImplementedError

    async def transition(
        self, order_id: str, change: OrderChange, actor_id: str | None, notes: str | None = None
    ) -> Order:
        raise NotImplementedError

    async def assign(self, order_id: str, driver_id: str, change: AssignChange, actor_id: str | None) -> tuple[Order, Driver]:
        raise NotImplementedError

    def iter_orders(self, flt: OrderFilter, page_size: int = 100) -> AsyncIterator[Order]:
        """Orders matching flt, oldest first, fetched page by page."""
        raise NotImplementedError

    async def status_history(self, order_id: str) -> list[StatusChange]:
        raise NotImplementedError

    async def save_driver(self, driver: Driver) -> Driver:
        """Create the driver, or re-provision an existing one (see reprovision)."""
        raise NotImplementedError

    async def get_driver(self, driver_id: str) -> Driver | None:
        raise NotImplementedError

    async def get_driver_by_user(self, user_id: str) -> Driver | None:
        raise NotImplementedError

    async def update_driver(self, driver_id: str, change: DriverChange) -> Driver:
        raise NotImplementedError

    async def list_drivers(self) -> list[Driver]:
        raise NotImplementedError

    async def eligible_drivers(self) -> list[Driver]:
        """Drivers able to take an order now, in dispatch order. A scan only:
        eligibility is checked again when an assignment commits."""
        raise NotImplementedError


class InMemoryOrderStore(OrderStore):
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._history: dict[str, list[StatusChange]] = defaultdict(list)
        self._drivers: dict[str, Driver] = {}
        self._order_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._driver_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _record(self, order: Order, actor_id: str | None, notes: str | None) -> None:
        self._history[order.id].append(
            StatusChange(order_id=order.id, status=order.status, actor_id=actor_id, changed_at=order.updated_at, notes=notes)
        )

    async def insert_order(self, order: Order, actor_id: str | None, notes: str | None = None) -> Order:
        async with self._order_locks[order.id]:
            if order.id in self._orders:
                raise ValueError(f"order {order.id} already exists")
            self._orders[order.id] = order
            self._record(order, actor_id, notes)
        return order

    async def get_order(self, order_id: str) -> Order | None:
        return self._orders.get(order_id)

    async def transition(
        self, order_id: str, change: OrderChange, actor_id: str | None, notes: str | None = None
    ) -> Order:
        async with self._order_locks[order_id]:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound("order", order_id)
            if order.driver_id is None:
                new_order, _ = change(order, None)
                self._commit(order, new_order, None, actor_id, notes)
                return new_order
            async with self._driver_locks[order.driver_id]:
                driver = self._drivers.get(order.driver_id)
                new_order, new_driver = change(order, driver)
                self._commit(order, new_order, new_driver, actor_id, notes)
                return new_order

    async def assign(self, order_id: str, driver_id: str, change: AssignChange, actor_id: str | None) -> tuple[Order, Driver]:
        async with self._order_locks[order_id]:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFound("order", order_id)
            async with self._driver_locks[driver_id]:
                driver = self._drivers.get(driver_id)
                if driver is None:
                    raise NotFound("driver", driver_id)
                new_order, new_driver = change(order, driver)
                self._commit(order, new_order, new_driver, actor_id, None)
                return new_order, new_driver

    def _commit(self, old: Order, new: Order, driver: Driver | None, actor_id: str | None, notes: str | None) -> None:
        self._orders[new.id] = new
        if driver is not None:
            self._drivers[driver.id] = driver
        if new.status != old.status:
            self._record(new, actor_id, notes)

    async def iter_orders(self, flt: OrderFilter, page_size: int = 100) -> AsyncIterator[Order]:
        ids = sorted(self._orders, key=lambda oid: (self._orders[oid].created_at, oid))
        for start in range(0, len(ids), page_size):
            for oid in ids[start:start + page_size]:
                order = self._orders[oid]
                if flt.matches(order):
                    yield order
            await asyncio.sleep(0)

    async def status_history(self, order_id: str) -> list[StatusChange]:
        return list(self._history.get(order_id, ()))

    async def save_driver(self, driver: Driver) -> Driver:
        async with self._driver_locks[driver.id]:
            stored = self._drivers.get(driver.id)
            if stored is not None:
                driver = reprovision(stored, driver)
            self._drivers[driver.id] = driver
        return driver

    async def get_driver(self, driver_id: str) -> Driver | None:
        return self._drivers.get(driver_id)

    async def get_driver_by_user(self, user_id: str) -> Driver | None:
        return next((d for d in self._drivers.values() if d.user_id == user_id), None)

    async def update_driver(self, driver_id: str, change: DriverChange) -> Driver:
        async with self._driver_locks[driver_id]:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise NotFound("driver", driver_id)
            updated = change(driver)
            self._drivers[driver_id] = updated
            return updated

    async def list_drivers(self) -> list[Driver]:
        return sorted(self._drivers.values(), key=lambda d: d.id)

    async def eligible_drivers(self) -> list[Driver]:
        return sorted((d for d in self._drivers.values() if d.is_eligible), key=dispatch_order_key)
