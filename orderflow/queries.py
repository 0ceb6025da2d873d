"""
Read side: per-role order listings and lookups. Never writes.

Listings are OrderListing objects: lazy (pages are fetched while iterating),
finite, and restartable (each `async for` starts a fresh scan).
"""
from collections.abc import AsyncIterator
from decimal import Decimal

from pydantic import BaseModel

from orderflow.catalog import Catalog
from orderflow.errors import Forbidden, NotFound
from orderflow.models import Driver, Order, OrderStatus, Principal, StatusChange
from orderflow.roles import Capability, Role
from orderflow.sessions import SessionGuard
from orderflow.store import OrderFilter, OrderStore


class OrderListing:
    def __init__(self, store: OrderStore, flt: OrderFilter, page_size: int = 100) -> None:
        self._store = store
        self.filter = flt
        self._page_size = page_size

    def __aiter__(self) -> AsyncIterator[Order]:
        return self._store.iter_orders(self.filter, self._page_size)

    async def to_list(self) -> list[Order]:
        return [order async for order in self]


class DriverEarnings(BaseModel):
    total_earnings: Decimal
    total_orders: int
    average_per_order: Decimal
    recent_orders: list[Order]


class OrderQueries:
    def __init__(self, store: OrderStore, catalog: Catalog) -> None:
        self._store = store
        self._catalog = catalog

    async def list_orders_for_customer(
        self, user_id: str, status: OrderStatus | None = None, restaurant_id: str | None = None
    ) -> OrderListing:
        """The customer's own orders plus every order at a restaurant they own."""
        managed = await self._catalog.restaurants_owned_by(user_id)
        return OrderListing(
            self._store,
            OrderFilter(customer_id=user_id, status=status, restaurant_id=restaurant_id, managed_restaurant_ids=managed),
        )

    async def list_orders_for_driver(
        self, user_id: str, status: OrderStatus | None = None, restaurant_id: str | None = None
    ) -> OrderListing:
        """Orders assigned to the driver plus the unassigned ready_for_pickup pool."""
        driver = await self._driver(user_id)
        return OrderListing(
            self._store,
            OrderFilter(driver_id=driver.id, status=status, restaurant_id=restaurant_id, include_ready_pool=True),
        )

    def list_all_orders(self, status: OrderStatus | None = None, restaurant_id: str | None = None) -> OrderListing:
        return OrderListing(self._store, OrderFilter(status=status, restaurant_id=restaurant_id))

    async def orders_for(
        self, principal: Principal, status: OrderStatus | None = None, restaurant_id: str | None = None
    ) -> OrderListing:
        SessionGuard.check(principal, Capability.READ)
        if principal.role == Role.ADMIN:
            return self.list_all_orders(status, restaurant_id)
        if principal.role == Role.DRIVER:
            return await self.list_orders_for_driver(principal.user_id, status, restaurant_id)
        return await self.list_orders_for_customer(principal.user_id, status, restaurant_id)

    async def get_order(self, principal: Principal, order_id: str) -> Order:
        SessionGuard.check(principal, Capability.READ)
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFound("order", order_id)
        if principal.role == Role.ADMIN:
            return order
        if principal.role == Role.CUSTOMER:
            if order.customer_id == principal.user_id:
                return order
            restaurant = await self._catalog.get_restaurant(order.restaurant_id)
            if restaurant is not None and restaurant.owner_id == principal.user_id:
                return order
        if principal.role == Role.DRIVER:
            driver = await self._driver(principal.user_id)
            if OrderFilter(driver_id=driver.id, include_ready_pool=True).matches(order):
                return order
        raise Forbidden(f"user {principal.user_id} cannot view order {order_id}")

    async def status_history(self, principal: Principal, order_id: str) -> list[StatusChange]:
        await self.get_order(principal, order_id)
        return await self._store.status_history(order_id)

    async def driver_earnings(self, principal: Principal, recent: int = 5) -> DriverEarnings:
        """Delivery fees of the driver's delivered orders."""
        if principal.role != Role.DRIVER:
            raise Forbidden("earnings are only available to drivers")
        driver = await self._driver(principal.user_id)
        delivered = await OrderListing(
            self._store, OrderFilter(driver_id=driver.id, status=OrderStatus.DELIVERED)
        ).to_list()
        total = sum((o.delivery_fee for o in delivered), Decimal("0"))
        return DriverEarnings(
            total_earnings=total,
            total_orders=len(delivered),
            average_per_order=total / len(delivered) if delivered else Decimal("0"),
            recent_orders=sorted(delivered, key=lambda o: o.updated_at, reverse=True)[:recent],
        )

    async def list_drivers(self, principal: Principal) -> list[Driver]:
        if principal.role != Role.ADMIN:
            raise Forbidden("driver roster is admin only")
        return await self._store.list_drivers()

    async def _driver(self, user_id: str) -> Driver:
        driver = await self._store.get_driver_by_user(user_id)
        if driver is None:
            raise NotFound("driver", user_id)
        return driver
