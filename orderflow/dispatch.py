"""
Dispatch matcher: binds one available driver to each ready_for_pickup order.

assign() scans eligible drivers (first available, first served) and commits
through OrderStore.assign(), which holds the order and driver locks while the
binding is re-validated and written. A driver taken by a concurrent commit is
skipped in favour of the next candidate; an order taken by a concurrent commit
ends the attempt with AlreadyAssigned.
"""
import logging
from collections.abc import Collection, Mapping
from functools import partial

from orderflow.config import settings
from orderflow.errors import AlreadyAssigned, InvalidTransition, NoDriverAvailable, NotFound
from orderflow.events import EventPublisher, NullEventPublisher, OrderEvent, OrderEventType, emit
from orderflow.metrics import dispatch_attempts_total, transitions_total
from orderflow.models import Driver, Order, OrderStatus, Principal, utcnow
from orderflow.order_state import OrderAction, next_status
from orderflow.roles import Capability
from orderflow.sessions import SessionGuard
from orderflow.store import OrderFilter, OrderStore

logger = logging.getLogger(__name__)


def evolve(order: Order, **changes) -> Order:
    """New version of order with changes applied; model invariants are re-checked."""
    return Order.model_validate({**order.model_dump(), **changes})


def check_assignable(order: Order) -> None:
    if order.status == OrderStatus.OUT_FOR_DELIVERY:
        raise AlreadyAssigned("order", order.id)
    next_status(order.id, order.status, OrderAction.DISPATCH)


class DispatchMatcher:
    def __init__(
        self,
        store: OrderStore,
        publisher: EventPublisher | None = None,
        clock=utcnow,
        max_candidates: int | None = None,
    ) -> None:
        self._store = store
        self._publisher = publisher or NullEventPublisher()
        self._clock = clock
        self._max_candidates = max_candidates or settings.dispatch_max_candidates

    async def assign(self, order_id: str, exclude: Collection[str] = (), actor_id: str | None = None) -> Order:
        """Bind a driver to a ready order. Raises NoDriverAvailable when nobody can take it;
        the order then stays ready_for_pickup."""
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFound("order", order_id)
        check_assignable(order)

        candidates = [d for d in await self._store.eligible_drivers() if d.id not in exclude]
        for driver in candidates[: self._max_candidates]:
            try:
                new_order, _ = await self._store.assign(order_id, driver.id, partial(self._bind, driver.id), actor_id)
            except AlreadyAssigned as e:
                if e.subject != "driver":
                    dispatch_attempts_total.labels(outcome="order_race").inc()
                    raise
                dispatch_attempts_total.labels(outcome="driver_race").inc()
                logger.info("Driver %s no longer eligible for order_id=%s, trying next candidate", driver.id, order_id)
                continue
            dispatch_attempts_total.labels(outcome="assigned").inc()
            transitions_total.labels(action=OrderAction.DISPATCH.value).inc()
            logger.info("Assigned driver %s to order_id=%s", driver.id, order_id)
            await emit(self._publisher, OrderEvent.for_order(OrderEventType.DRIVER_ASSIGNED, new_order, actor_id))
            return new_order

        dispatch_attempts_total.labels(outcome="no_driver").inc()
        logger.info("No driver available for order_id=%s (%d candidate(s) tried)", order_id, len(candidates))
        raise NoDriverAvailable(order_id)

    def _bind(self, driver_id: str, order: Order, driver: Driver) -> tuple[Order, Driver]:
        # Runs under both locks: scan-time eligibility may be stale
        check_assignable(order)
        if not driver.is_eligible:
            raise AlreadyAssigned("driver", driver_id)
        now = self._clock()
        new_order = evolve(
            order,
            driver_id=driver_id,
            status=next_status(order.id, order.status, OrderAction.DISPATCH),
            updated_at=now,
        )
        return new_order, driver.model_copy(update={"active_order_id": order.id})

    async def run_pass(self, avoid: Mapping[str, Collection[str]] | None = None) -> list[Order]:
        """Offer every unassigned ready order, oldest first, until drivers run out.
        avoid maps an order id to drivers that must not get it in this pass."""
        avoid = avoid or {}
        assigned: list[Order] = []
        async for order in self._store.iter_orders(OrderFilter(status=OrderStatus.READY_FOR_PICKUP)):
            if order.driver_id is not None:
                continue
            try:
                assigned.append(await self.assign(order.id, exclude=avoid.get(order.id, ())))
            except NoDriverAvailable:
                if not avoid.get(order.id):
                    break
            except (AlreadyAssigned, InvalidTransition, NotFound):
                # changed since the scan (another pass, a cancel)
                continue
        if assigned:
            logger.info("Matching pass assigned %d order(s)", len(assigned))
        return assigned

    async def waiting_orders(self) -> int:
        count = 0
        async for _ in self._store.iter_orders(OrderFilter(status=OrderStatus.READY_FOR_PICKUP)):
            count += 1
        return count

    async def register_driver(self, driver: Driver) -> Driver:
        """Provisioning hook for the account service."""
        if driver.is_available and driver.available_since is None:
            driver = driver.model_copy(update={"available_since": self._clock()})
        return await self._store.save_driver(driver)

    async def set_availability(self, principal: Principal, is_available: bool, rematch: bool = True) -> Driver:
        """Driver toggles their own readiness. Becoming available puts them at the
        back of the pool and re-offers waiting orders."""
        SessionGuard.check(principal, Capability.DRIVER_WRITE)
        driver = await self._store.get_driver_by_user(principal.user_id)
        if driver is None:
            raise NotFound("driver", principal.user_id)
        now = self._clock()

        def change(current: Driver) -> Driver:
            if is_available and not current.is_available:
                return current.model_copy(update={"is_available": True, "available_since": now})
            return current.model_copy(update={"is_available": is_available})

        updated = await self._store.update_driver(driver.id, change)
        logger.info("Driver %s availability=%s", updated.id, updated.is_available)
        if rematch and updated.is_eligible and not driver.is_available:
            await self.run_pass()
            updated = await self._store.get_driver(updated.id) or updated
        return updated

    async def set_active(self, principal: Principal, driver_id: str, is_active: bool) -> Driver:
        """Admin enrolment flag. An inactive driver keeps an in-flight order but gets no new ones."""
        SessionGuard.check(principal, Capability.ADMIN_WRITE)
        updated = await self._store.update_driver(driver_id, lambda d: d.model_copy(update={"is_active": is_active}))
        logger.info("Driver %s is_active=%s (by %s)", driver_id, is_active, principal.user_id)
        return updated

    async def assign_as(self, principal: Principal, order_id: str) -> Order:
        """Manual dispatch trigger for admins."""
        SessionGuard.check(principal, Capability.ADMIN_WRITE)
        return await self.assign(order_id, actor_id=principal.user_id)

    async def run_pass_as(self, principal: Principal) -> list[Order]:
        SessionGuard.check(principal, Capability.ADMIN_WRITE)
        return await self.run_pass()
