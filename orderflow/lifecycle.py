"""
Lifecycle engine: the only code path that changes an order's status.

Each operation checks the caller's capability, resolves which state-machine
action applies, and hands a pure change function to the store, which runs it
while holding the order lock (and the driver lock when the order has a driver).
An illegal action raises InvalidTransition from inside that section, so the
order is never partially written.
"""
import logging
import uuid
from collections.abc import Callable
from decimal import Decimal

from pydantic import ValidationError

from orderflow.catalog import Catalog
from orderflow.config import settings
from orderflow.dispatch import DispatchMatcher, evolve
from orderflow.errors import (
    AlreadyAssigned,
    Forbidden,
    InvalidOrder,
    InvalidTransition,
    NoDriverAvailable,
    NotFound,
    RequestInProgress,
)
from orderflow.events import EventPublisher, NullEventPublisher, OrderEvent, OrderEventType, emit
from orderflow.idempotency import IdempotencyRegistry
from orderflow.metrics import orders_created_total, transitions_rejected_total, transitions_total
from orderflow.models import Driver, NewOrder, Order, OrderItem, OrderStatus, Principal, utcnow
from orderflow.order_state import RELEASES_DRIVER, OrderAction, next_status
from orderflow.roles import Capability, Role, has_capability
from orderflow.sessions import SessionGuard
from orderflow.store import OrderStore

logger = logging.getLogger(__name__)

EVENT_FOR_ACTION = {
    OrderAction.ACCEPT: OrderEventType.ORDER_ACCEPTED,
    OrderAction.MARK_READY: OrderEventType.ORDER_READY,
    OrderAction.CONFIRM_DELIVERED: OrderEventType.ORDER_DELIVERED,
    OrderAction.CANCEL: OrderEventType.ORDER_CANCELLED,
    OrderAction.FORCE_CANCEL: OrderEventType.ORDER_CANCELLED,
    OrderAction.REASSIGN: OrderEventType.DRIVER_REASSIGNED,
}


class LifecycleEngine:
    def __init__(
        self,
        store: OrderStore,
        catalog: Catalog,
        matcher: DispatchMatcher,
        publisher: EventPublisher | None = None,
        idempotency: IdempotencyRegistry | None = None,
        clock=utcnow,
        auto_dispatch: bool | None = None,
        default_delivery_fee: Decimal | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._matcher = matcher
        self._publisher = publisher or NullEventPublisher()
        self._idempotency = idempotency
        self._clock = clock
        self._auto_dispatch = settings.auto_dispatch if auto_dispatch is None else auto_dispatch
        self._default_delivery_fee = (
            settings.default_delivery_fee if default_delivery_fee is None else default_delivery_fee
        )

    # -------------------- creation --------------------

    async def create_order(self, principal: Principal, request: NewOrder, idempotency_key: str | None = None) -> Order:
        """Place an order in `placed`. Prices and the delivery fee are read from the
        catalog now and frozen into the order."""
        SessionGuard.check(principal, Capability.CUSTOMER_WRITE)
        items, delivery_fee = await self._price(request)

        order_id = str(uuid.uuid4())
        key = f"idempotency:{principal.user_id}:{idempotency_key}" if idempotency_key else None
        if key and self._idempotency is not None:
            existing_id = await self._idempotency.claim(key, order_id)
            if existing_id is not None:
                existing = await self._store.get_order(existing_id)
                if existing is None:
                    raise RequestInProgress(idempotency_key)
                logger.info("Duplicate idempotency key for order_id=%s, returning existing order", existing_id)
                return existing

        now = self._clock()
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        try:
            order = Order(
                id=order_id,
                customer_id=principal.user_id,
                restaurant_id=request.restaurant_id,
                status=OrderStatus.PLACED,
                items=tuple(items),
                delivery_fee=delivery_fee,
                total_amount=subtotal + delivery_fee,
                delivery_address=request.delivery_address,
                special_instructions=request.special_instructions,
                created_at=now,
                updated_at=now,
            )
            await self._store.insert_order(order, actor_id=principal.user_id)
        except ValidationError as e:
            if key and self._idempotency is not None:
                await self._idempotency.release(key)
            raise InvalidOrder(str(e)) from e
        except Exception:
            if key and self._idempotency is not None:
                await self._idempotency.release(key)
            raise

        orders_created_total.inc()
        logger.info("Order %s placed by customer %s (total=%s)", order.id, order.customer_id, order.total_amount)
        await emit(self._publisher, OrderEvent.for_order(OrderEventType.ORDER_PLACED, order, principal.user_id))
        return order

    async def _price(self, request: NewOrder) -> tuple[list[OrderItem], Decimal]:
        if not request.items:
            raise InvalidOrder("order has no items")
        restaurant = await self._catalog.get_restaurant(request.restaurant_id)
        if restaurant is None or not restaurant.is_active:
            raise InvalidOrder(f"restaurant {request.restaurant_id} is not accepting orders")

        items: list[OrderItem] = []
        for line in request.items:
            menu_item = await self._catalog.get_menu_item(line.menu_item_id)
            if menu_item is None or menu_item.restaurant_id != restaurant.id:
                raise InvalidOrder(f"menu item {line.menu_item_id} is not on restaurant {restaurant.id}'s menu")
            if not menu_item.is_available:
                raise InvalidOrder(f"menu item {line.menu_item_id} is not available")
            items.append(
                OrderItem(
                    menu_item_id=menu_item.id,
                    quantity=line.quantity,
                    unit_price_at_order_time=menu_item.price,
                    notes=line.notes,
                )
            )
        fee = restaurant.delivery_fee if restaurant.delivery_fee is not None else self._default_delivery_fee
        return items, fee

    # -------------------- restaurant side --------------------

    async def accept_order(self, principal: Principal, order_id: str) -> Order:
        order = await self._get(order_id)
        await self._authorize_restaurant(principal, order)
        order, _ = await self._apply(order_id, lambda _: OrderAction.ACCEPT, principal.user_id)
        return order

    async def mark_ready(self, principal: Principal, order_id: str) -> Order:
        """ready_for_pickup, then (with auto dispatch) an immediate assignment attempt.
        If nobody is free the order is returned still ready_for_pickup."""
        order = await self._get(order_id)
        await self._authorize_restaurant(principal, order)
        order, _ = await self._apply(order_id, lambda _: OrderAction.MARK_READY, principal.user_id)
        if not self._auto_dispatch:
            return order
        try:
            return await self._matcher.assign(order_id)
        except (NoDriverAvailable, AlreadyAssigned, InvalidTransition):
            return await self._store.get_order(order_id) or order

    async def _authorize_restaurant(self, principal: Principal, order: Order) -> None:
        if has_capability(principal.role, Capability.RESTAURANT_WRITE):
            return
        restaurant = await self._catalog.get_restaurant(order.restaurant_id)
        if restaurant is None or restaurant.owner_id != principal.user_id:
            raise Forbidden(f"user {principal.user_id} cannot manage restaurant {order.restaurant_id}")

    # -------------------- cancellation --------------------

    async def cancel_order(self, principal: Principal, order_id: str, reason: str | None = None) -> Order:
        """Customers cancel their own orders before pickup. Admins may also cancel an
        order out for delivery, which releases its driver in the same write."""
        order = await self._get(order_id)
        if principal.role == Role.ADMIN:
            SessionGuard.check(principal, Capability.ADMIN_WRITE)

            def action_for(current: Order) -> OrderAction:
                if current.status == OrderStatus.OUT_FOR_DELIVERY:
                    return OrderAction.FORCE_CANCEL
                return OrderAction.CANCEL
        else:
            SessionGuard.check(principal, Capability.CUSTOMER_WRITE)
            if order.customer_id != principal.user_id:
                raise Forbidden(f"order {order_id} does not belong to user {principal.user_id}")

            def action_for(current: Order) -> OrderAction:
                return OrderAction.CANCEL

        order, released = await self._apply(
            order_id, action_for, principal.user_id, notes=reason, updates={"cancellation_reason": reason}
        )
        if released is not None:
            await self._rematch()
        return order

    # -------------------- driver side --------------------

    async def confirm_delivered(self, principal: Principal, order_id: str) -> Order:
        driver = await self._driver_for(principal)
        order, _ = await self._apply(
            order_id,
            lambda _: OrderAction.CONFIRM_DELIVERED,
            principal.user_id,
            authorize=self._assigned_to(driver.id),
        )
        await self._rematch()
        return order

    async def driver_reassign(self, principal: Principal, order_id: str, reason: str | None = None) -> Order:
        """Hand an out_for_delivery order back to the pool (driver declines or
        cannot complete). Admins may do this on a driver's behalf."""
        if principal.role == Role.ADMIN:
            SessionGuard.check(principal, Capability.ADMIN_WRITE)
            authorize = None
        else:
            driver = await self._driver_for(principal)
            authorize = self._assigned_to(driver.id)

        order, released = await self._apply(
            order_id, lambda _: OrderAction.REASSIGN, principal.user_id, notes=reason, authorize=authorize
        )
        if self._auto_dispatch:
            avoid = {order_id: {released}} if released else None
            await self._matcher.run_pass(avoid=avoid)
            order = await self._store.get_order(order_id) or order
        return order

    async def _driver_for(self, principal: Principal) -> Driver:
        SessionGuard.check(principal, Capability.DRIVER_WRITE)
        driver = await self._store.get_driver_by_user(principal.user_id)
        if driver is None:
            raise NotFound("driver", principal.user_id)
        return driver

    @staticmethod
    def _assigned_to(driver_id: str) -> Callable[[Order], None]:
        def authorize(order: Order) -> None:
            if order.driver_id is not None and order.driver_id != driver_id:
                raise Forbidden(f"order {order.id} is not assigned to driver {driver_id}")
            if order.driver_id is None and order.status in (OrderStatus.PLACED, OrderStatus.ACCEPTED, OrderStatus.READY_FOR_PICKUP):
                raise Forbidden(f"order {order.id} is not assigned to driver {driver_id}")
        return authorize

    # -------------------- internals --------------------

    async def _get(self, order_id: str) -> Order:
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFound("order", order_id)
        return order

    async def _apply(
        self,
        order_id: str,
        action_for: Callable[[Order], OrderAction],
        actor_id: str,
        notes: str | None = None,
        updates: dict | None = None,
        authorize: Callable[[Order], None] | None = None,
    ) -> tuple[Order, str | None]:
        """Run one transition under the order lock. Returns the committed order and the
        driver the transition took off it, if any."""
        applied: list[tuple[OrderAction, str | None]] = []

        def change(order: Order, driver: Driver | None) -> tuple[Order, Driver | None]:
            now = self._clock()
            if authorize is not None:
                authorize(order)
            action = action_for(order)
            try:
                status = next_status(order.id, order.status, action)
            except InvalidTransition:
                transitions_rejected_total.labels(current_status=order.status.value, action=action.value).inc()
                raise
            fields = {"status": status, "updated_at": now, **(updates or {})}
            new_driver = driver
            if action in RELEASES_DRIVER:
                fields["driver_id"] = None
            if action in RELEASES_DRIVER or action == OrderAction.CONFIRM_DELIVERED:
                if driver is not None and driver.active_order_id == order.id:
                    new_driver = driver.release_slot(now)
                elif driver is not None:
                    logger.warning("Driver %s slot does not hold order_id=%s", driver.id, order.id)
            applied.append((action, order.driver_id))
            return evolve(order, **fields), new_driver

        try:
            order = await self._store.transition(order_id, change, actor_id, notes)
        except InvalidTransition as e:
            logger.info("Rejected %s on order_id=%s in status %s", e.action, order_id, e.current_status)
            raise

        action, previous_driver = applied[-1]
        transitions_total.labels(action=action.value).inc()
        logger.info("Order %s %s -> %s by %s", order.id, action.value, order.status.value, actor_id)
        # a released driver is still named on the event
        released = previous_driver if action in RELEASES_DRIVER else None
        await emit(self._publisher, OrderEvent.for_order(EVENT_FOR_ACTION[action], order, actor_id, driver_id=released))
        return order, released

    async def _rematch(self) -> None:
        if self._auto_dispatch:
            await self._matcher.run_pass()
