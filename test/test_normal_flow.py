"""
Normal flow: placed -> accepted -> ready_for_pickup -> out_for_delivery -> delivered.

Expect:
- total = items (50,000) + delivery fee (10,000) = 60,000, unchanged at every step
- marking ready with one free driver assigns it immediately
- a second confirm_delivered is rejected and leaves updated_at as the first call set it
- one history row and one event per transition
"""
import asyncio
from decimal import Decimal

import pytest

from _helper import ADMIN, CUSTOMER, add_driver, build_services, driver_principal, standard_order
from orderflow.errors import InvalidTransition, NoDriverAvailable
from orderflow.models import OrderStatus


def test_normal_flow():
    async def scenario():
        services = build_services()
        await add_driver(services, "d1")
        engine = services.engine

        order = await engine.create_order(CUSTOMER, standard_order())
        assert order.status == OrderStatus.PLACED
        assert order.items_subtotal == Decimal("50000")
        assert order.delivery_fee == Decimal("10000")
        assert order.total_amount == Decimal("60000")
        assert order.driver_id is None

        order = await engine.accept_order(ADMIN, order.id)
        assert order.status == OrderStatus.ACCEPTED

        order = await engine.mark_ready(ADMIN, order.id)
        assert order.status == OrderStatus.OUT_FOR_DELIVERY
        assert order.driver_id == "d1"
        driver = await services.store.get_driver("d1")
        assert driver.active_order_id == order.id

        delivered = await engine.confirm_delivered(driver_principal("d1"), order.id)
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.driver_id == "d1"
        assert delivered.total_amount == Decimal("60000")
        driver = await services.store.get_driver("d1")
        assert driver.active_order_id is None

        with pytest.raises(InvalidTransition):
            await engine.confirm_delivered(driver_principal("d1"), order.id)
        after = await services.store.get_order(order.id)
        assert after == delivered
        assert after.updated_at == delivered.updated_at

        history = await services.store.status_history(order.id)
        assert [h.status for h in history] == [
            OrderStatus.PLACED,
            OrderStatus.ACCEPTED,
            OrderStatus.READY_FOR_PICKUP,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        assert services.publisher.types_for(order.id) == [
            "ORDER_PLACED",
            "ORDER_ACCEPTED",
            "ORDER_READY",
            "DRIVER_ASSIGNED",
            "ORDER_DELIVERED",
        ]

    asyncio.run(scenario())


def test_ready_with_no_driver_then_retry():
    async def scenario():
        services = build_services(auto_dispatch=False)
        order = await services.engine.create_order(CUSTOMER, standard_order())
        await services.engine.accept_order(ADMIN, order.id)
        order = await services.engine.mark_ready(ADMIN, order.id)
        assert order.status == OrderStatus.READY_FOR_PICKUP

        with pytest.raises(NoDriverAvailable):
            await services.matcher.assign(order.id)
        still = await services.store.get_order(order.id)
        assert still.status == OrderStatus.READY_FOR_PICKUP
        assert still.driver_id is None

        await add_driver(services, "d1")
        assigned = await services.matcher.assign(order.id)
        assert assigned.status == OrderStatus.OUT_FOR_DELIVERY
        assert assigned.driver_id == "d1"

    asyncio.run(scenario())


def test_customer_cannot_cancel_delivered_order():
    async def scenario():
        services = build_services()
        await add_driver(services, "d1")
        order = await services.engine.create_order(CUSTOMER, standard_order())
        await services.engine.accept_order(ADMIN, order.id)
        await services.engine.mark_ready(ADMIN, order.id)
        delivered = await services.engine.confirm_delivered(driver_principal("d1"), order.id)

        with pytest.raises(InvalidTransition):
            await services.engine.cancel_order(CUSTOMER, order.id)
        assert await services.store.get_order(order.id) == delivered

    asyncio.run(scenario())
