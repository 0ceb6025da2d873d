import asyncio
from decimal import Decimal

import pytest

from _helper import (
    ADMIN,
    CUSTOMER,
    OTHER_CUSTOMER,
    RESTAURANT_OWNER,
    add_driver,
    build_services,
    driver_principal,
    place_order,
    ready_order,
    standard_order,
)
from orderflow.errors import Forbidden, NotFound
from orderflow.models import NewOrder, OrderLine, OrderStatus
from orderflow.queries import OrderListing
from orderflow.store import OrderFilter


def ids(orders):
    return [o.id for o in orders]


def test_listings_are_scoped_by_role():
    async def scenario():
        services = build_services()
        await add_driver(services, "d1")
        await add_driver(services, "d2", available=False)
        mine_out = await ready_order(services)  # goes to d1
        mine_waiting = await ready_order(services)  # nobody free
        theirs = await place_order(services, OTHER_CUSTOMER)
        queries = services.queries

        customer = await (await queries.orders_for(CUSTOMER)).to_list()
        assert ids(customer) == [mine_out.id, mine_waiting.id]
        other = await (await queries.orders_for(OTHER_CUSTOMER)).to_list()
        assert ids(other) == [theirs.id]
        everything = await (await queries.orders_for(ADMIN)).to_list()
        assert ids(everything) == [mine_out.id, mine_waiting.id, theirs.id]

        d1 = await (await queries.orders_for(driver_principal("d1"))).to_list()
        assert ids(d1) == [mine_out.id, mine_waiting.id]
        d2 = await (await queries.orders_for(driver_principal("d2"))).to_list()
        assert ids(d2) == [mine_waiting.id]

    asyncio.run(scenario())


def test_status_filter():
    async def scenario():
        services = build_services(auto_dispatch=False)
        ready = await ready_order(services)
        placed = await place_order(services)
        queries = services.queries

        mine = await queries.list_orders_for_customer(CUSTOMER.user_id, OrderStatus.PLACED)
        assert ids(await mine.to_list()) == [placed.id]
        assert ids(await queries.list_all_orders(OrderStatus.READY_FOR_PICKUP).to_list()) == [ready.id]
        assert await queries.list_all_orders(OrderStatus.DELIVERED).to_list() == []

    asyncio.run(scenario())


def test_listing_is_lazy_and_restartable():
    async def scenario():
        services = build_services()
        first = await place_order(services)
        listing = OrderListing(services.store, OrderFilter(customer_id=CUSTOMER.user_id), page_size=1)

        second = await place_order(services)
        assert ids([o async for o in listing]) == [first.id, second.id]

        await services.engine.cancel_order(CUSTOMER, first.id)
        again = [o async for o in listing]
        assert ids(again) == [first.id, second.id]
        assert again[0].status == OrderStatus.CANCELLED
        assert await listing.to_list() == again

    asyncio.run(scenario())


def test_get_order_visibility():
    async def scenario():
        services = build_services()
        await add_driver(services, "d1")
        await add_driver(services, "d2", available=False)
        out = await ready_order(services)
        placed = await place_order(services)
        queries = services.queries

        assert (await queries.get_order(CUSTOMER, out.id)).id == out.id
        assert (await queries.get_order(ADMIN, placed.id)).id == placed.id
        assert (await queries.get_order(driver_principal("d1"), out.id)).driver_id == "d1"

        with pytest.raises(Forbidden):
            await queries.get_order(OTHER_CUSTOMER, out.id)
        with pytest.raises(Forbidden):
            await queries.get_order(driver_principal("d2"), out.id)
        with pytest.raises(Forbidden):
            await queries.get_order(driver_principal("d1"), placed.id)
        with pytest.raises(NotFound):
            await queries.get_order(ADMIN, "missing")

    asyncio.run(scenario())


def test_status_history_follows_visibility():
    async def scenario():
        services = build_services(auto_dispatch=False)
        order = await ready_order(services)
        history = await services.queries.status_history(CUSTOMER, order.id)
        assert [h.status for h in history] == [OrderStatus.PLACED, OrderStatus.ACCEPTED, OrderStatus.READY_FOR_PICKUP]
        with pytest.raises(Forbidden):
            await services.queries.status_history(OTHER_CUSTOMER, order.id)

    asyncio.run(scenario())


def test_restaurant_owner_sees_orders_at_their_restaurant():
    async def scenario():
        services = build_services(auto_dispatch=False)
        at_r1 = await place_order(services)
        elsewhere = await services.engine.create_order(
            OTHER_CUSTOMER,
            NewOrder(restaurant_id="r3", items=[OrderLine(menu_item_id="m5", quantity=1)], delivery_address="Jl. Sentani 3"),
        )
        queries = services.queries

        listed = await (await queries.orders_for(RESTAURANT_OWNER)).to_list()
        assert ids(listed) == [at_r1.id]
        assert (await queries.get_order(RESTAURANT_OWNER, at_r1.id)).customer_id == CUSTOMER.user_id
        history = await queries.status_history(RESTAURANT_OWNER, at_r1.id)
        assert [h.status for h in history] == [OrderStatus.PLACED]

        with pytest.raises(Forbidden):
            await queries.get_order(RESTAURANT_OWNER, elsewhere.id)
        with pytest.raises(Forbidden):
            await queries.get_order(OTHER_CUSTOMER, at_r1.id)

    asyncio.run(scenario())


def test_restaurant_filter():
    async def scenario():
        services = build_services(auto_dispatch=False)
        at_r1 = await place_order(services)
        await services.engine.create_order(
            CUSTOMER,
            NewOrder(restaurant_id="r3", items=[OrderLine(menu_item_id="m5", quantity=1)], delivery_address="Jl. Sentani 3"),
        )
        at_r1_again = await services.engine.create_order(OTHER_CUSTOMER, standard_order("r1"))
        queries = services.queries

        assert ids(await (await queries.orders_for(ADMIN, restaurant_id="r1")).to_list()) == [at_r1.id, at_r1_again.id]
        mine = await (await queries.orders_for(CUSTOMER, restaurant_id="r1")).to_list()
        assert ids(mine) == [at_r1.id]
        assert await (await queries.orders_for(RESTAURANT_OWNER, restaurant_id="r3")).to_list() == []

    asyncio.run(scenario())


def test_driver_earnings():
    async def scenario():
        services = build_services()
        await add_driver(services, "d1")
        driver = driver_principal("d1")

        empty = await services.queries.driver_earnings(driver)
        assert empty.total_orders == 0
        assert empty.total_earnings == Decimal("0")
        assert empty.average_per_order == Decimal("0")

        delivered = []
        for _ in range(2):
            order = await ready_order(services)
            delivered.append(await services.engine.confirm_delivered(driver, order.id))
        await ready_order(services)  # in flight, not counted

        summary = await services.queries.driver_earnings(driver)
        assert summary.total_orders == 2
        assert summary.total_earnings == Decimal("20000")
        assert summary.average_per_order == Decimal("10000")
        assert ids(summary.recent_orders) == [delivered[1].id, delivered[0].id]

        with pytest.raises(Forbidden):
            await services.queries.driver_earnings(CUSTOMER)
        with pytest.raises(NotFound):
            await services.queries.driver_earnings(driver_principal("ghost"))

    asyncio.run(scenario())


def test_driver_listing_needs_driver_record():
    async def scenario():
        services = build_services()
        with pytest.raises(NotFound):
            await services.queries.list_orders_for_driver("user-ghost")

    asyncio.run(scenario())


def test_driver_roster_is_admin_only():
    async def scenario():
        services = build_services()
        await add_driver(services, "d2")
        await add_driver(services, "d1")
        assert [d.id for d in await services.queries.list_drivers(ADMIN)] == ["d1", "d2"]
        with pytest.raises(Forbidden):
            await services.queries.list_drivers(CUSTOMER)
        with pytest.raises(Forbidden):
            await services.queries.list_drivers(driver_principal("d1"))

    asyncio.run(scenario())
