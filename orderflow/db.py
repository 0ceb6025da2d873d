"""
Async Postgres order store: orders (current state per order), order_status_history
(audit trail) and drivers (availability + in-flight slot).
Every write runs in a single transaction: lock the order row, then the driver row,
apply the change, write both, append history.
"""
import json
import logging
from collections.abc import AsyncIterator

import asyncpg

from orderflow.config import settings
from orderflow.errors import NotFound
from orderflow.models import Driver, Order, OrderStatus, StatusChange
from orderflow.store import AssignChange, DriverChange, OrderChange, OrderFilter, OrderStore, reprovision

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

ORDER_COLUMNS = (
    "id, customer_id, restaurant_id, driver_id, status, items, delivery_fee, total_amount, "
    "delivery_address, special_instructions, cancellation_reason, created_at, updated_at"
)
DRIVER_COLUMNS = (
    "id, user_id, vehicle_type, license_plate, is_active, is_available, available_since, active_order_id"
)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(64) PRIMARY KEY,
                customer_id VARCHAR(64) NOT NULL,
                restaurant_id VARCHAR(64) NOT NULL,
                driver_id VARCHAR(64),
                status VARCHAR(32) NOT NULL,
                items JSONB NOT NULL,
                delivery_fee NUMERIC(12, 2) NOT NULL,
                total_amount NUMERIC(12, 2) NOT NULL,
                delivery_address TEXT NOT NULL,
                special_instructions TEXT,
                cancellation_reason TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_driver_id ON orders(driver_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_restaurant_id ON orders(restaurant_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(id),
                status VARCHAR(32) NOT NULL,
                actor_id VARCHAR(64),
                changed_at TIMESTAMPTZ NOT NULL,
                notes TEXT
            );
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id ON order_status_history(order_id);"
        )
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS drivers (
                id VARCHAR(64) PRIMARY KEY,
                user_id VARCHAR(64) NOT NULL UNIQUE,
                vehicle_type VARCHAR(50) NOT NULL,
                license_plate VARCHAR(50) NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                is_available BOOLEAN NOT NULL DEFAULT FALSE,
                available_since TIMESTAMPTZ,
                active_order_id VARCHAR(64)
            );
        """)


def _order_from_row(row: asyncpg.Record) -> Order:
    return Order(
        id=row["id"],
        customer_id=row["customer_id"],
        restaurant_id=row["restaurant_id"],
        driver_id=row["driver_id"],
        status=row["status"],
        items=json.loads(row["items"]),
        delivery_fee=row["delivery_fee"],
        total_amount=row["total_amount"],
        delivery_address=row["delivery_address"],
        special_instructions=row["special_instructions"],
        cancellation_reason=row["cancellation_reason"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _driver_from_row(row: asyncpg.Record) -> Driver:
    return Driver(**dict(row))


async def _write_order(conn: asyncpg.Connection, order: Order) -> None:
    # items, fees and totals are fixed at insert time and never rewritten
    await conn.execute(
        """
        UPDATE orders
        SET driver_id = $2, status = $3, cancellation_reason = $4, updated_at = $5
        WHERE id = $1;
        """,
        order.id,
        order.driver_id,
        order.status.value,
        order.cancellation_reason,
        order.updated_at,
    )


async def _write_driver(conn: asyncpg.Connection, driver: Driver) -> None:
    await conn.execute(
        f"""
        INSERT INTO drivers ({DRIVER_COLUMNS})
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (id) DO UPDATE SET
            user_id = EXCLUDED.user_id,
            vehicle_type = EXCLUDED.vehicle_type,
            license_plate = EXCLUDED.license_plate,
            is_active = EXCLUDED.is_active,
            is_available = EXCLUDED.is_available,
            available_since = EXCLUDED.available_since,
            active_order_id = EXCLUDED.active_order_id;
        """,
        driver.id,
        driver.user_id,
        driver.vehicle_type,
        driver.license_plate,
        driver.is_active,
        driver.is_available,
        driver.available_since,
        driver.active_order_id,
    )


async def _append_history(
    conn: asyncpg.Connection, order: Order, actor_id: str | None, notes: str | None
) -> None:
    await conn.execute(
        """
        INSERT INTO order_status_history (order_id, status, actor_id, changed_at, notes)
        VALUES ($1, $2, $3, $4, $5);
        """,
        order.id,
        order.status.value,
        actor_id,
        order.updated_at,
        notes,
    )


async def _lock_order(conn: asyncpg.Connection, order_id: str) -> Order:
    row = await conn.fetchrow(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = $1 FOR UPDATE;", order_id)
    if row is None:
        raise NotFound("order", order_id)
    return _order_from_row(row)


async def _lock_driver(conn: asyncpg.Connection, driver_id: str) -> Driver | None:
    row = await conn.fetchrow(f"SELECT {DRIVER_COLUMNS} FROM drivers WHERE id = $1 FOR UPDATE;", driver_id)
    return _driver_from_row(row) if row is not None else None


class PostgresOrderStore(OrderStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def insert_order(self, order: Order, actor_id: str | None, notes: str | None = None) -> Order:
        items_json = json.dumps([item.model_dump(mode="json") for item in order.items])
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO orders ({ORDER_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10, $11, $12, $13);
                    """,
                    order.id,
                    order.customer_id,
                    order.restaurant_id,
                    order.driver_id,
                    order.status.value,
                    items_json,
                    order.delivery_fee,
                    order.total_amount,
                    order.delivery_address,
                    order.special_instructions,
                    order.cancellation_reason,
                    order.created_at,
                    order.updated_at,
                )
                await _append_history(conn, order, actor_id, notes)
        return order

    async def get_order(self, order_id: str) -> Order | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row is not None else None

    async def transition(
        self, order_id: str, change: OrderChange, actor_id: str | None, notes: str | None = None
    ) -> Order:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                order = await _lock_order(conn, order_id)
                driver = await _lock_driver(conn, order.driver_id) if order.driver_id else None
                new_order, new_driver = change(order, driver)
                await _write_order(conn, new_order)
                if new_driver is not None:
                    await _write_driver(conn, new_driver)
                if new_order.status != order.status:
                    await _append_history(conn, new_order, actor_id, notes)
        return new_order

    async def assign(self, order_id: str, driver_id: str, change: AssignChange, actor_id: str | None) -> tuple[Order, Driver]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                order = await _lock_order(conn, order_id)
                driver = await _lock_driver(conn, driver_id)
                if driver is None:
                    raise NotFound("driver", driver_id)
                new_order, new_driver = change(order, driver)
                await _write_order(conn, new_order)
                await _write_driver(conn, new_driver)
                await _append_history(conn, new_order, actor_id, None)
        return new_order, new_driver

    async def iter_orders(self, flt: OrderFilter, page_size: int = 100) -> AsyncIterator[Order]:
        clauses: list[str] = []
        args: list = []

        def arg(value) -> str:
            args.append(value)
            return f"${len(args)}"

        if flt.status is not None:
            clauses.append(f"status = {arg(flt.status.value)}")
        if flt.restaurant_id is not None:
            clauses.append(f"restaurant_id = {arg(flt.restaurant_id)}")
        if flt.customer_id is not None:
            own = f"customer_id = {arg(flt.customer_id)}"
            if flt.managed_restaurant_ids:
                managed = f"restaurant_id = ANY({arg(sorted(flt.managed_restaurant_ids))}::varchar[])"
                clauses.append(f"({own} OR {managed})")
            else:
                clauses.append(own)
        if flt.driver_id is not None:
            own = f"driver_id = {arg(flt.driver_id)}"
            if flt.include_ready_pool:
                pool = f"(status = {arg(OrderStatus.READY_FOR_PICKUP.value)} AND driver_id IS NULL)"
                clauses.append(f"({own} OR {pool})")
            else:
                clauses.append(own)

        last = None
        while True:
            page_clauses = list(clauses)
            page_args = list(args)
            if last is not None:
                page_args.extend(last)
                page_clauses.append(f"(created_at, id) > (${len(page_args) - 1}, ${len(page_args)})")
            where = f"WHERE {' AND '.join(page_clauses)}" if page_clauses else ""
            query = f"SELECT {ORDER_COLUMNS} FROM orders {where} ORDER BY created_at, id LIMIT {int(page_size)};"
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(query, *page_args)
            for row in rows:
                yield _order_from_row(row)
            if len(rows) < page_size:
                return
            last = (rows[-1]["created_at"], rows[-1]["id"])

    async def status_history(self, order_id: str) -> list[StatusChange]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_id, status, actor_id, changed_at, notes
                FROM order_status_history WHERE order_id = $1 ORDER BY id;
                """,
                order_id,
            )
        return [StatusChange(**dict(row)) for row in rows]

    async def save_driver(self, driver: Driver) -> Driver:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                stored = await _lock_driver(conn, driver.id)
                if stored is not None:
                    driver = reprovision(stored, driver)
                await _write_driver(conn, driver)
        return driver

    async def get_driver(self, driver_id: str) -> Driver | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {DRIVER_COLUMNS} FROM drivers WHERE id = $1;", driver_id)
        return _driver_from_row(row) if row is not None else None

    async def get_driver_by_user(self, user_id: str) -> Driver | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {DRIVER_COLUMNS} FROM drivers WHERE user_id = $1;", user_id)
        return _driver_from_row(row) if row is not None else None

    async def update_driver(self, driver_id: str, change: DriverChange) -> Driver:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                driver = await _lock_driver(conn, driver_id)
                if driver is None:
                    raise NotFound("driver", driver_id)
                updated = change(driver)
                await _write_driver(conn, updated)
        return updated

    async def list_drivers(self) -> list[Driver]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {DRIVER_COLUMNS} FROM drivers ORDER BY id;")
        return [_driver_from_row(row) for row in rows]

    async def eligible_drivers(self) -> list[Driver]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {DRIVER_COLUMNS} FROM drivers
                WHERE is_active AND is_available AND active_order_id IS NULL
                ORDER BY available_since NULLS FIRST, id;
                """
            )
        return [_driver_from_row(row) for row in rows]
