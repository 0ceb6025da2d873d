"""
Pricing/catalog collaborator. The order core only reads it, and only when an
order is created: unit prices are frozen into the order items at that moment.
"""
from dataclasses import dataclass
from decimal import Decimal

import asyncpg


@dataclass(frozen=True)
class MenuItem:
    id: str
    restaurant_id: str
    name: str
    price: Decimal
    is_available: bool = True


@dataclass(frozen=True)
class Restaurant:
    id: str
    name: str
    owner_id: str | None = None
    delivery_fee: Decimal | None = None
    is_active: bool = True


class Catalog:
    async def get_restaurant(self, restaurant_id: str) -> Restaurant | None:
        raise NotImplementedError

    async def get_menu_item(self, menu_item_id: str) -> MenuItem | None:
        raise NotImplementedError

    async def restaurants_owned_by(self, user_id: str) -> frozenset[str]:
        raise NotImplementedError


class InMemoryCatalog(Catalog):
    def __init__(self) -> None:
        self._restaurants: dict[str, Restaurant] = {}
        self._menu_items: dict[str, MenuItem] = {}

    def add_restaurant(self, restaurant: Restaurant) -> None:
        self._restaurants[restaurant.id] = restaurant

    def add_menu_item(self, item: MenuItem) -> None:
        self._menu_items[item.id] = item

    async def get_restaurant(self, restaurant_id: str) -> Restaurant | None:
        return self._restaurants.get(restaurant_id)

    async def get_menu_item(self, menu_item_id: str) -> MenuItem | None:
        return self._menu_items.get(menu_item_id)

    async def restaurants_owned_by(self, user_id: str) -> frozenset[str]:
        return frozenset(r.id for r in self._restaurants.values() if r.owner_id == user_id)


class PostgresCatalog(Catalog):
    """Reads the catalog service's restaurants and menu_items tables."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_restaurant(self, restaurant_id: str) -> Restaurant | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT id::text AS id, name, owner_id::text AS owner_id, is_active FROM restaurants WHERE id::text = $1;",
                restaurant_id,
            )
        if row is None:
            return None
        return Restaurant(id=row["id"], name=row["name"], owner_id=row["owner_id"], is_active=row["is_active"])

    async def get_menu_item(self, menu_item_id: str) -> MenuItem | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id::text AS id, restaurant_id::text AS restaurant_id, name, price, is_available
                FROM menu_items WHERE id::text = $1;
                """,
                menu_item_id,
            )
        return MenuItem(**dict(row)) if row is not None else None

    async def restaurants_owned_by(self, user_id: str) -> frozenset[str]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT id::text AS id FROM restaurants WHERE owner_id::text = $1;", user_id)
        return frozenset(row["id"] for row in rows)
