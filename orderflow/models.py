"""
Entities owned by the order core. Orders and drivers are frozen: a transition
builds a new version with model_copy() and the store commits it as a whole.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from orderflow.roles import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PLACED = "placed"
    ACCEPTED = "accepted"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Statuses in which the order must hold a driver
DRIVER_HELD_STATUSES = frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED})


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    menu_item_id: str
    quantity: int = Field(..., gt=0)
    unit_price_at_order_time: Decimal = Field(..., ge=0)
    notes: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price_at_order_time * self.quantity


class Order(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    restaurant_id: str
    driver_id: str | None = None
    status: OrderStatus = OrderStatus.PLACED
    items: tuple[OrderItem, ...]
    delivery_fee: Decimal = Field(..., ge=0)
    total_amount: Decimal
    delivery_address: str
    special_instructions: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _check_invariants(self) -> "Order":
        expected = self.items_subtotal + self.delivery_fee
        if self.total_amount != expected:
            raise ValueError(f"total_amount {self.total_amount} != items + delivery fee {expected}")
        if (self.driver_id is not None) != (self.status in DRIVER_HELD_STATUSES):
            raise ValueError(f"driver_id={self.driver_id!r} inconsistent with status {self.status.value}")
        return self

    @property
    def items_subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class Driver(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    vehicle_type: str
    license_plate: str
    is_active: bool = True
    is_available: bool = False
    available_since: datetime | None = None
    active_order_id: str | None = None

    @property
    def is_eligible(self) -> bool:
        """Can take a new order right now."""
        return self.is_active and self.is_available and self.active_order_id is None

    def release_slot(self, now: datetime) -> "Driver":
        """Free the in-flight slot; the driver re-enters the pool at the back."""
        return self.model_copy(update={"active_order_id": None, "available_since": now})


class StatusChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    status: OrderStatus
    actor_id: str | None
    changed_at: datetime
    notes: str | None = None


class Principal(BaseModel):
    """Caller resolved by the session guard."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


class OrderLine(BaseModel):
    """One line of an order request; the price comes from the catalog, never the caller."""
    menu_item_id: str
    quantity: int = Field(..., gt=0)
    notes: str | None = None


class NewOrder(BaseModel):
    restaurant_id: str
    items: list[OrderLine]
    delivery_address: str = Field(..., min_length=1)
    special_instructions: str | None = None
