"""
Transition table for an order: seven actions over six statuses, with delivered and
cancelled terminal. next_status() is the one lookup; a missing edge raises InvalidTransition.
"""
from enum import Enum

from orderflow.errors import InvalidTransition
from orderflow.models import OrderStatus


class OrderAction(str, Enum):
    ACCEPT = "accept"
    MARK_READY = "mark_ready"
    DISPATCH = "dispatch"
    CONFIRM_DELIVERED = "confirm_delivered"
    CANCEL = "cancel"
    FORCE_CANCEL = "force_cancel"
    REASSIGN = "reassign"


# Current status -> {action: next status}
VALID_TRANSITIONS: dict[OrderStatus, dict[OrderAction, OrderStatus]] = {
    OrderStatus.PLACED: {
        OrderAction.ACCEPT: OrderStatus.ACCEPTED,
        OrderAction.CANCEL: OrderStatus.CANCELLED,
    },
    OrderStatus.ACCEPTED: {
        OrderAction.MARK_READY: OrderStatus.READY_FOR_PICKUP,
        OrderAction.CANCEL: OrderStatus.CANCELLED,
    },
    OrderStatus.READY_FOR_PICKUP: {
        OrderAction.DISPATCH: OrderStatus.OUT_FOR_DELIVERY,
        OrderAction.CANCEL: OrderStatus.CANCELLED,
    },
    OrderStatus.OUT_FOR_DELIVERY: {
        OrderAction.CONFIRM_DELIVERED: OrderStatus.DELIVERED,
        OrderAction.FORCE_CANCEL: OrderStatus.CANCELLED,
        OrderAction.REASSIGN: OrderStatus.READY_FOR_PICKUP,
    },
    OrderStatus.DELIVERED: {},  # terminal
    OrderStatus.CANCELLED: {},  # terminal
}

# Actions after which the order no longer holds its driver
RELEASES_DRIVER = frozenset({OrderAction.FORCE_CANCEL, OrderAction.REASSIGN})


def is_valid_transition(current: OrderStatus, action: OrderAction) -> bool:
    """True if action is allowed from current."""
    return action in VALID_TRANSITIONS.get(current, {})


def next_status(order_id: str, current: OrderStatus, action: OrderAction) -> OrderStatus:
    try:
        return VALID_TRANSITIONS[current][action]
    except KeyError:
        raise InvalidTransition(order_id, current.value, action.value) from None
