"""
Failure taxonomy of the order core. The HTTP layer maps `kind` to a status code;
nothing in here formats user-facing messages.
"""


class OrderflowError(Exception):
    kind = "error"


class Unauthorized(OrderflowError):
    """No session, unknown token, or expired session."""
    kind = "unauthorized"


class Forbidden(OrderflowError):
    """Valid session without the capability (or ownership) the operation needs."""
    kind = "forbidden"


class NotFound(OrderflowError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransition(OrderflowError):
    """Raised when the order state machine has no edge for (current status, action).
    The order is left untouched."""
    kind = "invalid_transition"

    def __init__(self, order_id: str, current_status: str | None, action: str):
        self.order_id = order_id
        self.current_status = current_status
        self.action = action
        super().__init__(f"order {order_id}: cannot {action} from {current_status}")


class AlreadyAssigned(OrderflowError):
    """Lost a dispatch race. subject is "order" when the order got a driver first,
    "driver" when the driver got another order first."""
    kind = "already_assigned"

    def __init__(self, subject: str, entity_id: str):
        self.subject = subject
        self.entity_id = entity_id
        super().__init__(f"{subject} {entity_id} already assigned")


class NoDriverAvailable(OrderflowError):
    """Not a failure for the end actor: the order stays ready_for_pickup and is re-offered."""
    kind = "no_driver_available"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"no driver available for order {order_id}")


class InvalidOrder(OrderflowError):
    kind = "invalid_order"


class RequestInProgress(OrderflowError):
    """An earlier request with the same Idempotency-Key has claimed it but not committed yet."""
    kind = "request_in_progress"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"request {idempotency_key} is still being processed")
