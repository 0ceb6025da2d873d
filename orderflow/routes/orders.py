from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orderflow.models import NewOrder, OrderStatus, Principal
from orderflow.routes.deps import current_principal, get_services, order_body
from orderflow.services import Services

router = APIRouter(prefix="/orders", tags=["orders"])


class CancelBody(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class ReassignBody(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


@router.post("")
async def create_order(
    body: NewOrder,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Place an order. Idempotent with an Idempotency-Key header: the same key twice
    returns the order created by the first request, or 409 while that one is still running.
    """
    order = await services.engine.create_order(principal, body, idempotency_key=idempotency_key)
    return JSONResponse(status_code=201, content=order_body(order))


@router.get("")
async def list_orders(
    status: OrderStatus | None = Query(default=None),
    restaurant_id: str | None = Query(default=None),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Orders visible to the caller: own orders and owned restaurants' orders (customer),
    assigned + ready pool (driver), all (admin). Narrow with status and restaurant_id.
    """
    listing = await services.queries.orders_for(principal, status, restaurant_id)
    return JSONResponse(status_code=200, content={"results": [order_body(o) async for o in listing]})


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.queries.get_order(principal, order_id)
    return JSONResponse(status_code=200, content=order_body(order))


@router.get("/{order_id}/history")
async def order_history(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    history = await services.queries.status_history(principal, order_id)
    return JSONResponse(status_code=200, content={"results": [h.model_dump(mode="json") for h in history]})


@router.post("/{order_id}/accept")
async def accept_order(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.engine.accept_order(principal, order_id)
    return JSONResponse(status_code=200, content=order_body(order))


@router.post("/{order_id}/ready")
async def mark_ready(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Mark the order ready for pickup. A driver is assigned immediately when one is
    free; otherwise dispatch is "pending" and the order waits in the pool.
    """
    order = await services.engine.mark_ready(principal, order_id)
    dispatch = "assigned" if order.driver_id else "pending"
    return JSONResponse(status_code=200, content={**order_body(order), "dispatch": dispatch})


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelBody | None = None,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    reason = body.reason if body else None
    order = await services.engine.cancel_order(principal, order_id, reason=reason)
    return JSONResponse(status_code=200, content=order_body(order))


@router.post("/{order_id}/delivered")
async def confirm_delivered(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.engine.confirm_delivered(principal, order_id)
    return JSONResponse(status_code=200, content=order_body(order))


@router.post("/{order_id}/reassign")
async def reassign_order(
    order_id: str,
    body: ReassignBody | None = None,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Driver hands the order back to the pool; it is re-offered to other drivers."""
    reason = body.reason if body else None
    order = await services.engine.driver_reassign(principal, order_id, reason=reason)
    return JSONResponse(status_code=200, content=order_body(order))
