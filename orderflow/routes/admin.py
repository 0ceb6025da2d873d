from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orderflow.models import Principal
from orderflow.routes.deps import current_principal, get_services, order_body
from orderflow.services import Services

router = APIRouter(prefix="/admin", tags=["admin"])


class ActiveBody(BaseModel):
    is_active: bool


@router.get("/drivers")
async def list_drivers(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    drivers = await services.queries.list_drivers(principal)
    return JSONResponse(status_code=200, content={"results": [d.model_dump(mode="json") for d in drivers]})


@router.put("/drivers/{driver_id}/active")
async def set_driver_active(
    driver_id: str,
    body: ActiveBody,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    driver = await services.matcher.set_active(principal, driver_id, body.is_active)
    return JSONResponse(status_code=200, content=driver.model_dump(mode="json"))


@router.post("/orders/{order_id}/dispatch")
async def dispatch_order(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Try to assign a driver to one ready order now.
    202 with dispatch "pending" when no driver is free (the order stays in the pool).
    """
    order = await services.matcher.assign_as(principal, order_id)
    return JSONResponse(status_code=200, content={**order_body(order), "dispatch": "assigned"})


@router.post("/dispatch/run")
async def run_matching_pass(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Offer every waiting ready order to the available drivers. Returns the assignments made."""
    assigned = await services.matcher.run_pass_as(principal)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "assigned": [{"order_id": o.id, "driver_id": o.driver_id} for o in assigned]},
    )
