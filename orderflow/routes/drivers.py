from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from orderflow.models import Principal
from orderflow.routes.deps import current_principal, get_services
from orderflow.services import Services

router = APIRouter(prefix="/drivers", tags=["drivers"])


class AvailabilityBody(BaseModel):
    is_available: bool


@router.put("/me/availability")
async def set_availability(
    body: AvailabilityBody,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Driver reports readiness. Going available re-offers orders waiting for a driver."""
    driver = await services.matcher.set_availability(principal, body.is_available)
    return JSONResponse(status_code=200, content=driver.model_dump(mode="json"))


@router.get("/me/earnings")
async def earnings(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    summary = await services.queries.driver_earnings(principal)
    return JSONResponse(status_code=200, content=summary.model_dump(mode="json"))
