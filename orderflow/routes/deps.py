from fastapi import Depends, Header, Request

from orderflow.models import Order, Principal
from orderflow.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


async def current_principal(
    token: str | None = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> Principal:
    return await services.guard.authenticate(token)


def order_body(order: Order) -> dict:
    return order.model_dump(mode="json")
