import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from orderflow.config import settings
from orderflow.errors import NoDriverAvailable, OrderflowError
from orderflow.metrics import get_metrics_bytes, get_metrics_content_type, ready_orders_waiting
from orderflow.redis_client import redis_reachable, uses_redis
from orderflow.routes import admin, drivers, orders
from orderflow.services import Services, build_services, close_services

logger = logging.getLogger(__name__)

STATUS_FOR_KIND = {
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "invalid_transition": 409,
    "already_assigned": 409,
    "request_in_progress": 409,
    "invalid_order": 422,
}


async def orderflow_error_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    if isinstance(exc, NoDriverAvailable):
        # pending, not an error: the order stays ready_for_pickup and is re-offered
        return JSONResponse(status_code=202, content={"order_id": exc.order_id, "dispatch": "pending"})
    return JSONResponse(
        status_code=STATUS_FOR_KIND.get(exc.kind, 400),
        content={"error": exc.kind, "message": str(exc)},
    )


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API. Pass services to run against pre-built (e.g. in-memory) backends."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stdout,
        )
        app.state.services = await build_services(settings)
        yield
        await close_services()

    app = FastAPI(title="Orderflow", lifespan=lifespan)
    app.add_exception_handler(OrderflowError, orderflow_error_handler)
    app.include_router(orders.router)
    app.include_router(drivers.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health() -> JSONResponse:
        checks = {}
        if uses_redis(settings):
            checks["redis"] = await redis_reachable()
        healthy = all(checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ok" if healthy else "degraded", **checks},
        )

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        """Prometheus scrape endpoint: transitions, dispatch outcomes, ready orders waiting."""
        ready_orders_waiting.set(await request.app.state.services.matcher.waiting_orders())
        return Response(
            content=get_metrics_bytes(),
            media_type=get_metrics_content_type(),
        )

    return app


app = create_app()
