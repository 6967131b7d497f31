from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from relay.app.core import SERVICE_NAME
from relay.app.schemas.messages import BrokerStateResponse

health_router = APIRouter(tags=["Health"])


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@health_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Returns 200 if the API process is running.",
    responses={200: {"description": "Service is alive."}},
)
async def live() -> dict:
    return {"status": "ok"}


@health_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Returns 200 only when the publisher has a live broker connection.",
    responses={
        200: {"description": "Publisher is ready."},
        503: {"description": "Publisher missing or broker connection down/reconnecting."},
    },
)
async def ready(request: Request) -> Response:
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        _log("components_not_initialized")
        return Response(status_code=503, content="Not ready")
    if not publisher.ready:
        _log("publisher_not_ready")
        return Response(status_code=503, content="Publisher not ready")
    return Response(status_code=200, content="OK")


@health_router.get(
    "/health/state",
    summary="Broker connection and subscription state",
    description="Connection state (Connected/Reconnecting/Down) and the state of every consumer subscription.",
    response_model=BrokerStateResponse,
    responses={503: {"description": "Components not initialized."}},
)
async def state(request: Request) -> Response:
    dependencies = getattr(request.app.state, "dependencies", None)
    if dependencies is None:
        return Response(status_code=503, content="Not ready")
    body = BrokerStateResponse(
        connection=dependencies.connection_health,
        subscriptions=dependencies.subscription_states(),
    )
    return Response(status_code=200, media_type="application/json", content=body.model_dump_json())
