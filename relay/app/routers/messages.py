from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from relay.app.config.settings import Settings
from relay.app.core import SERVICE_NAME
from relay.app.schemas.messages import PublishRequest, PublishResponse
from relay.app.services.publish_message import PublishFailure, publish_message


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).warning("")


messages_router = APIRouter(prefix="/messages", tags=["Messages"])


@messages_router.post(
    "",
    summary="Publish a message to the exchange",
    description="Encodes the payload under its content type and publishes it with the given (or default) routing key. Returns 202 once the broker confirmed it.",
    responses={
        202: {"description": "Message published and confirmed."},
        422: {"description": "Invalid body, or payload not encodable under its content type."},
        503: {"description": "Publisher unavailable, message rejected or unconfirmed; try again later."},
    },
)
async def post_message(request: Request, body: PublishRequest) -> Response:
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        _log("publish_rejected", reason="publisher_not_ready")
        return Response(status_code=503, content="Publisher not available")

    settings: Settings = getattr(request.app.state, "settings", None) or Settings()
    exchange = settings.exchange_name if body.exchange is None else body.exchange
    routing_key = body.routing_key or settings.default_routing_key

    outcome = await publish_message(
        publisher,
        exchange=exchange,
        routing_key=routing_key,
        payload=body.payload,
        content_type=body.content_type,
        correlation_id=body.correlation_id,
        headers=body.headers,
    )
    if outcome.success:
        return Response(
            status_code=202,
            media_type="application/json",
            content=PublishResponse(
                message_id=outcome.message_id or "",
                exchange=outcome.exchange,
                routing_key=outcome.routing_key,
            ).model_dump_json(),
        )

    _log(
        "publish_failed",
        reason=outcome.failure,
        error=outcome.error,
        exchange=exchange,
        routing_key=routing_key,
    )
    if outcome.failure == PublishFailure.INVALID_PAYLOAD:
        return Response(status_code=422, content=outcome.error or "Invalid payload")
    return Response(status_code=503, content=outcome.failure or "Publish failed")
