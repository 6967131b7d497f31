"""
Accepts plain Python types and the MessagePublisher abstraction; returns an outcome.
Router translates outcome to HTTP status codes and content.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from relay.app.domain.errors import (
    EncodeError,
    PublishError,
    PublishRejectedError,
    PublishUnconfirmedError,
    UnsupportedContentTypeError,
)
from relay.app.domain.models import MessageEnvelope
from relay.app.ports.message_publisher import MessagePublisher


class PublishFailure:
    NOT_READY = "publisher_not_ready"
    INVALID_PAYLOAD = "invalid_payload"
    REJECTED = "rejected"
    UNCONFIRMED = "unconfirmed"
    CONNECTION_LOST = "connection_lost"


@dataclass(frozen=True)
class PublishOutcome:
    """Result of publish_message.
    success=True => message_id set.
    success=False => failure set (one of PublishFailure) and error carries the detail.
    """
    success: bool
    exchange: str
    routing_key: str
    message_id: str | None = None
    failure: str | None = None
    error: str | None = None


async def publish_message(
    publisher: MessagePublisher,
    *,
    exchange: str,
    routing_key: str,
    payload: Any,
    content_type: str,
    correlation_id: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> PublishOutcome:
    """
    Publish one payload. Returns outcome; router maps to 202/422/503.
    Re-publishing after a failure is the caller's decision; nothing is deduplicated here.
    """
    if not publisher.accepting:
        return PublishOutcome(False, exchange, routing_key, failure=PublishFailure.NOT_READY, error="publisher_not_ready")

    message_id = str(uuid.uuid4())
    envelope = MessageEnvelope(
        payload=payload,
        content_type=content_type,
        correlation_id=correlation_id,
        headers=dict(headers or {}),
        message_id=message_id,
    )
    try:
        await publisher.publish(exchange, routing_key, envelope)
    except (EncodeError, UnsupportedContentTypeError) as e:
        return PublishOutcome(False, exchange, routing_key, message_id, PublishFailure.INVALID_PAYLOAD, str(e))
    except PublishRejectedError as e:
        return PublishOutcome(False, exchange, routing_key, message_id, PublishFailure.REJECTED, str(e))
    except PublishUnconfirmedError as e:
        return PublishOutcome(False, exchange, routing_key, message_id, PublishFailure.UNCONFIRMED, str(e))
    except PublishError as e:
        return PublishOutcome(False, exchange, routing_key, message_id, PublishFailure.CONNECTION_LOST, str(e))
    return PublishOutcome(True, exchange, routing_key, message_id)
