from typing import Any

from pydantic import BaseModel, Field

from relay.app.constants import ContentType


class PublishRequest(BaseModel):
    payload: Any
    routing_key: str | None = None
    exchange: str | None = None
    content_type: str = ContentType.APPLICATION_JSON
    correlation_id: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class PublishResponse(BaseModel):
    status: str = "PUBLISHED"
    message_id: str
    exchange: str
    routing_key: str


class BrokerStateResponse(BaseModel):
    connection: str
    subscriptions: dict[str, str]
