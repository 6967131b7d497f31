"""Settings for the relay (API and worker share one configuration)."""

from typing import Any
from urllib.parse import quote

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay.app.constants import CLASSIC_MAX_DELIVERY_ATTEMPTS, ContentType, ExchangeKind, QueueType


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    broker_host: str = Field("localhost", validation_alias="BROKER_HOST")
    broker_port: int = Field(5672, validation_alias="BROKER_PORT")
    broker_user: str = Field("guest", validation_alias="BROKER_USER")
    broker_password: str = Field("guest", validation_alias="BROKER_PASSWORD")
    broker_vhost: str = Field("/", validation_alias="BROKER_VHOST")

    exchange_name: str = Field("relay_exchange", validation_alias="EXCHANGE_NAME")
    exchange_kind: ExchangeKind = Field(ExchangeKind.TOPIC, validation_alias="EXCHANGE_KIND")
    # queue name -> routing keys binding it to exchange_name
    queue_bindings: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "relay_queue": ["relay_routing_key"],
            "relay_json_queue": ["relay_json_routing_key"],
        },
        validation_alias="QUEUE_BINDINGS",
    )
    # queue name -> bind arguments; a headers exchange matches on these instead of routing keys
    queue_binding_arguments: dict[str, dict[str, Any]] = Field(
        default_factory=dict, validation_alias="QUEUE_BINDING_ARGUMENTS"
    )
    queue_durable: bool = Field(True, validation_alias="QUEUE_DURABLE")
    queue_type: QueueType = Field(QueueType.QUORUM, validation_alias="QUEUE_TYPE")

    dead_letter_exchange: str | None = Field("relay_dlx", validation_alias="DEAD_LETTER_EXCHANGE")
    dead_letter_queue: str | None = Field("relay_dlq", validation_alias="DEAD_LETTER_QUEUE")
    dead_letter_routing_key: str = Field("dead", validation_alias="DEAD_LETTER_ROUTING_KEY")

    default_routing_key: str = Field("relay_json_routing_key", validation_alias="DEFAULT_ROUTING_KEY")
    default_content_type: str = Field(ContentType.APPLICATION_JSON, validation_alias="DEFAULT_CONTENT_TYPE")

    prefetch_count: int = Field(10, ge=1, validation_alias="PREFETCH_COUNT")
    worker_count: int = Field(1, ge=1, validation_alias="WORKER_COUNT")
    max_delivery_attempts: int = Field(5, ge=1, validation_alias="MAX_DELIVERY_ATTEMPTS")
    drain_timeout_seconds: float = Field(30.0, ge=0, validation_alias="DRAIN_TIMEOUT_SECONDS")
    # queues the worker consumes; empty means every queue in queue_bindings
    worker_queues: list[str] = Field(default_factory=list, validation_alias="WORKER_QUEUES")

    publisher_backend: str = Field("rabbitmq", validation_alias="PUBLISHER_BACKEND")
    publisher_confirms: bool = Field(True, validation_alias="PUBLISHER_CONFIRMS")
    confirm_timeout_seconds: float = Field(10.0, gt=0, validation_alias="CONFIRM_TIMEOUT_SECONDS")
    mandatory_publish: bool = Field(True, validation_alias="MANDATORY_PUBLISH")
    publisher_pool_size: int = Field(4, ge=1, validation_alias="PUBLISHER_POOL_SIZE")
    channel_acquire_timeout_seconds: float = Field(30.0, gt=0, validation_alias="CHANNEL_ACQUIRE_TIMEOUT_SECONDS")

    initial_backoff_seconds: float = Field(1.0, ge=0, validation_alias="INITIAL_BACKOFF_SECONDS")
    max_backoff_seconds: float = Field(30.0, ge=0, validation_alias="MAX_BACKOFF_SECONDS")
    backoff_multiplier: float = Field(2.0, ge=1, validation_alias="BACKOFF_MULTIPLIER")
    max_connection_attempts: int = Field(5, ge=1, validation_alias="MAX_CONNECTION_ATTEMPTS")
    # 0 keeps reconnecting forever
    max_reconnect_attempts: int = Field(0, ge=0, validation_alias="MAX_RECONNECT_ATTEMPTS")

    @field_validator("dead_letter_exchange", "dead_letter_queue", mode="before")
    @classmethod
    def _blank_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _classic_queue_attempt_ceiling(self) -> "Settings":
        if self.queue_type == QueueType.CLASSIC and self.max_delivery_attempts > CLASSIC_MAX_DELIVERY_ATTEMPTS:
            raise ValueError(
                f"max_delivery_attempts={self.max_delivery_attempts} is unreachable on classic queues; "
                f"use a quorum queue or at most {CLASSIC_MAX_DELIVERY_ATTEMPTS}"
            )
        return self

    @property
    def broker_url(self) -> str:
        vhost = quote(self.broker_vhost, safe="")
        return (
            f"amqp://{quote(self.broker_user, safe='')}:{quote(self.broker_password, safe='')}"
            f"@{self.broker_host}:{self.broker_port}/{vhost}"
        )

    @property
    def consumed_queues(self) -> list[str]:
        return list(self.worker_queues) or list(self.queue_bindings)
