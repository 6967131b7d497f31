"""Relay-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class ContentType:
    TEXT_PLAIN = "text/plain"
    APPLICATION_JSON = "application/json"


class ExchangeKind(str, Enum):
    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"


class QueueType(str, Enum):
    CLASSIC = "classic"
    QUORUM = "quorum"


# Headers the broker sets or reads; see RabbitMQ queue arguments and quorum queue docs.
DELIVERY_COUNT_HEADER = "x-delivery-count"
DEAD_LETTER_EXCHANGE_ARG = "x-dead-letter-exchange"
DEAD_LETTER_ROUTING_KEY_ARG = "x-dead-letter-routing-key"
QUEUE_TYPE_ARG = "x-queue-type"

# classic queues only carry the redelivered flag, so no attempt past the second is observable
CLASSIC_MAX_DELIVERY_ATTEMPTS = 2

# headers exchanges: how a binding's header values must match a message's headers
HEADERS_MATCH_ARG = "x-match"
HEADERS_MATCH_MODES = ("all", "any", "all-with-x", "any-with-x")
