"""Messaging error taxonomy.

Infrastructure adapters translate broker client exceptions into these; application
code and the HTTP layer only ever see this hierarchy.
"""
from __future__ import annotations


class MessagingError(Exception):
    """Base for every failure raised by the messaging core."""


class TopologyError(MessagingError):
    """Base for exchange/queue/binding declaration failures."""


class TopologyConflictError(TopologyError):
    """Raised when an entity is re-declared with different parameters."""


class TopologyBrokerRejectedError(TopologyError):
    """Raised when the broker refuses a declaration for any other reason."""


class BrokerConnectionError(MessagingError):
    """Base for broker connection failures."""


class BrokerUnavailableError(BrokerConnectionError):
    """Raised when no connection could be obtained in time."""


class BrokerAuthFailedError(BrokerConnectionError):
    """Raised when the broker refuses the supplied credentials."""


class PublishError(MessagingError):
    """Base for publish failures."""


class PublishUnconfirmedError(PublishError):
    """Raised when the broker did not confirm a publish within the timeout."""


class PublishRejectedError(PublishError):
    """Raised on a negative confirm or an unroutable mandatory message."""


class PublishConnectionLostError(PublishError):
    """Raised when the channel failed on the first attempt and on the retry."""


class DecodeError(MessagingError):
    """Base for decode failures on the consume path."""


class UnsupportedContentTypeError(DecodeError):
    """Raised for a content type the codec has no serializer for."""

    def __init__(self, content_type: str | None) -> None:
        super().__init__(f"unsupported content type: {content_type!r}")
        self.content_type = content_type


class MalformedPayloadError(DecodeError):
    """Raised when bytes cannot be decoded under their declared content type."""


class EncodeError(MessagingError):
    """Raised when a value cannot be encoded under the requested content type."""
