"""Codec: application values <-> wire bytes, keyed by content type."""
from __future__ import annotations

import json
from typing import Any, Callable

from pydantic import BaseModel

from relay.app.constants import ContentType
from relay.app.domain.errors import EncodeError, MalformedPayloadError, UnsupportedContentTypeError

Encoder = Callable[[Any], bytes]
Decoder = Callable[[bytes], Any]


def normalize_content_type(content_type: str | None) -> str:
    """'Application/JSON; charset=utf-8' -> 'application/json'."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def _encode_text(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if not isinstance(value, str):
        raise EncodeError(f"text/plain expects str or bytes, got {type(value).__name__}")
    return value.encode("utf-8")


def _decode_text(body: bytes) -> str:
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError(f"text/plain body is not valid utf-8: {exc}") from exc


def _encode_json(value: Any) -> bytes:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"value is not JSON serializable: {exc}") from exc


def _decode_json(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayloadError(f"malformed json body: {exc}") from exc


class Codec:
    """Serializes payloads for publishing and deserializes deliveries.

    Ships with text/plain and application/json. Failures are always raised,
    never coerced into a default value.
    """

    def __init__(self) -> None:
        self._serializers: dict[str, tuple[Encoder, Decoder]] = {
            ContentType.TEXT_PLAIN: (_encode_text, _decode_text),
            ContentType.APPLICATION_JSON: (_encode_json, _decode_json),
        }

    def register(self, content_type: str, encoder: Encoder, decoder: Decoder) -> None:
        self._serializers[normalize_content_type(content_type)] = (encoder, decoder)

    def supports(self, content_type: str | None) -> bool:
        return normalize_content_type(content_type) in self._serializers

    def encode(self, value: Any, content_type: str) -> bytes:
        encoder, _ = self._lookup(content_type)
        return encoder(value)

    def decode(self, body: bytes, content_type: str | None) -> Any:
        _, decoder = self._lookup(content_type)
        return decoder(body)

    def _lookup(self, content_type: str | None) -> tuple[Encoder, Decoder]:
        serializer = self._serializers.get(normalize_content_type(content_type))
        if serializer is None:
            raise UnsupportedContentTypeError(content_type)
        return serializer
