"""Normalization of raw webhook bodies into inbound events."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Union

import structlog

from journey_probe.errors import MalformedInboundPayload
from journey_probe.models import InboundEvent, ParseFailure, PayloadLayout, utcnow
from journey_probe.payload_paths import as_text, resolve_path

LOGGER = structlog.get_logger("webhook_ingress.adapter")

Delivery = Union[InboundEvent, ParseFailure]


class WebhookAdapter:
    """Turns one callback body into an InboundEvent, or a ParseFailure it never raises."""

    def __init__(self, layout: Optional[PayloadLayout] = None) -> None:
        self._layout = layout or PayloadLayout()

    def normalize(self, raw_body: bytes, received_at: Optional[datetime] = None) -> Delivery:
        received_at = received_at or utcnow()
        try:
            body = _parse(raw_body)
        except MalformedInboundPayload as exc:
            LOGGER.warning("webhook_payload_malformed", reason=str(exc), size=len(raw_body))
            return ParseFailure(received_at=received_at, raw_body=raw_body, reason=str(exc))
        return InboundEvent(
            received_at=received_at,
            raw_body=raw_body,
            body=body,
            recipient_id=as_text(resolve_path(body, self._layout.recipient_id)),
            message_id=as_text(resolve_path(body, self._layout.message_id)),
        )


def _parse(raw_body: bytes) -> dict[str, Any]:
    if not raw_body or not raw_body.strip():
        raise MalformedInboundPayload("empty body")
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedInboundPayload(f"body is not UTF-8: {exc}") from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedInboundPayload(f"invalid JSON: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(payload, dict):
        raise MalformedInboundPayload(f"expected a JSON object, got {type(payload).__name__}")
    return payload
