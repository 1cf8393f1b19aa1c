"""HTTP listener receiving platform webhook callbacks."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Callable, Optional

import structlog

from journey_probe.config import WebhookConfig

from .adapter import Delivery, WebhookAdapter
from .listener import JsonListener, Reply

LOGGER = structlog.get_logger("webhook_ingress")

HEALTH_PATH = "/healthz"


class WebhookServer(JsonListener):
    """Acknowledges every POST on the webhook path and hands the payload to ``on_delivery``.

    The platform treats anything but a 200 as a failed delivery and retries it,
    so handler errors are logged and still acknowledged.
    """

    def __init__(
        self,
        config: WebhookConfig,
        on_delivery: Callable[[Delivery], None],
        *,
        adapter: Optional[WebhookAdapter] = None,
        status_provider: Optional[Callable[[], dict[str, Any]]] = None,
    ) -> None:
        super().__init__(config.host, config.port, name="webhook-ingress", logger=LOGGER.bind(path=config.path))
        self._config = config
        self._on_delivery = on_delivery
        self._adapter = adapter or WebhookAdapter()
        self._status_provider = status_provider
        self.route("POST", config.path, self._receive)
        self.route("GET", HEALTH_PATH, self._health)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self._config.path}"

    def _receive(self, raw_body: bytes) -> Reply:
        try:
            delivery = self._adapter.normalize(raw_body)
            self._on_delivery(delivery)
        except Exception:
            self.logger.exception("webhook_delivery_failed", content_length=len(raw_body))
        else:
            self.logger.debug("webhook_received", kind=type(delivery).__name__, content_length=len(raw_body))
        return HTTPStatus.OK, dict(self._config.ack)

    def _health(self, raw_body: bytes) -> Reply:
        payload: dict[str, Any] = {"status": "ok"}
        if self._status_provider is not None:
            try:
                payload["health"] = self._status_provider()
            except Exception:
                self.logger.exception("health_status_failed")
                payload["status"] = "degraded"
        return HTTPStatus.OK, payload
