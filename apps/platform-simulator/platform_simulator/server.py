"""Simulated conversational platform answering stimuli through webhooks."""

from __future__ import annotations

import http.client
import json
import threading
import time
from http import HTTPStatus
from typing import Any, Optional
from urllib import error, request
from uuid import uuid4

import structlog

from webhook_ingress.listener import JsonListener, Reply

from .models import ReplyRule, SimulatorConfig

LOGGER = structlog.get_logger("platform_simulator")


class PlatformSimulator:
    """Serves the messaging endpoint and replays the configured journey."""

    def __init__(self, config: SimulatorConfig) -> None:
        self._config = config
        self._lock = threading.Lock()
        self._failures_left = config.transient_failures
        self._received: list[dict[str, Any]] = []
        self._delivered: list[dict[str, Any]] = []
        self._logger = LOGGER.bind(webhook_url=config.webhook_url)
        self._listener = JsonListener(config.host, config.port, name="platform-simulator", logger=self._logger)
        self._listener.route("POST", config.messages_path, self._handle_message)

    @property
    def address(self) -> tuple[str, int]:
        return self._listener.address

    @property
    def base_url(self) -> str:
        return self._listener.base_url

    @property
    def received(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._received)

    @property
    def delivered(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._delivered)

    def start(self) -> None:
        self._listener.start()
        self._logger.info("simulator_started", base_url=self.base_url, rules=len(self._config.replies))

    def stop(self) -> None:
        self._listener.stop()

    def __enter__(self) -> "PlatformSimulator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _handle_message(self, raw_body: bytes) -> Reply:
        try:
            payload = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            return HTTPStatus.BAD_REQUEST, {"error": "invalid JSON"}
        status, body = self.accept(payload)
        self._logger.info("stimulus_received", status=int(status), content_length=len(raw_body))
        return status, body

    def accept(self, payload: Any) -> tuple[HTTPStatus, dict[str, Any]]:
        """Decide the response to one messaging request and schedule its replies."""

        with self._lock:
            if self._failures_left > 0:
                self._failures_left -= 1
                return HTTPStatus.SERVICE_UNAVAILABLE, {"error": "simulated outage"}
        if not isinstance(payload, dict):
            return HTTPStatus.BAD_REQUEST, {"error": "body must be a JSON object"}
        recipient = payload.get("recipient")
        contact_id = recipient.get("id") if isinstance(recipient, dict) else None
        message = payload.get("message")
        if not contact_id or not isinstance(message, dict):
            return HTTPStatus.BAD_REQUEST, {"error": "recipient.id and message are required"}

        with self._lock:
            self._received.append(payload)
        rule = match_rule(self._config.replies, message)
        if rule is None:
            self._logger.info("stimulus_unanswered", contact_id=contact_id, message_type=message.get("type"))
        else:
            threading.Thread(
                target=self._deliver_replies,
                args=(str(contact_id), rule),
                name=f"simulator-reply-{contact_id}",
                daemon=True,
            ).start()
        return HTTPStatus.ACCEPTED, {"message_id": uuid4().hex}

    def _deliver_replies(self, contact_id: str, rule: ReplyRule) -> None:
        for reply in rule.respond:
            if self._config.latency_ms:
                time.sleep(self._config.latency_ms / 1000)
            body = {"recipient": {"id": contact_id}, "message": reply.as_payload(uuid4().hex)}
            self._post_webhook(body)

    def _post_webhook(self, body: dict[str, Any]) -> None:
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        req = request.Request(
            self._config.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=5) as response:
                response.read()
                status = response.getcode()
        except error.HTTPError as exc:
            status = exc.code
        except (error.URLError, OSError, http.client.HTTPException) as exc:
            self._logger.warning("webhook_delivery_failed", error=str(exc))
            return
        with self._lock:
            self._delivered.append(body)
        self._logger.info(
            "webhook_delivered",
            contact_id=body["recipient"]["id"],
            message_type=body["message"].get("type"),
            status=status,
        )


def match_rule(rules: list[ReplyRule], message: dict[str, Any]) -> Optional[ReplyRule]:
    """First rule whose criteria all hold for the inbound message."""

    message_type = message.get("type")
    text = message.get("text")
    button = message.get("button_reply")
    button_id = button.get("id") if isinstance(button, dict) else None
    for rule in rules:
        criteria = rule.match
        if criteria.type and criteria.type != message_type:
            continue
        if criteria.text is not None and criteria.text != text:
            continue
        if criteria.button_id is not None and criteria.button_id != button_id:
            continue
        return rule
    return None
