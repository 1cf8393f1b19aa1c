"""Test bootstrap and shared fixtures for the probe engine."""

from __future__ import annotations

import json
import socket
import sys
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest

APP_ROOT = Path(__file__).resolve().parents[1]
APPS_DIR = APP_ROOT.parent
for path in [APP_ROOT, APPS_DIR / "webhook-ingress", APPS_DIR / "platform-simulator"]:
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)

from journey_probe.config import ProbeConfig, RetryConfig  # noqa: E402
from journey_probe.dispatcher import TransportResponse  # noqa: E402
from journey_probe.errors import TransientNetworkFailure  # noqa: E402
from journey_probe.models import (  # noqa: E402
    AlertEvent,
    InboundEvent,
    InteractiveExpectation,
    Scenario,
    Step,
    StimulusSpec,
    TextExpectation,
)
from journey_probe.service import ProbeService  # noqa: E402

GREETING = "hello world!"
CHOICE_REPLY = "You chose destination using 🧁"
CUPCAKE = "destination-cupcake"


class ScriptedPlatform:
    """In-memory stand-in for the messaging endpoint.

    Each ``send`` first consumes a queued outcome (``"network"`` or an HTTP
    status); otherwise it accepts the stimulus and delivers the replies
    registered for its text or button id on a timer thread.
    """

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.journal: Optional[list[dict[str, Any]]] = None
        self.deliver: Optional[Callable[[InboundEvent], None]] = None
        self.reply_delay = 0.01
        self._outcomes: deque[Any] = deque()
        self._replies: dict[str, list[dict[str, Any]]] = {}
        self._duplicates: set[str] = set()
        self._lock = threading.Lock()

    def fail_next(self, *outcomes: Any) -> None:
        self._outcomes.extend(outcomes)

    def reply(self, trigger: str, *messages: dict[str, Any], duplicate: bool = False) -> None:
        self._replies[trigger] = list(messages)
        if duplicate:
            self._duplicates.add(trigger)

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        with self._lock:
            self.sent.append(payload)
            outcome = self._outcomes.popleft() if self._outcomes else None
        if self.journal is not None:
            self.journal.append({"event": "sent", "message": payload["message"]})
        if outcome == "network":
            raise TransientNetworkFailure("connection reset by peer")
        if isinstance(outcome, int):
            return TransportResponse(status=outcome, body=json.dumps({"error": "scripted"}))

        message = payload["message"]
        trigger = message.get("text") or message.get("button_reply", {}).get("id")
        contact_id = payload["recipient"]["id"]
        for reply in self._replies.get(trigger, []):
            event = self._event(contact_id, reply)
            copies = 2 if trigger in self._duplicates else 1
            for _ in range(copies):
                timer = threading.Timer(self.reply_delay, self._deliver, args=(event,))
                timer.daemon = True
                timer.start()
        return TransportResponse(status=202, body=json.dumps({"message_id": uuid4().hex}))

    def sent_triggers(self) -> list[str]:
        triggers = []
        for payload in self.sent:
            message = payload["message"]
            triggers.append(message.get("text") or message.get("button_reply", {}).get("id"))
        return triggers

    @staticmethod
    def _event(contact_id: str, message: dict[str, Any]) -> InboundEvent:
        body = {"recipient": {"id": contact_id}, "message": {"id": uuid4().hex, **message}}
        return InboundEvent(
            raw_body=json.dumps(body).encode("utf-8"),
            body=body,
            recipient_id=contact_id,
            message_id=body["message"]["id"],
        )

    def _deliver(self, event: InboundEvent) -> None:
        if self.deliver is not None:
            # Stamp arrival time at delivery, not at scheduling.
            self.deliver(event.model_copy(update={"received_at": _now()}))


def _now():
    from journey_probe.models import utcnow

    return utcnow()


class CollectingSink:
    def __init__(self) -> None:
        self.alerts: list[AlertEvent] = []
        self._lock = threading.Lock()

    def emit(self, alert: AlertEvent) -> None:
        with self._lock:
            self.alerts.append(alert)


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def platform() -> ScriptedPlatform:
    scripted = ScriptedPlatform()
    scripted.reply(
        "hi",
        {
            "type": "interactive",
            "text": GREETING,
            "buttons": [{"id": CUPCAKE, "title": "🧁"}, {"id": "destination-donut", "title": "🍩"}],
        },
    )
    scripted.reply(CUPCAKE, {"type": "text", "text": CHOICE_REPLY})
    return scripted


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def probe_config() -> ProbeConfig:
    return ProbeConfig(
        timeout=5.0,
        max_retries=2,
        sweep_interval=0.02,
        retry=RetryConfig(base_delay=0.01, max_delay=0.05, multiplier=2.0),
    )


@pytest.fixture
def service(probe_config: ProbeConfig, platform: ScriptedPlatform, sink: CollectingSink):
    probe_service = ProbeService(probe_config, transport=platform, sink=sink)
    platform.deliver = probe_service.handle_inbound
    probe_service.start()
    yield probe_service
    probe_service.stop()


def make_destination_scenario(
    *,
    timeout: float = 5.0,
    max_retries: int = 2,
    choice_timeout: Optional[float] = None,
    choice_redispatchable: bool = False,
) -> Scenario:
    return Scenario(
        scenario_id="destination-journey",
        steps=[
            Step(
                step_id="greet",
                stimulus=StimulusSpec(type="text", text="hi"),
                expect=TextExpectation(text=GREETING, extract={"button_id": "message.buttons.0.id"}),
                timeout=timeout,
                max_retries=max_retries,
            ),
            Step(
                step_id="choose-destination",
                stimulus=StimulusSpec(type="button_reply", button_id="${button_id}"),
                expect=TextExpectation(text=CHOICE_REPLY),
                timeout=choice_timeout or timeout,
                max_retries=max_retries,
                redispatchable=choice_redispatchable,
            ),
        ],
    )


@pytest.fixture
def scenario_factory() -> Callable[..., Scenario]:
    return make_destination_scenario


@pytest.fixture
def interactive_expectation() -> InteractiveExpectation:
    return InteractiveExpectation(button_ids=[CUPCAKE])


@pytest.fixture
def free_port() -> Callable[[], int]:
    return find_free_port
