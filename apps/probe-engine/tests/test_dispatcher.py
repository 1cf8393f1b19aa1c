from __future__ import annotations

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import pytest

from journey_probe.dispatcher import HttpTransport, RetryPolicy, StimulusDispatcher, TransportResponse, classify_status
from journey_probe.errors import StimulusError, TransientNetworkFailure
from journey_probe.models import FailureKind, StimulusSpec

CONTEXT = {"run_id": "run-1", "contact_id": "probe-run-1", "step_id": "greet"}
NO_BACKOFF = RetryPolicy(base_delay=0.0)


class SequenceTransport:
    """Answers each send with the next scripted outcome; the last one repeats."""

    def __init__(self, *outcomes: Any) -> None:
        self._outcomes = list(outcomes)
        self.payloads: list[dict[str, Any]] = []

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        self.payloads.append(payload)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return TransportResponse(status=outcome, body=json.dumps({"message_id": "platform-msg-1"}))


def _text() -> StimulusSpec:
    return StimulusSpec(type="text", text="hi")


def test_retry_policy_backoff_is_exponential_and_capped() -> None:
    policy = RetryPolicy(base_delay=0.5, max_delay=8.0, multiplier=2.0)

    assert [policy.delay_for(attempt) for attempt in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]
    assert policy.delay_for(0) == 0.0


def test_retry_policy_allows_r_plus_one_attempts() -> None:
    policy = RetryPolicy()

    assert policy.allows_retry(FailureKind.TIMEOUT_EXPIRED, 1, max_retries=2)
    assert policy.allows_retry(FailureKind.TIMEOUT_EXPIRED, 2, max_retries=2)
    assert not policy.allows_retry(FailureKind.TIMEOUT_EXPIRED, 3, max_retries=2)
    assert not policy.allows_retry(FailureKind.REMOTE_REJECTION, 1, max_retries=2)
    assert not policy.allows_retry(FailureKind.MISMATCH, 1, max_retries=0)


def test_status_classification() -> None:
    assert classify_status(202) is None
    assert classify_status(429) is FailureKind.TRANSIENT_NETWORK_FAILURE
    assert classify_status(503) is FailureKind.TRANSIENT_NETWORK_FAILURE
    assert classify_status(400) is FailureKind.REMOTE_REJECTION
    assert classify_status(404) is FailureKind.REMOTE_REJECTION


def test_transient_failure_then_success() -> None:
    transport = SequenceTransport(TransientNetworkFailure("connection reset"), 202)

    result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=2)

    assert result.ok
    assert len(result.attempts) == 2
    assert result.attempts[0].error == "connection reset"
    assert result.attempts[1].status == 202
    assert result.message_id == "platform-msg-1"
    assert transport.payloads[0] == {
        "recipient": {"id": "probe-run-1"},
        "message": {"type": "text", "text": "hi"},
    }


@pytest.mark.parametrize("status", [429, 500, 503])
def test_retryable_statuses_are_retried(status: int) -> None:
    transport = SequenceTransport(status, status, 200)

    result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=2)

    assert result.ok
    assert [attempt.status for attempt in result.attempts] == [status, status, 200]


def test_client_error_is_not_retried() -> None:
    transport = SequenceTransport(400, 202)

    result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=5)

    assert not result.ok
    assert result.failure_kind is FailureKind.REMOTE_REJECTION
    assert len(transport.payloads) == 1


def test_exhausted_after_max_retries_plus_one_attempts() -> None:
    transport = SequenceTransport(TransientNetworkFailure("connection refused"))

    result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=2)

    assert not result.ok
    assert result.failure_kind is FailureKind.EXHAUSTED_RETRIES
    assert len(transport.payloads) == 3
    assert "3 attempts failed" in (result.detail or "")


def test_zero_retries_means_single_attempt() -> None:
    transport = SequenceTransport(503)

    result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=0)

    assert result.failure_kind is FailureKind.EXHAUSTED_RETRIES
    assert len(transport.payloads) == 1


def test_cancel_interrupts_backoff() -> None:
    cancel = threading.Event()
    cancel.set()
    transport = SequenceTransport(503)

    result = StimulusDispatcher(transport, RetryPolicy(base_delay=30.0)).send(
        _text(), CONTEXT, max_retries=3, cancel=cancel
    )

    assert result.cancelled
    assert not result.ok
    assert len(transport.payloads) == 1


def test_unresolved_placeholder_raises_before_sending() -> None:
    transport = SequenceTransport(202)
    spec = StimulusSpec(type="button_reply", button_id="${button_id}")

    with pytest.raises(StimulusError):
        StimulusDispatcher(transport, NO_BACKOFF).send(spec, CONTEXT, max_retries=1)
    assert transport.payloads == []


def _start_platform(received: list[dict[str, Any]]) -> tuple[HTTPServer, threading.Thread]:
    class Handler(BaseHTTPRequestHandler):
        def do_POST(self) -> None:  # noqa: N802 - HTTP handler requirement
            length = int(self.headers.get("Content-Length", 0))
            received.append(
                {
                    "path": self.path,
                    "authorization": self.headers.get("Authorization"),
                    "body": json.loads(self.rfile.read(length)),
                }
            )
            body = json.dumps({"message_id": "wamid-1"}).encode("utf-8")
            self.send_response(202)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:  # pragma: no cover - silence logs
            return

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


def test_http_transport_posts_json_with_bearer_token() -> None:
    received: list[dict[str, Any]] = []
    server, thread = _start_platform(received)
    try:
        url = f"http://127.0.0.1:{server.server_address[1]}/messages"
        transport = HttpTransport(url, token="secret", timeout=2)

        result = StimulusDispatcher(transport, NO_BACKOFF).send(_text(), CONTEXT, max_retries=0)
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)

    assert result.ok
    assert result.message_id == "wamid-1"
    assert received == [
        {
            "path": "/messages",
            "authorization": "Bearer secret",
            "body": {"recipient": {"id": "probe-run-1"}, "message": {"type": "text", "text": "hi"}},
        }
    ]


def test_http_transport_connection_refused_is_transient() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    transport = HttpTransport(f"http://127.0.0.1:{port}/messages", timeout=1)

    with pytest.raises(TransientNetworkFailure):
        transport.send({"recipient": {"id": "probe-run-1"}})
