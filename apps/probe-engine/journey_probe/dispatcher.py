"""Outbound stimulus delivery with retry and exponential backoff."""

from __future__ import annotations

import http.client
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Optional, Protocol
from urllib import error, request

import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from .config import PlatformConfig, RetryConfig
from .errors import ExhaustedRetries, RemoteRejection, TransientNetworkFailure
from .models import FailureKind, StimulusSpec, utcnow
from .stimulus import build_stimulus

LOGGER = structlog.get_logger("journey_probe.dispatcher")

RATE_LIMITED = 429


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff shared by dispatch retries and step re-dispatch."""

    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    RETRYABLE: ClassVar[frozenset[FailureKind]] = frozenset(
        {
            FailureKind.TRANSIENT_NETWORK_FAILURE,
            FailureKind.TIMEOUT_EXPIRED,
            FailureKind.MISMATCH,
        }
    )

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(base_delay=config.base_delay, max_delay=config.max_delay, multiplier=config.multiplier)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the ``attempt``-th failed attempt (1-based)."""

        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def wait(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)

    def is_retryable(self, kind: FailureKind) -> bool:
        return kind in self.RETRYABLE

    def allows_retry(self, kind: FailureKind, attempt: int, max_retries: int) -> bool:
        """True if another attempt may follow ``attempt`` failed ones under ``max_retries``."""

        return self.is_retryable(kind) and attempt <= max_retries


@dataclass
class TransportResponse:
    status: int
    body: Optional[str] = None
    elapsed_ms: float = 0.0

    def json(self) -> Any:
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except json.JSONDecodeError:
            return None


class Transport(Protocol):
    def send(self, payload: dict[str, Any]) -> TransportResponse: ...


class HttpTransport:
    """POSTs JSON stimuli to the platform's messaging endpoint."""

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: PlatformConfig) -> "HttpTransport":
        return cls(config.messages_url, token=config.token, timeout=config.request_timeout)

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = json.dumps(payload).encode("utf-8")
        req = request.Request(self._url, data=body, headers=headers, method="POST")
        start = time.perf_counter()
        try:
            with request.urlopen(req, timeout=self._timeout) as response:
                text = response.read().decode("utf-8", errors="replace")
                status = response.getcode()
        except error.HTTPError as exc:
            text = exc.read().decode("utf-8", errors="replace")
            status = exc.code
        except (error.URLError, OSError, http.client.HTTPException) as exc:
            raise TransientNetworkFailure(f"POST {self._url} failed: {exc}") from exc
        elapsed_ms = (time.perf_counter() - start) * 1000
        return TransportResponse(status=status, body=text, elapsed_ms=elapsed_ms)


@dataclass
class DispatchAttempt:
    attempt: int
    started_at: datetime
    finished_at: datetime
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    ok: bool
    attempts: list[DispatchAttempt] = field(default_factory=list)
    dispatched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_kind: Optional[FailureKind] = None
    detail: Optional[str] = None
    message_id: Optional[str] = None
    cancelled: bool = False


def classify_status(status: int) -> Optional[FailureKind]:
    if 200 <= status < 300:
        return None
    if status == RATE_LIMITED or status >= 500:
        return FailureKind.TRANSIENT_NETWORK_FAILURE
    return FailureKind.REMOTE_REJECTION


class _BackoffCancelled(Exception):
    """Raised from the backoff sleep once the run's cancel event fires."""


class StimulusDispatcher:
    """Sends a step's stimulus, retrying transient failures up to ``max_retries`` times."""

    def __init__(self, transport: Transport, retry_policy: Optional[RetryPolicy] = None) -> None:
        self._transport = transport
        self._retry = retry_policy or RetryPolicy()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def send(
        self,
        stimulus: StimulusSpec,
        context: dict[str, str],
        *,
        max_retries: int,
        cancel: Optional[threading.Event] = None,
    ) -> DispatchResult:
        payload = build_stimulus(stimulus, context)
        logger = LOGGER.bind(
            run_id=context.get("run_id"),
            step_id=context.get("step_id"),
            contact_id=context.get("contact_id"),
        )
        result = DispatchResult(ok=False)

        def backoff(delay: float) -> None:
            if _wait(delay, cancel):
                raise _BackoffCancelled()

        def log_backoff(state: RetryCallState) -> None:
            logger.debug(
                "dispatch_backoff",
                attempt=state.attempt_number,
                delay=state.next_action.sleep if state.next_action else None,
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=self._retry.wait,
            retry=retry_if_exception_type(TransientNetworkFailure),
            sleep=backoff,
            before_sleep=log_backoff,
            reraise=True,
        )
        try:
            response = retrying(self._attempt, payload, result, logger)
        except TransientNetworkFailure as exc:
            attempts = len(result.attempts)
            exhausted = ExhaustedRetries(f"{attempts} attempts failed; last error: {exc}", attempts)
            result.failure_kind = exhausted.kind
            result.detail = str(exhausted)
            logger.error("dispatch_exhausted", attempts=exhausted.attempts)
            return result
        except RemoteRejection as exc:
            result.failure_kind = exc.kind
            result.detail = str(exc)
            logger.error("dispatch_rejected", attempt=len(result.attempts), status=exc.status)
            return result
        except _BackoffCancelled:
            result.cancelled = True
            result.detail = "cancelled during backoff"
            return result

        last = result.attempts[-1]
        result.ok = True
        result.dispatched_at = last.started_at
        result.completed_at = last.finished_at
        result.message_id = _message_id(response)
        logger.info(
            "dispatch_succeeded",
            attempt=last.attempt,
            status=response.status,
            elapsed_ms=round(response.elapsed_ms, 3),
        )
        return result

    def _attempt(self, payload: dict[str, Any], result: DispatchResult, logger: Any) -> TransportResponse:
        attempt = len(result.attempts) + 1
        started_at = utcnow()
        try:
            response = self._transport.send(payload)
            _raise_for_status(response)
        except (TransientNetworkFailure, RemoteRejection) as exc:
            result.attempts.append(DispatchAttempt(attempt, started_at, utcnow(), status=exc.status, error=str(exc)))
            if isinstance(exc, TransientNetworkFailure):
                logger.warning("dispatch_attempt_failed", attempt=attempt, status=exc.status, error=str(exc))
            raise
        result.attempts.append(DispatchAttempt(attempt, started_at, utcnow(), status=response.status))
        return response


def _raise_for_status(response: TransportResponse) -> None:
    kind = classify_status(response.status)
    if kind is None:
        return
    snippet = (response.body or "")[:200]
    if kind is FailureKind.TRANSIENT_NETWORK_FAILURE:
        raise TransientNetworkFailure(f"platform answered {response.status}: {snippet}", status=response.status)
    raise RemoteRejection(f"platform rejected stimulus with {response.status}: {snippet}", status=response.status)


def _message_id(response: TransportResponse) -> Optional[str]:
    payload = response.json()
    if isinstance(payload, dict):
        value = payload.get("message_id") or payload.get("id")
        if value is not None:
            return str(value)
    return None


def _wait(delay: float, cancel: Optional[threading.Event]) -> bool:
    """Sleep for ``delay`` seconds; returns True if ``cancel`` fired meanwhile."""

    if cancel is None:
        if delay > 0:
            time.sleep(delay)
        return False
    return cancel.wait(delay) if delay > 0 else cancel.is_set()
