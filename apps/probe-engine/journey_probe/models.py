"""Scenario definitions and runtime records for journey probes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StimulusSpec(BaseModel):
    """Outbound action simulating user input (a typed message or a button press)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text", "button_reply"] = "text"
    text: Optional[str] = None
    button_id: Optional[str] = None
    payload: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _check_content(self) -> "StimulusSpec":
        if self.payload is not None:
            return self
        if self.type == "text" and self.text is None:
            raise ValueError("text stimulus requires 'text'")
        if self.type == "button_reply" and self.button_id is None:
            raise ValueError("button_reply stimulus requires 'button_id'")
        return self


class _ExpectationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_fields: list[str] = Field(default_factory=list)
    extract: dict[str, str] = Field(default_factory=dict)


class TextExpectation(_ExpectationBase):
    """Inbound reply must carry the given text."""

    type: Literal["text"] = "text"
    text: Optional[str] = None
    text_contains: Optional[str] = None
    message_type: Optional[str] = None


class InteractiveExpectation(_ExpectationBase):
    """Inbound reply must offer at least one of the listed buttons."""

    type: Literal["interactive"] = "interactive"
    button_ids: list[str] = Field(default_factory=list)
    text: Optional[str] = None


ExpectationSpec = Annotated[
    Union[TextExpectation, InteractiveExpectation],
    Field(discriminator="type"),
]


class Step(BaseModel):
    """One stimulus/expectation pair within a scenario."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    description: Optional[str] = None
    stimulus: StimulusSpec
    expect: ExpectationSpec
    timeout: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    redispatchable: bool = True


class Scenario(BaseModel):
    """Ordered, immutable sequence of steps driven against the remote platform."""

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    description: Optional[str] = None
    contact_prefix: str = "probe"
    steps: list[Step] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_step_ids(self) -> "Scenario":
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"Duplicate step_id '{step.step_id}' in scenario {self.scenario_id}")
            seen.add(step.step_id)
        return self

    def with_defaults(self, *, timeout: float, max_retries: int) -> "Scenario":
        """Return a copy where every step has an explicit timeout and retry budget."""

        steps = [
            step.model_copy(
                update={
                    "timeout": step.timeout if step.timeout is not None else timeout,
                    "max_retries": step.max_retries if step.max_retries is not None else max_retries,
                }
            )
            for step in self.steps
        ]
        return self.model_copy(update={"steps": steps})


class PayloadLayout(BaseModel):
    """Dotted paths locating the interesting fields of an inbound callback body."""

    recipient_id: str = "recipient.id"
    message_id: str = "message.id"
    message_type: str = "message.type"
    text: str = "message.text"
    buttons: str = "message.buttons"
    button_id_key: str = "id"


class RunStatus(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    AWAITING_RESPONSE = "awaiting_response"
    VERIFYING = "verifying"
    ADVANCING = "advancing"
    RETRYING = "retrying"
    FAILED = "failed"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.FAILED, RunStatus.COMPLETED, RunStatus.ABORTED})


class FailureKind(str, Enum):
    TRANSIENT_NETWORK_FAILURE = "transient_network_failure"
    REMOTE_REJECTION = "remote_rejection"
    MALFORMED_INBOUND_PAYLOAD = "malformed_inbound_payload"
    TIMEOUT_EXPIRED = "timeout_expired"
    DUPLICATE_CORRELATION = "duplicate_correlation"
    EXHAUSTED_RETRIES = "exhausted_retries"
    MISMATCH = "mismatch"
    INVALID_STIMULUS = "invalid_stimulus"
    INTERNAL_ERROR = "internal_error"


class Expectation(BaseModel):
    """Pending, time-bounded record of the reply a run is waiting for."""

    model_config = ConfigDict(frozen=True)

    expectation_id: str
    correlation_key: str
    run_id: str
    step_id: str
    matcher: ExpectationSpec
    registered_at: datetime = Field(default_factory=utcnow)
    deadline: Optional[datetime] = None

    @property
    def armed(self) -> bool:
        return self.deadline is not None


class InboundEvent(BaseModel):
    """Normalized webhook callback."""

    model_config = ConfigDict(frozen=True)

    received_at: datetime = Field(default_factory=utcnow)
    raw_body: bytes = b""
    body: dict[str, Any] = Field(default_factory=dict)
    recipient_id: Optional[str] = None
    message_id: Optional[str] = None


class ParseFailure(BaseModel):
    """Inbound delivery that could not be turned into an InboundEvent."""

    model_config = ConfigDict(frozen=True)

    received_at: datetime = Field(default_factory=utcnow)
    raw_body: bytes = b""
    reason: str


class LatencyRecord(BaseModel):
    """Dispatch-to-receive latency of one completed step."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: str
    dispatch_time: datetime
    receive_time: datetime
    duration_ms: float


class StepTiming(BaseModel):
    step_id: str
    attempts: int = 0
    dispatch_attempts: int = 0
    dispatched_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    status: str = "pending"


class StepFailure(BaseModel):
    step_id: str
    kind: FailureKind
    detail: Optional[str] = None
    attempts: int = 0


class ProbeRun(BaseModel):
    """One execution of a scenario, owned by its state machine."""

    run_id: str
    scenario_id: str
    contact_id: str
    correlation_key: str
    status: RunStatus = RunStatus.IDLE
    current_step_index: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: list[StepTiming] = Field(default_factory=list)
    latencies: list[LatencyRecord] = Field(default_factory=list)
    failure: Optional[StepFailure] = None
    context: dict[str, str] = Field(default_factory=dict)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class AlertEvent(BaseModel):
    """Threshold breach or run failure handed to the alert sink."""

    model_config = ConfigDict(frozen=True)

    threshold_name: str
    observed_value: float
    threshold_value: Optional[float] = None
    run_id: Optional[str] = None
    step_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
