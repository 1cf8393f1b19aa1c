"""Checks inbound callbacks against the expectation of the awaited step."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import structlog

from .models import (
    Expectation,
    InboundEvent,
    InteractiveExpectation,
    PayloadLayout,
    TextExpectation,
)
from .payload_paths import MISSING, as_text, resolve_path

LOGGER = structlog.get_logger("journey_probe.verifier")


class MismatchReason(str, Enum):
    MISSING_FIELD = "missing_field"
    WRONG_TYPE = "wrong_type"
    UNEXPECTED_TEXT = "unexpected_text"
    MISSING_BUTTON = "missing_button"
    STALE = "stale"


@dataclass(frozen=True)
class Pass:
    extracted: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Mismatch:
    reason: MismatchReason
    detail: str = ""

    def describe(self) -> str:
        return f"{self.reason.value}: {self.detail}" if self.detail else self.reason.value


Verdict = Union[Pass, Mismatch]


class ExpectationVerifier:
    """Structural and content matching of callback bodies."""

    def __init__(self, layout: Optional[PayloadLayout] = None) -> None:
        self._layout = layout or PayloadLayout()

    def verify(self, expectation: Expectation, event: InboundEvent) -> Verdict:
        verdict = self._verify(expectation, event)
        if isinstance(verdict, Mismatch):
            LOGGER.info(
                "verification_mismatch",
                run_id=expectation.run_id,
                step_id=expectation.step_id,
                reason=verdict.reason.value,
                detail=verdict.detail,
            )
        return verdict

    def matches(self, expectation: Expectation, event: InboundEvent) -> bool:
        """Silent check used to classify callbacks before they reach a run."""

        return isinstance(self._verify(expectation, event), Pass)

    def _verify(self, expectation: Expectation, event: InboundEvent) -> Verdict:
        if event.received_at < expectation.registered_at:
            return Mismatch(MismatchReason.STALE, "callback predates the stimulus")

        body = event.body
        matcher = expectation.matcher
        for path in matcher.required_fields:
            if resolve_path(body, path) is MISSING:
                return Mismatch(MismatchReason.MISSING_FIELD, path)

        if isinstance(matcher, TextExpectation):
            verdict = self._match_text(matcher, body)
        elif isinstance(matcher, InteractiveExpectation):
            verdict = self._match_interactive(matcher, body)
        else:  # pragma: no cover - guarded by the discriminated union
            raise TypeError(f"Unsupported expectation {type(matcher).__name__}")
        if verdict is not None:
            return verdict

        extracted: dict[str, str] = {}
        for name, path in matcher.extract.items():
            value = as_text(resolve_path(body, path))
            if value is None:
                return Mismatch(MismatchReason.MISSING_FIELD, path)
            extracted[name] = value
        return Pass(extracted=extracted)

    def _match_text(self, matcher: TextExpectation, body: dict[str, Any]) -> Optional[Mismatch]:
        if matcher.message_type is not None:
            mismatch = self._match_type(matcher.message_type, body)
            if mismatch:
                return mismatch
        if matcher.text is None and matcher.text_contains is None:
            return None
        text = self._text(body)
        if isinstance(text, Mismatch):
            return text
        if matcher.text is not None and text != matcher.text:
            return Mismatch(MismatchReason.UNEXPECTED_TEXT, f"expected {matcher.text!r}, got {text!r}")
        if matcher.text_contains is not None and matcher.text_contains not in text:
            return Mismatch(
                MismatchReason.UNEXPECTED_TEXT,
                f"expected text containing {matcher.text_contains!r}, got {text!r}",
            )
        return None

    def _match_interactive(self, matcher: InteractiveExpectation, body: dict[str, Any]) -> Optional[Mismatch]:
        raw_buttons = resolve_path(body, self._layout.buttons)
        if raw_buttons is MISSING:
            return Mismatch(MismatchReason.MISSING_FIELD, self._layout.buttons)
        if not isinstance(raw_buttons, list):
            return Mismatch(MismatchReason.WRONG_TYPE, f"{self._layout.buttons} is not a list")
        offered = {
            str(button[self._layout.button_id_key])
            for button in raw_buttons
            if isinstance(button, dict) and self._layout.button_id_key in button
        }
        if matcher.button_ids and not offered.intersection(matcher.button_ids):
            return Mismatch(
                MismatchReason.MISSING_BUTTON,
                f"expected one of {sorted(matcher.button_ids)}, got {sorted(offered)}",
            )
        if matcher.text is not None:
            text = self._text(body)
            if isinstance(text, Mismatch):
                return text
            if text != matcher.text:
                return Mismatch(MismatchReason.UNEXPECTED_TEXT, f"expected {matcher.text!r}, got {text!r}")
        return None

    def _match_type(self, expected: str, body: dict[str, Any]) -> Optional[Mismatch]:
        value = resolve_path(body, self._layout.message_type)
        if value is MISSING:
            return Mismatch(MismatchReason.MISSING_FIELD, self._layout.message_type)
        if value != expected:
            return Mismatch(MismatchReason.WRONG_TYPE, f"expected {expected!r}, got {value!r}")
        return None

    def _text(self, body: dict[str, Any]) -> Union[str, Mismatch]:
        value = resolve_path(body, self._layout.text)
        if value is MISSING:
            return Mismatch(MismatchReason.MISSING_FIELD, self._layout.text)
        if not isinstance(value, str):
            return Mismatch(MismatchReason.WRONG_TYPE, f"{self._layout.text} is not a string")
        return value
