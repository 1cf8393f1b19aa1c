from __future__ import annotations

from datetime import timedelta
from typing import Any

from journey_probe.models import (
    Expectation,
    InboundEvent,
    InteractiveExpectation,
    PayloadLayout,
    TextExpectation,
    utcnow,
)
from journey_probe.verifier import ExpectationVerifier, Mismatch, MismatchReason, Pass

BUTTONS = [{"id": "destination-cupcake", "title": "🧁"}, {"id": "destination-donut", "title": "🍩"}]


def _expectation(matcher: Any) -> Expectation:
    return Expectation(
        expectation_id="exp-1",
        correlation_key="probe-run-1",
        run_id="run-1",
        step_id="greet",
        matcher=matcher,
        registered_at=utcnow() - timedelta(seconds=1),
    )


def _event(message: dict[str, Any], **overrides: Any) -> InboundEvent:
    body = {"recipient": {"id": "probe-run-1"}, "message": {"id": "msg-1", **message}}
    return InboundEvent(body=body, recipient_id="probe-run-1", message_id="msg-1", **overrides)


def test_text_match_extracts_fields() -> None:
    verifier = ExpectationVerifier()
    matcher = TextExpectation(
        text="hello world!",
        required_fields=["message.id"],
        extract={"button_id": "message.buttons.0.id"},
    )

    verdict = verifier.verify(
        _expectation(matcher),
        _event({"type": "interactive", "text": "hello world!", "buttons": BUTTONS}),
    )

    assert verdict == Pass(extracted={"button_id": "destination-cupcake"})


def test_unexpected_text_is_mismatch() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(text="hello world!")),
        _event({"type": "text", "text": "sorry, try again"}),
    )

    assert isinstance(verdict, Mismatch)
    assert verdict.reason is MismatchReason.UNEXPECTED_TEXT
    assert "sorry, try again" in verdict.detail


def test_text_contains_match() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(text_contains="destination")),
        _event({"type": "text", "text": "You chose destination using 🧁"}),
    )

    assert isinstance(verdict, Pass)


def test_missing_text_field_reports_path() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(text="hello world!")),
        _event({"type": "text"}),
    )

    assert verdict == Mismatch(MismatchReason.MISSING_FIELD, "message.text")
    assert verdict.describe() == "missing_field: message.text"


def test_required_field_absent_is_mismatch() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(required_fields=["message.metadata.session"])),
        _event({"type": "text", "text": "hello world!"}),
    )

    assert verdict == Mismatch(MismatchReason.MISSING_FIELD, "message.metadata.session")


def test_non_string_text_is_wrong_type() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(text="hello world!")),
        _event({"type": "text", "text": {"body": "hello world!"}}),
    )

    assert isinstance(verdict, Mismatch)
    assert verdict.reason is MismatchReason.WRONG_TYPE


def test_message_type_is_checked() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(message_type="text", text="hello world!")),
        _event({"type": "interactive", "text": "hello world!", "buttons": BUTTONS}),
    )

    assert isinstance(verdict, Mismatch)
    assert verdict.reason is MismatchReason.WRONG_TYPE


def test_interactive_requires_offered_button() -> None:
    verifier = ExpectationVerifier()
    matcher = InteractiveExpectation(button_ids=["destination-cupcake"], text="hello world!")

    offered = verifier.verify(_expectation(matcher), _event({"type": "interactive", "text": "hello world!", "buttons": BUTTONS}))
    missing = verifier.verify(
        _expectation(matcher),
        _event({"type": "interactive", "text": "hello world!", "buttons": BUTTONS[1:]}),
    )
    no_list = verifier.verify(
        _expectation(matcher),
        _event({"type": "interactive", "text": "hello world!", "buttons": "destination-cupcake"}),
    )

    assert isinstance(offered, Pass)
    assert isinstance(missing, Mismatch) and missing.reason is MismatchReason.MISSING_BUTTON
    assert isinstance(no_list, Mismatch) and no_list.reason is MismatchReason.WRONG_TYPE


def test_missing_extraction_path_is_mismatch() -> None:
    verdict = ExpectationVerifier().verify(
        _expectation(TextExpectation(text="hello world!", extract={"button_id": "message.buttons.0.id"})),
        _event({"type": "text", "text": "hello world!"}),
    )

    assert verdict == Mismatch(MismatchReason.MISSING_FIELD, "message.buttons.0.id")


def test_callback_received_before_registration_is_stale() -> None:
    expectation = _expectation(TextExpectation(text="hello world!"))
    event = _event({"type": "text", "text": "hello world!"}, received_at=expectation.registered_at - timedelta(seconds=5))

    verdict = ExpectationVerifier().verify(expectation, event)

    assert isinstance(verdict, Mismatch)
    assert verdict.reason is MismatchReason.STALE


def test_custom_layout_paths() -> None:
    layout = PayloadLayout(text="entry.body", buttons="entry.actions", button_id_key="payload")
    verifier = ExpectationVerifier(layout)
    body = {"entry": {"body": "hello world!", "actions": [{"payload": "destination-cupcake"}]}}
    event = InboundEvent(body=body, recipient_id="probe-run-1")

    verdict = verifier.verify(
        _expectation(InteractiveExpectation(button_ids=["destination-cupcake"], text="hello world!")),
        event,
    )

    assert isinstance(verdict, Pass)
