from __future__ import annotations

import pytest

from journey_probe.errors import StimulusError
from journey_probe.models import StimulusSpec
from journey_probe.stimulus import build_stimulus

CONTEXT = {"run_id": "run-1", "contact_id": "probe-run-1", "button_id": "destination-cupcake"}


def test_button_reply_resolves_extracted_field() -> None:
    payload = build_stimulus(StimulusSpec(type="button_reply", button_id="${button_id}"), CONTEXT)

    assert payload == {
        "recipient": {"id": "probe-run-1"},
        "message": {"type": "button_reply", "button_reply": {"id": "destination-cupcake"}},
    }


def test_payload_template_is_rendered_recursively() -> None:
    spec = StimulusSpec(
        payload={
            "to": "${contact_id}",
            "interactive": {"reply": ["${button_id}", 3]},
            "tag": "run ${run_id}",
        }
    )

    payload = build_stimulus(spec, CONTEXT)

    assert payload == {
        "to": "probe-run-1",
        "interactive": {"reply": ["destination-cupcake", 3]},
        "tag": "run run-1",
    }
    assert spec.payload["to"] == "${contact_id}"


def test_unknown_placeholder_is_stimulus_error() -> None:
    with pytest.raises(StimulusError, match="session"):
        build_stimulus(StimulusSpec(type="text", text="resume ${session}"), CONTEXT)


def test_stimulus_requires_content() -> None:
    with pytest.raises(ValueError):
        StimulusSpec(type="button_reply")
