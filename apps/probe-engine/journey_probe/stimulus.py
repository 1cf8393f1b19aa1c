"""Outbound message construction for scenario steps."""

from __future__ import annotations

from copy import deepcopy
from string import Template
from typing import Any

from .errors import StimulusError
from .models import StimulusSpec


def build_stimulus(spec: StimulusSpec, context: dict[str, str]) -> dict[str, Any]:
    """Render the JSON body posted to the platform for ``spec``.

    ``context`` always carries ``contact_id`` and ``run_id`` plus every field
    extracted from earlier replies of the run.
    """

    if spec.payload is not None:
        return _render_value(deepcopy(spec.payload), context)

    recipient = {"id": _render_value("${contact_id}", context)}
    if spec.type == "button_reply":
        message: dict[str, Any] = {
            "type": "button_reply",
            "button_reply": {"id": _render_value(spec.button_id or "", context)},
        }
    else:
        message = {"type": "text", "text": _render_value(spec.text or "", context)}
    return {"recipient": recipient, "message": message}


def _render_value(value: Any, replacements: dict[str, str]) -> Any:
    """Recursively substitute placeholders; an unknown placeholder is an error."""

    if isinstance(value, str):
        try:
            return Template(value).substitute(replacements)
        except KeyError as exc:
            raise StimulusError(f"Unresolved placeholder ${{{exc.args[0]}}} in '{value}'") from exc
        except ValueError as exc:
            raise StimulusError(f"Invalid placeholder in '{value}': {exc}") from exc
    if isinstance(value, list):
        return [_render_value(item, replacements) for item in value]
    if isinstance(value, dict):
        return {key: _render_value(val, replacements) for key, val in value.items()}
    return value
