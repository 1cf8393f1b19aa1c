"""Pydantic models describing a simulated conversational journey."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ReplyMatch(BaseModel):
    """Criteria an inbound stimulus must meet for a reply rule to fire."""

    type: Optional[str] = None
    text: Optional[str] = None
    button_id: Optional[str] = None


class Button(BaseModel):
    id: str
    title: str = ""


class ReplyMessage(BaseModel):
    """Message the simulated journey sends back through the webhook."""

    type: str = "text"
    text: Optional[str] = None
    buttons: list[Button] = Field(default_factory=list)

    def as_payload(self, message_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": message_id, "type": self.type}
        if self.text is not None:
            payload["text"] = self.text
        if self.buttons:
            payload["buttons"] = [button.model_dump() for button in self.buttons]
        return payload


class ReplyRule(BaseModel):
    match: ReplyMatch = Field(default_factory=ReplyMatch)
    respond: list[ReplyMessage] = Field(default_factory=list)


class SimulatorConfig(BaseModel):
    """Top-level configuration consumed by the platform simulator."""

    host: str = "127.0.0.1"
    port: int = Field(default=9200, ge=0, le=65535)
    messages_path: str = "/messages"
    webhook_url: str = "http://127.0.0.1:8080/webhook"
    latency_ms: int = Field(default=50, ge=0)
    transient_failures: int = Field(default=0, ge=0)
    replies: list[ReplyRule] = Field(default_factory=list)
