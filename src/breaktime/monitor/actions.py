"""Typed break-alert buttons and their Slack callback payloads."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

BT_BREAK_ACTION_PREFIX = "bt_break_"
BT_BREAK_ACTIONS_BLOCK_ID = "bt_break_alert_actions"


class BreakAlertAction(str, Enum):
    ACCEPT_NOW = "accept_now"
    DELAY_30 = "delay_30"
    DELAY_60 = "delay_60"
    DISMISS = "dismiss"

    @property
    def delay_minutes(self) -> Optional[int]:
        if self is BreakAlertAction.DELAY_30:
            return 30
        if self is BreakAlertAction.DELAY_60:
            return 60
        return None

    @property
    def action_id(self) -> str:
        return f"{BT_BREAK_ACTION_PREFIX}{self.value}"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_action_id(cls, action_id: str) -> Optional["BreakAlertAction"]:
        if not action_id or not action_id.startswith(BT_BREAK_ACTION_PREFIX):
            return None
        try:
            return cls(action_id[len(BT_BREAK_ACTION_PREFIX):])
        except ValueError:
            return None


_LABELS = {
    BreakAlertAction.ACCEPT_NOW: "Take a break now",
    BreakAlertAction.DELAY_30: "In 30 min",
    BreakAlertAction.DELAY_60: "In 1 hour",
    BreakAlertAction.DISMISS: "Dismiss",
}

ALERT_ACTIONS: tuple[BreakAlertAction, ...] = tuple(BreakAlertAction)


class BreakActionValue(BaseModel):
    """Fields encoded into every break-alert button value."""

    user_id: str
    suggestion_id: str
    break_type: str

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_value(cls, value: str) -> "BreakActionValue | None":
        try:
            return cls.model_validate_json(value)
        except (ValidationError, ValueError):
            return None


class BreakAlertResponse(BaseModel):
    """A validated button click on a break alert."""

    action: BreakAlertAction
    value: BreakActionValue
    channel_id: str | None = None
    message_ts: str | None = None

    @property
    def user_id(self) -> str:
        return self.value.user_id

    @property
    def suggestion_id(self) -> str:
        return self.value.suggestion_id

    @classmethod
    def from_action_body(cls, body: dict[str, Any]) -> "BreakAlertResponse | None":
        """Extract a typed response from a Slack block-action body.

        Returns ``None`` for unknown actions, undecodable values, or a click
        by someone other than the user the alert was sent to.
        """
        actions = body.get("actions") or []
        action = actions[0] if isinstance(actions, list) and actions else {}
        if not isinstance(action, dict):
            return None
        alert_action = BreakAlertAction.from_action_id(str(action.get("action_id") or ""))
        value = BreakActionValue.from_value(str(action.get("value") or ""))
        if alert_action is None or value is None:
            return None
        actor_user_id = (body.get("user") or {}).get("id")
        if actor_user_id and actor_user_id != value.user_id:
            return None
        try:
            return cls.model_validate(
                {
                    "action": alert_action,
                    "value": value,
                    "channel_id": (body.get("channel") or {}).get("id"),
                    "message_ts": (body.get("message") or {}).get("ts"),
                }
            )
        except ValidationError:
            return None


def build_break_actions_block(
    value: BreakActionValue, actions: tuple[BreakAlertAction, ...] = ALERT_ACTIONS
) -> dict[str, Any]:
    encoded = value.encode()
    elements: list[dict[str, Any]] = []
    for action in actions:
        button: dict[str, Any] = {
            "type": "button",
            "action_id": action.action_id,
            "text": {"type": "plain_text", "text": action.label},
            "value": encoded,
        }
        if action is BreakAlertAction.ACCEPT_NOW:
            button["style"] = "primary"
        elements.append(button)
    return {"type": "actions", "block_id": BT_BREAK_ACTIONS_BLOCK_ID, "elements": elements}


__all__ = [
    "ALERT_ACTIONS",
    "BT_BREAK_ACTIONS_BLOCK_ID",
    "BT_BREAK_ACTION_PREFIX",
    "BreakActionValue",
    "BreakAlertAction",
    "BreakAlertResponse",
    "build_break_actions_block",
]
