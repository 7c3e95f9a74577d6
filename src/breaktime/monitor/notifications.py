from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol
from zoneinfo import ZoneInfo

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from breaktime.analytics.daily_metrics import DailyMetrics
from breaktime.core.logging_config import record_error
from breaktime.monitor.actions import (
    ALERT_ACTIONS,
    BreakActionValue,
    BreakAlertAction,
    build_break_actions_block,
)
from breaktime.scheduling.timewindow import format_time_of_day
from breaktime.sessions.models import SessionEvent, SessionKind, SessionNotice
from breaktime.sessions.status_sync import BREAK_PRESENCE, FOCUS_PRESENCE

logger = logging.getLogger(__name__)

BREAK_MESSAGES: dict[str, str] = {
    "hydration": ":droplet: Time for a hydration break! Grab some water and give your body the fuel it needs.",
    "stretch": ":woman-cartwheeling: Your body needs a stretch! Stand up and do some light stretching to refresh yourself.",
    "meditation": ":person_in_lotus_position: Take a moment to breathe. A quick 5-minute meditation can reset your focus.",
    "walk": ":walking: Step away from your desk! A short walk can boost creativity and energy.",
    "general": ":alarm_clock: You've been working hard! Time for a well-deserved break.",
}


def break_message(break_type: str) -> str:
    return BREAK_MESSAGES.get(break_type, BREAK_MESSAGES["general"])


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_URGENCY_HEADERS = {
    Urgency.LOW: ":bulb: *Break suggestion*",
    Urgency.MEDIUM: ":alarm_clock: *Time for a break*",
    Urgency.HIGH: ":rotating_light: *You really need a break*",
}


@dataclass(frozen=True)
class BreakAlert:
    user_id: str
    suggestion_id: str
    reason: str
    type: str
    urgency: Urgency
    message: str
    actions: tuple[BreakAlertAction, ...] = ALERT_ACTIONS


class NotificationSink(Protocol):
    async def send_break_alert(self, alert: BreakAlert) -> Optional[str]: ...


class SlackNotificationSink:
    """Deliver break alerts, session notices and daily summaries as Slack DMs.

    ``timezone`` is used to render clock times for users whose own zone is
    not known to the sink.
    """

    def __init__(self, client: AsyncWebClient, *, timezone: str = "America/New_York") -> None:
        self._client = client
        self._tz = ZoneInfo(timezone)

    async def send_break_alert(self, alert: BreakAlert) -> Optional[str]:
        return await self._post_dm(
            alert.user_id, alert.message, build_alert_blocks(alert), kind="break alert"
        )

    async def send_session_notice(self, notice: SessionNotice) -> Optional[str]:
        blocks = build_session_notice_blocks(notice, self._tz)
        return await self._post_dm(
            notice.user_id, blocks[0]["text"]["text"], blocks, kind="session notice"
        )

    async def send_daily_summary(self, metrics: DailyMetrics) -> Optional[str]:
        return await self._post_dm(
            metrics.user_id,
            "Your Daily Productivity Summary",
            build_daily_summary_blocks(metrics),
            kind="daily summary",
        )

    async def _post_dm(
        self, user_id: str, text: str, blocks: list[dict[str, Any]], *, kind: str
    ) -> Optional[str]:
        try:
            opened = await self._client.conversations_open(users=user_id)
            channel_id = (opened.get("channel") or {}).get("id")
            if not channel_id:
                logger.warning("Could not open a DM with %s", user_id)
                return None
            response = await self._client.chat_postMessage(
                channel=channel_id, text=text, blocks=blocks
            )
        except SlackApiError as e:
            err = (e.response or {}).get("error") if hasattr(e, "response") else None
            record_error(component="notifications", error_type=str(err or "slack_api_error"))
            logger.warning("Failed to send %s to %s (error=%s)", kind, user_id, err)
            raise
        return response.get("ts")


def build_alert_blocks(alert: BreakAlert) -> list[dict[str, Any]]:
    value = BreakActionValue(
        user_id=alert.user_id, suggestion_id=alert.suggestion_id, break_type=alert.type
    )
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{_URGENCY_HEADERS[alert.urgency]}\n{alert.message}"},
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": alert.reason}],
        },
        build_break_actions_block(value, alert.actions),
    ]


def build_session_notice_blocks(notice: SessionNotice, tz: ZoneInfo) -> list[dict[str, Any]]:
    session = notice.session
    focus = session.kind == SessionKind.FOCUS
    presence = FOCUS_PRESENCE if focus else BREAK_PRESENCE

    if notice.event == SessionEvent.STARTED:
        header = ":dart: *Focus Session Started!*" if focus else ":coffee: *Break Started!*"
        ends_at = format_time_of_day(session.planned_end.astimezone(tz))
        lines = [
            header,
            "",
            f":alarm_clock: Duration: {session.duration_minutes} minutes",
            f":clock1: Ends at: {ends_at}",
            "",
        ]
        if session.status_synced:
            lines.append(":white_check_mark: Your Slack status has been automatically updated!")
        else:
            lines.append(
                f":bulb: Your Slack status could not be updated. "
                f"Set it to {presence.icon} \"{presence.text}\" by hand."
            )
    else:
        if focus:
            header = ":white_check_mark: *Focus Session Complete!*"
            body = "Great work! You've finished your focus session."
        else:
            header = ":white_check_mark: *Break Complete!*"
            body = "Welcome back! Your break has ended."
        lines = [header, "", body, ""]
        if session.status_synced:
            lines.append("Your Slack status has been automatically cleared.")
        else:
            lines.append("_Don't forget to clear your Slack status if you set it by hand._")

    return [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]


def _hours_minutes(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


def build_daily_summary_blocks(metrics: DailyMetrics) -> list[dict[str, Any]]:
    return [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": ":bar_chart: Your Daily Productivity Summary",
                "emoji": True,
            },
        },
        {
            "type": "section",
            "fields": [
                {
                    "type": "mrkdwn",
                    "text": f"*Meeting Time:* {_hours_minutes(metrics.total_meeting_minutes)}",
                },
                {"type": "mrkdwn", "text": f"*Focus Sessions:* {metrics.focus_sessions_completed}"},
                {"type": "mrkdwn", "text": f"*Meetings:* {metrics.meeting_count}"},
                {"type": "mrkdwn", "text": f"*Focus Time:* {_hours_minutes(metrics.focus_minutes)}"},
            ],
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": (
                        f"Breaks taken: {metrics.breaks_accepted} of "
                        f"{metrics.breaks_suggested} suggested"
                    ),
                }
            ],
        },
    ]


__all__ = [
    "BREAK_MESSAGES",
    "BreakAlert",
    "NotificationSink",
    "SlackNotificationSink",
    "Urgency",
    "break_message",
    "build_alert_blocks",
    "build_daily_summary_blocks",
    "build_session_notice_blocks",
]
