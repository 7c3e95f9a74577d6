from .actions import BreakActionValue, BreakAlertAction, BreakAlertResponse
from .notifications import BreakAlert, NotificationSink, SlackNotificationSink, Urgency
from .proactive import MonitorConfig, MonitorDecision, MonitorOutcome, ProactiveMonitor

__all__ = [
    "BreakActionValue",
    "BreakAlert",
    "BreakAlertAction",
    "BreakAlertResponse",
    "MonitorConfig",
    "MonitorDecision",
    "MonitorOutcome",
    "NotificationSink",
    "ProactiveMonitor",
    "SlackNotificationSink",
    "Urgency",
]
