import json
import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any

from prometheus_client import Counter, start_http_server

_PROM_LOCK = threading.RLock()
_PROM_STARTED_PORT: int | None = None
_METRICS_READY = False

_REDACT_KEYS = {
    "token",
    "authorization",
    "api_key",
    "secret",
    "password",
}

_METRIC_ERRORS = None
_METRIC_SESSION_TRANSITIONS = None
_METRIC_BREAK_ALERTS = None
_METRIC_MONITOR_DECISIONS = None


def record_error(*, component: str, error_type: str) -> None:
    """Increment the error counter.

    Use this in any component (stores, status sync, notification sinks) to
    surface errors to the breaktime_errors_total Prometheus counter.
    """
    _ensure_metrics_initialized()
    _METRIC_ERRORS.labels(
        component=_bounded_label(component, fallback="unknown"),
        error_type=_bounded_label(error_type, fallback="error"),
    ).inc()


def record_session_transition(*, kind: str, status: str, synced: bool) -> None:
    """Count a session state change and whether presence sync succeeded."""
    _ensure_metrics_initialized()
    _METRIC_SESSION_TRANSITIONS.labels(
        kind=_bounded_label(kind, fallback="unknown"),
        status=_bounded_label(status, fallback="unknown"),
        synced="true" if synced else "false",
    ).inc()


def record_break_alert(*, break_type: str, urgency: str, status: str) -> None:
    _ensure_metrics_initialized()
    _METRIC_BREAK_ALERTS.labels(
        break_type=_bounded_label(break_type, fallback="general"),
        urgency=_bounded_label(urgency, fallback="low"),
        status=_bounded_label(status, fallback="unknown"),
    ).inc()


def record_monitor_decision(*, outcome: str) -> None:
    _ensure_metrics_initialized()
    _METRIC_MONITOR_DECISIONS.labels(
        outcome=_bounded_label(outcome, fallback="unknown")
    ).inc()


# ---------------------------------------------------------------------------
# StructuredJsonFormatter
# ---------------------------------------------------------------------------

# Fields promoted from ``logger.extra={...}`` or a JSON message payload into
# the top-level envelope.
_STRUCTURED_EXTRACT_FIELDS: frozenset[str] = frozenset(
    {
        "event",
        "component",
        "user_id",
        "session_id",
        "suggestion_id",
        "job_id",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """Format log records as a normalized JSON envelope.

    Every line is a single JSON object with:
    - ``ts``       – RFC3339 UTC timestamp
    - ``level``    – lowercase level name
    - ``logger``   – logger name
    - ``message``  – human-readable message (or redacted JSON payload)
    - structured fields (``event``, ``user_id``, ``session_id``, ...) taken from
      JSON payloads or ``extra=``
    - ``exc``      – formatted exception traceback (when present)

    Enable for the root logger by setting ``OBS_LOG_FORMAT=json``.
    """

    def format(self, record: logging.LogRecord) -> str:
        try:
            msg = record.getMessage()
        except Exception as exc:
            msg = f"[coerced-log-payload:{type(exc).__name__}] {record.msg!r}"

        ts = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z"
        )

        envelope: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": msg,
        }

        if msg and msg[0] == "{":
            try:
                payload = json.loads(msg)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                for key in _STRUCTURED_EXTRACT_FIELDS:
                    val = payload.get(key)
                    if val is not None:
                        envelope[key] = val
                envelope["message"] = json.dumps(
                    self._redact_dict(payload), ensure_ascii=False, default=str
                )

        for field in _STRUCTURED_EXTRACT_FIELDS:
            if field not in envelope:
                val = getattr(record, field, None)
                if val is not None:
                    envelope[field] = str(val)

        if record.exc_info:
            envelope["exc"] = self.formatException(record.exc_info)

        return json.dumps(envelope, ensure_ascii=False, default=str)

    @staticmethod
    def _redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
        """Return a shallow copy of *payload* with sensitive keys replaced by ``"[REDACTED]"``."""
        return {
            k: "[REDACTED]" if _key_is_sensitive(k) else v for k, v in payload.items()
        }


def configure_logging(*, default_level: str | int = "INFO") -> None:
    """
    Configure application logging with sane defaults.

    Key behavior: scheduler chatter is kept at WARNING unless overridden.
    """

    logging.basicConfig(level=_coerce_level(os.getenv("LOG_LEVEL", default_level)))
    _configure_prometheus_exporter()
    _configure_json_stdout()

    logging.getLogger("apscheduler").setLevel(
        _coerce_level(os.getenv("APSCHEDULER_LOG_LEVEL", "WARNING"))
    )
    logging.getLogger("httpx").setLevel(
        _coerce_level(os.getenv("HTTPX_LOG_LEVEL", "WARNING"))
    )
    logging.getLogger("slack_sdk").setLevel(
        _coerce_level(os.getenv("SLACK_SDK_LOG_LEVEL", "WARNING"))
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _configure_prometheus_exporter() -> None:
    global _PROM_STARTED_PORT
    if not _is_truthy(os.getenv("OBS_PROMETHEUS_ENABLED", "0")):
        return
    port = _coerce_int(os.getenv("OBS_PROMETHEUS_PORT"), default=9464)
    with _PROM_LOCK:
        if _PROM_STARTED_PORT is not None:
            return
        start_http_server(port)
        _PROM_STARTED_PORT = port
        _ensure_metrics_initialized()
    logging.getLogger(__name__).info("Prometheus exporter enabled on :%s", port)


def _configure_json_stdout() -> None:
    """Replace root stream handler formatter with StructuredJsonFormatter.

    Activated when ``OBS_LOG_FORMAT=json`` is set. Safe to call multiple times.
    """
    if (os.getenv("OBS_LOG_FORMAT") or "").strip().lower() != "json":
        return
    formatter = StructuredJsonFormatter()
    for handler in logging.root.handlers:
        if hasattr(handler, "stream"):
            if not isinstance(handler.formatter, StructuredJsonFormatter):
                handler.setFormatter(formatter)


def _coerce_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    return getattr(logging, name, logging.INFO)


def _is_truthy(value: str | None) -> bool:
    """Interpret common truthy strings from environment variables."""
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: str | None, *, default: int) -> int:
    try:
        if value is None:
            return default
        return int(str(value).strip())
    except ValueError:
        return default


def _ensure_metrics_initialized() -> None:
    global _METRICS_READY
    global _METRIC_ERRORS, _METRIC_SESSION_TRANSITIONS
    global _METRIC_BREAK_ALERTS, _METRIC_MONITOR_DECISIONS

    if _METRICS_READY:
        return
    with _PROM_LOCK:
        if _METRICS_READY:
            return
        _METRIC_ERRORS = Counter(
            "breaktime_errors_total",
            "Observed component errors",
            ["component", "error_type"],
        )
        _METRIC_SESSION_TRANSITIONS = Counter(
            "breaktime_session_transitions_total",
            "Focus/break session state transitions",
            ["kind", "status", "synced"],
        )
        _METRIC_BREAK_ALERTS = Counter(
            "breaktime_break_alerts_total",
            "Proactive break alerts by type and urgency",
            ["break_type", "urgency", "status"],
        )
        _METRIC_MONITOR_DECISIONS = Counter(
            "breaktime_monitor_decisions_total",
            "Proactive monitor evaluation outcomes",
            ["outcome"],
        )
        _METRICS_READY = True


def _bounded_label(value: Any, *, fallback: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        return fallback
    compact = re.sub(r"[^A-Za-z0-9_.:-]+", "_", raw)
    return compact[:80] or fallback


def _key_is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _REDACT_KEYS)


__all__ = [
    "StructuredJsonFormatter",
    "configure_logging",
    "record_break_alert",
    "record_error",
    "record_monitor_decision",
    "record_session_transition",
]
