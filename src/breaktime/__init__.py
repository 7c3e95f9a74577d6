"""Workplace wellness core: activity slots, focus/break sessions and proactive breaks."""

__version__ = "0.1.0"
