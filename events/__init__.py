"""Reservation lifecycle event fan-out."""

from .notifier import EventNotifier, get_notifier

__all__ = ["EventNotifier", "get_notifier"]
