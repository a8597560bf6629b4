"""Slot hold management."""

from .manager import ReservationManager

__all__ = ["ReservationManager"]
