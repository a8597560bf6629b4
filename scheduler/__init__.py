"""Background jobs."""

from .sweeper import ExpirySweeper, SweepReport

__all__ = ["ExpirySweeper", "SweepReport"]
