"""Payment-gated booking confirmation."""

from .coordinator import CheckoutCoordinator

__all__ = ["CheckoutCoordinator"]
