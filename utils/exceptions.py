"""
Custom exception classes for infrastructure failures.

Routine protocol outcomes (slot taken, hold expired, not the owner) are
returned as ResultStatus values; only the failures below travel as exceptions.
"""


class DatabaseError(Exception):
    """Base exception for store operations."""

    pass


class StoreUnavailableError(DatabaseError):
    """Raised when the slot store cannot be reached or returns garbage."""

    pass


class DuplicateBookingError(DatabaseError):
    """Raised when a second booking is written for the same reservation."""

    pass


class PaymentError(Exception):
    """Base exception for payment operations."""

    pass


class CheckoutSessionError(PaymentError):
    """Raised when a checkout session cannot be created or expired."""

    pass


class RefundError(PaymentError):
    """Raised when a refund cannot be issued."""

    pass


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


class AuthenticationError(Exception):
    """Raised when a request carries no valid customer identity."""

    pass


class ValidationError(Exception):
    """Raised when input validation fails."""

    pass
