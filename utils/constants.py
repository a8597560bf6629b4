"""
Application-wide constants.
Centralizes magic numbers and configuration values.
"""

# Store tables
SLOTS_TABLE = "service_slots"
RESERVATIONS_TABLE = "slot_reservations"
BOOKINGS_TABLE = "slot_bookings"
PAYMENTS_TABLE = "slot_payments"

# Payment metadata keys
METADATA_RESERVATION_ID = "reservation_id"
METADATA_CUSTOMER_ID = "customer_id"

# Stripe refuses checkout sessions that expire sooner than this
STRIPE_SESSION_MIN_EXPIRY_MINUTES = 30

# Retry policy for transient infrastructure failures
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0
RETRY_BACKOFF = 2.0

# Slot queries
MAX_SLOT_WINDOW_DAYS = 31
