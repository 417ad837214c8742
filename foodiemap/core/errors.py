"""
Exceptional errors raised by the core services.

Expected business-rule rejections (unknown code, expired code, wrong code,
account already pending deletion, ...) are NOT exceptions: they are returned
as typed results by the services. Only the errors below are raised.
"""


class FoodieMapError(Exception):
    """Base class for errors raised by the service layer."""


class ValidationError(FoodieMapError):
    """Malformed input; fatal to the single call."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.message = message
        self.field = field


class RateLimitExceeded(FoodieMapError):
    """A new code was requested for the same key inside the resend cooldown."""

    def __init__(self, retry_after_seconds: int):
        super().__init__(f"Too many requests, retry in {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds


class TransientStoreError(FoodieMapError):
    """A data-store round trip failed or timed out. Safe to retry."""

    def __init__(self, operation: str):
        super().__init__(f"Data store unavailable during '{operation}'")
        self.operation = operation
