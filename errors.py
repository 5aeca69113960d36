from __future__ import annotations


class StoreError(Exception):
    """Base class for errors the bot turns into a message for the user."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(StoreError):
    """Rejected input (amount or setting). Raised before any side effect."""

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message, user_message=user_message or message)


class GatewayError(StoreError):
    user_message = "Failed to generate payment QR code. Please try again later."

    def __init__(self, message: str, *, status_code: int | None = None, user_message: str | None = None):
        super().__init__(message, user_message=user_message)
        self.status_code = status_code


class LedgerError(StoreError):
    user_message = "Our payment records are temporarily unavailable. Please try again later."


class InsufficientBalance(LedgerError):
    user_message = "Insufficient balance."
