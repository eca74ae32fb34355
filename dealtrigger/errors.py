from __future__ import annotations


class DealTriggerError(Exception):
    """Base exception for deal trigger failures."""


class ParseError(DealTriggerError):
    """Raised when a condition string cannot be compiled."""

    def __init__(self, message: str, *, token: str | None = None, source: str | None = None) -> None:
        super().__init__(message)
        self.token = token
        self.source = source


class PermissionDeniedError(DealTriggerError):
    """Raised when a principal lacks the permission an operation requires."""

    def __init__(self, permission: str, principal_id: str | None) -> None:
        super().__init__(f"permission '{permission}' required (principal={principal_id or 'anonymous'})")
        self.permission = permission
        self.principal_id = principal_id


class ActivationNotFoundError(DealTriggerError):
    """Raised when an activation key has no stored record."""

    def __init__(self, activation_key: str) -> None:
        super().__init__(f"activation {activation_key} not found")
        self.activation_key = activation_key


class InvalidTransitionError(DealTriggerError):
    """Raised when a requested status change is not an allowed transition."""

    def __init__(self, activation_key: str, from_status: str, to_status: str) -> None:
        super().__init__(f"activation {activation_key} cannot move {from_status} -> {to_status}")
        self.activation_key = activation_key
        self.from_status = from_status
        self.to_status = to_status


class StorageUnavailableError(DealTriggerError):
    """Raised when the activation store fails permanently or exhausts its retries."""
