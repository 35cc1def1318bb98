from typing import Any, Dict, Optional


class StorefrontException(Exception):
    """Base exception for all storefront billing errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(StorefrontException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class DecryptionError(StorefrontException):
    """Raised when a vault ciphertext cannot be authenticated or parsed."""

    def __init__(self, message: str = "Unable to decrypt value"):
        super().__init__(message, code="decryption_error", status_code=500)


class IdempotencyKeyError(StorefrontException):
    """Raised when the Idempotency-Key header is missing or malformed."""

    def __init__(self, message: str):
        super().__init__(message, code="idempotency_key_invalid", status_code=400)


class IdempotencyConflictError(StorefrontException):
    """Same idempotency key reused with a different request payload."""

    def __init__(self, message: str = "Idempotency-Key reused with a different payload"):
        super().__init__(message, code="idempotency_conflict", status_code=409)


class IdempotencyInProgressError(StorefrontException):
    """A request with the same idempotency key is still being processed."""

    def __init__(self, message: str = "A request with this Idempotency-Key is already processing"):
        super().__init__(message, code="idempotency_in_progress", status_code=409)


class IdempotentReplay(Exception):
    """Carries a previously recorded response that must be replayed verbatim."""

    def __init__(self, status_code: int, body: Any):
        super().__init__("idempotent replay")
        self.status_code = status_code
        self.body = body
