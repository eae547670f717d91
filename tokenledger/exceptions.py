"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all token ledger errors."""

    pass


class InsufficientTokensError(LedgerError):
    """Raised when the user's buckets cannot cover a deduction."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient tokens. Available: {available}, Required: {required}")


class UserNotFoundError(LedgerError):
    """Raised when user doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class InvalidBucketError(LedgerError):
    """Raised when an operation targets a bucket it may not touch."""

    def __init__(self, bucket: str, allowed: tuple[str, ...]) -> None:
        self.bucket = bucket
        self.allowed = allowed
        super().__init__(f"Invalid token bucket {bucket!r}, expected one of {', '.join(allowed)}")


class UnknownModelError(LedgerError):
    """Raised when no pricing exists for a model."""

    def __init__(self, model: str) -> None:
        self.model = model
        super().__init__(f"Unknown model: {model}")


class PackageNotFoundError(LedgerError):
    """Raised when a token package id is not in the catalog."""

    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__(f"Token package not found: {package_id}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(LedgerError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class AIProviderError(LedgerError):
    """Raised when the AI provider rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"AI provider error: {message}")


class AllModelsFailedError(LedgerError):
    """Raised when every model in a fallback list failed."""

    def __init__(self, attempted: list[str]) -> None:
        self.attempted = attempted
        super().__init__(f"All AI models failed: {', '.join(attempted) or 'none attempted'}")


class AuthenticationError(LedgerError):
    """Raised when authentication fails (missing, invalid or expired token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(LedgerError):
    """Raised when user lacks the required role."""

    def __init__(self, required_role: str) -> None:
        self.required_role = required_role
        super().__init__(f"Authorization failed: requires role {required_role}")


class SubscriptionRequiredError(LedgerError):
    """Raised when a feature needs an active subscription the user does not have."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("This feature requires an active subscription")
