"""
Tests for Exception Classes.

Typed attributes and message formats of the ledger exception hierarchy.
"""

from uuid import uuid4

import pytest

from tokenledger.exceptions import (
    AIProviderError,
    AllModelsFailedError,
    AuthenticationError,
    AuthorizationError,
    DataIntegrityError,
    InsufficientTokensError,
    InvalidBucketError,
    LedgerError,
    PackageNotFoundError,
    SubscriptionRequiredError,
    UnknownModelError,
    UserNotFoundError,
    WriteVerificationError,
)


class TestLedgerError:
    """Tests for the base exception."""

    def test_can_be_raised(self) -> None:
        """Base exception is a plain Exception."""
        with pytest.raises(LedgerError):
            raise LedgerError("boom")

    @pytest.mark.parametrize(
        "error",
        [
            InsufficientTokensError(1, 2),
            UserNotFoundError(uuid4()),
            InvalidBucketError("free_token", ("subscription_token",)),
            UnknownModelError("m"),
            PackageNotFoundError("p"),
            WriteVerificationError("w"),
            DataIntegrityError("d"),
            AIProviderError("a"),
            AllModelsFailedError([]),
            AuthenticationError("x"),
            AuthorizationError("admin"),
            SubscriptionRequiredError(uuid4()),
        ],
    )
    def test_hierarchy(self, error: Exception) -> None:
        """Every domain error is a LedgerError."""
        assert isinstance(error, LedgerError)


class TestInsufficientTokensError:
    """Tests for InsufficientTokensError."""

    def test_attributes(self) -> None:
        """Available and required are kept."""
        error = InsufficientTokensError(available=40, required=101)

        assert error.available == 40
        assert error.required == 101

    def test_message_format(self) -> None:
        """Both numbers appear in the message."""
        assert str(InsufficientTokensError(40, 101)) == (
            "Insufficient tokens. Available: 40, Required: 101"
        )


class TestUserNotFoundError:
    """Tests for UserNotFoundError."""

    def test_attributes(self) -> None:
        """User id is kept and shown."""
        user_id = uuid4()
        error = UserNotFoundError(user_id)

        assert error.user_id == user_id
        assert str(user_id) in str(error)


class TestInvalidBucketError:
    """Tests for InvalidBucketError."""

    def test_message_lists_allowed(self) -> None:
        """The allowed buckets are listed."""
        error = InvalidBucketError("free_token", ("subscription_token", "addons_token"))

        assert error.bucket == "free_token"
        assert "subscription_token, addons_token" in str(error)


class TestProviderErrors:
    """Tests for AI provider errors."""

    def test_provider_error_status(self) -> None:
        """Status code is optional."""
        assert AIProviderError("rate limited", status_code=429).status_code == 429
        assert AIProviderError("empty").status_code is None

    def test_all_models_failed(self) -> None:
        """Attempted models are listed."""
        error = AllModelsFailedError(["a", "b"])

        assert error.attempted == ["a", "b"]
        assert str(error) == "All AI models failed: a, b"

    def test_nothing_attempted(self) -> None:
        """Empty model lists are still readable."""
        assert str(AllModelsFailedError([])) == "All AI models failed: none attempted"


class TestWriteErrors:
    """Tests for write verification errors."""

    def test_write_verification(self) -> None:
        """Message is prefixed."""
        error = WriteVerificationError("user vanished")

        assert error.message == "user vanished"
        assert str(error) == "Write verification failed: user vanished"

    def test_data_integrity(self) -> None:
        """Message is prefixed."""
        assert str(DataIntegrityError("mismatch")) == "Data integrity error: mismatch"


class TestSubscriptionRequiredError:
    """Tests for SubscriptionRequiredError."""

    def test_message(self) -> None:
        """User id is kept and the message is user-facing."""
        user_id = uuid4()
        error = SubscriptionRequiredError(user_id)

        assert error.user_id == user_id
        assert str(error) == "This feature requires an active subscription"
