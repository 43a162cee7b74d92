"""Exception taxonomy for the sync pipeline.

The queue worker decides retry behaviour from these classes, so raise the
most specific one that applies.
"""

from __future__ import annotations


class StepSyncError(Exception):
    """Base class for all pipeline errors."""


class ValidationFailure(StepSyncError):
    """A payload can never be processed as-is. Terminal."""


class ProviderResponseError(ValidationFailure):
    """The provider answered 2xx with a body that does not match its schema."""


class NotFoundError(StepSyncError):
    """Something the job refers to does not exist. Terminal."""


class AccountNotFoundError(NotFoundError):
    def __init__(self, external_user_id: str, provider: str) -> None:
        super().__init__(f"No {provider} account found for external user {external_user_id}")
        self.external_user_id = external_user_id
        self.provider = provider


class NoDataError(NotFoundError):
    """The provider returned an empty series for the requested range."""


class TokenError(StepSyncError):
    """No usable access token right now. Retryable."""


class ProviderAPIError(StepSyncError):
    """Upstream API failure (rate limit, 5xx, unexpected status). Retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DuplicateRowError(StepSyncError):
    """An insert lost a race against a concurrent insert of the same key."""
