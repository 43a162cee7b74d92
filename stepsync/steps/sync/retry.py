"""Retry policy for the webhook job queue.

Backoff is state in the job row, not a scheduler: a job that failed *n*
times is simply not selectable until ``backoff(n)`` has elapsed since its
last update.

    retries  wait
    -------  ------
    0        none
    1        1 min
    2        5 min
    >= 3     15 min
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum

import httpx
from pydantic import ValidationError

from stepsync.steps.base import JobStatus, QueuedJob
from stepsync.steps.errors import (
    NotFoundError,
    ProviderAPIError,
    TokenError,
    ValidationFailure,
)

logger = logging.getLogger("stepsync.steps.sync.retry")

BACKOFF_TIERS: tuple[timedelta, ...] = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
)

MAX_RETRIES = 3


class ErrorCategory(str, Enum):
    validation = "validation"    # bad payload, never retried
    not_found = "not_found"      # unknown account / no data, never retried
    token_error = "token_error"  # token refresh failed, retried
    api_error = "api_error"      # rate limit, 5xx, timeout, retried
    unknown = "unknown"          # retried


TERMINAL_CATEGORIES = frozenset({ErrorCategory.validation, ErrorCategory.not_found})


def backoff(retry_count: int) -> timedelta:
    """Return how long a job with ``retry_count`` failures must wait.

    The last tier saturates for any higher count.
    """
    if retry_count <= 0:
        return timedelta(0)
    index = min(retry_count, len(BACKOFF_TIERS)) - 1
    return BACKOFF_TIERS[index]


def is_eligible(job: QueuedJob, now: datetime) -> bool:
    """Return True if ``job`` may be selected by the worker at ``now``."""
    if job.status != JobStatus.pending:
        return False
    if job.retries == 0:
        return True
    return now - job.updated_at >= backoff(job.retries)


def is_retryable(category: ErrorCategory) -> bool:
    return category not in TERMINAL_CATEGORIES


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Map an exception raised while processing a job to an ErrorCategory."""
    if isinstance(exc, (ValidationFailure, ValidationError)):
        return ErrorCategory.validation
    if isinstance(exc, NotFoundError):
        return ErrorCategory.not_found
    if isinstance(exc, TokenError):
        return ErrorCategory.token_error
    if isinstance(exc, ProviderAPIError):
        if exc.status_code == 401:
            return ErrorCategory.token_error
        return ErrorCategory.api_error
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 401:
            return ErrorCategory.token_error
        return ErrorCategory.api_error
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorCategory.api_error
    return ErrorCategory.unknown


def format_error(category: ErrorCategory, message: str) -> str:
    return f"[{category.value}] {message}"
