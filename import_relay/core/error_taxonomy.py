"""
Import Relay - Error Taxonomy

Structured failure classification for the import relay.
Every failure is mapped to a stable category that can be:
- Used as a bounded metric label
- Aggregated in logs
- Used to decide between acknowledge and retry

Categories:
- DESERIALIZATION: the inbound message could not be decoded (permanent)
- BUSINESS: the remote import service rejected the request (permanent)
- TECHNICAL: the remote call itself failed (transient, retried)
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)

# Metric label rules
MAX_DETAIL_LENGTH = 64
UNKNOWN_DETAIL = "unknown"


# =============================================================================
# FAILURE CATEGORIES
# =============================================================================


class FailureCategory(str, Enum):
    """Failure category used as the `category` metric label."""

    DESERIALIZATION = "deserialization"
    BUSINESS = "business"
    TECHNICAL = "technical"


def sanitize_detail(detail: str | None) -> str:
    """
    Bound a failure detail so it can be used as a metric label.

    Args:
        detail: Raw detail (error type, remote message, status code name).

    Returns:
        The detail truncated to MAX_DETAIL_LENGTH characters, or
        UNKNOWN_DETAIL when no detail is available.
    """
    if detail is None:
        return UNKNOWN_DETAIL
    detail = detail.strip()
    if not detail:
        return UNKNOWN_DETAIL
    return detail[:MAX_DETAIL_LENGTH]


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ImportRelayError(Exception):
    """Base class for all classified relay failures."""

    category: FailureCategory = FailureCategory.TECHNICAL
    retryable: bool = False

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def metric_detail(self) -> str:
        """Sanitized detail suitable for a metric label."""
        return sanitize_detail(self.detail or type(self).__name__)

    def to_log_dict(self) -> dict[str, str | bool]:
        """Convert to a dict suitable for structured logging."""
        return {
            "failure_category": self.category.value,
            "failure_detail": self.metric_detail,
            "retryable": self.retryable,
        }


class DecodeError(ImportRelayError):
    """Raised when an inbound message is malformed or has mismatched types."""

    category = FailureCategory.DESERIALIZATION
    retryable = False

    def __init__(self, message: str, *, reason: str | None = None):
        super().__init__(message, detail=reason)
        self.reason = reason


class BusinessError(ImportRelayError):
    """The remote import service explicitly reported ERROR."""

    category = FailureCategory.BUSINESS
    retryable = False


class TransientInfraError(ImportRelayError):
    """
    The remote call itself failed (network, timeout, remote unavailable).

    `code` holds the transport status name when one is known
    (e.g. UNAVAILABLE, DEADLINE_EXCEEDED).
    """

    category = FailureCategory.TECHNICAL
    retryable = True

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message, detail=code)
        self.code = code


class PublishError(ImportRelayError):
    """Failure while emitting to the failure topic. Never escalated."""

    category = FailureCategory.TECHNICAL
    retryable = False
