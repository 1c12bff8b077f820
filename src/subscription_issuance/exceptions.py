"""Unified exception hierarchy for subscription issuance.

Every wallet, service and ledger failure the issuance saga can observe maps
onto exactly one class below. Each class carries:

- error_code: Machine-readable error code (e.g., "SIGNING_REJECTED")
- disposition: What the caller may do next (retry now, restart, give up)
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a structured payload for logs or API responses

Usage:
    from subscription_issuance.exceptions import IssuanceError, RetryDisposition

    try:
        await orchestrator.finalize()
    except IssuanceError as e:
        if e.disposition is RetryDisposition.RETRY_NOW:
            await orchestrator.finalize()
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class RetryDisposition(str, Enum):
    """How a caller should react to a failure."""
    RETRY_NOW = "retry_now"  # same phase, same data
    RESTART = "restart"  # reset() then initiate() again
    DO_NOT_RETRY = "do_not_retry"  # subscription consumed or unknown


class IssuanceError(Exception):
    """Base exception for all issuance errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        disposition: Retry guidance for the caller
        details: Optional additional context
    """

    error_code: str = "ISSUANCE_ERROR"
    disposition: RetryDisposition = RetryDisposition.DO_NOT_RETRY

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.disposition is RetryDisposition.RETRY_NOW

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a structured payload."""
        result = {
            "error": self.error_code,
            "message": self.message,
            "disposition": self.disposition.value,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Wallet Errors
# =============================================================================

class WalletError(IssuanceError):
    """Base class for wallet authority errors."""

    error_code = "WALLET_ERROR"
    disposition = RetryDisposition.RESTART


class WalletUnavailable(WalletError):
    """No compatible wallet is installed or reachable."""

    error_code = "WALLET_UNAVAILABLE"


class AuthorizationDenied(WalletError):
    """The user declined to grant signing capability."""

    error_code = "AUTHORIZATION_DENIED"
    disposition = RetryDisposition.DO_NOT_RETRY


class NotConnected(WalletError):
    """Wallet operation attempted before connect()."""

    error_code = "NOT_CONNECTED"


class MalformedTransaction(WalletError):
    """Transaction bytes are not a valid body for the connected network."""

    error_code = "MALFORMED_TRANSACTION"


class SigningRejected(WalletError):
    """The user declined (or did not answer) the signing request."""

    error_code = "SIGNING_REJECTED"


class SigningFailed(WalletError):
    """The wallet could not produce a signature (key or backend error)."""

    error_code = "SIGNING_FAILED"


class SubmissionRejected(WalletError):
    """The ledger refused the transaction; the unsigned body is stale."""

    error_code = "SUBMISSION_REJECTED"


class NetworkUnavailable(WalletError):
    """The ledger network could not be reached. Safe to resubmit."""

    error_code = "NETWORK_UNAVAILABLE"
    disposition = RetryDisposition.RETRY_NOW


# =============================================================================
# Service Errors
# =============================================================================

class ServiceError(IssuanceError):
    """Base class for subscription service errors."""

    error_code = "SERVICE_ERROR"


class ServiceUnavailable(ServiceError):
    """The subscription service could not be reached or timed out."""

    error_code = "SERVICE_UNAVAILABLE"
    disposition = RetryDisposition.RETRY_NOW


class InvalidSubscription(ServiceError):
    """Subscription id is unknown or already active."""

    error_code = "INVALID_SUBSCRIPTION"

    def __init__(
        self,
        subscription_id: str,
        reason: str = "unknown or already active",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["subscription_id"] = subscription_id
        super().__init__(f"Subscription '{subscription_id}' is {reason}", details=details)
        self.subscription_id = subscription_id


class OfferExpired(ServiceError):
    """The subscription offer expired before acceptance."""

    error_code = "OFFER_EXPIRED"


class AlreadyAccepted(ServiceError):
    """The offer was already accepted with a different transaction."""

    error_code = "ALREADY_ACCEPTED"


# =============================================================================
# Protocol Errors
# =============================================================================

class PreconditionFailed(IssuanceError):
    """Operation called in the wrong phase. Never changes session state."""

    error_code = "PRECONDITION_FAILED"

    def __init__(
        self,
        message: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if expected:
            details["expected"] = expected
        if actual:
            details["actual"] = actual
        super().__init__(message, details=details)


class OperationInProgress(PreconditionFailed):
    """Another mutating call is already running on this session."""

    error_code = "OPERATION_IN_PROGRESS"


class Cancelled(IssuanceError):
    """The caller cancelled the issuance attempt."""

    error_code = "CANCELLED"
    disposition = RetryDisposition.RESTART


__all__ = [
    "RetryDisposition",
    "IssuanceError",
    "WalletError",
    "WalletUnavailable",
    "AuthorizationDenied",
    "NotConnected",
    "MalformedTransaction",
    "SigningRejected",
    "SigningFailed",
    "SubmissionRejected",
    "NetworkUnavailable",
    "ServiceError",
    "ServiceUnavailable",
    "InvalidSubscription",
    "OfferExpired",
    "AlreadyAccepted",
    "PreconditionFailed",
    "OperationInProgress",
    "Cancelled",
]
