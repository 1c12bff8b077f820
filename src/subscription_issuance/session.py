"""In-flight state of one subscription issuance attempt."""
from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from subscription_issuance.exceptions import IssuanceError, PreconditionFailed, RetryDisposition
from subscription_issuance.models import AcceptanceResult, SubscriptionTerms
from subscription_issuance.transactions import SignedTransaction, TxHash, UnsignedTransaction


class IssuancePhase(str, Enum):
    """Issuance saga phases."""
    IDLE = "idle"
    INITIATED = "initiated"
    SIGNED = "signed"
    ACCEPTED = "accepted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({IssuancePhase.CONFIRMED, IssuancePhase.FAILED})

# Strictly forward. FAILED is reachable from every non-terminal phase.
ALLOWED_TRANSITIONS: dict[IssuancePhase, frozenset[IssuancePhase]] = {
    IssuancePhase.IDLE: frozenset({IssuancePhase.INITIATED, IssuancePhase.FAILED}),
    IssuancePhase.INITIATED: frozenset({IssuancePhase.SIGNED, IssuancePhase.FAILED}),
    IssuancePhase.SIGNED: frozenset({IssuancePhase.ACCEPTED, IssuancePhase.FAILED}),
    IssuancePhase.ACCEPTED: frozenset({IssuancePhase.SUBMITTED, IssuancePhase.FAILED}),
    IssuancePhase.SUBMITTED: frozenset({IssuancePhase.CONFIRMED, IssuancePhase.FAILED}),
    IssuancePhase.CONFIRMED: frozenset(),
    IssuancePhase.FAILED: frozenset(),
}

# cancel() is refused from SUBMITTED on: the transaction is on the ledger.
CANCELLABLE_PHASES = frozenset({
    IssuancePhase.IDLE,
    IssuancePhase.INITIATED,
    IssuancePhase.SIGNED,
    IssuancePhase.ACCEPTED,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FailureReason:
    """Why a session ended in FAILED, and what the caller may do next."""
    kind: str
    disposition: RetryDisposition
    message: str
    phase: IssuancePhase

    @classmethod
    def from_error(cls, error: IssuanceError, phase: IssuancePhase) -> "FailureReason":
        return cls(
            kind=type(error).__name__,
            disposition=error.disposition,
            message=error.message,
            phase=phase,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "disposition": self.disposition.value,
            "message": self.message,
            "phase": self.phase.value,
        }


@dataclass
class SessionState:
    """Mutable container scoped to one issuance attempt.

    Owned by exactly one orchestrator. Callers only ever see snapshots.
    """
    session_id: str = field(default_factory=lambda: f"iss_{uuid.uuid4().hex[:16]}")
    phase: IssuancePhase = IssuancePhase.IDLE
    subscription_id: Optional[str] = None
    user_vkh: Optional[str] = None
    address: Optional[str] = None
    terms: Optional[SubscriptionTerms] = None
    unsigned_tx: Optional[UnsignedTransaction] = None
    signed_tx: Optional[SignedTransaction] = None
    acceptance: Optional[AcceptanceResult] = None
    tx_hash: Optional[TxHash] = None
    failure: Optional[FailureReason] = None
    last_error: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def can_cancel(self) -> bool:
        return self.phase in CANCELLABLE_PHASES

    def require(self, *phases: IssuancePhase) -> None:
        """Raise PreconditionFailed unless the session is in one of `phases`."""
        if self.phase not in phases:
            expected = "|".join(p.value for p in phases)
            raise PreconditionFailed(
                f"Operation requires phase {expected}, session is {self.phase.value}",
                expected=expected,
                actual=self.phase.value,
            )

    def advance(self, to: IssuancePhase) -> None:
        if to not in ALLOWED_TRANSITIONS[self.phase]:
            raise PreconditionFailed(
                f"Illegal transition {self.phase.value} -> {to.value}",
                expected=to.value,
                actual=self.phase.value,
            )
        self.phase = to
        self.last_error = None
        self.updated_at = _utcnow()

    def fail(self, reason: FailureReason) -> None:
        self.advance(IssuancePhase.FAILED)
        self.failure = reason

    def note_transient(self, error: IssuanceError) -> None:
        self.last_error = error.to_dict()
        self.updated_at = _utcnow()

    def snapshot(self) -> "SessionState":
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "subscription_id": self.subscription_id,
            "address": self.address,
            "unsigned_tx_digest": self.unsigned_tx.digest if self.unsigned_tx else None,
            "signed": self.signed_tx is not None,
            "acceptance_id": self.acceptance.id if self.acceptance else None,
            "tx_hash": self.tx_hash,
            "failure": self.failure.to_dict() if self.failure else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
