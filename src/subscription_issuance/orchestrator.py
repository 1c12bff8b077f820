"""
Issuance orchestration: the subscription NFT saga.

This module drives one subscription issuance attempt across three
independently failing systems:

    connect -> initiate (service) -> sign (wallet) -> finalize (service)
            -> submit (wallet broadcast to ledger) -> confirm (ledger)

Phase guards make every step strictly forward: an operation called in the
wrong phase raises PreconditionFailed and leaves the session untouched.

Failure policy:
- Transient failures (ServiceUnavailable, NetworkUnavailable, service and
  broadcast timeouts) keep the current phase. The caller retries the same
  operation with the data already held; initiate is deduplicated by the
  service and finalize/submit replay identical bytes.
- Every other wallet or service failure moves the session to FAILED with a
  FailureReason. The caller must reset() before starting again.
- Errors are always re-raised to the caller.

Once submit() has returned a transaction hash the action is irreversible:
cancel() is refused from SUBMITTED onwards, regardless of local state.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from subscription_issuance.config import IssuanceSettings, load_settings
from subscription_issuance.exceptions import (
    Cancelled,
    InvalidSubscription,
    IssuanceError,
    MalformedTransaction,
    NetworkUnavailable,
    OperationInProgress,
    PreconditionFailed,
    RetryDisposition,
    ServiceUnavailable,
    SigningFailed,
    SigningRejected,
    SubmissionRejected,
    WalletUnavailable,
)
from subscription_issuance.logging_config import LogContext, mask
from subscription_issuance.models import AcceptanceResult, SubscriptionTerms
from subscription_issuance.service.base import SubscriptionService
from subscription_issuance.session import FailureReason, IssuancePhase, SessionState
from subscription_issuance.transactions import SignedTransaction, TxHash, UnsignedTransaction
from subscription_issuance.wallet.base import WalletAuthority

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfirmationSource(Protocol):
    async def is_confirmed(self, tx_hash: TxHash) -> bool: ...


@dataclass(frozen=True)
class IssuanceOffer:
    """What initiate() hands back: the terms and the transaction to sign."""
    subscription_id: str
    terms: SubscriptionTerms
    unsigned_tx: UnsignedTransaction


class IssuanceOrchestrator:
    """
    Drives the issuance state machine for a single session.

    Phases: IDLE -> INITIATED -> SIGNED -> ACCEPTED -> SUBMITTED -> CONFIRMED,
    with FAILED reachable from every non-terminal phase.

    The orchestrator exclusively owns its SessionState; callers receive
    snapshots. Mutating entry points are single-flight: a second call while
    one is suspended raises OperationInProgress instead of queueing.

    Usage:
        orchestrator = IssuanceOrchestrator(wallet=wallet, service=service)
        await orchestrator.connect()
        offer = await orchestrator.initiate("sub-1")
        await orchestrator.sign()
        acceptance = await orchestrator.finalize()
        tx_hash = await orchestrator.submit()
        await orchestrator.confirm()
    """

    def __init__(
        self,
        wallet: WalletAuthority,
        service: SubscriptionService,
        confirmations: Optional[ConfirmationSource] = None,
        settings: Optional[IssuanceSettings] = None,
    ):
        self._wallet = wallet
        self._service = service
        self._confirmations = confirmations
        self._settings = settings or load_settings()

        self._session = SessionState()
        self._address: Optional[str] = None
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None
        self._inflight_op: Optional[str] = None
        self._cancel_requested = False

    # ==================== Introspection ====================

    @property
    def session(self) -> SessionState:
        """Snapshot of the current session."""
        return self._session.snapshot()

    @property
    def phase(self) -> IssuancePhase:
        return self._session.phase

    @property
    def address(self) -> Optional[str]:
        return self._address

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ==================== Internals ====================

    @asynccontextmanager
    async def _single_flight(self, operation: str) -> AsyncIterator[SessionState]:
        if self._lock.locked():
            raise OperationInProgress(
                f"Cannot {operation}: {self._inflight_op} is in progress",
                actual=self._inflight_op,
            )
        async with self._lock:
            self._inflight_op = operation
            try:
                with LogContext(
                    session_id=self._session.session_id,
                    subscription_id=self._session.subscription_id,
                ):
                    yield self._session
            finally:
                self._inflight_op = None

    async def _external(
        self,
        awaitable: Awaitable[T],
        timeout: float,
        on_timeout: Callable[[], IssuanceError],
    ) -> T:
        """Await one wallet/service round-trip under its own timeout."""
        task = asyncio.ensure_future(awaitable)
        self._inflight = task
        try:
            result = await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError as exc:
            raise on_timeout() from exc
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise Cancelled("Issuance cancelled by caller") from None
            raise
        finally:
            self._inflight = None
        if self._cancel_requested:
            # Completed, but cancel() won the race: the result is discarded.
            raise Cancelled("Issuance cancelled by caller")
        return result

    async def _run(
        self,
        operation: str,
        awaitable: Awaitable[T],
        timeout: float,
        on_timeout: Callable[[], IssuanceError],
    ) -> T:
        try:
            return await self._external(awaitable, timeout, on_timeout)
        except IssuanceError as exc:
            self._record_failure(operation, exc)
            raise

    def _record_failure(self, operation: str, error: IssuanceError) -> None:
        session = self._session
        if isinstance(error, Cancelled) or session.phase is IssuancePhase.FAILED:
            return
        if error.disposition is RetryDisposition.RETRY_NOW:
            session.note_transient(error)
            logger.warning(
                f"{operation} failed transiently in phase {session.phase.value}: {error}",
                extra={"error_code": error.error_code, "operation": operation},
            )
            return
        reason = FailureReason.from_error(error, session.phase)
        session.fail(reason)
        logger.error(
            f"{operation} failed, session {session.session_id} is now failed: {error}",
            extra={"error_code": error.error_code, "operation": operation,
                   "disposition": error.disposition.value},
        )

    def _fail(self, operation: str, error: IssuanceError) -> IssuanceError:
        self._record_failure(operation, error)
        return error

    def _require_bound_signature(self, session: SessionState) -> SignedTransaction:
        """The signed body must come from this session's unsigned body."""
        signed = session.signed_tx
        unsigned = session.unsigned_tx
        if signed is None or unsigned is None or not signed.derived_from(unsigned):
            raise PreconditionFailed(
                "Signed transaction was not derived from this session's unsigned transaction",
                details={"session_id": session.session_id},
            )
        return signed

    # ==================== Phases ====================

    async def connect(self) -> str:
        """Request the signing capability from the wallet. Required before initiate()."""
        async with self._single_flight("connect") as session:
            if session.is_terminal:
                raise PreconditionFailed(
                    "Session is finished; call reset() first",
                    actual=session.phase.value,
                )
            address = await self._run(
                "connect",
                self._wallet.connect(),
                self._settings.connect_timeout_seconds,
                lambda: WalletUnavailable(
                    f"Wallet did not answer within {self._settings.connect_timeout_seconds}s",
                    details={"timeout": True},
                ),
            )
            self._address = address
            session.address = address
            logger.info(f"Wallet {self._wallet.provider_name} connected as {mask(address)}")
            return address

    async def initiate(self, subscription_id: str, user_vkh: Optional[str] = None) -> IssuanceOffer:
        """
        Ask the service to build the unsigned transaction and terms.

        Calling initiate again for the same subscription while the session is
        live returns the stored offer without contacting the service.

        Args:
            subscription_id: Subscription offer to mint
            user_vkh: User's verification key hash (defaults to the connected address)
        """
        async with self._single_flight("initiate") as session:
            if session.phase is not IssuancePhase.IDLE:
                if session.subscription_id == subscription_id and not session.is_terminal:
                    logger.info(f"initiate({subscription_id}) deduplicated against live session")
                    return IssuanceOffer(subscription_id, session.terms, session.unsigned_tx)
                raise PreconditionFailed(
                    f"initiate({subscription_id}) requires an idle session",
                    expected=IssuancePhase.IDLE.value,
                    actual=session.phase.value,
                )
            if self._address is None:
                raise PreconditionFailed("Wallet not connected; call connect() first")

            user_vkh = user_vkh or self._address
            session.subscription_id = subscription_id
            session.user_vkh = user_vkh
            result = await self._run(
                "initiate",
                self._service.initiate(user_vkh, subscription_id),
                self._settings.service_timeout_seconds,
                lambda: ServiceUnavailable(
                    f"initiate timed out after {self._settings.service_timeout_seconds}s",
                    details={"timeout": True},
                ),
            )
            try:
                unsigned = UnsignedTransaction.from_hex(result.unsigned_tx)
            except MalformedTransaction as exc:
                raise self._fail("initiate", exc)

            session.terms = result.subscription
            session.unsigned_tx = unsigned
            session.advance(IssuancePhase.INITIATED)
            logger.info(
                f"Initiated subscription {subscription_id}",
                extra={"unsigned_digest": unsigned.digest},
            )
            return IssuanceOffer(subscription_id, result.subscription, unsigned)

    async def sign(self) -> SignedTransaction:
        """Have the wallet deserialize and sign the stored unsigned transaction."""
        async with self._single_flight("sign") as session:
            session.require(IssuancePhase.INITIATED)
            unsigned = session.unsigned_tx
            assert unsigned is not None

            async def deserialize_and_sign() -> SignedTransaction:
                handle = await self._wallet.deserialize(unsigned)
                if handle.source_digest != unsigned.digest:
                    raise MalformedTransaction("Wallet altered the transaction body while loading it")
                return await self._wallet.sign(handle)

            signed = await self._run(
                "sign",
                deserialize_and_sign(),
                self._settings.signing_timeout_seconds,
                lambda: SigningRejected(
                    f"No signing decision within {self._settings.signing_timeout_seconds}s",
                    details={"timeout": True},
                ),
            )
            if not signed.derived_from(unsigned):
                raise self._fail(
                    "sign",
                    SigningFailed("Wallet returned a signature for a different transaction"),
                )

            session.signed_tx = signed
            session.advance(IssuancePhase.SIGNED)
            logger.info("Transaction signed")
            return signed

    async def finalize(self) -> AcceptanceResult:
        """Record the signed transaction and terms with the service."""
        async with self._single_flight("finalize") as session:
            session.require(IssuancePhase.SIGNED)
            signed = self._require_bound_signature(session)
            assert session.subscription_id and session.user_vkh and session.terms

            result = await self._run(
                "finalize",
                self._service.finalize(session.subscription_id, signed, session.user_vkh, session.terms),
                self._settings.service_timeout_seconds,
                lambda: ServiceUnavailable(
                    f"finalize timed out after {self._settings.service_timeout_seconds}s",
                    details={"timeout": True},
                ),
            )
            session.acceptance = result
            if not result.accepted:
                raise self._fail(
                    "finalize",
                    InvalidSubscription(
                        session.subscription_id,
                        reason="rejected or cancelled by the service",
                        details={"acceptance_id": result.id},
                    ),
                )

            session.advance(IssuancePhase.ACCEPTED)
            logger.info(f"Offer accepted as {result.id}", extra={"in_review": result.in_review})
            return result

    async def submit(self) -> TxHash:
        """
        Broadcast the signed transaction to the ledger.

        Irreversible once a hash is returned. A NetworkUnavailable failure
        keeps the session ACCEPTED; resubmitting the same bytes is safe.
        """
        async with self._single_flight("submit") as session:
            session.require(IssuancePhase.ACCEPTED)
            signed = self._require_bound_signature(session)

            tx_hash = await self._run(
                "submit",
                self._wallet.broadcast(signed),
                self._settings.broadcast_timeout_seconds,
                lambda: NetworkUnavailable(
                    f"Broadcast unanswered after {self._settings.broadcast_timeout_seconds}s; "
                    "resubmit the same transaction",
                    details={"timeout": True},
                ),
            )
            if not tx_hash:
                raise self._fail("submit", SubmissionRejected("Ledger returned no transaction hash"))

            session.tx_hash = tx_hash
            session.advance(IssuancePhase.SUBMITTED)
            expected = session.acceptance.transaction_hash if session.acceptance else None
            if expected and expected != tx_hash:
                logger.warning(f"Ledger hash {tx_hash} differs from service record {expected}")
            logger.info(f"Transaction submitted: {tx_hash}")
            return tx_hash

    async def confirm(self) -> SessionState:
        """Wait for the ledger (when a confirmation source is configured), then finish."""
        async with self._single_flight("confirm") as session:
            session.require(IssuancePhase.SUBMITTED)
            assert session.tx_hash is not None
            if self._confirmations is not None:
                await self._run(
                    "confirm",
                    self._wait_for_confirmation(session.tx_hash),
                    self._settings.confirmation_timeout_seconds,
                    lambda: NetworkUnavailable(
                        f"{session.tx_hash} not confirmed within "
                        f"{self._settings.confirmation_timeout_seconds}s",
                        details={"timeout": True},
                    ),
                )
            session.advance(IssuancePhase.CONFIRMED)
            logger.info(f"Subscription {session.subscription_id} confirmed on ledger")
            return session.snapshot()

    async def _wait_for_confirmation(self, tx_hash: TxHash) -> None:
        assert self._confirmations is not None
        while not await self._confirmations.is_confirmed(tx_hash):
            await asyncio.sleep(self._settings.confirmation_poll_interval_seconds)

    # ==================== Lifecycle ====================

    def cancel(self, reason: str = "Cancelled by caller") -> SessionState:
        """
        Abandon the session before its transaction reaches the ledger.

        Allowed in IDLE, INITIATED, SIGNED and ACCEPTED. After ACCEPTED the
        service may already hold a durable acceptance record; whether that is
        acceptable is governed by `allow_cancel_after_acceptance`. Once
        submit() has returned a hash, or while a broadcast is in flight, the
        action is irreversible and cancel() raises PreconditionFailed.

        An in-flight wallet or service call is cancelled.
        """
        session = self._session
        if session.phase is IssuancePhase.FAILED and session.failure and session.failure.kind == "Cancelled":
            return session.snapshot()
        if not session.can_cancel:
            raise PreconditionFailed(
                f"Cannot cancel in phase {session.phase.value}: the transaction is irreversible",
                actual=session.phase.value,
            )
        if self._inflight_op == "submit":
            raise PreconditionFailed("Cannot cancel while the transaction is being broadcast")
        if session.phase is IssuancePhase.ACCEPTED:
            if not self._settings.allow_cancel_after_acceptance:
                raise PreconditionFailed("Cancellation after acceptance is disabled")
            logger.warning(
                f"Cancelling after acceptance {session.acceptance.id if session.acceptance else '?'}; "
                "the service may still hold the acceptance record"
            )

        self._cancel_requested = True
        session.fail(FailureReason(
            kind=Cancelled.__name__,
            disposition=Cancelled.disposition,
            message=reason,
            phase=session.phase,
        ))
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        logger.info(f"Session {session.session_id} cancelled: {reason}")
        return session.snapshot()

    async def reset(self) -> SessionState:
        """Discard a finished session and return to IDLE. The wallet stays connected."""
        if self._lock.locked():
            raise OperationInProgress(
                f"Cannot reset: {self._inflight_op} is in progress",
                actual=self._inflight_op,
            )
        session = self._session
        if session.phase is not IssuancePhase.IDLE and not session.is_terminal:
            raise PreconditionFailed(
                f"Cannot reset a live session in phase {session.phase.value}; cancel() first",
                actual=session.phase.value,
            )
        self._session = SessionState(address=self._address)
        self._cancel_requested = False
        logger.debug(f"Session {session.session_id} reset to {self._session.session_id}")
        return self._session.snapshot()

    async def issue(self, subscription_id: str, user_vkh: Optional[str] = None) -> SessionState:
        """Run the whole saga and return the final session snapshot."""
        if self._address is None:
            await self.connect()
        await self.initiate(subscription_id, user_vkh)
        await self.sign()
        await self.finalize()
        await self.submit()
        return await self.confirm()

    async def close(self) -> None:
        await self._wallet.close()
        await self._service.close()

    def describe(self) -> dict[str, Any]:
        data = self._session.to_dict()
        data["wallet"] = self._wallet.provider_name
        data["busy"] = self.busy
        return data
