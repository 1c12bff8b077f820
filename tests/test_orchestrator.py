"""
Tests for subscription_issuance.orchestrator.

Tests cover:
- Happy path through every phase
- Phase guards and PreconditionFailed
- Idempotent initiate and replay-safe finalize/submit
- Transient versus terminal failures
- Timeouts per suspension point
- Single-flight guard
- Cancellation and reset
"""
from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from subscription_issuance.exceptions import (
    AuthorizationDenied,
    Cancelled,
    InvalidSubscription,
    MalformedTransaction,
    NetworkUnavailable,
    OfferExpired,
    OperationInProgress,
    PreconditionFailed,
    RetryDisposition,
    ServiceUnavailable,
    SigningFailed,
    SigningRejected,
    SubmissionRejected,
    WalletUnavailable,
)
from subscription_issuance.models import AcceptanceResult
from subscription_issuance.orchestrator import IssuanceOrchestrator
from subscription_issuance.session import IssuancePhase
from subscription_issuance.transactions import SignedTransaction, TxHandle, UnsignedTransaction
from subscription_issuance.wallet import SimulatedWallet


class TestHappyPath:
    """Scenario: every phase succeeds."""

    async def test_full_saga(self, connected, ledger):
        """initiate, sign, finalize, submit, confirm in order."""
        offer = await connected.initiate("sub-1")
        assert connected.phase is IssuancePhase.INITIATED
        assert offer.subscription_id == "sub-1"
        assert offer.terms.initial_terms.user == connected.address

        signed = await connected.sign()
        assert connected.phase is IssuancePhase.SIGNED
        assert signed.derived_from(offer.unsigned_tx)

        acceptance = await connected.finalize()
        assert connected.phase is IssuancePhase.ACCEPTED
        assert acceptance.is_rejected is False

        tx_hash = await connected.submit()
        assert connected.phase is IssuancePhase.SUBMITTED
        assert tx_hash
        assert tx_hash in ledger.transactions

        session = await connected.confirm()
        assert session.phase is IssuancePhase.CONFIRMED
        assert session.tx_hash == tx_hash

    async def test_issue_runs_whole_saga(self, orchestrator, ledger):
        """issue() connects when needed and returns the final snapshot."""
        session = await orchestrator.issue("sub-2")

        assert session.phase is IssuancePhase.CONFIRMED
        assert session.acceptance is not None
        assert session.acceptance.offer.name == "Yearly data sharing"
        assert session.tx_hash in ledger.transactions

    async def test_minted_token_goes_to_user(self, accepted, ledger):
        """Submitted transaction creates the user output."""
        tx_hash = await accepted.submit()
        assert ledger.utxos[f"{tx_hash}#0"]["address"] == accepted.address

    async def test_explicit_user_vkh(self, connected, service):
        """An explicit verification key hash is sent instead of the address."""
        offer = await connected.initiate("sub-1", user_vkh="vkh_explicit")
        assert offer.terms.initial_terms.user == "vkh_explicit"
        assert connected.session.user_vkh == "vkh_explicit"

    async def test_acceptance_hash_matches_ledger(self, accepted):
        """Service-recorded hash equals the hash the ledger returns."""
        tx_hash = await accepted.submit()
        assert accepted.session.acceptance.transaction_hash == tx_hash


class TestPhaseGuards:
    """Operations called out of order raise PreconditionFailed and change nothing."""

    async def test_sign_before_initiate(self, connected):
        with pytest.raises(PreconditionFailed):
            await connected.sign()
        assert connected.phase is IssuancePhase.IDLE

    async def test_finalize_before_sign(self, initiated, service):
        """Scenario 2: finalize while INITIATED."""
        with pytest.raises(PreconditionFailed) as exc_info:
            await initiated.finalize()

        assert initiated.phase is IssuancePhase.INITIATED
        assert exc_info.value.details["actual"] == "initiated"
        assert service.finalize_calls == 0

    async def test_submit_before_finalize(self, signed, wallet):
        with pytest.raises(PreconditionFailed):
            await signed.submit()
        assert signed.phase is IssuancePhase.SIGNED
        assert wallet.broadcast_calls == 0

    async def test_confirm_before_submit(self, accepted):
        with pytest.raises(PreconditionFailed):
            await accepted.confirm()
        assert accepted.phase is IssuancePhase.ACCEPTED

    async def test_initiate_requires_connection(self, orchestrator, service):
        with pytest.raises(PreconditionFailed):
            await orchestrator.initiate("sub-1")
        assert orchestrator.phase is IssuancePhase.IDLE
        assert service.initiate_calls == 0

    async def test_initiate_different_subscription_while_live(self, initiated):
        with pytest.raises(PreconditionFailed):
            await initiated.initiate("sub-2")
        assert initiated.session.subscription_id == "sub-1"

    async def test_no_phase_is_skipped_after_confirm(self, orchestrator):
        await orchestrator.issue("sub-1")
        for operation in (orchestrator.sign, orchestrator.finalize, orchestrator.submit, orchestrator.confirm):
            with pytest.raises(PreconditionFailed):
                await operation()
        assert orchestrator.phase is IssuancePhase.CONFIRMED


class TestIdempotentInitiate:
    """initiate twice in succession returns the same terms and transaction."""

    async def test_same_session_returns_stored_offer(self, connected, service):
        first = await connected.initiate("sub-1")
        second = await connected.initiate("sub-1")

        assert first.terms == second.terms
        assert first.unsigned_tx == second.unsigned_tx
        assert service.initiate_calls == 1

    async def test_deduplicated_after_later_phases(self, signed):
        """Calling initiate again once signed still returns the original offer."""
        offer = await signed.initiate("sub-1")
        assert offer.unsigned_tx == signed.session.unsigned_tx
        assert signed.phase is IssuancePhase.SIGNED

    async def test_service_dedups_across_sessions(self, wallet, service, ledger, settings):
        """Two sessions for the same user and subscription get the same offer."""
        first = IssuanceOrchestrator(wallet=wallet, service=service, confirmations=ledger, settings=settings)
        second = IssuanceOrchestrator(wallet=wallet, service=service, confirmations=ledger, settings=settings)
        await first.connect()
        await second.connect()

        a = await first.initiate("sub-1")
        b = await second.initiate("sub-1")

        assert a.unsigned_tx == b.unsigned_tx
        assert a.terms == b.terms
        assert service.transactions_built == 1


class TestSigningFailures:
    """Wallet failures during sign()."""

    async def test_user_declines(self, initiated, wallet):
        """Scenario 3: rejection moves to FAILED(SigningRejected)."""
        wallet.decline_signing = True

        with pytest.raises(SigningRejected):
            await initiated.sign()

        session = initiated.session
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.kind == "SigningRejected"
        assert session.failure.phase is IssuancePhase.INITIATED
        assert session.failure.disposition is RetryDisposition.RESTART

        with pytest.raises(PreconditionFailed):
            await initiated.finalize()
        assert initiated.phase is IssuancePhase.FAILED

    async def test_signing_backend_error(self, initiated, wallet):
        wallet.fail_signing = True

        with pytest.raises(SigningFailed):
            await initiated.sign()
        assert initiated.session.failure.kind == "SigningFailed"

    async def test_signing_timeout_is_terminal(self, initiated, wallet, settings):
        """No answer within the signing timeout counts as a rejection."""
        wallet.signing_delay = settings.signing_timeout_seconds + 1

        with pytest.raises(SigningRejected) as exc_info:
            await initiated.sign()

        assert exc_info.value.details["timeout"] is True
        assert initiated.phase is IssuancePhase.FAILED

    async def test_wallet_alters_body(self, initiated, wallet):
        other = UnsignedTransaction.from_hex("deadbeef")
        wallet.deserialize = AsyncMock(return_value=TxHandle(unsigned=other, network="preprod"))

        with pytest.raises(MalformedTransaction):
            await initiated.sign()
        assert initiated.session.failure.kind == "MalformedTransaction"

    async def test_signature_for_other_transaction(self, initiated, wallet):
        wallet.sign = AsyncMock(return_value=SignedTransaction(cbor_hex="abcd", source_digest="0" * 64))

        with pytest.raises(SigningFailed):
            await initiated.sign()
        assert initiated.phase is IssuancePhase.FAILED
        assert initiated.session.signed_tx is None

    async def test_wrong_network(self, connected, service, ledger):
        """A transaction built for another network is malformed for this wallet."""
        ledger.network = "preview"
        await connected.initiate("sub-1")
        ledger.network = "preprod"

        with pytest.raises(MalformedTransaction):
            await connected.sign()


class TestServiceFailures:
    """Service failures during initiate() and finalize()."""

    async def test_unknown_subscription(self, connected):
        with pytest.raises(InvalidSubscription):
            await connected.initiate("sub-unknown")

        session = connected.session
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.disposition is RetryDisposition.DO_NOT_RETRY

    async def test_initiate_outage_is_transient(self, connected, service):
        service.initiate_outage.before = 1

        with pytest.raises(ServiceUnavailable):
            await connected.initiate("sub-1")

        session = connected.session
        assert session.phase is IssuancePhase.IDLE
        assert session.failure is None
        assert session.last_error["error"] == "SERVICE_UNAVAILABLE"

        offer = await connected.initiate("sub-1")
        assert offer.unsigned_tx is not None
        assert connected.session.last_error is None

    async def test_initiate_timeout_is_transient(self, connected, service, settings):
        real_initiate = service.initiate

        async def slow_initiate(user_vkh, subscription_id):
            await asyncio.sleep(settings.service_timeout_seconds + 1)
            return await real_initiate(user_vkh, subscription_id)

        service.initiate = AsyncMock(side_effect=slow_initiate)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await connected.initiate("sub-1")

        assert exc_info.value.details["timeout"] is True
        assert connected.phase is IssuancePhase.IDLE

    async def test_malformed_unsigned_tx(self, connected, service):
        real = await service.initiate(connected.address, "sub-1")
        service.initiate = AsyncMock(return_value=real.model_copy(update={"unsigned_tx": "not-hex"}))

        with pytest.raises(MalformedTransaction):
            await connected.initiate("sub-1")
        assert connected.session.failure.kind == "MalformedTransaction"

    async def test_offer_expired(self, signed, service):
        service.expire_offer("sub-1", signed.session.user_vkh)

        with pytest.raises(OfferExpired):
            await signed.finalize()

        session = signed.session
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.disposition is RetryDisposition.DO_NOT_RETRY

    async def test_rejected_acceptance(self, signed, service):
        service.finalize = AsyncMock(return_value=AcceptanceResult(id="acc_rejected", isRejected=True))

        with pytest.raises(InvalidSubscription):
            await signed.finalize()

        session = signed.session
        assert session.phase is IssuancePhase.FAILED
        assert session.acceptance.id == "acc_rejected"

    async def test_finalize_timeout_keeps_signed(self, signed, service, settings):
        async def slow_finalize(*args):
            await asyncio.sleep(settings.service_timeout_seconds + 1)

        service.finalize = AsyncMock(side_effect=slow_finalize)

        with pytest.raises(ServiceUnavailable):
            await signed.finalize()
        assert signed.phase is IssuancePhase.SIGNED


class TestReplaySafeFinalize:
    """Scenario 5: finalize retried with the identical signed transaction."""

    async def test_retry_after_recorded_timeout(self, signed, service):
        service.finalize_outage.after_record = 1
        signed_tx = signed.session.signed_tx

        with pytest.raises(ServiceUnavailable):
            await signed.finalize()
        assert signed.phase is IssuancePhase.SIGNED

        acceptance = await signed.finalize()

        assert signed.phase is IssuancePhase.ACCEPTED
        assert service.acceptance_count("sub-1") == 1
        assert service.finalize_calls == 2
        assert signed.session.signed_tx == signed_tx
        replay = await service.finalize("sub-1", signed_tx, signed.session.user_vkh, signed.session.terms)
        assert replay == acceptance

    async def test_finalize_outage_before_record(self, signed, service):
        service.finalize_outage.before = 2

        for _ in range(2):
            with pytest.raises(ServiceUnavailable):
                await signed.finalize()
        acceptance = await signed.finalize()

        assert acceptance.accepted
        assert service.acceptance_count() == 1


class TestSubmission:
    """submit() behaviour and scenario 4."""

    async def test_stale_transaction_requires_fresh_initiate(self, accepted, ledger, service):
        """Scenario 4: rejected broadcast, then a fresh unsigned transaction."""
        first_unsigned = accepted.session.unsigned_tx
        ledger.spend(accepted.session.terms.nft_entropy_ref.input.outref)

        with pytest.raises(SubmissionRejected):
            await accepted.submit()

        session = accepted.session
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.kind == "SubmissionRejected"
        assert session.failure.disposition is RetryDisposition.RESTART

        await accepted.reset()
        offer = await accepted.initiate("sub-1")

        assert offer.unsigned_tx != first_unsigned
        assert len(service.voided) == 1

        await accepted.sign()
        await accepted.finalize()
        tx_hash = await accepted.submit()
        assert tx_hash in ledger.transactions

    async def test_network_outage_is_transient(self, accepted, wallet):
        wallet.network_down = True

        with pytest.raises(NetworkUnavailable):
            await accepted.submit()
        assert accepted.phase is IssuancePhase.ACCEPTED
        assert accepted.session.last_error["error"] == "NETWORK_UNAVAILABLE"

        wallet.network_down = False
        tx_hash = await accepted.submit()
        assert tx_hash
        assert wallet.broadcast_calls == 2

    async def test_broadcast_timeout_then_resubmit(self, accepted, wallet, settings):
        """The ledger took the first broadcast; resubmitting the same bytes is harmless."""
        real_broadcast = wallet.broadcast
        calls = []

        async def landed_but_slow(tx):
            calls.append(tx)
            tx_hash = await real_broadcast(tx)
            if len(calls) == 1:
                await asyncio.sleep(settings.broadcast_timeout_seconds + 1)
            return tx_hash

        wallet.broadcast = AsyncMock(side_effect=landed_but_slow)

        with pytest.raises(NetworkUnavailable):
            await accepted.submit()
        assert accepted.phase is IssuancePhase.ACCEPTED

        tx_hash = await accepted.submit()
        assert accepted.phase is IssuancePhase.SUBMITTED
        assert calls[0] == calls[1]
        assert tx_hash

    async def test_empty_hash_is_rejected(self, accepted, wallet):
        wallet.broadcast = AsyncMock(return_value="")

        with pytest.raises(SubmissionRejected):
            await accepted.submit()
        assert accepted.phase is IssuancePhase.FAILED


class TestSessionBinding:
    """A signature from one unsigned transaction never pairs with another session's data."""

    async def test_foreign_signature_refused_before_finalize(self, wallet, service, ledger, settings, signed):
        other = IssuanceOrchestrator(wallet=wallet, service=service, confirmations=ledger, settings=settings)
        await other.connect()
        await other.initiate("sub-2")
        await other.sign()

        other._session.signed_tx = signed.session.signed_tx

        with pytest.raises(PreconditionFailed):
            await other.finalize()
        assert other.phase is IssuancePhase.SIGNED
        assert service.finalize_calls == 0

    async def test_foreign_signature_refused_before_submit(self, accepted, wallet):
        accepted._session.signed_tx = SignedTransaction(cbor_hex="abcd", source_digest="f" * 64)

        with pytest.raises(PreconditionFailed):
            await accepted.submit()
        assert wallet.broadcast_calls == 0


class TestConnect:
    """Wallet connection failures."""

    async def test_wallet_missing(self, ledger, service, settings):
        orchestrator = IssuanceOrchestrator(
            wallet=SimulatedWallet(ledger, installed=False), service=service, settings=settings
        )
        with pytest.raises(WalletUnavailable):
            await orchestrator.connect()
        assert orchestrator.session.failure.kind == "WalletUnavailable"

    async def test_access_denied(self, ledger, service, settings):
        orchestrator = IssuanceOrchestrator(
            wallet=SimulatedWallet(ledger, approve_connect=False), service=service, settings=settings
        )
        with pytest.raises(AuthorizationDenied):
            await orchestrator.connect()

        failure = orchestrator.session.failure
        assert failure.disposition is RetryDisposition.DO_NOT_RETRY
        assert orchestrator.address is None

    async def test_connect_records_address(self, orchestrator, wallet):
        address = await orchestrator.connect()
        assert address == wallet.address
        assert orchestrator.session.address == wallet.address


class TestConfirmation:
    """confirm() polling against a confirmation source."""

    async def test_waits_for_ledger(self, accepted, ledger):
        ledger.auto_confirm = False
        await accepted.submit()

        async def confirm_soon():
            await asyncio.sleep(0.05)
            ledger.confirm_pending()

        asyncio.get_running_loop().create_task(confirm_soon())
        session = await accepted.confirm()
        assert session.phase is IssuancePhase.CONFIRMED

    async def test_timeout_keeps_submitted(self, accepted, ledger):
        ledger.auto_confirm = False
        await accepted.submit()

        with pytest.raises(NetworkUnavailable):
            await accepted.confirm()
        assert accepted.phase is IssuancePhase.SUBMITTED

        ledger.confirm_pending()
        session = await accepted.confirm()
        assert session.phase is IssuancePhase.CONFIRMED

    async def test_without_source(self, wallet, service, settings):
        orchestrator = IssuanceOrchestrator(wallet=wallet, service=service, settings=settings)
        session = await orchestrator.issue("sub-1")
        assert session.phase is IssuancePhase.CONFIRMED


class TestSingleFlight:
    """Concurrent mutating calls are refused, not queued."""

    async def test_second_call_while_signing(self, initiated, wallet):
        wallet.signing_delay = 0.1
        task = asyncio.create_task(initiated.sign())
        await asyncio.sleep(0.01)

        assert initiated.busy
        with pytest.raises(OperationInProgress):
            await initiated.sign()
        with pytest.raises(OperationInProgress):
            await initiated.reset()

        await task
        assert initiated.phase is IssuancePhase.SIGNED
        assert wallet.sign_calls == 1
        assert not initiated.busy

    async def test_concurrent_initiate(self, connected, service):
        results = await asyncio.gather(
            connected.initiate("sub-1"),
            connected.initiate("sub-1"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, OperationInProgress) for r in results) == 1
        assert service.initiate_calls == 1


class TestCancel:
    """cancel() before submission, refusal afterwards."""

    async def test_cancel_idle(self, orchestrator):
        session = orchestrator.cancel()
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.kind == "Cancelled"
        assert session.failure.disposition is RetryDisposition.RESTART

    async def test_cancel_initiated_blocks_further_phases(self, initiated):
        initiated.cancel("user closed the dialog")

        assert initiated.session.failure.message == "user closed the dialog"
        with pytest.raises(PreconditionFailed):
            await initiated.sign()

    async def test_cancel_in_flight_signing(self, initiated, wallet):
        wallet.signing_delay = 0.5
        task = asyncio.create_task(initiated.sign())
        await asyncio.sleep(0.01)

        initiated.cancel()

        with pytest.raises(Cancelled):
            await task
        session = initiated.session
        assert session.phase is IssuancePhase.FAILED
        assert session.failure.kind == "Cancelled"
        assert session.failure.phase is IssuancePhase.INITIATED
        assert session.signed_tx is None

    async def test_cancel_after_acceptance(self, accepted, caplog):
        with caplog.at_level(logging.WARNING, logger="subscription_issuance.orchestrator"):
            session = accepted.cancel()
        assert session.failure.phase is IssuancePhase.ACCEPTED
        assert any("after acceptance" in r.getMessage() for r in caplog.records)

    async def test_cancel_after_acceptance_disabled(self, wallet, service, ledger, settings):
        settings = settings.model_copy(update={"allow_cancel_after_acceptance": False})
        orchestrator = IssuanceOrchestrator(wallet=wallet, service=service, confirmations=ledger, settings=settings)
        await orchestrator.connect()
        await orchestrator.initiate("sub-1")
        await orchestrator.sign()
        await orchestrator.finalize()

        with pytest.raises(PreconditionFailed):
            orchestrator.cancel()
        assert orchestrator.phase is IssuancePhase.ACCEPTED

    async def test_cancel_after_submit_is_refused(self, accepted):
        await accepted.submit()

        with pytest.raises(PreconditionFailed):
            accepted.cancel()
        assert accepted.phase is IssuancePhase.SUBMITTED

    async def test_cancel_during_broadcast_is_refused(self, accepted, wallet):
        real_broadcast = wallet.broadcast

        async def slow_broadcast(tx):
            await asyncio.sleep(0.1)
            return await real_broadcast(tx)

        wallet.broadcast = AsyncMock(side_effect=slow_broadcast)
        task = asyncio.create_task(accepted.submit())
        await asyncio.sleep(0.01)

        with pytest.raises(PreconditionFailed):
            accepted.cancel()

        tx_hash = await task
        assert tx_hash
        assert accepted.phase is IssuancePhase.SUBMITTED

    async def test_cancel_twice(self, initiated):
        first = initiated.cancel()
        second = initiated.cancel()
        assert first.failure == second.failure


class TestReset:
    """reset() after a finished session."""

    async def test_reset_after_failure(self, initiated, wallet):
        wallet.decline_signing = True
        old_id = initiated.session.session_id
        with pytest.raises(SigningRejected):
            await initiated.sign()

        session = await initiated.reset()

        assert session.phase is IssuancePhase.IDLE
        assert session.session_id != old_id
        assert session.address == wallet.address
        assert session.failure is None

    async def test_reset_live_session_refused(self, signed):
        with pytest.raises(PreconditionFailed):
            await signed.reset()
        assert signed.phase is IssuancePhase.SIGNED

    async def test_connect_after_finish_requires_reset(self, orchestrator):
        await orchestrator.issue("sub-1")
        with pytest.raises(PreconditionFailed):
            await orchestrator.connect()


class TestSnapshots:
    """Callers never hold the live SessionState."""

    async def test_snapshot_is_detached(self, initiated):
        snapshot = initiated.session
        snapshot.phase = IssuancePhase.CONFIRMED
        snapshot.subscription_id = "tampered"

        assert initiated.phase is IssuancePhase.INITIATED
        assert initiated.session.subscription_id == "sub-1"

    async def test_describe(self, initiated):
        data = initiated.describe()
        assert data["phase"] == "initiated"
        assert data["wallet"] == "simulated"
        assert data["busy"] is False


class TestLogging:
    """Transitions emit log records carrying session context."""

    async def test_failure_logged_with_code(self, initiated, wallet, caplog):
        wallet.decline_signing = True
        with caplog.at_level(logging.ERROR, logger="subscription_issuance.orchestrator"):
            with pytest.raises(SigningRejected):
                await initiated.sign()

        record = next(r for r in caplog.records if r.levelno == logging.ERROR)
        assert record.error_code == "SIGNING_REJECTED"
        assert record.operation == "sign"

    async def test_transient_logged_as_warning(self, connected, service, caplog):
        service.initiate_outage.before = 1
        with caplog.at_level(logging.WARNING, logger="subscription_issuance.orchestrator"):
            with pytest.raises(ServiceUnavailable):
                await connected.initiate("sub-1")

        assert any(r.levelno == logging.WARNING and "transiently" in r.getMessage() for r in caplog.records)
