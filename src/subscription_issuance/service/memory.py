"""In-memory subscription service for development, tests and the demo CLI.

Mirrors the server-side guarantees the saga depends on:
- initiate is deduplicated per (subscription, user) while the built
  transaction is still spendable; a stale transaction is rebuilt with fresh
  entropy
- finalize is replay-safe: the same signed bytes return the same acceptance,
  different bytes for an accepted offer raise AlreadyAccepted
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from subscription_issuance.exceptions import (
    AlreadyAccepted,
    InvalidSubscription,
    OfferExpired,
    ServiceUnavailable,
)
from subscription_issuance.models import (
    AcceptanceResult,
    AssetAmount,
    InitialTerms,
    InitiateResult,
    NftEntropyRef,
    OfferRef,
    PlatformPolicy,
    RewardAsset,
    SubscriptionTerms,
    TxOutputRef,
)
from subscription_issuance.service.base import SubscriptionService
from subscription_issuance.transactions import SignedTransaction
from subscription_issuance.wallet.simulated import (
    SimulatedLedger,
    decode_payload,
    encode_payload,
    transaction_hash,
)

logger = logging.getLogger(__name__)

DEFAULT_OFFER_TTL = timedelta(minutes=15)


@dataclass
class OfferTemplate:
    """Catalog entry the service turns into terms."""
    subscription_id: str
    name: str
    period: int = 2_592_000
    periodical_amount: int = 5_000_000
    agreed_periods: int = 1
    categories: Tuple[str, ...] = ()
    commission_rate: float = 0.05
    purpose: str = "data-sharing subscription"


@dataclass
class PendingOffer:
    terms: SubscriptionTerms
    unsigned_hex: str
    expires_at: datetime


@dataclass
class AcceptedOffer:
    user_vkh: str
    signed_hex: str
    entropy_outref: str
    result: AcceptanceResult


@dataclass
class _Outage:
    """Scripted failures: `before` fails without side effects, `after_record` fails after persisting."""
    before: int = 0
    after_record: int = 0


class InMemorySubscriptionService(SubscriptionService):
    """Reference SubscriptionService backed by a SimulatedLedger."""

    def __init__(
        self,
        ledger: SimulatedLedger,
        backend_address: Optional[str] = None,
        platform_vkhs: Optional[List[str]] = None,
        policyid: Optional[str] = None,
        offer_ttl: timedelta = DEFAULT_OFFER_TTL,
    ):
        self.ledger = ledger
        self.backend_address = backend_address or f"addr_test1{secrets.token_hex(24)}"
        self.platform_vkhs = tuple(platform_vkhs or [secrets.token_hex(28)])
        self.policyid = policyid or secrets.token_hex(28)
        self.offer_ttl = offer_ttl

        self._catalog: Dict[str, OfferTemplate] = {}
        self._pending: Dict[Tuple[str, str], PendingOffer] = {}
        self._accepted: Dict[str, AcceptedOffer] = {}
        self.voided: List[AcceptanceResult] = []

        self.initiate_outage = _Outage()
        self.finalize_outage = _Outage()
        self.initiate_calls = 0
        self.finalize_calls = 0
        self.transactions_built = 0

    def add_offer(self, subscription_id: str, name: Optional[str] = None, **kwargs) -> OfferTemplate:
        template = OfferTemplate(subscription_id=subscription_id, name=name or f"Offer {subscription_id}", **kwargs)
        self._catalog[subscription_id] = template
        return template

    def expire_offer(self, subscription_id: str, user_vkh: str) -> None:
        pending = self._pending.get((subscription_id, user_vkh))
        if pending is not None:
            pending.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

    def acceptance_count(self, subscription_id: Optional[str] = None) -> int:
        if subscription_id is None:
            return len(self._accepted)
        return int(subscription_id in self._accepted)

    def _template(self, subscription_id: str) -> OfferTemplate:
        template = self._catalog.get(subscription_id)
        if template is None:
            raise InvalidSubscription(subscription_id, reason="unknown")
        return template

    def _still_valid(self, pending: PendingOffer) -> bool:
        outref = pending.terms.nft_entropy_ref.input.outref
        return self.ledger.is_unspent(outref) and pending.expires_at > datetime.now(timezone.utc)

    def _acceptance_is_stale(self, accepted: AcceptedOffer) -> bool:
        tx_hash = accepted.result.transaction_hash
        if tx_hash and tx_hash in self.ledger.transactions:
            return False
        return not self.ledger.is_unspent(accepted.entropy_outref)

    def _build(self, template: OfferTemplate, user_vkh: str) -> PendingOffer:
        lovelace = 2_000_000
        entropy_input = self.ledger.add_utxo(self.backend_address, lovelace)
        asset_name = entropy_input.tx_hash[:32]
        terms = SubscriptionTerms(
            nftEntropyRef=NftEntropyRef(
                input=entropy_input,
                output=TxOutputRef(
                    address=self.backend_address,
                    amount=(AssetAmount(unit="lovelace", quantity=str(lovelace)),),
                ),
            ),
            initialTerms=InitialTerms(
                user=user_vkh,
                backend=self.backend_address,
                platform=PlatformPolicy(
                    allowedVkhs=self.platform_vkhs,
                    requiredVkhsCount=1,
                ),
                rewardAssetName=RewardAsset(name="PROFILA", policyid=self.policyid),
                timeAccuracy=60,
                period=template.period,
                periodicalAmount=template.periodical_amount,
                cashOutCooldown=86_400,
                terminationCooldown=604_800,
                categories=template.categories,
                commissionRate=template.commission_rate,
                purpose=template.purpose,
            ),
            initialAgreedPeriodsCount=template.agreed_periods,
            policyid=self.policyid,
        )
        body = {
            "network": self.ledger.network,
            "inputs": [entropy_input.outref],
            "outputs": [
                {
                    "address": user_vkh,
                    "lovelace": lovelace,
                    "assets": {f"{self.policyid}.{asset_name}": 1},
                }
            ],
            "mint": {self.policyid: {asset_name: 1}},
            "subscription": template.subscription_id,
            "nonce": secrets.token_hex(8),
        }
        self.transactions_built += 1
        return PendingOffer(
            terms=terms,
            unsigned_hex=encode_payload(body),
            expires_at=datetime.now(timezone.utc) + self.offer_ttl,
        )

    async def initiate(self, user_vkh: str, subscription_id: str) -> InitiateResult:
        self.initiate_calls += 1
        if self.initiate_outage.before > 0:
            self.initiate_outage.before -= 1
            raise ServiceUnavailable("Simulated outage during initiate")

        template = self._template(subscription_id)
        accepted = self._accepted.get(subscription_id)
        if accepted is not None:
            if not self._acceptance_is_stale(accepted):
                raise InvalidSubscription(subscription_id, reason="already active")
            # Accepted but its transaction can never land: void it and offer again.
            logger.warning(f"Voiding acceptance {accepted.result.id}: transaction inputs are gone")
            self.voided.append(accepted.result)
            del self._accepted[subscription_id]

        key = (subscription_id, user_vkh)
        pending = self._pending.get(key)
        if pending is None or not self._still_valid(pending):
            if pending is not None:
                logger.info(f"Rebuilding stale offer for subscription {subscription_id}")
            pending = self._build(template, user_vkh)
            self._pending[key] = pending

        if self.initiate_outage.after_record > 0:
            self.initiate_outage.after_record -= 1
            raise ServiceUnavailable("Simulated timeout after initiate was recorded")

        return InitiateResult(subscription=pending.terms, unSignedTx=pending.unsigned_hex)

    async def finalize(
        self,
        subscription_id: str,
        signed_tx: SignedTransaction,
        user_vkh: str,
        terms: SubscriptionTerms,
    ) -> AcceptanceResult:
        self.finalize_calls += 1
        if self.finalize_outage.before > 0:
            self.finalize_outage.before -= 1
            raise ServiceUnavailable("Simulated outage during finalize")

        template = self._template(subscription_id)

        accepted = self._accepted.get(subscription_id)
        if accepted is not None:
            if accepted.signed_hex == signed_tx.cbor_hex and accepted.user_vkh == user_vkh:
                return accepted.result
            raise AlreadyAccepted(f"Offer {subscription_id} was already accepted")

        pending = self._pending.get((subscription_id, user_vkh))
        if pending is None:
            raise InvalidSubscription(subscription_id, reason="not initiated for this user")
        if pending.expires_at <= datetime.now(timezone.utc):
            raise OfferExpired(f"Offer {subscription_id} expired at {pending.expires_at.isoformat()}")
        if terms != pending.terms:
            raise InvalidSubscription(subscription_id, reason="submitted with terms that differ from the offer")

        envelope = decode_payload(signed_tx.cbor_hex)
        if envelope.get("body") != pending.unsigned_hex:
            raise InvalidSubscription(
                subscription_id,
                reason="submitted with a transaction that was not built for this offer",
            )

        now = datetime.now(timezone.utc)
        result = AcceptanceResult(
            id=f"acc_{secrets.token_hex(8)}",
            offer=OfferRef(id=subscription_id, name=template.name),
            isRejected=False,
            isCancelled=False,
            isCancelledByUser=False,
            inReview=False,
            transactionHash=transaction_hash(pending.unsigned_hex),
            subscriptionStartedAt=now,
            subscriptionEndsAt=now + timedelta(seconds=template.period * template.agreed_periods),
            createdAt=now,
            updatedAt=now,
        )
        self._accepted[subscription_id] = AcceptedOffer(
            user_vkh=user_vkh,
            signed_hex=signed_tx.cbor_hex,
            entropy_outref=pending.terms.nft_entropy_ref.input.outref,
            result=result,
        )
        del self._pending[(subscription_id, user_vkh)]
        logger.info(f"Accepted offer {subscription_id} as {result.id}")

        if self.finalize_outage.after_record > 0:
            self.finalize_outage.after_record -= 1
            raise ServiceUnavailable("Simulated timeout after acceptance was recorded")

        return result
