"""Base subscription service interface."""
from __future__ import annotations

from abc import ABC, abstractmethod

from subscription_issuance.models import AcceptanceResult, InitiateResult, SubscriptionTerms
from subscription_issuance.transactions import SignedTransaction


class SubscriptionService(ABC):
    """Off-chain service that builds and records subscription offers."""

    @abstractmethod
    async def initiate(self, user_vkh: str, subscription_id: str) -> InitiateResult:
        """
        Build the unsigned minting transaction and the subscription terms.

        Repeated calls for the same (user, subscription) return the pending
        offer as long as its transaction is still valid.

        Raises:
            ServiceUnavailable: Transient, retryable
            InvalidSubscription: Unknown or already active, not retryable
        """
        pass

    @abstractmethod
    async def finalize(
        self,
        subscription_id: str,
        signed_tx: SignedTransaction,
        user_vkh: str,
        terms: SubscriptionTerms,
    ) -> AcceptanceResult:
        """
        Record the signed transaction and terms, returning the acceptance.

        Replaying the same signed transaction returns the same result.

        Raises:
            ServiceUnavailable: Retryable with the same signed transaction
            OfferExpired: The offer lapsed
            AlreadyAccepted: Accepted earlier with different transaction bytes
        """
        pass

    async def close(self) -> None:
        return None
