"""Base wallet authority interface."""
from __future__ import annotations

from abc import ABC, abstractmethod

from subscription_issuance.transactions import SignedTransaction, TxHandle, TxHash, UnsignedTransaction


class WalletAuthority(ABC):
    """Capability wrapper around a user-controlled signing key.

    Key material stays with the wallet. Implementations are selected
    explicitly by the caller, never discovered by probing for providers.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the wallet provider name (e.g. "yoroi", "simulated")."""
        pass

    @abstractmethod
    async def connect(self) -> str:
        """
        Request signing capability from the wallet.

        Returns:
            The wallet's address

        Raises:
            WalletUnavailable: No compatible wallet is installed or reachable
            AuthorizationDenied: The user declined the request
        """
        pass

    @abstractmethod
    async def current_address(self) -> str:
        """
        Return the connected address.

        Raises:
            NotConnected: Called before connect()
        """
        pass

    @abstractmethod
    async def deserialize(self, tx: UnsignedTransaction) -> TxHandle:
        """
        Load an unsigned transaction body without altering it.

        Raises:
            MalformedTransaction: Bytes are not a valid body for the connected network
        """
        pass

    @abstractmethod
    async def sign(self, handle: TxHandle) -> SignedTransaction:
        """
        Sign exactly the inputs and outputs in `handle`.

        May suspend while the user reviews the request in the wallet.

        Raises:
            SigningRejected: The user declined
            SigningFailed: Key or backend error
        """
        pass

    @abstractmethod
    async def broadcast(self, tx: SignedTransaction) -> TxHash:
        """
        Submit a signed transaction to the ledger.

        Raises:
            SubmissionRejected: Ledger validation failed (e.g. stale inputs)
            NetworkUnavailable: Transient network failure, safe to resubmit
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the adapter."""
        return None
