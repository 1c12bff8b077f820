"""
Subscription Issuance - two-phase subscription NFT minting.

Coordinates a saga across a subscription service, a user wallet and the
ledger: the service builds the unsigned minting transaction, the wallet
signs it, the service records the acceptance, and the wallet broadcasts.

- Explicit phase machine with PreconditionFailed guards
- Idempotent initiate, replay-safe finalize and submit
- Independent timeout per suspension point
- Cancellation up to the point of broadcast
- Failure reasons that say whether to retry now, restart, or give up
"""

from subscription_issuance.config import IssuanceSettings, load_settings
from subscription_issuance.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    StaticCredentialProvider,
)
from subscription_issuance.exceptions import (
    AlreadyAccepted,
    AuthorizationDenied,
    Cancelled,
    InvalidSubscription,
    IssuanceError,
    MalformedTransaction,
    NetworkUnavailable,
    NotConnected,
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
from subscription_issuance.models import AcceptanceResult, InitiateResult, SubscriptionTerms
from subscription_issuance.orchestrator import ConfirmationSource, IssuanceOffer, IssuanceOrchestrator
from subscription_issuance.registry import SessionRegistry
from subscription_issuance.service import (
    GraphQLSubscriptionService,
    InMemorySubscriptionService,
    SubscriptionService,
)
from subscription_issuance.session import FailureReason, IssuancePhase, SessionState
from subscription_issuance.transactions import SignedTransaction, TxHandle, TxHash, UnsignedTransaction
from subscription_issuance.wallet import (
    Cip30BridgeWallet,
    SimulatedLedger,
    SimulatedWallet,
    WalletAuthority,
)

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "IssuanceOrchestrator",
    "IssuanceOffer",
    "ConfirmationSource",
    "SessionRegistry",
    "IssuancePhase",
    "SessionState",
    "FailureReason",
    # Collaborators
    "WalletAuthority",
    "Cip30BridgeWallet",
    "SimulatedWallet",
    "SimulatedLedger",
    "SubscriptionService",
    "GraphQLSubscriptionService",
    "InMemorySubscriptionService",
    "CredentialProvider",
    "StaticCredentialProvider",
    "EnvCredentialProvider",
    # Data
    "SubscriptionTerms",
    "InitiateResult",
    "AcceptanceResult",
    "UnsignedTransaction",
    "SignedTransaction",
    "TxHandle",
    "TxHash",
    # Configuration
    "IssuanceSettings",
    "load_settings",
    # Errors
    "RetryDisposition",
    "IssuanceError",
    "WalletUnavailable",
    "AuthorizationDenied",
    "NotConnected",
    "MalformedTransaction",
    "SigningRejected",
    "SigningFailed",
    "SubmissionRejected",
    "NetworkUnavailable",
    "ServiceUnavailable",
    "InvalidSubscription",
    "OfferExpired",
    "AlreadyAccepted",
    "PreconditionFailed",
    "OperationInProgress",
    "Cancelled",
]
