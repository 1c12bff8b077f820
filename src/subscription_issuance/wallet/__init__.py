"""Wallet authority interface and adapters."""
from subscription_issuance.wallet.base import WalletAuthority
from subscription_issuance.wallet.cip30 import Cip30BridgeWallet
from subscription_issuance.wallet.simulated import SimulatedLedger, SimulatedWallet

__all__ = [
    "WalletAuthority",
    "Cip30BridgeWallet",
    "SimulatedLedger",
    "SimulatedWallet",
]
