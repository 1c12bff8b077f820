"""Simulated wallet and ledger for development, tests and the demo CLI.

Transaction bodies are hex-encoded canonical JSON rather than CBOR:

    {"network": ..., "inputs": ["<txhash>#<ix>", ...], "outputs": [...], "mint": {...}, "nonce": ...}

Signed transactions wrap the body with a witness list. The ledger accepts a
signed transaction only when every input it spends is currently unspent,
and resubmitting identical bytes returns the original hash.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from subscription_issuance.exceptions import (
    AuthorizationDenied,
    MalformedTransaction,
    NetworkUnavailable,
    NotConnected,
    SigningFailed,
    SigningRejected,
    SubmissionRejected,
    WalletUnavailable,
)
from subscription_issuance.logging_config import mask
from subscription_issuance.models import TxInputRef
from subscription_issuance.transactions import SignedTransaction, TxHandle, TxHash, UnsignedTransaction
from subscription_issuance.wallet.base import WalletAuthority

logger = logging.getLogger(__name__)


def encode_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode().hex()


def decode_payload(cbor_hex: str) -> Dict[str, Any]:
    try:
        data = json.loads(bytes.fromhex(cbor_hex).decode())
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedTransaction("Transaction bytes could not be decoded") from exc
    if not isinstance(data, dict):
        raise MalformedTransaction("Transaction body must be an object")
    return data


def transaction_hash(body_hex: str) -> TxHash:
    """Ledger transaction id: blake2b-256 over the body bytes."""
    return hashlib.blake2b(bytes.fromhex(body_hex), digest_size=32).hexdigest()


class LedgerRejection(Exception):
    """Raised by SimulatedLedger when ledger validation fails."""


@dataclass
class LedgerEntry:
    tx_hash: TxHash
    signed_hex: str
    inputs: List[str]
    confirmed: bool = False


@dataclass
class SimulatedLedger:
    """In-memory UTxO set with submission and confirmation tracking."""

    network: str = "preprod"
    auto_confirm: bool = False
    utxos: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    transactions: Dict[TxHash, LedgerEntry] = field(default_factory=dict)

    def add_utxo(self, address: str, lovelace: int = 2_000_000) -> TxInputRef:
        ref = TxInputRef(txHash=secrets.token_hex(32), outputIndex=0)
        self.utxos[ref.outref] = {"address": address, "lovelace": lovelace}
        return ref

    def is_unspent(self, outref: str) -> bool:
        return outref in self.utxos

    def spend(self, outref: str) -> None:
        """Consume an output outside the saga (another transaction won the race)."""
        self.utxos.pop(outref, None)

    async def submit(self, signed_hex: str) -> TxHash:
        try:
            envelope = decode_payload(signed_hex)
            body_hex = envelope.get("body")
            if not isinstance(body_hex, str) or not envelope.get("witnesses"):
                raise LedgerRejection("Missing body or witnesses")
            body = decode_payload(body_hex)
        except MalformedTransaction as exc:
            raise LedgerRejection(exc.message) from exc
        tx_hash = transaction_hash(body_hex)

        existing = self.transactions.get(tx_hash)
        if existing is not None:
            if existing.signed_hex == signed_hex:
                return tx_hash
            raise LedgerRejection(f"Transaction {tx_hash} already on ledger with different witnesses")

        if body.get("network") != self.network:
            raise LedgerRejection(f"Wrong network: {body.get('network')}")
        inputs = list(body.get("inputs") or [])
        if not inputs:
            raise LedgerRejection("Transaction spends no inputs")
        missing = [ref for ref in inputs if ref not in self.utxos]
        if missing:
            raise LedgerRejection(f"Inputs already spent or unknown: {', '.join(missing)}")

        for ref in inputs:
            del self.utxos[ref]
        for index, output in enumerate(body.get("outputs") or []):
            self.utxos[f"{tx_hash}#{index}"] = dict(output)
        self.transactions[tx_hash] = LedgerEntry(
            tx_hash=tx_hash,
            signed_hex=signed_hex,
            inputs=inputs,
            confirmed=self.auto_confirm,
        )
        logger.info(f"Ledger accepted transaction {tx_hash}")
        return tx_hash

    def confirm_pending(self) -> int:
        count = 0
        for entry in self.transactions.values():
            if not entry.confirmed:
                entry.confirmed = True
                count += 1
        return count

    async def is_confirmed(self, tx_hash: TxHash) -> bool:
        entry = self.transactions.get(tx_hash)
        return bool(entry and entry.confirmed)


class SimulatedWallet(WalletAuthority):
    """In-process wallet with deterministic signing and scriptable failures.

    Signing is deterministic: the same body always yields the same signed
    bytes, so a resubmission after a timeout is byte-identical.
    """

    def __init__(
        self,
        ledger: SimulatedLedger,
        address: Optional[str] = None,
        key_id: str = "sim-key-0",
        installed: bool = True,
        approve_connect: bool = True,
    ):
        self.ledger = ledger
        self.address = address or f"addr_test1{secrets.token_hex(24)}"
        self.key_id = key_id
        self.installed = installed
        self.approve_connect = approve_connect
        self._secret = hashlib.sha256(f"{key_id}:{self.address}".encode()).hexdigest()
        self._connected = False

        # Scripted behaviour
        self.decline_signing = False
        self.fail_signing = False
        self.signing_delay: float = 0.0
        self.network_down = False
        self.sign_calls = 0
        self.broadcast_calls = 0

    @property
    def provider_name(self) -> str:
        return "simulated"

    @property
    def verification_key_hash(self) -> str:
        return hashlib.blake2b(self._secret.encode(), digest_size=28).hexdigest()

    async def connect(self) -> str:
        if not self.installed:
            raise WalletUnavailable("No simulated wallet installed")
        if not self.approve_connect:
            raise AuthorizationDenied("User declined wallet access")
        self._connected = True
        logger.info(f"Simulated wallet connected: {mask(self.address)}")
        return self.address

    async def current_address(self) -> str:
        if not self._connected:
            raise NotConnected("Wallet not connected")
        return self.address

    async def deserialize(self, tx: UnsignedTransaction) -> TxHandle:
        if not self._connected:
            raise NotConnected("Wallet not connected")
        body = decode_payload(tx.cbor_hex)
        if body.get("network") != self.ledger.network:
            raise MalformedTransaction(
                f"Transaction built for {body.get('network')}, wallet is on {self.ledger.network}"
            )
        return TxHandle(unsigned=tx, network=self.ledger.network)

    async def sign(self, handle: TxHandle) -> SignedTransaction:
        if not self._connected:
            raise NotConnected("Wallet not connected")
        self.sign_calls += 1
        if self.signing_delay:
            await asyncio.sleep(self.signing_delay)
        if self.decline_signing:
            raise SigningRejected("User declined to sign")
        if self.fail_signing:
            raise SigningFailed("Signing backend error")

        body_hex = handle.unsigned.cbor_hex
        signature = hashlib.sha256(f"{self._secret}:{body_hex}".encode()).hexdigest()
        envelope = {
            "body": body_hex,
            "witnesses": [{"vkey": self.verification_key_hash, "signature": signature}],
        }
        return SignedTransaction(cbor_hex=encode_payload(envelope), source_digest=handle.source_digest)

    async def broadcast(self, tx: SignedTransaction) -> TxHash:
        if not self._connected:
            raise NotConnected("Wallet not connected")
        self.broadcast_calls += 1
        if self.network_down:
            raise NetworkUnavailable("Ledger node unreachable")
        try:
            return await self.ledger.submit(tx.cbor_hex)
        except LedgerRejection as exc:
            raise SubmissionRejected(str(exc)) from exc
