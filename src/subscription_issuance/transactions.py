"""Opaque transaction values carried between the saga phases.

The orchestrator never inspects transaction contents. It only needs to know
which unsigned body a signed body was derived from, so every value here is
keyed by the sha256 digest of the unsigned bytes.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass

from subscription_issuance.exceptions import MalformedTransaction

TxHash = str


def body_digest(cbor_hex: str) -> str:
    return hashlib.sha256(bytes.fromhex(cbor_hex)).hexdigest()


@dataclass(frozen=True)
class UnsignedTransaction:
    """Serialized transaction body returned by the service at initiate."""
    cbor_hex: str

    @classmethod
    def from_hex(cls, value: str) -> "UnsignedTransaction":
        """Validate a hex payload and keep it exactly as the service sent it."""
        if not value or len(value) % 2:
            raise MalformedTransaction("Transaction payload is empty or has odd length")
        try:
            raw = bytes.fromhex(value)
        except ValueError as exc:
            raise MalformedTransaction("Transaction payload is not hex encoded") from exc
        if len(raw) * 2 != len(value):
            raise MalformedTransaction("Transaction payload contains non-hex characters")
        return cls(cbor_hex=value)

    @property
    def digest(self) -> str:
        return body_digest(self.cbor_hex)

    def __str__(self) -> str:
        return self.cbor_hex


@dataclass(frozen=True)
class TxHandle:
    """Wallet-side view of a deserialized unsigned transaction."""
    unsigned: UnsignedTransaction
    network: str

    @property
    def source_digest(self) -> str:
        return self.unsigned.digest


@dataclass(frozen=True)
class SignedTransaction:
    """Signed transaction bound to the unsigned body it authenticates."""
    cbor_hex: str
    source_digest: str

    def derived_from(self, unsigned: UnsignedTransaction) -> bool:
        return self.source_digest == unsigned.digest

    def __str__(self) -> str:
        return self.cbor_hex
