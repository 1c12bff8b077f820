"""CIP-30 wallet bridge adapter.

Browser wallets expose the CIP-30 API (`enable`, `getChangeAddress`,
`signTx`, `submitTx`) to page scripts only. A bridge process relays those
calls over JSON-RPC so a Python caller can drive a real user wallet:

    POST {bridge_url}
    {"jsonrpc": "2.0", "id": 7, "method": "signTx", "params": {...}}

The bridge assembles the signed transaction (body + wallet witnesses)
before returning it, so this adapter never handles CBOR itself.
"""
from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, Optional

import httpx

from subscription_issuance.exceptions import (
    AuthorizationDenied,
    IssuanceError,
    MalformedTransaction,
    NetworkUnavailable,
    NotConnected,
    SigningFailed,
    SigningRejected,
    SubmissionRejected,
    WalletUnavailable,
)
from subscription_issuance.logging_config import mask
from subscription_issuance.transactions import SignedTransaction, TxHandle, TxHash, UnsignedTransaction
from subscription_issuance.wallet.base import WalletAuthority

logger = logging.getLogger(__name__)

# CIP-30 error codes
API_ERROR_INVALID_REQUEST = -1
API_ERROR_INTERNAL = -2
API_ERROR_REFUSED = -3
API_ERROR_ACCOUNT_CHANGE = -4
TX_SIGN_PROOF_GENERATION = 1
TX_SIGN_USER_DECLINED = 2
TX_SEND_REFUSED = 1
TX_SEND_FAILURE = 2

NETWORK_IDS = {"mainnet": 1, "preprod": 0, "preview": 0}


class Cip30BridgeError(Exception):
    """Error object returned by the bridge, before mapping."""

    def __init__(self, method: str, error: Any):
        if not isinstance(error, dict):
            error = {"info": str(error)}
        self.method = method
        self.type = error.get("type", "APIError")
        self.code = error.get("code")
        self.info = error.get("info") or error.get("message") or "wallet error"
        super().__init__(f"{method}: {self.type}({self.code}) {self.info}")


class Cip30BridgeWallet(WalletAuthority):
    """WalletAuthority backed by a CIP-30 bridge for one named provider."""

    def __init__(
        self,
        bridge_url: str,
        provider: str,
        network: str = "preprod",
        timeout: float = 330.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._bridge_url = bridge_url.rstrip("/")
        self._provider = provider
        self._network = network
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._ids = itertools.count(1)
        self._address: Optional[str] = None

    @property
    def provider_name(self) -> str:
        return self._provider

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def _call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        client = await self._get_client()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": {"wallet": self._provider, **(params or {})},
        }
        response = await client.post(self._bridge_url, json=payload)
        if response.status_code == 404:
            raise WalletUnavailable(
                f"Wallet provider '{self._provider}' is not available on the bridge",
                details={"provider": self._provider},
            )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as exc:
            raise Cip30BridgeError(
                method,
                {"type": "APIError", "code": API_ERROR_INTERNAL, "info": "Bridge returned a non-JSON response"},
            ) from exc
        if not isinstance(body, dict):
            raise Cip30BridgeError(
                method,
                {"type": "APIError", "code": API_ERROR_INTERNAL, "info": "Bridge response is not a JSON-RPC object"},
            )
        if body.get("error"):
            raise Cip30BridgeError(method, body["error"])
        return body.get("result")

    async def connect(self) -> str:
        try:
            await self._call("enable")
            network_id = await self._call("getNetworkId")
            address = await self._call("getChangeAddress")
        except Cip30BridgeError as exc:
            if exc.code == API_ERROR_REFUSED:
                raise AuthorizationDenied(exc.info, details={"provider": self._provider}) from exc
            raise WalletUnavailable(exc.info, details={"provider": self._provider}) from exc
        except httpx.HTTPError as exc:
            raise WalletUnavailable(f"Wallet bridge unreachable: {exc}") from exc

        expected = NETWORK_IDS.get(self._network)
        if expected is not None and network_id != expected:
            raise WalletUnavailable(
                f"Wallet is on network id {network_id}, expected {self._network}",
                details={"network_id": network_id, "expected": self._network},
            )
        if not address:
            raise WalletUnavailable("Wallet returned no address")

        self._address = str(address)
        logger.info(f"Wallet '{self._provider}' connected: {mask(self._address)}")
        return self._address

    async def current_address(self) -> str:
        if self._address is None:
            raise NotConnected(f"Wallet '{self._provider}' not connected")
        return self._address

    async def deserialize(self, tx: UnsignedTransaction) -> TxHandle:
        if self._address is None:
            raise NotConnected(f"Wallet '{self._provider}' not connected")
        # UnsignedTransaction already guarantees non-empty hex; structure is validated by signTx.
        return TxHandle(unsigned=tx, network=self._network)

    async def sign(self, handle: TxHandle) -> SignedTransaction:
        if self._address is None:
            raise NotConnected(f"Wallet '{self._provider}' not connected")
        try:
            signed_hex = await self._call(
                "signTx",
                {"tx": handle.unsigned.cbor_hex, "partialSign": True},
            )
        except Cip30BridgeError as exc:
            raise self._map_sign_error(exc) from exc
        except httpx.HTTPError as exc:
            raise SigningFailed(f"Wallet bridge error during signing: {exc}") from exc
        if not signed_hex:
            raise SigningFailed("Wallet returned an empty signed transaction")
        return SignedTransaction(cbor_hex=str(signed_hex), source_digest=handle.source_digest)

    async def broadcast(self, tx: SignedTransaction) -> TxHash:
        if self._address is None:
            raise NotConnected(f"Wallet '{self._provider}' not connected")
        try:
            tx_hash = await self._call("submitTx", {"tx": tx.cbor_hex})
        except Cip30BridgeError as exc:
            raise self._map_send_error(exc) from exc
        except httpx.HTTPError as exc:
            raise NetworkUnavailable(f"Wallet bridge unreachable: {exc}") from exc
        return str(tx_hash)

    def _map_sign_error(self, exc: Cip30BridgeError) -> IssuanceError:
        details = {"code": exc.code, "type": exc.type}
        if exc.type == "TxSignError" and exc.code == TX_SIGN_USER_DECLINED:
            return SigningRejected(exc.info, details=details)
        if exc.type == "TxSignError" and exc.code == TX_SIGN_PROOF_GENERATION:
            return SigningFailed(exc.info, details=details)
        if exc.type == "APIError" and exc.code == API_ERROR_INVALID_REQUEST:
            return MalformedTransaction(exc.info, details=details)
        if exc.type == "APIError" and exc.code == API_ERROR_REFUSED:
            return SigningRejected(exc.info, details=details)
        if exc.type == "APIError" and exc.code == API_ERROR_ACCOUNT_CHANGE:
            self._address = None
            return NotConnected("Wallet account changed; reconnect required", details=details)
        return SigningFailed(exc.info, details=details)

    def _map_send_error(self, exc: Cip30BridgeError) -> IssuanceError:
        details = {"code": exc.code, "type": exc.type}
        if exc.type == "TxSendError" and exc.code == TX_SEND_REFUSED:
            return SubmissionRejected(exc.info, details=details)
        if exc.type == "TxSendError" and exc.code == TX_SEND_FAILURE:
            # Wallet could not reach its node; identical bytes may be resubmitted.
            return NetworkUnavailable(exc.info, details=details)
        if exc.type == "APIError" and exc.code in (API_ERROR_REFUSED, API_ERROR_INVALID_REQUEST):
            return SubmissionRejected(exc.info, details=details)
        if exc.type == "APIError" and exc.code == API_ERROR_ACCOUNT_CHANGE:
            self._address = None
            return NotConnected("Wallet account changed; reconnect required", details=details)
        return NetworkUnavailable(exc.info, details=details)

    async def close(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None
