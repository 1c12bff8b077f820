"""GraphQL adapter for the subscription service.

Speaks the two mutations the service exposes over plain HTTP POST:

- `initSubscriptionNFTCreate(input: SubscriptionDto!)`
- `acceptSubscriptionOffer(input: AcceptSubscriptionOfferInput!)`

Transport failures, timeouts, HTTP 5xx and 429 are retried with backoff and
then surface as ServiceUnavailable. GraphQL errors are mapped by their
`extensions.code`.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from subscription_issuance.credentials import CredentialProvider
from subscription_issuance.exceptions import (
    AlreadyAccepted,
    InvalidSubscription,
    IssuanceError,
    OfferExpired,
    ServiceUnavailable,
)
from subscription_issuance.models import AcceptanceResult, InitiateResult, SubscriptionTerms
from subscription_issuance.retry import RetryConfig, RetryExhausted, retry_async
from subscription_issuance.service.base import SubscriptionService
from subscription_issuance.transactions import SignedTransaction

logger = logging.getLogger(__name__)


INIT_SUBSCRIPTION_MUTATION = """
mutation initSubscriptionNFTCreate($input: SubscriptionDto!) {
  initSubscriptionNFTCreate(input: $input) {
    subscription {
      nftEntropyRef {
        input { outputIndex txHash }
        output {
          address
          amount { unit quantity }
          dataHash
          plutusData
          scriptRef
          scriptHash
        }
      }
      initialTerms {
        user
        backend
        platform { allowedVkhs requiredVkhsCount }
        platformFundsAddr {
          platformFundsAddr {
            ScriptCredential { hash }
            stakeCredential
          }
        }
        rewardAssetName { name policyid }
        timeAccuracy
        period
        periodicalAmount
        cashOutCooldown
        terminationCooldown
        personalInfo {
          nickname fullname profila email phone city
          mailing_address age gender languages
        }
        categories
        commissionRate
        purpose
      }
      initialAgreedPeriodsCount
      policyid
    }
    unSignedTx
  }
}
"""

ACCEPT_OFFER_MUTATION = """
mutation acceptSubscriptionOffer($input: AcceptSubscriptionOfferInput!) {
  acceptSubscriptionOffer(input: $input) {
    id
    offer { id name }
    isRejected
    isCancelled
    isCancelledByUser
    inReview
    transactionHash
    subscriptionStartedAt
    subscriptionEndsAt
    createdAt
    updatedAt
  }
}
"""

HEALTH_QUERY = "query HealthCheck { __typename }"

INVALID_SUBSCRIPTION_CODES = frozenset({"NOT_FOUND", "SUBSCRIPTION_ACTIVE", "BAD_USER_INPUT"})


class _TransientTransportError(Exception):
    """Internal marker for failures worth retrying at the transport level."""


class GraphQLSubscriptionService(SubscriptionService):
    """SubscriptionService over a GraphQL HTTP endpoint.

    Args:
        endpoint: GraphQL endpoint URL
        credentials: Provider for the bearer token (optional)
        timeout: Per-request timeout in seconds
        retry: Transport retry configuration
    """

    def __init__(
        self,
        endpoint: str,
        credentials: Optional[CredentialProvider] = None,
        timeout: float = 30.0,
        retry: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._credentials = credentials
        self._timeout = timeout
        # Only transport-level failures are retried, whatever the caller configured.
        self._retry = replace(
            retry or RetryConfig(max_retries=3),
            retryable_exceptions=(_TransientTransportError,),
        )
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": "subscription-issuance/0.1.0",
                },
            )
            self._owns_client = True
        return self._http_client

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._get_client()
        headers: Dict[str, str] = {}
        if self._credentials is not None:
            headers.update(await self._credentials.authorization_header())

        try:
            response = await client.post(self._endpoint, json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise _TransientTransportError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientTransportError(f"HTTP {response.status_code}")
        if response.status_code == 401:
            raise ServiceUnavailable(
                "Subscription service rejected the credentials",
                details={"auth": True, "status_code": 401},
            )
        if response.status_code >= 400:
            # GraphQL servers often return validation errors as 400 with an errors array.
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict) or not body.get("errors"):
                raise ServiceUnavailable(
                    f"Subscription service returned HTTP {response.status_code}",
                    details={"status_code": response.status_code},
                )
            return body

        try:
            body = response.json()
        except ValueError as exc:
            raise _TransientTransportError("Response body is not JSON") from exc
        if not isinstance(body, dict):
            raise _TransientTransportError(f"Response body is a JSON {type(body).__name__}, not an object")
        return body

    async def _execute(
        self,
        operation: str,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        subscription_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"query": query, "operationName": operation}
        if variables is not None:
            payload["variables"] = variables

        try:
            body = await retry_async(self._send, payload, config=self._retry)
        except RetryExhausted as exc:
            raise ServiceUnavailable(
                f"Subscription service unavailable for {operation}",
                details={
                    "attempts": exc.stats.attempts,
                    "cause": str(exc.original_exception),
                },
            ) from exc

        errors = body.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) else errors
            raise self._map_graphql_error(operation, first, subscription_id)

        data = body.get("data") or {}
        result = data.get(field or operation) if isinstance(data, dict) else None
        if result is None:
            raise ServiceUnavailable(f"Subscription service returned no data for {operation}")
        return result

    def _map_graphql_error(
        self,
        operation: str,
        error: Any,
        subscription_id: Optional[str],
    ) -> IssuanceError:
        if not isinstance(error, dict):
            error = {"message": str(error)}
        message = error.get("message", "Unknown GraphQL error")
        extensions = error.get("extensions")
        code = extensions.get("code", "") if isinstance(extensions, dict) else ""
        details = {"operation": operation, "code": code}
        logger.warning(f"GraphQL error in {operation}: [{code}] {message}")

        if code in INVALID_SUBSCRIPTION_CODES:
            return InvalidSubscription(subscription_id or "?", reason=message, details=details)
        if code == "OFFER_EXPIRED":
            return OfferExpired(message, details=details)
        if code == "ALREADY_ACCEPTED":
            return AlreadyAccepted(message, details=details)
        if code == "UNAUTHENTICATED":
            details["auth"] = True
        return ServiceUnavailable(message, details=details)

    async def initiate(self, user_vkh: str, subscription_id: str) -> InitiateResult:
        result = await self._execute(
            "initSubscriptionNFTCreate",
            INIT_SUBSCRIPTION_MUTATION,
            {"input": {"userVkh": user_vkh, "subscriptionId": subscription_id}},
            subscription_id=subscription_id,
        )
        try:
            return InitiateResult.model_validate(result)
        except ValidationError as exc:
            raise ServiceUnavailable(
                "Subscription service returned an unexpected initiate payload",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    async def finalize(
        self,
        subscription_id: str,
        signed_tx: SignedTransaction,
        user_vkh: str,
        terms: SubscriptionTerms,
    ) -> AcceptanceResult:
        result = await self._execute(
            "acceptSubscriptionOffer",
            ACCEPT_OFFER_MUTATION,
            {
                "input": {
                    "subscriptionOfferId": subscription_id,
                    "halfSignedTransaction": signed_tx.cbor_hex,
                    "userVkh": user_vkh,
                    "newSubscription": terms.to_variables(),
                }
            },
            subscription_id=subscription_id,
        )
        try:
            return AcceptanceResult.model_validate(result)
        except ValidationError as exc:
            raise ServiceUnavailable(
                "Subscription service returned an unexpected acceptance payload",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    async def health(self) -> bool:
        """Check the endpoint with a trivial query."""
        try:
            await self._execute("HealthCheck", HEALTH_QUERY, field="__typename")
        except ServiceUnavailable:
            return False
        return True

    async def close(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "GraphQLSubscriptionService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
