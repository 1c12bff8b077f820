"""
Pytest configuration and fixtures for subscription issuance tests.
"""
from __future__ import annotations

import copy

import pytest

from subscription_issuance.config import IssuanceSettings, load_settings
from subscription_issuance.orchestrator import IssuanceOrchestrator
from subscription_issuance.service import InMemorySubscriptionService
from subscription_issuance.wallet import SimulatedLedger, SimulatedWallet


@pytest.fixture(autouse=True)
def clear_settings_cache(monkeypatch):
    """Keep the process environment out of the tests."""
    for name in ("SUBSCRIPTION_ENVIRONMENT", "SUBSCRIPTION_SERVICE_TOKEN", "SUBSCRIPTION_GRAPHQL_URL"):
        monkeypatch.delenv(name, raising=False)
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


@pytest.fixture
def settings():
    """Short timeouts so failure paths finish quickly."""
    return IssuanceSettings(
        connect_timeout_seconds=1.0,
        signing_timeout_seconds=1.0,
        broadcast_timeout_seconds=1.0,
        service_timeout_seconds=1.0,
        confirmation_timeout_seconds=0.5,
        confirmation_poll_interval_seconds=0.01,
        log_json=False,
    )


@pytest.fixture
def ledger():
    return SimulatedLedger(network="preprod", auto_confirm=True)


@pytest.fixture
def wallet(ledger):
    return SimulatedWallet(ledger, address="addr_test1qz0x9user0wallet0address0for0tests0x")


@pytest.fixture
def service(ledger):
    service = InMemorySubscriptionService(ledger)
    service.add_offer("sub-1", name="Monthly data sharing")
    service.add_offer("sub-2", name="Yearly data sharing", agreed_periods=12)
    return service


@pytest.fixture
def orchestrator(wallet, service, ledger, settings):
    return IssuanceOrchestrator(wallet=wallet, service=service, confirmations=ledger, settings=settings)


@pytest.fixture
async def connected(orchestrator):
    await orchestrator.connect()
    return orchestrator


@pytest.fixture
async def initiated(connected):
    await connected.initiate("sub-1")
    return connected


@pytest.fixture
async def signed(initiated):
    await initiated.sign()
    return initiated


@pytest.fixture
async def accepted(signed):
    await signed.finalize()
    return signed


_INITIATE_PAYLOAD = {
    "subscription": {
        "__typename": "Subscription",
        "nftEntropyRef": {
            "input": {"txHash": "ab" * 32, "outputIndex": 1, "__typename": "TxInput"},
            "output": {
                "address": "addr_test1backend",
                "amount": [{"unit": "lovelace", "quantity": "2000000"}],
                "dataHash": None,
            },
        },
        "initialTerms": {
            "user": "vkh_user",
            "backend": "addr_test1backend",
            "platform": {"allowedVkhs": ["vkh_platform"], "requiredVkhsCount": 1},
            "platformFundsAddr": {"platformFundsAddr": {"ScriptCredential": {"hash": "cafe"}}},
            "rewardAssetName": {"name": "PROFILA", "policyid": "p1"},
            "timeAccuracy": 60,
            "period": 2592000,
            "periodicalAmount": 5000000,
            "cashOutCooldown": 86400,
            "terminationCooldown": 604800,
            "personalInfo": {"nickname": "ada", "email": "ada@example.com"},
            "categories": ["music"],
            "commissionRate": 0.05,
            "purpose": "data sharing",
            "futureField": "ignored",
        },
        "initialAgreedPeriodsCount": 3,
        "policyid": "p1",
    },
    "unSignedTx": "84a400",
}


@pytest.fixture
def initiate_payload():
    """initSubscriptionNFTCreate result as the service returns it."""
    return copy.deepcopy(_INITIATE_PAYLOAD)
