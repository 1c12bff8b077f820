"""Wire models exchanged with the subscription service.

Field names follow the service's GraphQL schema (camelCase aliases);
Python attributes are snake_case. Unknown fields are ignored so schema
additions on the service side do not break the client.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IssuanceModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to a wire dictionary (camelCase keys)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls.model_validate(data)


class FrozenIssuanceModel(IssuanceModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# ==================== Entropy reference ====================

class TxInputRef(FrozenIssuanceModel):
    """Ledger input (transaction hash + output index)."""
    tx_hash: str = Field(alias="txHash")
    output_index: int = Field(alias="outputIndex")

    @property
    def outref(self) -> str:
        return f"{self.tx_hash}#{self.output_index}"


class AssetAmount(FrozenIssuanceModel):
    unit: str
    quantity: str


class TxOutputRef(FrozenIssuanceModel):
    """Output spent by the entropy input, with its script attachments."""
    address: str
    amount: tuple[AssetAmount, ...] = ()
    data_hash: Optional[str] = Field(default=None, alias="dataHash")
    plutus_data: Optional[str] = Field(default=None, alias="plutusData")
    script_ref: Optional[str] = Field(default=None, alias="scriptRef")
    script_hash: Optional[str] = Field(default=None, alias="scriptHash")


class NftEntropyRef(FrozenIssuanceModel):
    """Input/output pair whose consumption makes the minted token unique."""
    input: TxInputRef
    output: TxOutputRef


# ==================== Terms ====================

class PlatformPolicy(FrozenIssuanceModel):
    allowed_vkhs: tuple[str, ...] = Field(default=(), alias="allowedVkhs")
    required_vkhs_count: int = Field(default=0, alias="requiredVkhsCount")


class RewardAsset(FrozenIssuanceModel):
    name: str
    policyid: str


class PersonalInfo(FrozenIssuanceModel):
    nickname: Optional[str] = None
    fullname: Optional[str] = None
    profila: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city: Optional[str] = None
    mailing_address: Optional[str] = None
    age: Optional[str] = None
    gender: Optional[str] = None
    languages: Optional[str] = None


class InitialTerms(FrozenIssuanceModel):
    """Agreement parameters as proposed by the service."""
    user: str
    backend: str
    platform: PlatformPolicy = Field(default_factory=PlatformPolicy)
    # Address credential structure is service-defined; carried through untouched.
    platform_funds_addr: Optional[dict[str, Any]] = Field(default=None, alias="platformFundsAddr")
    reward_asset_name: Optional[RewardAsset] = Field(default=None, alias="rewardAssetName")
    time_accuracy: Optional[int] = Field(default=None, alias="timeAccuracy")
    period: Optional[int] = None
    periodical_amount: Optional[int] = Field(default=None, alias="periodicalAmount")
    cash_out_cooldown: Optional[int] = Field(default=None, alias="cashOutCooldown")
    termination_cooldown: Optional[int] = Field(default=None, alias="terminationCooldown")
    personal_info: Optional[PersonalInfo] = Field(default=None, alias="personalInfo")
    categories: tuple[str, ...] = ()
    commission_rate: Optional[float] = Field(default=None, alias="commissionRate")
    purpose: Optional[str] = None


class SubscriptionTerms(FrozenIssuanceModel):
    """Immutable agreement to be minted.

    Produced by the service at initiate and sent back unchanged at finalize.
    """
    nft_entropy_ref: NftEntropyRef = Field(alias="nftEntropyRef")
    initial_terms: InitialTerms = Field(alias="initialTerms")
    initial_agreed_periods_count: int = Field(default=1, alias="initialAgreedPeriodsCount")
    policyid: str = ""

    def to_variables(self) -> dict[str, Any]:
        """Payload for the `newSubscription` argument of finalize."""
        return strip_typename(self.to_dict())


class InitiateResult(FrozenIssuanceModel):
    """Output of the initiate mutation."""
    subscription: SubscriptionTerms
    unsigned_tx: str = Field(alias="unSignedTx")


# ==================== Acceptance ====================

class OfferRef(FrozenIssuanceModel):
    id: str
    name: Optional[str] = None


class AcceptanceResult(FrozenIssuanceModel):
    """Service record of an accepted subscription offer. Read-only."""
    id: str
    offer: Optional[OfferRef] = None
    is_rejected: bool = Field(default=False, alias="isRejected")
    is_cancelled: bool = Field(default=False, alias="isCancelled")
    is_cancelled_by_user: bool = Field(default=False, alias="isCancelledByUser")
    in_review: bool = Field(default=False, alias="inReview")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    subscription_started_at: Optional[datetime] = Field(default=None, alias="subscriptionStartedAt")
    subscription_ends_at: Optional[datetime] = Field(default=None, alias="subscriptionEndsAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @property
    def accepted(self) -> bool:
        return not (self.is_rejected or self.is_cancelled or self.is_cancelled_by_user)


def strip_typename(value: Any) -> Any:
    """Drop GraphQL `__typename` keys recursively."""
    if isinstance(value, dict):
        return {k: strip_typename(v) for k, v in value.items() if k != "__typename"}
    if isinstance(value, (list, tuple)):
        return [strip_typename(v) for v in value]
    return value
