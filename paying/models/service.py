"""Service exchange models - what provider adapters hand back to the engine."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from paying.models.product import ProductDefinition


class PrepareSubscriptionResult(BaseModel):
    """Provider payload for a new subscription."""

    response: Any = Field(None, description="Opaque payload handed to the client")
    duration: int = Field(..., description="First cycle length in milliseconds")
    transaction_id: str
    original_transaction_id: str


class PreparePurchaseResult(BaseModel):
    """Provider payload for a one-time purchase."""

    response: Any = Field(None, description="Opaque payload handed to the client")
    transaction_id: str
    product: Optional[ProductDefinition] = None


class TransactionStatusResult(BaseModel):
    """Remote status of a transaction."""

    type: Literal["success", "canceled", "pending"]
    purchased_at: Optional[int] = None
    canceled_at: Optional[int] = None
    reason: Any = None

    @model_validator(mode="after")
    def _check_payload(self) -> "TransactionStatusResult":
        if self.type == "success" and self.purchased_at is None:
            raise ValueError("success result requires purchased_at")
        if self.type == "canceled" and self.canceled_at is None:
            raise ValueError("canceled result requires canceled_at")
        return self


class SubscriptionStatusResult(BaseModel):
    """Remote status of a recurring agreement."""

    type: Literal["subscribed", "canceled", "pending"]
    subscribed_at: Optional[int] = None
    canceled_at: Optional[int] = None
    reason: Any = None
    extra: Any = None
    auto_renewal_enabled: Optional[bool] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "SubscriptionStatusResult":
        if self.type == "subscribed" and self.subscribed_at is None:
            raise ValueError("subscribed result requires subscribed_at")
        if self.type == "canceled" and self.canceled_at is None:
            raise ValueError("canceled result requires canceled_at")
        return self


class SubscriptionReceipt(BaseModel):
    """Latest subscription state read from a store receipt."""

    original_transaction_id: str
    transaction_id: str
    purchased_at: int
    expires_at: int
    subscribed_at: int
    product: ProductDefinition
    auto_renewal: bool = False
    auto_renewal_product: Optional[ProductDefinition] = None


class PurchaseReceipt(BaseModel):
    """One-time purchase read from a store receipt."""

    product: ProductDefinition
    transaction_id: str
    purchased_at: int
    quantity: int = 1


class ApplyingReceipt(BaseModel):
    """Everything a receipt asks the ledger to reconcile."""

    subscription: Optional[SubscriptionReceipt] = None
    purchase: list[PurchaseReceipt] = Field(default_factory=list)
