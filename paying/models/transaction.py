"""Transaction models - a single charge attempt.

Status is derived from the completion markers, never stored.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from paying.models.product import ProductType

TransactionType = ProductType


class TransactionStatus(str, Enum):
    """Derived transaction status."""

    PENDING = "pending"  # Waiting for payment
    COMPLETED = "completed"  # Payment confirmed
    CANCELED = "canceled"  # Canceled or expired without payment
    FAILED = "failed"  # Charge failed


class TransactionDocument(BaseModel):
    """Ledger record for one charge (purchase or one subscription cycle)."""

    id: str = Field(..., alias="_id", description="Transaction ID")
    product: str = Field(..., description="Product ID")
    product_group: Optional[str] = Field(None, description="Product group")
    user: str = Field(..., description="Owning user ID")
    service: str = Field(..., description="Service (provider) name")
    type: TransactionType = Field(..., description="purchase or subscription")

    # Timestamps (Unix millis)
    created_at: int = Field(..., description="When the transaction was prepared")
    purchased_at: Optional[int] = Field(None, description="Provider-reported purchase time")
    completed_at: Optional[int] = Field(None, description="When payment was confirmed")
    canceled_at: Optional[int] = Field(None, description="When the transaction was canceled")
    cancel_reason: Any = Field(None, description="Cancellation reason")
    payment_expires_at: Optional[int] = Field(None, description="Payment deadline")
    failed_at: Optional[int] = Field(None, description="When the charge failed")

    raw: Any = Field(None, description="Raw provider payload")

    # Subscription cycle
    original_transaction_id: Optional[str] = Field(None, description="Parent original transaction")
    starts_at: Optional[int] = Field(None, description="Cycle start (Unix millis)")
    duration: Optional[int] = Field(None, description="Cycle length in milliseconds")

    @model_validator(mode="after")
    def _check_invariants(self) -> "TransactionDocument":
        if self.type == TransactionType.SUBSCRIPTION and (
            self.original_transaction_id is None or self.starts_at is None or self.duration is None
        ):
            raise ValueError(
                f"Subscription transaction {self.id} requires original_transaction_id, starts_at and duration"
            )

        markers = [self.completed_at, self.canceled_at, self.failed_at]
        if sum(1 for marker in markers if marker is not None) > 1:
            raise ValueError(
                f"Transaction {self.id} can only be one of completed, canceled or failed"
            )
        return self

    @property
    def status(self) -> TransactionStatus:
        if self.canceled_at is not None:
            return TransactionStatus.CANCELED
        if self.completed_at is not None:
            return TransactionStatus.COMPLETED
        if self.failed_at is not None:
            return TransactionStatus.FAILED
        return TransactionStatus.PENDING

    @property
    def is_subscription(self) -> bool:
        return self.type == TransactionType.SUBSCRIPTION

    @property
    def expires_at(self) -> Optional[int]:
        """End of the cycle this transaction pays for (subscription only)."""
        if self.starts_at is None or self.duration is None:
            return None
        return self.starts_at + self.duration

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store (explicit None for unset fields)."""
        return self.model_dump(by_alias=True, mode="json")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "_id": "8f14e45fceea167a5a36dedd4bea2543",
                "product": "membership.monthly",
                "product_group": "membership",
                "user": "user-123",
                "service": "alipay",
                "type": "subscription",
                "created_at": 1700000000000,
                "payment_expires_at": 1700000600000,
                "original_transaction_id": "c9f0f895fb98ab9159f51fd0297e236d",
                "starts_at": 1700000000000,
                "duration": 2592000000,
            }
        }
