"""Original transaction models - the subscription lineage record.

One record per subscription agreement; it survives across renewals and
carries the entitlement window.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class SubscriptionStatus(str, Enum):
    """Derived lineage status."""

    PENDING = "pending"  # Prepared, no confirmed payment yet
    NOT_STARTED = "not-started"  # Paid, window starts in the future
    ACTIVE = "active"  # Inside the paid window
    EXPIRED = "expired"  # Window is over
    CANCELED = "canceled"  # Terminal


class OriginalTransactionDocument(BaseModel):
    """Ledger record for a subscription lineage."""

    id: str = Field(..., alias="_id", description="Original transaction ID")
    product: str = Field(..., description="Current product ID")
    renewal_product: str = Field(..., description="Product ID for the next cycle")
    product_group: Optional[str] = Field(None, description="Product group")
    user: str = Field(..., description="Owning user ID")
    service: str = Field(..., description="Service (provider) name")

    # Timestamps (Unix millis); starts_at/expires_at stay unset until the first payment
    created_at: int = Field(..., description="When the lineage was created")
    starts_at: Optional[int] = Field(None, description="Entitlement window start")
    expires_at: Optional[int] = Field(None, description="Entitlement window end")
    subscribed_at: Optional[int] = Field(None, description="Provider confirmed the recurring agreement")
    canceled_at: Optional[int] = Field(None, description="When the lineage was canceled")
    cancel_reason: Any = Field(None, description="Cancellation reason")

    renewal_enabled: bool = Field(default=False, description="Whether the lineage auto-renews")
    last_failed_reason: Any = Field(None, description="Reason of the last failed recharge")
    last_failed_at: Optional[int] = Field(None, description="Time of the last failed recharge")

    service_extra: Any = Field(None, description="Opaque provider state (e.g., agreement number)")

    @model_validator(mode="after")
    def _check_window(self) -> "OriginalTransactionDocument":
        if (self.starts_at is None) != (self.expires_at is None):
            raise ValueError(
                f"Original transaction {self.id} must set starts_at and expires_at together"
            )
        if self.starts_at is not None and self.expires_at < self.starts_at:
            raise ValueError(f"Original transaction {self.id} expires before it starts")
        return self

    def get_status(self, now_millis: int) -> SubscriptionStatus:
        """Derive the lineage status at the given time.

        Args:
            now_millis: Current time (Unix millis)
        """
        if self.canceled_at is not None:
            return SubscriptionStatus.CANCELED
        if self.starts_at is None or self.expires_at is None:
            return SubscriptionStatus.PENDING
        if self.expires_at < now_millis:
            return SubscriptionStatus.EXPIRED
        if self.starts_at > now_millis:
            return SubscriptionStatus.NOT_STARTED
        return SubscriptionStatus.ACTIVE

    @property
    def identifier(self) -> str:
        """Entitlement identifier: the product group, or the product when ungrouped."""
        return self.product_group or self.product

    def to_document(self) -> dict[str, Any]:
        """Serialize for the document store (explicit None for unset fields)."""
        return self.model_dump(by_alias=True, mode="json")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "_id": "c9f0f895fb98ab9159f51fd0297e236d",
                "product": "membership.monthly",
                "renewal_product": "membership.monthly",
                "product_group": "membership",
                "user": "user-123",
                "service": "alipay",
                "created_at": 1700000000000,
                "starts_at": 1700000000000,
                "expires_at": 1702592000000,
                "subscribed_at": 1700000004000,
                "renewal_enabled": True,
            }
        }
