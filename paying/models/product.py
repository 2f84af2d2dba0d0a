"""Product definitions and ledger configuration models.

Models from the paying.yaml configuration.
"""

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from paying.utils.durations import parse_duration, validate_duration


class ProductType(str, Enum):
    """Kind of product a transaction is charged for."""

    SUBSCRIPTION = "subscription"  # Recurring, tracked by an original transaction
    PURCHASE = "purchase"  # One-time charge


class ProductDefinition(BaseModel):
    """Product or subscription definition.

    Provider-specific fields (price, subject, billing unit, ...) are kept as
    extra attributes and are only interpreted by the owning service.
    """

    id: str = Field(..., description="Product ID")
    type: ProductType = Field(default=ProductType.SUBSCRIPTION, description="Product type")
    group: Optional[str] = Field(
        None, description="Product group; only one lineage per user may be active in a group"
    )
    duration: Optional[str] = Field(None, description="ISO 8601 duration (e.g., P1M, P1Y, P30D)")

    @field_validator("duration")
    @classmethod
    def _validate_duration(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not validate_duration(value):
            raise ValueError(f"Invalid duration: {value!r}")
        return value

    @property
    def duration_millis(self) -> Optional[int]:
        """Duration in milliseconds, None for products without a duration."""
        if self.duration is None:
            return None
        return parse_duration(self.duration)

    @property
    def identifier(self) -> str:
        """Entitlement identifier: the product group, or the id when ungrouped."""
        return self.group or self.id

    class Config:
        extra = "allow"
        json_schema_extra = {
            "example": {
                "id": "membership.monthly",
                "type": "subscription",
                "group": "membership",
                "duration": "P1M",
            }
        }


class EngineConfig(BaseModel):
    """Orchestration engine settings."""

    purchase_expires_after: str = Field(
        default="PT10M", description="Payment deadline for prepared transactions (ISO 8601)"
    )
    renewal_before: str = Field(
        default="P5D", description="Lookahead window for recharging expiring subscriptions"
    )
    cancel_lineage_on_transaction_cancel: bool = Field(
        default=False,
        description="Cancel the original transaction when one of its charges is canceled remotely",
    )

    @field_validator("purchase_expires_after", "renewal_before")
    @classmethod
    def _validate_window(cls, value: str) -> str:
        if not validate_duration(value):
            raise ValueError(f"Invalid duration: {value!r}")
        return value

    @property
    def purchase_expires_after_millis(self) -> int:
        return parse_duration(self.purchase_expires_after)

    @property
    def renewal_before_millis(self) -> int:
        return parse_duration(self.renewal_before)


class RepositoryConfig(BaseModel):
    """Document store configuration."""

    backend: Literal["memory", "mongodb"] = Field(default="memory", description="Store backend")
    url: Optional[str] = Field(None, description="MongoDB connection URL")
    database: str = Field(default="paying", description="Database name")
    transaction_collection: str = Field(default="paying-transaction")
    original_transaction_collection: str = Field(default="paying-original-transaction")


class ServiceDefinition(BaseModel):
    """Payment service (provider adapter) registration."""

    adapter: str = Field(..., description="Import path of the adapter class, 'module:Class'")
    options: dict[str, Any] = Field(default_factory=dict, description="Adapter keyword arguments")


class PayingConfig(BaseModel):
    """Complete paying.yaml configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    services: dict[str, ServiceDefinition] = Field(default_factory=dict)
    products: list[ProductDefinition] = Field(default_factory=list, description="Product definitions")
