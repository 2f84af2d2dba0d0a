"""Action models - normalized provider events.

Every callback, poll result or recharge outcome a service reports is turned
into exactly one of these tagged models before the engine applies it.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from paying.models.product import ProductDefinition


class PaymentConfirmedAction(BaseModel):
    """Payment for a transaction was received."""

    type: Literal["payment-confirmed"] = "payment-confirmed"
    transaction_id: str = Field(..., description="Confirmed transaction")
    purchased_at: int = Field(..., description="Provider purchase time (Unix millis)")


class SubscribedAction(BaseModel):
    """Provider confirmed the recurring agreement."""

    type: Literal["subscribed"] = "subscribed"
    original_transaction_id: str
    subscribed_at: int
    extra: Any = Field(None, description="Provider state to keep in service_extra")
    auto_renewal_enabled: Optional[bool] = None


class SubscriptionRenewalAction(BaseModel):
    """A new billing cycle was charged."""

    type: Literal["subscription-renewal"] = "subscription-renewal"
    transaction_id: str
    original_transaction_id: str
    product: ProductDefinition
    purchased_at: int
    duration: int = Field(..., description="Cycle length in milliseconds")


class ChangeRenewalStatusAction(BaseModel):
    """User switched auto-renewal on or off."""

    type: Literal["change-renewal-status"] = "change-renewal-status"
    original_transaction_id: str
    renewal_enabled: bool


class ChangeRenewalInfoAction(BaseModel):
    """User changed the plan for the next cycle."""

    type: Literal["change-renewal-info"] = "change-renewal-info"
    original_transaction_id: str
    renewal_enabled: bool
    product_id: str
    auto_renew_product_id: str


class SubscriptionCanceledAction(BaseModel):
    """The recurring agreement is terminated."""

    type: Literal["subscription-canceled"] = "subscription-canceled"
    original_transaction_id: str
    canceled_at: int
    reason: Any = None


class RechargeFailedAction(BaseModel):
    """A renewal charge failed; the lineage stays as it is."""

    type: Literal["recharge-failed"] = "recharge-failed"
    original_transaction_id: str
    reason: Any = None
    failed_at: int


Action = Annotated[
    Union[
        PaymentConfirmedAction,
        SubscribedAction,
        SubscriptionRenewalAction,
        ChangeRenewalStatusAction,
        ChangeRenewalInfoAction,
        SubscriptionCanceledAction,
        RechargeFailedAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES = (
    PaymentConfirmedAction,
    SubscribedAction,
    SubscriptionRenewalAction,
    ChangeRenewalStatusAction,
    ChangeRenewalInfoAction,
    SubscriptionCanceledAction,
    RechargeFailedAction,
)

_action_adapter = TypeAdapter(Action)


def parse_action(data: dict[str, Any]) -> Action:
    """Validate a plain dict into the matching Action model.

    Raises:
        pydantic.ValidationError: If the tag is unknown or the payload is invalid
    """
    return _action_adapter.validate_python(data)
