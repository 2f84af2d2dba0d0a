"""Payment service base class.

A payment service adapts one provider (store, payment gateway) to the
ledger. It never writes the ledger itself: it prepares provider payloads,
answers status queries and translates provider events into Actions that
the engine applies.

Subclasses must implement:
- prepare_subscription_data() / prepare_purchase_data()
- parse_callback() / parse_receipt()
- query_transaction_status() / query_subscription_status()
- recharge_subscription() / cancel_subscription()

Optional overrides:
- generate_transaction_id() / generate_original_transaction_id()
- did_create_subscription() / did_create_purchase() hooks
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from paying.models import (
    Action,
    ApplyingReceipt,
    OriginalTransactionDocument,
    PreparePurchaseResult,
    PrepareSubscriptionResult,
    ProductDefinition,
    Subscription,
    SubscriptionStatusResult,
    TransactionDocument,
    TransactionStatusResult,
)
from paying.utils.ids import generate_original_transaction_id, generate_transaction_id


class ProductNotFoundError(Exception):
    """Raised when a service does not offer a product."""

    pass


# Adapters may hand back Action models or plain dicts; the engine validates both
ActionLike = Union[Action, dict[str, Any]]


class PayingService(ABC):
    """Abstract base class for payment services.

    Args:
        products: Products this service sells
    """

    def __init__(self, products: Optional[list[ProductDefinition]] = None):
        self.products = list(products or [])
        self._product_map: dict[str, ProductDefinition] = {
            product.id: product for product in self.products
        }

    def require_product(self, product_id: str) -> ProductDefinition:
        """Get a product offered by this service.

        Raises:
            ProductNotFoundError: If the product is unknown
        """
        product = self._product_map.get(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return product

    def generate_transaction_id(self) -> str:
        return generate_transaction_id()

    def generate_original_transaction_id(self) -> str:
        return generate_original_transaction_id()

    @abstractmethod
    def prepare_subscription_data(
        self,
        starts_at: int,
        product: ProductDefinition,
        payment_expires_at: int,
        user_id: str,
    ) -> PrepareSubscriptionResult:
        """Create the provider side of a new subscription.

        Args:
            starts_at: Start of the first paid window (Unix millis)
            product: Subscription product
            payment_expires_at: Deadline for the first payment
            user_id: Subscribing user

        Returns:
            Client payload plus the ids and first-cycle duration to record
        """

    @abstractmethod
    def prepare_purchase_data(
        self,
        product_id: str,
        payment_expires_at: int,
        user_id: str,
    ) -> PreparePurchaseResult:
        """Create the provider side of a one-time purchase."""

    @abstractmethod
    def parse_callback(self, data: Any) -> Optional[ActionLike]:
        """Translate a provider callback into an Action.

        Returns None for callbacks the ledger does not care about.
        """

    @abstractmethod
    def parse_receipt(self, data: Any) -> ApplyingReceipt:
        """Read the purchases and subscription state a receipt proves."""

    @abstractmethod
    def query_transaction_status(self, transaction_id: str) -> TransactionStatusResult:
        """Ask the provider whether a pending transaction was paid."""

    @abstractmethod
    def query_subscription_status(self, original_transaction_id: str) -> SubscriptionStatusResult:
        """Ask the provider whether a recurring agreement was signed."""

    @abstractmethod
    def recharge_subscription(
        self,
        original_transaction: OriginalTransactionDocument,
        payment_expires_at: int,
    ) -> Optional[ActionLike]:
        """Charge the next cycle of a lineage.

        Returns:
            The outcome as an Action (typically ``subscription-renewal`` or
            ``recharge-failed``), or None when there is nothing to record yet
        """

    @abstractmethod
    def cancel_subscription(self, subscription: Subscription) -> bool:
        """Terminate the recurring agreement at the provider.

        Returns:
            True if the provider confirmed the cancellation
        """

    def did_create_subscription(
        self, subscription: Subscription, transaction: TransactionDocument
    ) -> None:
        """Called after a prepared subscription is persisted."""

    def did_create_purchase(self, transaction: TransactionDocument) -> None:
        """Called after a prepared purchase is persisted."""
