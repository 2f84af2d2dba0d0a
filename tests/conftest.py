"""Shared fixtures: in-memory ledger, frozen clock and a scripted payment service."""

from typing import Any, Optional

import pytest

from paying.models import (
    ApplyingReceipt,
    EngineConfig,
    OriginalTransactionDocument,
    PreparePurchaseResult,
    PrepareSubscriptionResult,
    ProductDefinition,
    Subscription,
    SubscriptionStatusResult,
    TransactionStatusResult,
)
from paying.repositories.document_store import InMemoryDocumentStore
from paying.repositories.ledger_repository import LedgerRepository
from paying.services.paying import Paying
from paying.services.paying_service import PayingService
from paying.services.time_controller import TimeController

NOW = 1_700_000_000_000


class FakePayingService(PayingService):
    """Payment service whose answers are scripted by the test."""

    def __init__(self, products: Optional[list[ProductDefinition]] = None, **options: Any):
        super().__init__(products)
        self.options = options

        self.transaction_statuses: dict[str, TransactionStatusResult] = {}
        self.subscription_statuses: dict[str, SubscriptionStatusResult] = {}
        self.recharge_results: dict[str, Any] = {}
        self.cancel_result = True
        self.errors: dict[str, Exception] = {}

        self.prepared_subscriptions: list[dict[str, Any]] = []
        self.prepared_purchases: list[dict[str, Any]] = []
        self.canceled: list[str] = []
        self.recharged: list[tuple[str, int]] = []
        self.created_subscriptions: list[str] = []
        self.created_purchases: list[str] = []

    def _raise_scripted(self, item_id: str) -> None:
        if item_id in self.errors:
            raise self.errors[item_id]

    def prepare_subscription_data(self, starts_at, product, payment_expires_at, user_id):
        self.prepared_subscriptions.append(
            {
                "starts_at": starts_at,
                "product": product.id,
                "payment_expires_at": payment_expires_at,
                "user_id": user_id,
            }
        )
        return PrepareSubscriptionResult(
            response={"pay_url": f"https://pay.example.com/{product.id}"},
            duration=product.duration_millis,
            transaction_id=self.generate_transaction_id(),
            original_transaction_id=self.generate_original_transaction_id(),
        )

    def prepare_purchase_data(self, product_id, payment_expires_at, user_id):
        self.prepared_purchases.append(
            {"product_id": product_id, "payment_expires_at": payment_expires_at, "user_id": user_id}
        )
        return PreparePurchaseResult(
            response={"pay_url": f"https://pay.example.com/{product_id}"},
            transaction_id=self.generate_transaction_id(),
            product=self.require_product(product_id),
        )

    def parse_callback(self, data):
        return data.get("action")

    def parse_receipt(self, data):
        return ApplyingReceipt.model_validate(data)

    def query_transaction_status(self, transaction_id):
        self._raise_scripted(transaction_id)
        return self.transaction_statuses.get(transaction_id, TransactionStatusResult(type="pending"))

    def query_subscription_status(self, original_transaction_id):
        self._raise_scripted(original_transaction_id)
        return self.subscription_statuses.get(
            original_transaction_id, SubscriptionStatusResult(type="pending")
        )

    def recharge_subscription(self, original_transaction: OriginalTransactionDocument, payment_expires_at):
        self._raise_scripted(original_transaction.id)
        self.recharged.append((original_transaction.id, payment_expires_at))
        return self.recharge_results.pop(original_transaction.id, None)

    def cancel_subscription(self, subscription: Subscription) -> bool:
        self.canceled.append(subscription.id)
        return self.cancel_result

    def did_create_subscription(self, subscription, transaction):
        self.created_subscriptions.append(subscription.id)

    def did_create_purchase(self, transaction):
        self.created_purchases.append(transaction.id)


@pytest.fixture
def monthly():
    return ProductDefinition(id="membership.monthly", type="subscription", group="membership", duration="P1M")


@pytest.fixture
def yearly():
    return ProductDefinition(id="membership.yearly", type="subscription", group="membership", duration="P1Y")


@pytest.fixture
def coins():
    return ProductDefinition(id="coins.100", type="purchase")


@pytest.fixture
def products(monthly, yearly, coins):
    return [monthly, yearly, coins]


@pytest.fixture
def clock():
    """Frozen clock starting at NOW."""
    return TimeController(start_time_millis=NOW)


@pytest.fixture
def store():
    store = InMemoryDocumentStore()
    yield store
    store.clear()


@pytest.fixture
def repository(store, clock):
    return LedgerRepository(store, clock=clock)


@pytest.fixture
def fake_service(products):
    return FakePayingService(products)


@pytest.fixture
def other_service(products):
    return FakePayingService(products)


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def paying(fake_service, other_service, repository, clock, engine_config):
    engine = Paying({"fake": fake_service, "other": other_service}, repository, engine_config)
    clock.attach(engine)
    return engine


@pytest.fixture
def now():
    return NOW
