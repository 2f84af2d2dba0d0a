"""Tests for preparation, cancellation, callbacks and receipts."""

import threading
from unittest.mock import patch

import pytest

from paying.models import (
    ApplyingReceipt,
    PaymentConfirmedAction,
    ProductDefinition,
    PurchaseReceipt,
    SubscriptionReceipt,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from paying.repositories.ledger_repository import OriginalTransactionNotFoundError
from paying.services.paying import (
    PREPARE_LOCK_STRIPES,
    ConsistencyError,
    PreparedPurchase,
    PreparedSubscription,
    ServiceMismatchError,
    SubscriptionError,
    UnknownServiceError,
)
from paying.services.paying_service import ProductNotFoundError
from paying.utils.durations import MILLIS_PER_DAY, MILLIS_PER_MINUTE

DAY = MILLIS_PER_DAY


def confirm(paying, prepared, purchased_at):
    paying.apply_action(
        prepared.subscription.service,
        PaymentConfirmedAction(
            transaction_id=prepared.subscription.transactions[0].id, purchased_at=purchased_at
        ),
    )


class TestPrepareSubscription:
    def test_persists_pending_lineage_and_transaction(self, paying, fake_service, repository, monthly, now):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")

        assert isinstance(prepared, PreparedSubscription)
        assert prepared.response == {"pay_url": "https://pay.example.com/membership.monthly"}

        subscription = prepared.subscription
        assert subscription.status == SubscriptionStatus.PENDING
        assert subscription.renewal_enabled is False
        assert subscription.original_transaction.renewal_product == "membership.monthly"
        assert subscription.starts_at is None

        [transaction] = subscription.transactions
        assert transaction.type == TransactionType.SUBSCRIPTION
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.starts_at == now
        assert transaction.duration == 30 * DAY
        assert transaction.payment_expires_at == now + 10 * MILLIS_PER_MINUTE

        assert fake_service.prepared_subscriptions == [
            {
                "starts_at": now,
                "product": "membership.monthly",
                "payment_expires_at": now + 10 * MILLIS_PER_MINUTE,
                "user_id": "user-1",
            }
        ]
        assert fake_service.created_subscriptions == [subscription.id]

    def test_product_id_is_resolved(self, paying):
        prepared = paying.prepare_subscription("fake", "membership.yearly", "user-1")
        assert prepared.subscription.product == "membership.yearly"

    def test_unknown_product(self, paying):
        with pytest.raises(ProductNotFoundError):
            paying.prepare_subscription("fake", "membership.weekly", "user-1")

    def test_unknown_service(self, paying, monthly):
        with pytest.raises(UnknownServiceError):
            paying.prepare_subscription("nope", monthly, "user-1")

    def test_purchase_product_rejected(self, paying, coins):
        with pytest.raises(SubscriptionError):
            paying.prepare_subscription("fake", coins, "user-1")

    def test_replaces_lineage_in_group(self, paying, fake_service, repository, monthly, yearly, now):
        first = paying.prepare_subscription("fake", monthly, "user-1")
        confirm(paying, first, now)

        second = paying.prepare_subscription("fake", yearly, "user-1")

        assert fake_service.canceled == [first.subscription.id]
        assert first.subscription.refresh().status == SubscriptionStatus.CANCELED
        assert second.subscription.transactions[0].starts_at == now + 30 * DAY

    def test_replaces_lineage_through_its_own_service(self, paying, fake_service, other_service, monthly, yearly, now):
        first = paying.prepare_subscription("other", monthly, "user-1")
        confirm(paying, first, now)

        paying.prepare_subscription("fake", yearly, "user-1")

        assert other_service.canceled == [first.subscription.id]
        assert fake_service.canceled == []

    def test_unpaid_previous_lineage_starts_now(self, paying, monthly, yearly, now):
        paying.prepare_subscription("fake", monthly, "user-1")
        second = paying.prepare_subscription("fake", yearly, "user-1")
        assert second.subscription.transactions[0].starts_at == now

    def test_refused_cancel_creates_nothing(self, paying, fake_service, repository, monthly, yearly):
        first = paying.prepare_subscription("fake", monthly, "user-1")
        fake_service.cancel_result = False

        with pytest.raises(SubscriptionError):
            paying.prepare_subscription("fake", yearly, "user-1")

        user = repository.get_user("user-1")
        assert [s.id for s in user.subscriptions] == [first.subscription.id]
        assert len(fake_service.prepared_subscriptions) == 1

    def test_ungrouped_product_keeps_other_lineages(self, paying, fake_service, now):
        addon = ProductDefinition(id="addon", duration="P1M")

        paying.prepare_subscription("fake", addon, "user-1")
        paying.prepare_subscription("fake", addon, "user-1")

        assert fake_service.canceled == []

    def test_concurrent_prepares_cancel_each_other(self, paying, fake_service, repository, monthly):
        barrier = threading.Barrier(4)
        errors = []

        def prepare():
            barrier.wait()
            try:
                paying.prepare_subscription("fake", monthly, "user-1")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=prepare) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        subscriptions = repository.get_user("user-1").subscriptions
        assert len(subscriptions) == 4
        assert sum(1 for s in subscriptions if s.canceled_at is None) == 1

    def test_prepare_locks_do_not_grow(self, paying, monthly):
        lock = paying._prepare_lock("user-1", "membership")
        for index in range(100):
            paying.prepare_subscription("fake", monthly, f"user-{index}")

        assert paying._prepare_lock("user-1", "membership") is lock
        assert len(paying._prepare_locks) == PREPARE_LOCK_STRIPES


class TestPreparePurchase:
    def test_persists_pending_purchase(self, paying, fake_service, repository, now):
        prepared = paying.prepare_purchase("fake", "coins.100", "user-1")

        assert isinstance(prepared, PreparedPurchase)
        transaction = repository.require_transaction("fake", prepared.transaction.id)
        assert transaction.type == TransactionType.PURCHASE
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.payment_expires_at == now + 10 * MILLIS_PER_MINUTE
        assert transaction.original_transaction_id is None
        assert fake_service.created_purchases == [transaction.id]


class TestCancelSubscription:
    def test_cancel_by_id(self, paying, repository, monthly, now):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")

        assert paying.cancel_subscription("fake", prepared.subscription.id) is True

        lineage = repository.require_original_transaction("fake", prepared.subscription.id)
        assert lineage.canceled_at == now
        assert lineage.renewal_enabled is False

    def test_already_canceled_skips_service(self, paying, fake_service, monthly):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")
        paying.cancel_subscription("fake", prepared.subscription)

        assert paying.cancel_subscription("fake", prepared.subscription) is True
        assert fake_service.canceled == [prepared.subscription.id]

    def test_refused_leaves_ledger_unchanged(self, paying, fake_service, repository, monthly):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")
        before = repository.require_original_transaction("fake", prepared.subscription.id)
        fake_service.cancel_result = False

        assert paying.cancel_subscription("fake", prepared.subscription) is False
        assert repository.require_original_transaction("fake", prepared.subscription.id) == before

    def test_missing_subscription(self, paying):
        with pytest.raises(OriginalTransactionNotFoundError):
            paying.cancel_subscription("fake", "ot-404")

    def test_subscription_of_another_service(self, paying, fake_service, other_service, repository, monthly):
        prepared = paying.prepare_subscription("other", monthly, "user-1")

        with pytest.raises(ServiceMismatchError, match="'other'"):
            paying.cancel_subscription("fake", prepared.subscription)

        assert fake_service.canceled == []
        assert other_service.canceled == []
        assert repository.require_original_transaction("other", prepared.subscription.id).canceled_at is None

    def test_lost_write_is_detected(self, paying, monthly):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")

        with patch.object(paying, "_apply_subscription_canceled"):
            with pytest.raises(ConsistencyError):
                paying.cancel_subscription("fake", prepared.subscription)


class TestHandleCallback:
    def test_applies_action_and_stores_raw(self, paying, repository, monthly, now):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")
        transaction_id = prepared.subscription.transactions[0].id
        data = {
            "action": {"type": "payment-confirmed", "transaction_id": transaction_id, "purchased_at": now},
            "sign": "abc",
        }

        action = paying.handle_callback("fake", data)

        assert isinstance(action, PaymentConfirmedAction)
        transaction = repository.require_transaction("fake", transaction_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.raw == data

    def test_nothing_to_apply(self, paying):
        assert paying.handle_callback("fake", {"notify_type": "trade_closed"}) is None


@pytest.fixture
def subscription_receipt(monthly, yearly, now):
    return ApplyingReceipt(
        subscription=SubscriptionReceipt(
            original_transaction_id="apple-ot-1",
            transaction_id="apple-tx-1",
            purchased_at=now - DAY,
            expires_at=now + 29 * DAY,
            subscribed_at=now - DAY,
            product=monthly,
            auto_renewal=True,
            auto_renewal_product=yearly,
        ),
        purchase=[
            PurchaseReceipt(product=ProductDefinition(id="coins.100", type="purchase"), transaction_id="apple-tx-2", purchased_at=now - 2 * DAY),
        ],
    )


class TestHandleReceipt:
    def test_creates_ledger_entries(self, paying, repository, subscription_receipt, now):
        paying.handle_receipt("fake", "user-1", subscription_receipt.model_dump())

        lineage = repository.require_original_transaction("fake", "apple-ot-1")
        assert lineage.user == "user-1"
        assert lineage.subscribed_at == now - DAY
        assert lineage.renewal_enabled is True
        assert lineage.renewal_product == "membership.yearly"
        assert lineage.starts_at == now - DAY
        assert lineage.expires_at == now + 29 * DAY
        assert lineage.get_status(now) == SubscriptionStatus.ACTIVE

        transaction = repository.require_transaction("fake", "apple-tx-1")
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.duration == 30 * DAY

        purchase = repository.require_transaction("fake", "apple-tx-2")
        assert purchase.type == TransactionType.PURCHASE
        assert purchase.status == TransactionStatus.COMPLETED
        assert purchase.purchased_at == now - 2 * DAY

    def test_is_idempotent(self, paying, store, subscription_receipt):
        data = subscription_receipt.model_dump()
        paying.handle_receipt("fake", "user-1", data)
        snapshot = {
            "transactions": list(store.find("paying-transaction", {})),
            "original_transactions": list(store.find("paying-original-transaction", {})),
        }

        paying.handle_receipt("fake", "user-1", data)

        assert list(store.find("paying-transaction", {})) == snapshot["transactions"]
        assert list(store.find("paying-original-transaction", {})) == snapshot["original_transactions"]
        assert store.count("paying-transaction") == 2
        assert store.count("paying-original-transaction") == 1

    def test_confirms_prepared_transaction(self, paying, repository, monthly, now):
        prepared = paying.prepare_subscription("fake", monthly, "user-1")
        transaction = prepared.subscription.transactions[0]
        receipt = ApplyingReceipt(
            subscription=SubscriptionReceipt(
                original_transaction_id=prepared.subscription.id,
                transaction_id=transaction.id,
                purchased_at=now,
                expires_at=now + 30 * DAY,
                subscribed_at=now,
                product=monthly,
                auto_renewal=True,
            )
        )

        paying.handle_receipt("fake", "user-1", receipt.model_dump())

        lineage = repository.require_original_transaction("fake", prepared.subscription.id)
        assert lineage.expires_at == now + 30 * DAY
        assert lineage.renewal_enabled is True
        assert lineage.renewal_product == "membership.monthly"
        assert repository.require_transaction("fake", transaction.id).status == TransactionStatus.COMPLETED

    def test_receipt_never_reenables_canceled_lineage(self, paying, repository, subscription_receipt, now):
        data = subscription_receipt.model_dump()
        paying.handle_receipt("fake", "user-1", data)
        paying.cancel_subscription("fake", "apple-ot-1")

        paying.handle_receipt("fake", "user-1", data)

        assert repository.require_original_transaction("fake", "apple-ot-1").renewal_enabled is False

    def test_empty_receipt(self, paying, store):
        receipt = paying.handle_receipt("fake", "user-1", {"purchase": []})
        assert receipt.subscription is None
        assert store.count("paying-transaction") == 0
