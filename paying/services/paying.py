"""Transaction and subscription lifecycle engine.

Responsibilities:
- Prepare subscriptions and purchases through a payment service
- Apply provider Actions to the ledger (payments, renewals, cancellations)
- Reconcile pending state by polling services (periodic checks)
- Keep lineage windows monotonic and cancellation terminal
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError

from paying.logging_config import bound_context, get_logger
from paying.models import (
    ACTION_TYPES,
    Action,
    ApplyingReceipt,
    ChangeRenewalInfoAction,
    ChangeRenewalStatusAction,
    EngineConfig,
    OriginalTransactionDocument,
    PaymentConfirmedAction,
    ProductDefinition,
    ProductType,
    PurchaseReceipt,
    RechargeFailedAction,
    SubscribedAction,
    Subscription,
    SubscriptionCanceledAction,
    SubscriptionReceipt,
    SubscriptionRenewalAction,
    TransactionDocument,
    TransactionStatus,
    TransactionType,
    User,
    parse_action,
)
from paying.repositories.document_store import ASCENDING
from paying.repositories.ledger_repository import LedgerRepository
from paying.services.paying_service import ActionLike, PayingService
from paying.state_logger import (
    log_expiry_change,
    log_renewal_change,
    log_subscription_status_change,
    log_transaction_status_change,
)

logger = get_logger(__name__)

OnError = Callable[[Exception], None]

PAYMENT_EXPIRED_REASON = "payment-expired"

# Number of locks serializing prepare_subscription per (user, product group)
PREPARE_LOCK_STRIPES = 64


class PayingError(Exception):
    """Base exception for lifecycle errors."""

    pass


class UnknownServiceError(PayingError):
    """Raised when no payment service is registered under a name."""

    pass


class UnknownActionError(PayingError):
    """Raised when a service hands back something that is not a known Action."""

    pass


class TransactionAlreadyCompletedError(PayingError):
    """Raised when confirming payment for a completed transaction."""

    pass


class InvalidTransactionStateError(PayingError):
    """Raised when an operation is invalid for the current transaction state."""

    pass


class ExpiryRegressionError(PayingError):
    """Raised when a payment would move a lineage expiry backwards."""

    pass


class ConsistencyError(PayingError):
    """Raised when the ledger does not reflect a write that just succeeded."""

    pass


class SubscriptionError(PayingError):
    """Raised when a subscription cannot be prepared."""

    pass


class ServiceMismatchError(PayingError):
    """Raised when a subscription is handed to a service that does not own it."""

    pass


@dataclass
class PreparedSubscription:
    """A persisted pending subscription and the payload for the client."""

    subscription: Subscription
    response: Any


@dataclass
class PreparedPurchase:
    """A persisted pending purchase and the payload for the client."""

    transaction: TransactionDocument
    response: Any


class Paying:
    """Lifecycle engine over the ledger.

    Args:
        services: Payment services by name
        repository: Ledger repository (also the clock owner)
        config: Engine windows and options
    """

    def __init__(
        self,
        services: dict[str, PayingService],
        repository: LedgerRepository,
        config: Optional[EngineConfig] = None,
    ):
        self._services = dict(services)
        self.repository = repository
        self.config = config or EngineConfig()

        self._prepare_locks = [threading.Lock() for _ in range(PREPARE_LOCK_STRIPES)]

        logger.info("paying_initialized", services=sorted(self._services))

    @property
    def services(self) -> dict[str, PayingService]:
        return dict(self._services)

    def require_service(self, service_name: str) -> PayingService:
        """Get a registered payment service.

        Raises:
            UnknownServiceError: If no service is registered under the name
        """
        service = self._services.get(service_name)
        if service is None:
            raise UnknownServiceError(f"Unknown PayingService {service_name!r}")
        return service

    def _now(self) -> int:
        return self.repository.now_millis()

    # Read paths

    def get_transaction(self, service_name: str, transaction_id: str) -> Optional[TransactionDocument]:
        return self.repository.get_transaction(service_name, transaction_id)

    def get_subscription(self, service_name: str, original_transaction_id: str) -> Optional[Subscription]:
        return self.repository.get_subscription(service_name, original_transaction_id)

    def user(self, user_id: str) -> User:
        return self.repository.get_user(user_id)

    # Preparation

    def _prepare_lock(self, user_id: str, identifier: str) -> threading.Lock:
        # Striped: unrelated keys may share a lock, the same key always does
        return self._prepare_locks[hash((user_id, identifier)) % len(self._prepare_locks)]

    def prepare_subscription(
        self,
        service_name: str,
        product: Union[str, ProductDefinition],
        user_id: str,
    ) -> PreparedSubscription:
        """Create a pending subscription for a user.

        A lineage the user already holds in the same product group is
        canceled first; the new window starts where the old one ends.

        Args:
            service_name: Service that will charge the subscription
            product: Product or product ID (resolved through the service)
            user_id: Subscribing user

        Returns:
            PreparedSubscription with the persisted subscription and client payload

        Raises:
            UnknownServiceError: If the service is not registered
            ProductNotFoundError: If the service does not offer the product
            SubscriptionError: If the product is not a subscription or the
                previous lineage could not be canceled
        """
        service = self.require_service(service_name)
        if isinstance(product, str):
            product = service.require_product(product)

        if product.type != ProductType.SUBSCRIPTION:
            raise SubscriptionError(f"Product {product.id} is not a subscription")

        with self._prepare_lock(user_id, product.identifier):
            now = self._now()

            previous: Optional[Subscription] = None
            if product.group:
                previous = self.repository.get_active_subscription_in_group(user_id, product.group)

            if previous is not None:
                if not self.cancel_subscription(previous.service, previous):
                    raise SubscriptionError(
                        f"Failed to cancel subscription {previous.id} in group {product.group} "
                        f"before subscribing to {product.id}"
                    )
                starts_at = max(now, previous.expires_at or 0)
            else:
                starts_at = now

            payment_expires_at = now + self.config.purchase_expires_after_millis

            result = service.prepare_subscription_data(
                starts_at=starts_at,
                product=product,
                payment_expires_at=payment_expires_at,
                user_id=user_id,
            )

            original_transaction = OriginalTransactionDocument(
                id=result.original_transaction_id,
                product=product.id,
                renewal_product=product.id,
                product_group=product.group,
                user=user_id,
                service=service_name,
                created_at=now,
                renewal_enabled=False,
            )
            transaction = TransactionDocument(
                id=result.transaction_id,
                product=product.id,
                product_group=product.group,
                user=user_id,
                service=service_name,
                type=TransactionType.SUBSCRIPTION,
                created_at=now,
                payment_expires_at=payment_expires_at,
                original_transaction_id=original_transaction.id,
                starts_at=starts_at,
                duration=result.duration,
            )

            self.repository.create_original_transaction(original_transaction)
            self.repository.create_transaction(transaction)

            subscription = self.repository.require_subscription(service_name, original_transaction.id)

        logger.info(
            "subscription_prepared",
            service=service_name,
            user_id=user_id,
            product_id=product.id,
            original_transaction_id=original_transaction.id,
            transaction_id=transaction.id,
            starts_at=starts_at,
            replaced_original_transaction_id=previous.id if previous else None,
        )

        service.did_create_subscription(subscription, transaction)
        return PreparedSubscription(subscription=subscription, response=result.response)

    def prepare_purchase(
        self,
        service_name: str,
        product: Union[str, ProductDefinition],
        user_id: str,
    ) -> PreparedPurchase:
        """Create a pending one-time purchase for a user."""
        service = self.require_service(service_name)
        product_id = product if isinstance(product, str) else product.id

        now = self._now()
        payment_expires_at = now + self.config.purchase_expires_after_millis

        result = service.prepare_purchase_data(
            product_id=product_id,
            payment_expires_at=payment_expires_at,
            user_id=user_id,
        )

        if isinstance(product, ProductDefinition):
            resolved = product
        else:
            resolved = result.product or service.require_product(product_id)

        transaction = TransactionDocument(
            id=result.transaction_id,
            product=resolved.id,
            product_group=resolved.group,
            user=user_id,
            service=service_name,
            type=TransactionType.PURCHASE,
            created_at=now,
            payment_expires_at=payment_expires_at,
        )
        self.repository.create_transaction(transaction)

        logger.info(
            "purchase_prepared",
            service=service_name,
            user_id=user_id,
            product_id=resolved.id,
            transaction_id=transaction.id,
        )

        service.did_create_purchase(transaction)
        return PreparedPurchase(transaction=transaction, response=result.response)

    # Cancellation

    def cancel_subscription(
        self,
        service_name: str,
        subscription: Union[str, Subscription],
    ) -> bool:
        """Cancel a subscription at the provider and in the ledger.

        Args:
            service_name: Service owning the subscription
            subscription: Subscription or original transaction ID

        Returns:
            True if the subscription is canceled, False if the provider refused

        Raises:
            OriginalTransactionNotFoundError: If the subscription does not exist
            ServiceMismatchError: If the subscription belongs to another service
            ConsistencyError: If the ledger does not show the cancellation afterwards
        """
        service = self.require_service(service_name)

        if isinstance(subscription, str):
            subscription = self.repository.require_subscription(service_name, subscription)
        else:
            if subscription.service != service_name:
                raise ServiceMismatchError(
                    f"Subscription {subscription.id} belongs to service "
                    f"{subscription.service!r}, not {service_name!r}"
                )
            subscription.refresh()

        if subscription.canceled_at is not None:
            logger.debug("subscription_already_canceled", original_transaction_id=subscription.id)
            return True

        if not service.cancel_subscription(subscription):
            logger.warning(
                "subscription_cancel_refused",
                service=service_name,
                original_transaction_id=subscription.id,
            )
            return False

        self._apply_subscription_canceled(
            service_name,
            SubscriptionCanceledAction(
                original_transaction_id=subscription.id,
                canceled_at=self._now(),
            ),
        )

        subscription.refresh()
        if subscription.canceled_at is None:
            raise ConsistencyError(
                f"Subscription {subscription.id} is not canceled after a confirmed cancellation"
            )
        return True

    # Provider events

    def handle_callback(self, service_name: str, data: Any) -> Optional[Action]:
        """Apply a provider callback.

        Returns:
            The applied Action, or None when the callback carries nothing to apply
        """
        service = self.require_service(service_name)
        parsed = service.parse_callback(data)

        if parsed is None:
            logger.info("callback_ignored", service=service_name)
            return None

        return self.apply_action(service_name, parsed, raw=data)

    def handle_receipt(self, service_name: str, user_id: str, data: Any) -> ApplyingReceipt:
        """Reconcile the ledger with a store receipt.

        Applying the same receipt again leaves the ledger unchanged.
        """
        service = self.require_service(service_name)
        receipt = service.parse_receipt(data)

        with bound_context(service=service_name, user_id=user_id):
            if receipt.subscription is not None:
                self._apply_subscription_receipt(service_name, user_id, receipt.subscription, data)

            for purchase in receipt.purchase:
                self._apply_purchase_receipt(service_name, user_id, purchase, data)

        return receipt

    def _apply_subscription_receipt(
        self,
        service_name: str,
        user_id: str,
        receipt: SubscriptionReceipt,
        raw: Any,
    ) -> None:
        now = self._now()
        renewal_product = (receipt.auto_renewal_product or receipt.product).id

        original_transaction = self.repository.get_original_transaction(
            service_name, receipt.original_transaction_id
        )
        if original_transaction is None:
            original_transaction = self.repository.create_original_transaction(
                OriginalTransactionDocument(
                    id=receipt.original_transaction_id,
                    product=receipt.product.id,
                    renewal_product=renewal_product,
                    product_group=receipt.product.group,
                    user=user_id,
                    service=service_name,
                    created_at=now,
                    subscribed_at=receipt.subscribed_at,
                    renewal_enabled=receipt.auto_renewal,
                )
            )
        else:
            renewal_enabled = receipt.auto_renewal and original_transaction.canceled_at is None
            self.repository.update_original_transaction(
                service_name,
                original_transaction.id,
                {
                    "product": receipt.product.id,
                    "renewal_product": renewal_product,
                    "subscribed_at": receipt.subscribed_at,
                    "renewal_enabled": renewal_enabled,
                },
            )
            log_renewal_change(
                original_transaction.id,
                original_transaction.renewal_enabled,
                renewal_enabled,
                reason="receipt",
            )

        transaction = self.repository.get_transaction(service_name, receipt.transaction_id)
        if transaction is None:
            transaction = self.repository.create_transaction(
                TransactionDocument(
                    id=receipt.transaction_id,
                    product=receipt.product.id,
                    product_group=receipt.product.group,
                    user=user_id,
                    service=service_name,
                    type=TransactionType.SUBSCRIPTION,
                    created_at=now,
                    original_transaction_id=original_transaction.id,
                    starts_at=receipt.purchased_at,
                    duration=receipt.expires_at - receipt.purchased_at,
                )
            )

        if transaction.status == TransactionStatus.PENDING:
            self._apply_payment_confirmed(
                service_name,
                PaymentConfirmedAction(
                    transaction_id=transaction.id,
                    purchased_at=receipt.purchased_at,
                ),
                raw,
            )
        else:
            logger.debug(
                "receipt_transaction_already_applied",
                transaction_id=transaction.id,
                status=transaction.status.value,
            )

    def _apply_purchase_receipt(
        self,
        service_name: str,
        user_id: str,
        receipt: PurchaseReceipt,
        raw: Any,
    ) -> None:
        if self.repository.get_transaction(service_name, receipt.transaction_id) is not None:
            logger.debug("receipt_purchase_already_applied", transaction_id=receipt.transaction_id)
            return

        now = self._now()
        self.repository.create_transaction(
            TransactionDocument(
                id=receipt.transaction_id,
                product=receipt.product.id,
                product_group=receipt.product.group,
                user=user_id,
                service=service_name,
                type=TransactionType.PURCHASE,
                created_at=now,
                purchased_at=receipt.purchased_at,
                completed_at=now,
                raw=raw,
            )
        )

        logger.info(
            "purchase_receipt_applied",
            transaction_id=receipt.transaction_id,
            product_id=receipt.product.id,
            quantity=receipt.quantity,
        )

    # Actions

    def _normalize_action(self, action: Any) -> Action:
        if isinstance(action, ACTION_TYPES):
            return action
        if isinstance(action, dict):
            try:
                return parse_action(action)
            except ValidationError as e:
                raise UnknownActionError(f"Invalid action {action.get('type')!r}: {e}") from e
        raise UnknownActionError(f"Unknown action {action!r}")

    def apply_action(self, service_name: str, action: ActionLike, raw: Any = None) -> Action:
        """Apply one Action to the ledger.

        Args:
            service_name: Service that reported the action
            action: Action model or plain dict with a ``type`` tag
            raw: Provider payload stored on confirmed transactions

        Returns:
            The validated Action

        Raises:
            UnknownActionError: If the action is not recognized
        """
        self.require_service(service_name)
        action = self._normalize_action(action)

        with bound_context(service=service_name, action=action.type):
            if isinstance(action, PaymentConfirmedAction):
                self._apply_payment_confirmed(service_name, action, raw)
            elif isinstance(action, SubscribedAction):
                self._apply_subscribed(service_name, action)
            elif isinstance(action, SubscriptionRenewalAction):
                self._apply_subscription_renewal(service_name, action, raw)
            elif isinstance(action, ChangeRenewalStatusAction):
                self._apply_change_renewal_status(service_name, action)
            elif isinstance(action, ChangeRenewalInfoAction):
                self._apply_change_renewal_info(service_name, action)
            elif isinstance(action, SubscriptionCanceledAction):
                self._apply_subscription_canceled(service_name, action)
            elif isinstance(action, RechargeFailedAction):
                self._apply_recharge_failed(service_name, action)
            else:
                raise UnknownActionError(f"Unknown action {action!r}")

        return action

    def _apply_payment_confirmed(
        self,
        service_name: str,
        action: PaymentConfirmedAction,
        raw: Any = None,
    ) -> TransactionDocument:
        transaction = self.repository.require_transaction(service_name, action.transaction_id)

        if transaction.completed_at is not None:
            raise TransactionAlreadyCompletedError(
                f"Transaction {transaction.id} is already completed"
            )
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidTransactionStateError(
                f"Cannot confirm payment for transaction {transaction.id} in state "
                f"{transaction.status.value}"
            )

        original_transaction: Optional[OriginalTransactionDocument] = None
        expires_at: Optional[int] = None
        if transaction.is_subscription:
            original_transaction = self.repository.require_original_transaction(
                service_name, transaction.original_transaction_id
            )
            expires_at = transaction.expires_at
            if original_transaction.expires_at is not None and expires_at < original_transaction.expires_at:
                raise ExpiryRegressionError(
                    f"Transaction {transaction.id} would move the expiry of "
                    f"{original_transaction.id} from {original_transaction.expires_at} "
                    f"back to {expires_at}"
                )

        now = self._now()
        changes: dict[str, Any] = {
            "completed_at": now,
            "purchased_at": action.purchased_at,
            "payment_expires_at": None,
        }
        if raw is not None:
            changes["raw"] = raw

        updated = self.repository.settle_transaction(service_name, transaction.id, changes)
        if updated is None:
            current = self.repository.require_transaction(service_name, transaction.id)
            if current.completed_at is not None:
                raise TransactionAlreadyCompletedError(
                    f"Transaction {transaction.id} is already completed"
                )
            raise InvalidTransactionStateError(
                f"Cannot confirm payment for transaction {transaction.id} in state "
                f"{current.status.value}"
            )

        log_transaction_status_change(
            transaction.id,
            transaction.product,
            transaction.status.value,
            updated.status.value,
            reason="payment-confirmed",
            service=service_name,
        )

        if original_transaction is not None:
            old_status = original_transaction.get_status(now)
            lineage_changes: dict[str, Any] = {"expires_at": expires_at}
            if original_transaction.starts_at is None:
                lineage_changes["starts_at"] = transaction.starts_at

            updated_lineage = self.repository.update_original_transaction(
                service_name, original_transaction.id, lineage_changes
            )
            log_expiry_change(
                original_transaction.id,
                original_transaction.expires_at,
                expires_at,
                reason="payment-confirmed",
                transaction_id=transaction.id,
            )
            log_subscription_status_change(
                original_transaction.id,
                updated_lineage.product,
                old_status.value,
                updated_lineage.get_status(now).value,
                reason="payment-confirmed",
            )

        return updated

    def _apply_subscribed(self, service_name: str, action: SubscribedAction) -> OriginalTransactionDocument:
        original_transaction = self.repository.require_original_transaction(
            service_name, action.original_transaction_id
        )

        renewal_enabled = True if action.auto_renewal_enabled is None else action.auto_renewal_enabled
        if original_transaction.canceled_at is not None:
            renewal_enabled = False

        changes: dict[str, Any] = {
            "subscribed_at": action.subscribed_at,
            "renewal_enabled": renewal_enabled,
        }
        if action.extra is not None:
            changes["service_extra"] = action.extra

        updated = self.repository.update_original_transaction(
            service_name, original_transaction.id, changes
        )

        logger.info(
            "subscription_subscribed",
            original_transaction_id=original_transaction.id,
            subscribed_at=action.subscribed_at,
        )
        log_renewal_change(
            original_transaction.id,
            original_transaction.renewal_enabled,
            renewal_enabled,
            reason="subscribed",
        )
        return updated

    def _apply_subscription_renewal(
        self,
        service_name: str,
        action: SubscriptionRenewalAction,
        raw: Any = None,
    ) -> TransactionDocument:
        original_transaction = self.repository.require_original_transaction(
            service_name, action.original_transaction_id
        )

        transaction = self.repository.get_transaction(service_name, action.transaction_id)
        if transaction is None:
            starts_at = (
                original_transaction.expires_at
                if original_transaction.expires_at is not None
                else action.purchased_at
            )
            self.repository.create_transaction(
                TransactionDocument(
                    id=action.transaction_id,
                    product=action.product.id,
                    product_group=action.product.group,
                    user=original_transaction.user,
                    service=service_name,
                    type=TransactionType.SUBSCRIPTION,
                    created_at=self._now(),
                    original_transaction_id=original_transaction.id,
                    starts_at=starts_at,
                    duration=action.duration,
                )
            )

        # The lineage product only follows a renewal that was actually applied
        confirmed = self._apply_payment_confirmed(
            service_name,
            PaymentConfirmedAction(
                transaction_id=action.transaction_id,
                purchased_at=action.purchased_at,
            ),
            raw,
        )

        self.repository.update_original_transaction(
            service_name, original_transaction.id, {"product": action.product.id}
        )

        logger.info(
            "subscription_renewal",
            original_transaction_id=original_transaction.id,
            transaction_id=action.transaction_id,
            product_id=action.product.id,
        )
        return confirmed

    def _apply_change_renewal_status(
        self, service_name: str, action: ChangeRenewalStatusAction
    ) -> OriginalTransactionDocument:
        original_transaction = self.repository.require_original_transaction(
            service_name, action.original_transaction_id
        )

        # Canceled lineages never renew again
        renewal_enabled = action.renewal_enabled and original_transaction.canceled_at is None

        updated = self.repository.update_original_transaction(
            service_name, original_transaction.id, {"renewal_enabled": renewal_enabled}
        )
        log_renewal_change(
            original_transaction.id,
            original_transaction.renewal_enabled,
            renewal_enabled,
            reason="change-renewal-status",
        )
        return updated

    def _apply_change_renewal_info(
        self, service_name: str, action: ChangeRenewalInfoAction
    ) -> OriginalTransactionDocument:
        original_transaction = self.repository.require_original_transaction(
            service_name, action.original_transaction_id
        )

        renewal_enabled = action.renewal_enabled and original_transaction.canceled_at is None

        updated = self.repository.update_original_transaction(
            service_name,
            original_transaction.id,
            {
                "product": action.product_id,
                "renewal_product": action.auto_renew_product_id,
                "renewal_enabled": renewal_enabled,
            },
        )

        logger.info(
            "subscription_renewal_info_changed",
            original_transaction_id=original_transaction.id,
            product_id=action.product_id,
            renewal_product_id=action.auto_renew_product_id,
        )
        log_renewal_change(
            original_transaction.id,
            original_transaction.renewal_enabled,
            renewal_enabled,
            reason="change-renewal-info",
        )
        return updated

    def _apply_subscription_canceled(
        self, service_name: str, action: SubscriptionCanceledAction
    ) -> OriginalTransactionDocument:
        original_transaction = self.repository.require_original_transaction(
            service_name, action.original_transaction_id
        )

        if original_transaction.canceled_at is not None:
            logger.debug(
                "subscription_cancel_ignored",
                original_transaction_id=original_transaction.id,
                canceled_at=original_transaction.canceled_at,
            )
            return original_transaction

        now = self._now()
        old_status = original_transaction.get_status(now)

        updated = self.repository.update_original_transaction(
            service_name,
            original_transaction.id,
            {
                "canceled_at": action.canceled_at,
                "cancel_reason": action.reason,
                "renewal_enabled": False,
            },
        )

        log_subscription_status_change(
            original_transaction.id,
            original_transaction.product,
            old_status.value,
            updated.get_status(now).value,
            reason="subscription-canceled",
            cancel_reason=action.reason,
        )
        log_renewal_change(
            original_transaction.id,
            original_transaction.renewal_enabled,
            False,
            reason="subscription-canceled",
        )
        return updated

    def _apply_recharge_failed(
        self, service_name: str, action: RechargeFailedAction
    ) -> OriginalTransactionDocument:
        updated = self.repository.update_original_transaction(
            service_name,
            action.original_transaction_id,
            {
                "last_failed_reason": action.reason,
                "last_failed_at": action.failed_at,
            },
        )
        logger.warning(
            "subscription_recharge_failed",
            original_transaction_id=action.original_transaction_id,
            reason=action.reason,
            failed_at=action.failed_at,
        )
        return updated

    def _cancel_transaction(
        self,
        service_name: str,
        transaction: TransactionDocument,
        canceled_at: int,
        reason: Any,
    ) -> Optional[TransactionDocument]:
        updated = self.repository.settle_transaction(
            service_name,
            transaction.id,
            {"canceled_at": canceled_at, "cancel_reason": reason},
        )
        if updated is None:
            logger.info(
                "transaction_cancel_skipped",
                transaction_id=transaction.id,
                reason="already-settled",
            )
            return None

        log_transaction_status_change(
            transaction.id,
            transaction.product,
            transaction.status.value,
            updated.status.value,
            reason=reason if isinstance(reason, str) else "canceled",
            service=service_name,
        )

        if self.config.cancel_lineage_on_transaction_cancel and transaction.is_subscription:
            self._apply_subscription_canceled(
                service_name,
                SubscriptionCanceledAction(
                    original_transaction_id=transaction.original_transaction_id,
                    canceled_at=canceled_at,
                    reason=reason,
                ),
            )

        return updated

    # Periodic checks

    def _report_check_error(
        self,
        on_error: Optional[OnError],
        error: Exception,
        check: str,
        item_id: str,
    ) -> None:
        if on_error is not None:
            on_error(error)
            return
        logger.error(
            "check_item_failed",
            check=check,
            item_id=item_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def check_transactions(self, service_name: str, on_error: Optional[OnError] = None) -> list[str]:
        """Poll the service for transactions still waiting for payment.

        Paid transactions are confirmed, remotely canceled ones are canceled
        and unpaid ones past their payment deadline are canceled as expired.

        Returns:
            IDs of transactions whose state changed
        """
        service = self.require_service(service_name)
        now = self._now()
        processed: list[str] = []

        with bound_context(service=service_name, check="check_transactions"):
            pending = self.repository.find_transactions(
                {
                    "service": service_name,
                    "completed_at": None,
                    "canceled_at": None,
                    "purchased_at": None,
                },
                [("created_at", ASCENDING)],
            )

            for transaction in pending:
                try:
                    result = service.query_transaction_status(transaction.id)

                    if result.type == "success":
                        self._apply_payment_confirmed(
                            service_name,
                            PaymentConfirmedAction(
                                transaction_id=transaction.id,
                                purchased_at=result.purchased_at,
                            ),
                        )
                    elif result.type == "canceled":
                        if self._cancel_transaction(
                            service_name, transaction, result.canceled_at, result.reason
                        ) is None:
                            continue
                    elif (
                        transaction.payment_expires_at is not None
                        and transaction.payment_expires_at < now
                    ):
                        if self._cancel_transaction(
                            service_name, transaction, now, PAYMENT_EXPIRED_REASON
                        ) is None:
                            continue
                    else:
                        continue

                    processed.append(transaction.id)
                except Exception as e:
                    self._report_check_error(on_error, e, "check_transactions", transaction.id)

        if processed:
            logger.info("transactions_checked", service=service_name, count=len(processed))
        return processed

    def check_uncompleted_subscription(
        self, service_name: str, on_error: Optional[OnError] = None
    ) -> list[str]:
        """Poll the service for lineages whose agreement is not signed yet.

        Returns:
            IDs of original transactions that were subscribed or canceled
        """
        service = self.require_service(service_name)
        processed: list[str] = []

        with bound_context(service=service_name, check="check_uncompleted_subscription"):
            uncompleted = self.repository.find_original_transactions(
                {"service": service_name, "subscribed_at": None, "canceled_at": None},
                [("created_at", ASCENDING)],
            )

            for original_transaction in uncompleted:
                try:
                    result = service.query_subscription_status(original_transaction.id)

                    if result.type == "subscribed":
                        self._apply_subscribed(
                            service_name,
                            SubscribedAction(
                                original_transaction_id=original_transaction.id,
                                subscribed_at=result.subscribed_at,
                                extra=result.extra,
                                auto_renewal_enabled=result.auto_renewal_enabled,
                            ),
                        )
                    elif result.type == "canceled":
                        self._apply_subscription_canceled(
                            service_name,
                            SubscriptionCanceledAction(
                                original_transaction_id=original_transaction.id,
                                canceled_at=result.canceled_at,
                                reason=result.reason,
                            ),
                        )
                    else:
                        continue

                    processed.append(original_transaction.id)
                except Exception as e:
                    self._report_check_error(
                        on_error, e, "check_uncompleted_subscription", original_transaction.id
                    )

        if processed:
            logger.info("subscriptions_checked", service=service_name, count=len(processed))
        return processed

    def check_subscription_renewal(
        self, service_name: str, on_error: Optional[OnError] = None
    ) -> list[str]:
        """Recharge subscribed lineages that expire within the renewal window.

        Returns:
            IDs of original transactions for which the service reported an outcome
        """
        service = self.require_service(service_name)
        now = self._now()
        processed: list[str] = []

        with bound_context(service=service_name, check="check_subscription_renewal"):
            expiring = self.repository.find_original_transactions(
                {
                    "service": service_name,
                    "expires_at": {"$lt": now + self.config.renewal_before_millis},
                    "canceled_at": None,
                    "subscribed_at": {"$ne": None},
                    "renewal_enabled": True,
                },
                [("expires_at", ASCENDING)],
            )

            for original_transaction in expiring:
                try:
                    action = service.recharge_subscription(
                        original_transaction,
                        now + self.config.purchase_expires_after_millis,
                    )
                    if action is None:
                        logger.debug(
                            "subscription_recharge_pending",
                            original_transaction_id=original_transaction.id,
                        )
                        continue

                    self.apply_action(service_name, action)
                    processed.append(original_transaction.id)
                except Exception as e:
                    self._report_check_error(
                        on_error, e, "check_subscription_renewal", original_transaction.id
                    )

        if processed:
            logger.info("subscriptions_recharged", service=service_name, count=len(processed))
        return processed

    def run_checks(
        self,
        on_error: Optional[OnError] = None,
        service_names: Optional[list[str]] = None,
    ) -> dict[str, dict[str, list[str]]]:
        """Run every periodic check for every (or the given) service.

        Returns:
            Processed ids per service and check
        """
        results: dict[str, dict[str, list[str]]] = {}

        for service_name in service_names or sorted(self._services):
            results[service_name] = {
                "transactions": self.check_transactions(service_name, on_error),
                "uncompleted_subscriptions": self.check_uncompleted_subscription(
                    service_name, on_error
                ),
                "subscription_renewals": self.check_subscription_renewal(service_name, on_error),
            }

        return results
