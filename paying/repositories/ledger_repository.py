"""Ledger repository - typed access to transactions and original transactions.

Wraps a document store and turns raw documents into validated models and
read models (Subscription, User).
"""

from collections.abc import Iterator
from typing import Any, Optional

from paying.logging_config import get_logger
from paying.models import (
    OriginalTransactionDocument,
    RepositoryConfig,
    Subscription,
    TransactionDocument,
    TransactionType,
    User,
)
from paying.repositories.document_store import (
    ASCENDING,
    DESCENDING,
    DocumentStore,
    Filter,
    Sort,
)
from paying.services.time_controller import TimeController

logger = get_logger(__name__)


class TransactionNotFoundError(Exception):
    """Raised when a transaction is not found in the ledger."""

    pass


class OriginalTransactionNotFoundError(Exception):
    """Raised when an original transaction is not found in the ledger."""

    pass


class LedgerRepository:
    """Repository over the transaction and original-transaction collections.

    Args:
        store: Document store holding both collections
        config: Collection names
        clock: Source of the current time for derived statuses
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[RepositoryConfig] = None,
        clock: Optional[TimeController] = None,
    ):
        self._store = store
        self._config = config or RepositoryConfig()
        self._clock = clock or TimeController()
        self._transactions = self._config.transaction_collection
        self._original_transactions = self._config.original_transaction_collection

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def clock(self) -> TimeController:
        return self._clock

    def now_millis(self) -> int:
        """Current time according to the ledger clock."""
        return self._clock.get_current_time_millis()

    # Transactions

    def create_transaction(self, transaction: TransactionDocument) -> TransactionDocument:
        """Persist a new transaction.

        Raises:
            DuplicateDocumentError: If the transaction id already exists
        """
        self._store.insert_one(self._transactions, transaction.to_document())
        logger.debug(
            "transaction_created",
            transaction_id=transaction.id,
            product_id=transaction.product,
            type=transaction.type.value,
            service=transaction.service,
        )
        return transaction

    def get_transaction(self, service: str, transaction_id: str) -> Optional[TransactionDocument]:
        document = self._store.find_one(
            self._transactions, {"_id": transaction_id, "service": service}
        )
        if document is None:
            return None
        return TransactionDocument.model_validate(document)

    def require_transaction(self, service: str, transaction_id: str) -> TransactionDocument:
        """Get a transaction that must exist.

        Raises:
            TransactionNotFoundError: If the transaction is not in the ledger
        """
        transaction = self.get_transaction(service, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(
                f"Transaction not found: {transaction_id} (service {service})"
            )
        return transaction

    def find_transactions(
        self, filter: Filter, sort: Optional[Sort] = None
    ) -> Iterator[TransactionDocument]:
        for document in self._store.find(self._transactions, filter, sort):
            yield TransactionDocument.model_validate(document)

    def get_subscription_transactions(self, original_transaction_id: str) -> list[TransactionDocument]:
        """Transactions of one lineage, newest first."""
        return list(
            self.find_transactions(
                {"original_transaction_id": original_transaction_id},
                [("created_at", DESCENDING)],
            )
        )

    def settle_transaction(
        self, service: str, transaction_id: str, changes: dict[str, Any]
    ) -> Optional[TransactionDocument]:
        """Set fields on a transaction only while it is still pending.

        The pending check is part of the store filter, so a concurrent
        settlement (payment, cancellation or failure) wins and this write is
        dropped.

        Returns:
            The new state, or None if the transaction was already settled

        Raises:
            TransactionNotFoundError: If the transaction is not in the ledger
        """
        matched = self._store.update_one(
            self._transactions,
            {
                "_id": transaction_id,
                "service": service,
                "completed_at": None,
                "canceled_at": None,
                "failed_at": None,
            },
            changes,
        )
        if not matched:
            # Raises when the document is gone entirely
            self.require_transaction(service, transaction_id)
            return None
        return self.require_transaction(service, transaction_id)

    # Original transactions

    def create_original_transaction(
        self, original_transaction: OriginalTransactionDocument
    ) -> OriginalTransactionDocument:
        """Persist a new original transaction.

        Raises:
            DuplicateDocumentError: If the original transaction id already exists
        """
        self._store.insert_one(self._original_transactions, original_transaction.to_document())
        logger.debug(
            "original_transaction_created",
            original_transaction_id=original_transaction.id,
            product_id=original_transaction.product,
            user_id=original_transaction.user,
            service=original_transaction.service,
        )
        return original_transaction

    def get_original_transaction(
        self, service: str, original_transaction_id: str
    ) -> Optional[OriginalTransactionDocument]:
        document = self._store.find_one(
            self._original_transactions, {"_id": original_transaction_id, "service": service}
        )
        if document is None:
            return None
        return OriginalTransactionDocument.model_validate(document)

    def require_original_transaction(
        self, service: str, original_transaction_id: str
    ) -> OriginalTransactionDocument:
        """Get an original transaction that must exist.

        Raises:
            OriginalTransactionNotFoundError: If it is not in the ledger
        """
        original_transaction = self.get_original_transaction(service, original_transaction_id)
        if original_transaction is None:
            raise OriginalTransactionNotFoundError(
                f"Original transaction not found: {original_transaction_id} (service {service})"
            )
        return original_transaction

    def find_original_transactions(
        self, filter: Filter, sort: Optional[Sort] = None
    ) -> Iterator[OriginalTransactionDocument]:
        for document in self._store.find(self._original_transactions, filter, sort):
            yield OriginalTransactionDocument.model_validate(document)

    def update_original_transaction(
        self, service: str, original_transaction_id: str, changes: dict[str, Any]
    ) -> OriginalTransactionDocument:
        """Atomically set fields on an original transaction and return the new state.

        Raises:
            OriginalTransactionNotFoundError: If it is not in the ledger
        """
        matched = self._store.update_one(
            self._original_transactions,
            {"_id": original_transaction_id, "service": service},
            changes,
        )
        if not matched:
            raise OriginalTransactionNotFoundError(
                f"Original transaction not found: {original_transaction_id} (service {service})"
            )
        return self.require_original_transaction(service, original_transaction_id)

    # Read models

    def _to_subscription(self, original_transaction: OriginalTransactionDocument) -> Subscription:
        return Subscription(
            original_transaction,
            self.get_subscription_transactions(original_transaction.id),
            self,
        )

    def get_subscription(self, service: str, original_transaction_id: str) -> Optional[Subscription]:
        original_transaction = self.get_original_transaction(service, original_transaction_id)
        if original_transaction is None:
            return None
        return self._to_subscription(original_transaction)

    def require_subscription(self, service: str, original_transaction_id: str) -> Subscription:
        return self._to_subscription(
            self.require_original_transaction(service, original_transaction_id)
        )

    def get_active_subscription_in_group(self, user_id: str, group: str) -> Optional[Subscription]:
        """The user's non-canceled lineage in a product group, across all services.

        When several exist, the one expiring last wins.
        """
        candidates = list(
            self.find_original_transactions(
                {"user": user_id, "product_group": group, "canceled_at": None},
                [("created_at", DESCENDING)],
            )
        )
        if not candidates:
            return None

        latest = max(candidates, key=lambda item: item.expires_at or 0)
        return self._to_subscription(latest)

    def get_user(self, user_id: str) -> User:
        """Build the user read model from all of the user's ledger entries."""
        subscriptions = [
            self._to_subscription(original_transaction)
            for original_transaction in self.find_original_transactions(
                {"user": user_id}, [("created_at", ASCENDING)]
            )
        ]

        subscription_transactions: list[TransactionDocument] = []
        purchase_transactions: list[TransactionDocument] = []
        for transaction in self.find_transactions({"user": user_id}, [("created_at", ASCENDING)]):
            if transaction.type == TransactionType.SUBSCRIPTION:
                subscription_transactions.append(transaction)
            else:
                purchase_transactions.append(transaction)

        return User(
            id=user_id,
            subscriptions=subscriptions,
            subscription_transactions=subscription_transactions,
            purchase_transactions=purchase_transactions,
            now_millis=self.now_millis(),
        )
