"""Live subscription handle over one original transaction and its charges."""

from typing import TYPE_CHECKING, Optional

from paying.models.original_transaction import (
    OriginalTransactionDocument,
    SubscriptionStatus,
)
from paying.models.transaction import TransactionDocument

if TYPE_CHECKING:
    from paying.repositories.ledger_repository import LedgerRepository


class Subscription:
    """Original transaction plus its subscription transactions (newest first).

    Status is evaluated against the repository clock each time it is read.
    """

    def __init__(
        self,
        original_transaction: OriginalTransactionDocument,
        transactions: list[TransactionDocument],
        repository: "LedgerRepository",
    ):
        self.original_transaction = original_transaction
        self.transactions = transactions
        self._repository = repository

    @property
    def id(self) -> str:
        return self.original_transaction.id

    @property
    def service(self) -> str:
        return self.original_transaction.service

    @property
    def user(self) -> str:
        return self.original_transaction.user

    @property
    def product(self) -> str:
        return self.original_transaction.product

    @property
    def product_group(self) -> Optional[str]:
        return self.original_transaction.product_group

    @property
    def identifier(self) -> str:
        return self.original_transaction.identifier

    @property
    def starts_at(self) -> Optional[int]:
        return self.original_transaction.starts_at

    @property
    def expires_at(self) -> Optional[int]:
        return self.original_transaction.expires_at

    @property
    def canceled_at(self) -> Optional[int]:
        return self.original_transaction.canceled_at

    @property
    def renewal_enabled(self) -> bool:
        return self.original_transaction.renewal_enabled

    @property
    def status(self) -> SubscriptionStatus:
        return self.original_transaction.get_status(self._repository.now_millis())

    def refresh(self) -> "Subscription":
        """Reload the original transaction and its transactions.

        Raises:
            OriginalTransactionNotFoundError: If the record has been removed
        """
        self.original_transaction = self._repository.require_original_transaction(
            self.service, self.id
        )
        self.transactions = self._repository.get_subscription_transactions(self.id)
        return self

    def __repr__(self) -> str:
        return f"Subscription(id={self.id!r}, product={self.product!r}, status={self.status.value!r})"
