"""User read model - entitlement computed from a user's ledger entries."""

from typing import Iterable, Optional

from paying.models.subscription import Subscription
from paying.models.transaction import TransactionDocument


def calculate_cumulative_expiry(windows: Iterable[tuple[int, int]], now_millis: int) -> int:
    """Combine paid windows into one "entitled until" timestamp.

    Windows are walked by start time. A window starting inside the running
    entitlement stacks its full length on top of it; a window starting after
    a gap replaces it, unless it starts in the future, which ends the walk.

    Args:
        windows: (starts_at, expires_at) pairs in Unix millis
        now_millis: Current time

    Returns:
        Cumulative expiry time, 0 when nothing was ever paid
    """
    expires_at = 0

    for starts_at, window_expires_at in sorted(windows, key=lambda window: window[0]):
        if starts_at <= expires_at:
            expires_at += window_expires_at - starts_at
        elif starts_at > now_millis:
            break
        else:
            expires_at = window_expires_at

    return expires_at


class User:
    """A user's subscriptions and transactions."""

    def __init__(
        self,
        id: str,
        subscriptions: list[Subscription],
        subscription_transactions: list[TransactionDocument],
        purchase_transactions: list[TransactionDocument],
        now_millis: int,
    ):
        self.id = id
        self.subscriptions = subscriptions
        self.subscription_transactions = subscription_transactions
        self.purchase_transactions = purchase_transactions
        self._now_millis = now_millis

        self._identifier_to_subscriptions: dict[str, list[Subscription]] = {}
        for subscription in subscriptions:
            self._identifier_to_subscriptions.setdefault(subscription.identifier, []).append(
                subscription
            )

    def get_subscriptions(self, identifier: str) -> list[Subscription]:
        """Subscriptions for a product group (or ungrouped product id)."""
        return list(self._identifier_to_subscriptions.get(identifier, []))

    def get_expire_time(self, identifier: str, now_millis: Optional[int] = None) -> int:
        """Cumulative expiry time for a product group.

        Lineages that were never paid have no window and are ignored.
        """
        windows = [
            (subscription.starts_at, subscription.expires_at)
            for subscription in self.get_subscriptions(identifier)
            if subscription.starts_at is not None and subscription.expires_at is not None
        ]
        return calculate_cumulative_expiry(
            windows, self._now_millis if now_millis is None else now_millis
        )

    def __repr__(self) -> str:
        return (
            f"User(id={self.id!r}, subscriptions={len(self.subscriptions)}, "
            f"purchases={len(self.purchase_transactions)})"
        )
