"""State change logging for ledger entities.

Records every transition with before/after values for auditing.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from paying.logging_config import get_logger

logger = get_logger(__name__)


def _format_millis(millis: Optional[int]) -> Optional[str]:
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def log_transaction_status_change(
    transaction_id: str,
    product_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log transaction status change.

    Args:
        transaction_id: Transaction ID
        product_id: Product ID
        old_status: Previous derived status
        new_status: New derived status
        reason: Reason for the change
        **extra_context: Additional context (user_id, service, etc.)
    """
    logger.info(
        "transaction_status_changed",
        transaction_id=transaction_id,
        product_id=product_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_subscription_status_change(
    original_transaction_id: str,
    product_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log original transaction (lineage) status change."""
    logger.info(
        "subscription_status_changed",
        original_transaction_id=original_transaction_id,
        product_id=product_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_renewal_change(
    original_transaction_id: str,
    old_value: bool,
    new_value: bool,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log renewal_enabled change."""
    if old_value == new_value:
        return
    logger.info(
        "renewal_enabled_changed",
        original_transaction_id=original_transaction_id,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        **extra_context,
    )


def log_expiry_change(
    original_transaction_id: str,
    old_expiry_millis: Optional[int],
    new_expiry_millis: int,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log lineage expiry change.

    Args:
        original_transaction_id: Original transaction ID
        old_expiry_millis: Previous expiry time (None before the first payment)
        new_expiry_millis: New expiry time
        reason: Reason for change (payment, renewal, receipt)
        **extra_context: Additional context
    """
    extension_days = None
    if old_expiry_millis is not None:
        extension_days = (new_expiry_millis - old_expiry_millis) / (1000 * 86400)

    logger.info(
        "expiry_changed",
        original_transaction_id=original_transaction_id,
        old_expiry=_format_millis(old_expiry_millis),
        new_expiry=_format_millis(new_expiry_millis),
        extension_days=extension_days,
        reason=reason,
        **extra_context,
    )
