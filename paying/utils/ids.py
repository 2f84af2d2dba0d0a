"""Ledger identifier generation.

Default transaction and original-transaction ids for services that do not
need a provider-specific id format.
"""

import uuid


def generate_transaction_id() -> str:
    """Generate a unique transaction id (uuid4 hex, 32 characters)."""
    return uuid.uuid4().hex


def generate_original_transaction_id() -> str:
    """Generate a unique original transaction id (uuid4 hex, 32 characters)."""
    return uuid.uuid4().hex
