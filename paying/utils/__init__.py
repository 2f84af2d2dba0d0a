"""Utility functions and helpers for the ledger."""

from paying.utils.durations import parse_duration, validate_duration
from paying.utils.ids import (
    generate_original_transaction_id,
    generate_transaction_id,
)

__all__ = [
    # Id generation
    "generate_transaction_id",
    "generate_original_transaction_id",
    # Duration parsing
    "parse_duration",
    "validate_duration",
]
