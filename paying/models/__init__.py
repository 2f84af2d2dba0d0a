"""Pydantic models for ledger documents, provider actions and configuration."""

# Product and configuration models
from .product import (
    EngineConfig,
    PayingConfig,
    ProductDefinition,
    ProductType,
    RepositoryConfig,
    ServiceDefinition,
)

# Ledger documents
from .transaction import (
    TransactionDocument,
    TransactionStatus,
    TransactionType,
)
from .original_transaction import (
    OriginalTransactionDocument,
    SubscriptionStatus,
)

# Provider actions
from .actions import (
    ACTION_TYPES,
    Action,
    ChangeRenewalInfoAction,
    ChangeRenewalStatusAction,
    PaymentConfirmedAction,
    RechargeFailedAction,
    SubscribedAction,
    SubscriptionCanceledAction,
    SubscriptionRenewalAction,
    parse_action,
)

# Service exchange models
from .service import (
    ApplyingReceipt,
    PreparePurchaseResult,
    PrepareSubscriptionResult,
    PurchaseReceipt,
    SubscriptionReceipt,
    SubscriptionStatusResult,
    TransactionStatusResult,
)

# Read models
from .subscription import Subscription
from .user import User, calculate_cumulative_expiry

__all__ = [
    # Product configuration
    "ProductType",
    "ProductDefinition",
    "EngineConfig",
    "RepositoryConfig",
    "ServiceDefinition",
    "PayingConfig",
    # Ledger documents
    "TransactionType",
    "TransactionStatus",
    "TransactionDocument",
    "SubscriptionStatus",
    "OriginalTransactionDocument",
    # Actions
    "Action",
    "ACTION_TYPES",
    "PaymentConfirmedAction",
    "SubscribedAction",
    "SubscriptionRenewalAction",
    "ChangeRenewalStatusAction",
    "ChangeRenewalInfoAction",
    "SubscriptionCanceledAction",
    "RechargeFailedAction",
    "parse_action",
    # Service exchange
    "PrepareSubscriptionResult",
    "PreparePurchaseResult",
    "TransactionStatusResult",
    "SubscriptionStatusResult",
    "SubscriptionReceipt",
    "PurchaseReceipt",
    "ApplyingReceipt",
    # Read models
    "Subscription",
    "User",
    "calculate_cumulative_expiry",
]
