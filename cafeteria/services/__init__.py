"""
Business logic services.
Contains service layer implementations for order checkout and payment reconciliation.
"""

from .duplicate_guard import SlotConflict, ensure_no_duplicates, find_conflicts
from .legacy_import import LegacyImportResult, LegacyOrderImporter
from .order_lifecycle import OrderStateMachine, OrderTrigger, TransitionPlan, state_machine
from .order_service import OrderService, order_service
from .order_store import OrderStore
from .order_total import compute_total, summarize
from .payment_gateway import (
    CallbackOutcome, CallbackResult, GetNetGateway, PaymentGateway,
    PaymentIntent, PaymentIntentRequest,
)
from .payment_reconciler import (
    CheckoutResult, PaymentReconciler, ReturnOutcome, ReturnParams, ReturnStatus,
)
from .pricing import PriceTable
from .selection_sanitizer import parse_week_start, sanitize_selections, week_dates

__all__ = [
    "CallbackOutcome",
    "CallbackResult",
    "CheckoutResult",
    "GetNetGateway",
    "LegacyImportResult",
    "LegacyOrderImporter",
    "OrderService",
    "OrderStateMachine",
    "OrderStore",
    "OrderTrigger",
    "PaymentGateway",
    "PaymentIntent",
    "PaymentIntentRequest",
    "PaymentReconciler",
    "PriceTable",
    "ReturnOutcome",
    "ReturnParams",
    "ReturnStatus",
    "SlotConflict",
    "TransitionPlan",
    "compute_total",
    "ensure_no_duplicates",
    "find_conflicts",
    "order_service",
    "parse_week_start",
    "sanitize_selections",
    "state_machine",
    "summarize",
    "week_dates",
]
