# module booking_backend.ledger.models
"""
Statuts et graphe de transitions du ledger factures/paiements.
- Les lignes circulent sous forme de dict (retour Supabase), ces constantes en décrivent les états.
- Les montants sont des entiers en unités mineures (centimes), jamais des floats.
"""
from enum import Enum
from typing import Dict, FrozenSet

INVOICES_TABLE = "invoices"
PAYMENTS_TABLE = "payments"
PAYMENT_EVENTS_TABLE = "payment_events"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class PaymentMethod(str, Enum):
    STRIPE_CHECKOUT = "stripe_checkout"
    STRIPE_INTENT = "stripe_intent"


# Seules arêtes autorisées; toute autre transition est une erreur de programmation.
INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.UNPAID: frozenset({InvoiceStatus.PROCESSING}),
    InvoiceStatus.PROCESSING: frozenset({InvoiceStatus.PAID, InvoiceStatus.FAILED}),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.REFUNDED}),
    InvoiceStatus.FAILED: frozenset(),
    InvoiceStatus.REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}

SETTLED_INVOICE_STATUSES = frozenset({InvoiceStatus.PAID, InvoiceStatus.REFUNDED})
TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED})


class InvalidTransition(ValueError):
    """Transition absente du graphe (bug appelant, jamais un cas métier)."""


def check_invoice_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if target not in INVOICE_TRANSITIONS[InvoiceStatus(current)]:
        raise InvalidTransition(f"invoice {current} -> {target}")


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[PaymentStatus(current)]:
        raise InvalidTransition(f"payment {current} -> {target}")
