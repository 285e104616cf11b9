"""
Lecture de l'état courant d'une session ou d'une facture (aucune mutation, aucun cache).
La page résultat interroge ces fonctions jusqu'à observer un état terminal.
"""
from typing import Any, Dict, List, Optional, Tuple

from booking_backend.ledger import repository as ledger
from booking_backend.ledger.models import InvoiceStatus, PaymentStatus
from booking_backend.payments.effects import build_effect
from booking_backend.payments.errors import Forbidden, NotFound, ReceiptUnavailable
from booking_backend.payments.receipts import receipt_filename, render_receipt_pdf

TERMINAL_STATUSES = frozenset({"paid", "failed", "expired"})


def derive_status(invoice: Optional[Dict[str, Any]], payment: Optional[Dict[str, Any]]) -> str:
    """
    Statut synthétique affiché au client:
    paid | failed | expired | processing | pending | unpaid
    """
    inv_status = (invoice or {}).get("payment_status")
    pay_status = (payment or {}).get("status")
    if inv_status in (InvoiceStatus.PAID.value, InvoiceStatus.REFUNDED.value):
        return "paid"
    if pay_status == PaymentStatus.COMPLETED.value:
        return "paid"
    if inv_status == InvoiceStatus.FAILED.value or pay_status == PaymentStatus.FAILED.value:
        return "failed"
    if pay_status == PaymentStatus.EXPIRED.value:
        return "expired"
    if inv_status == InvoiceStatus.PROCESSING.value:
        return "processing"
    if pay_status == PaymentStatus.PENDING.value:
        return "pending"
    return "unpaid"


def _public_payment(payment: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not payment:
        return None
    keys = ("id", "invoice_id", "gateway_ref", "amount", "currency", "status", "method",
            "transaction_id", "processed_at", "failure_reason", "created_at")
    return {k: payment.get(k) for k in keys}


def _public_invoice(invoice: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not invoice:
        return None
    keys = ("id", "invoice_number", "reservation_id", "amount", "currency", "payment_status", "hotel_name", "created_at")
    return {k: invoice.get(k) for k in keys}


def _view(invoice, payment) -> Dict[str, Any]:
    status = derive_status(invoice, payment)
    return {
        "status": status,
        "terminal": status in TERMINAL_STATUSES,
        "invoice": _public_invoice(invoice),
        "payment": _public_payment(payment),
    }


def get_status_by_session(gateway_ref: str) -> Dict[str, Any]:
    """
    Statut à partir de la référence de session (page de retour Stripe).
    La référence elle-même fait office de capacité: aucune authentification requise.
    """
    payment = ledger.get_payment_by_gateway_ref(gateway_ref)
    if not payment:
        raise NotFound("Session de paiement introuvable")
    invoice = ledger.get_invoice(payment["invoice_id"])
    return _view(invoice, payment)


def _owned_invoice(invoice_id: str, user_id: str) -> Dict[str, Any]:
    invoice = ledger.get_invoice(invoice_id)
    if not invoice:
        raise NotFound("Facture introuvable")
    if str(invoice.get("user_id")) != str(user_id):
        raise Forbidden()
    return invoice


def get_status_by_invoice(invoice_id: str, user_id: str) -> Dict[str, Any]:
    invoice = _owned_invoice(invoice_id, user_id)
    payment = ledger.get_latest_payment(invoice_id)
    return _view(invoice, payment)


def list_invoices_with_latest_payment(user_id: str) -> List[Dict[str, Any]]:
    invoices = ledger.list_user_invoices(user_id)
    latest: Dict[str, Dict[str, Any]] = {}
    # plus récentes d'abord: la première vue par facture est la dernière tentative
    for p in ledger.list_invoices_payments(inv["id"] for inv in invoices):
        latest.setdefault(str(p.get("invoice_id")), p)
    return [_view(inv, latest.get(str(inv["id"]))) for inv in invoices]


def payment_history(user_id: str) -> List[Dict[str, Any]]:
    rows = ledger.list_user_payments(user_id)
    out = []
    for row in rows:
        item = _public_payment(row)
        inv = row.get("invoices") or {}
        item["invoice_number"] = inv.get("invoice_number")
        item["hotel_name"] = inv.get("hotel_name")
        out.append(item)
    return out


def get_receipt(invoice_id: str, user_id: str) -> Tuple[str, bytes]:
    """
    Reçu PDF d'une facture payée, pour son propriétaire.
    - ReceiptUnavailable si la facture n'est pas payée, NotFound si le paiement completed manque.
    Retour: (nom de fichier, octets PDF)
    """
    invoice = _owned_invoice(invoice_id, user_id)
    if invoice.get("payment_status") != InvoiceStatus.PAID.value:
        raise ReceiptUnavailable()
    payment = ledger.get_completed_payment(invoice_id)
    if not payment:
        raise NotFound("Paiement introuvable pour cette facture")
    effect = build_effect(payment, invoice)
    return receipt_filename(effect), render_receipt_pdf(effect)
