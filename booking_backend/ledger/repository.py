# module booking_backend.ledger.repository
"""
Accès aux données du ledger (tables invoices, payments, payment_events) via Supabase service-role.

Primitive centrale: la mise à jour conditionnelle (compare-and-set sur le statut).
    UPDATE payments SET status = B WHERE gateway_ref = :ref AND status = A
retourne le nombre de lignes affectées (0 ou 1). Une garde qui ne correspond plus
est un no-op, jamais une erreur: c'est ce qui rend les livraisons dupliquées sûres.

Contrairement aux lectures d'affichage, les erreurs de stockage ne sont pas avalées:
une écriture échouée silencieuse serait indiscernable d'un no-op. Elles remontent en LedgerUnavailable.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import logging

from postgrest.exceptions import APIError

import booking_backend.infra.supabase_client as supabase_client
from booking_backend.ledger.models import (
    INVOICES_TABLE,
    PAYMENTS_TABLE,
    PAYMENT_EVENTS_TABLE,
    InvoiceStatus,
    PaymentStatus,
    check_invoice_transition,
    check_payment_transition,
)
from booking_backend.payments.errors import LedgerUnavailable

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

PAYMENT_COLUMNS = (
    "id, invoice_id, user_id, gateway_ref, amount, currency, status, method, "
    "transaction_id, processed_at, failure_reason, checkout_url, expires_at, created_at, updated_at"
)
INVOICE_COLUMNS = (
    "id, invoice_number, user_id, reservation_id, amount, currency, payment_status, "
    "client_name, client_email, hotel_name, created_at, updated_at"
)


class SettlementConflict(Exception):
    """L'index 'un seul paiement completed par facture' a refusé la transition."""


class PendingConflict(Exception):
    """L'index 'un seul paiement pending par facture' a refusé l'insertion."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def _pg_code(e: APIError) -> Optional[str]:
    code = getattr(e, "code", None)
    if not code and e.args and isinstance(e.args[0], dict):
        code = e.args[0].get("code")
    return code

def _first(rows: Any) -> Optional[Dict[str, Any]]:
    if isinstance(rows, list):
        return rows[0] if rows else None
    return rows or None

# --- Lectures ---

def get_invoice(invoice_id: str) -> Optional[Dict[str, Any]]:
    """Facture par id, None si absente."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(INVOICES_TABLE)
            .select(INVOICE_COLUMNS)
            .eq("id", invoice_id)
            .limit(1)
            .execute()
        )
        return _first(res.data)
    except Exception as e:
        logger.exception("ledger.get_invoice failed invoice_id=%s", invoice_id)
        raise LedgerUnavailable() from e

def get_payment_by_gateway_ref(gateway_ref: str) -> Optional[Dict[str, Any]]:
    """Tentative de paiement par référence passerelle (session ou intent), None si absente."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(PAYMENT_COLUMNS)
            .eq("gateway_ref", gateway_ref)
            .limit(1)
            .execute()
        )
        return _first(res.data)
    except Exception as e:
        logger.exception("ledger.get_payment_by_gateway_ref failed ref=%s", gateway_ref)
        raise LedgerUnavailable() from e

def find_pending_payment(invoice_id: str) -> Optional[Dict[str, Any]]:
    """Tentative 'pending' de la facture (au plus une, garanti par index partiel)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(PAYMENT_COLUMNS)
            .eq("invoice_id", invoice_id)
            .eq("status", PaymentStatus.PENDING.value)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return _first(res.data)
    except Exception as e:
        logger.exception("ledger.find_pending_payment failed invoice_id=%s", invoice_id)
        raise LedgerUnavailable() from e

def get_completed_payment(invoice_id: str) -> Optional[Dict[str, Any]]:
    """Paiement completed de la facture (au plus un, garanti par index partiel)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(PAYMENT_COLUMNS)
            .eq("invoice_id", invoice_id)
            .eq("status", PaymentStatus.COMPLETED.value)
            .limit(1)
            .execute()
        )
        return _first(res.data)
    except Exception as e:
        logger.exception("ledger.get_completed_payment failed invoice_id=%s", invoice_id)
        raise LedgerUnavailable() from e

def get_latest_payment(invoice_id: str) -> Optional[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(PAYMENT_COLUMNS)
            .eq("invoice_id", invoice_id)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return _first(res.data)
    except Exception as e:
        logger.exception("ledger.get_latest_payment failed invoice_id=%s", invoice_id)
        raise LedgerUnavailable() from e

def list_user_invoices(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(INVOICES_TABLE)
            .select(INVOICE_COLUMNS)
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.exception("ledger.list_user_invoices failed user_id=%s", user_id)
        raise LedgerUnavailable() from e

def list_invoices_payments(invoice_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """Toutes les tentatives des factures données, plus récentes d'abord."""
    ids = [str(i) for i in invoice_ids]
    if not ids:
        return []
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(PAYMENT_COLUMNS)
            .in_("invoice_id", ids)
            .order("created_at", desc=True)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.exception("ledger.list_invoices_payments failed count=%s", len(ids))
        raise LedgerUnavailable() from e

def list_user_payments(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .select(f"{PAYMENT_COLUMNS}, invoices(invoice_number, hotel_name)")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.exception("ledger.list_user_payments failed user_id=%s", user_id)
        raise LedgerUnavailable() from e

# --- Écritures ---

def insert_pending_payment(*, invoice: Dict[str, Any], user_id: str, method: str) -> Dict[str, Any]:
    """
    Crée la tentative 'pending' AVANT l'appel passerelle (trace auditable en cas de crash).
    - Lève PendingConflict si une autre requête a créé la tentative pending en parallèle (23505).
    """
    payload = {
        "invoice_id": invoice["id"],
        "user_id": user_id,
        "amount": int(invoice["amount"]),
        "currency": str(invoice.get("currency") or "").lower(),
        "status": PaymentStatus.PENDING.value,
        "method": method,
    }
    try:
        res = supabase_client.get_service_supabase().table(PAYMENTS_TABLE).insert(payload).execute()
    except APIError as e:
        if _pg_code(e) == UNIQUE_VIOLATION:
            raise PendingConflict(invoice["id"]) from e
        logger.exception("ledger.insert_pending_payment failed invoice_id=%s", invoice["id"])
        raise LedgerUnavailable() from e
    except Exception as e:
        logger.exception("ledger.insert_pending_payment failed invoice_id=%s", invoice["id"])
        raise LedgerUnavailable() from e
    row = _first(res.data)
    if not row:
        raise LedgerUnavailable("Insertion du paiement sans retour")
    return row

def attach_gateway_session(
    payment_id: str,
    *,
    gateway_ref: str,
    checkout_url: Optional[str] = None,
    expires_at: Optional[str] = None,
) -> int:
    """Lie la référence passerelle à la tentative, seulement tant qu'elle est pending et sans référence."""
    values = {
        "gateway_ref": gateway_ref,
        "checkout_url": checkout_url,
        "expires_at": expires_at,
        "updated_at": _now_iso(),
    }
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .update(values)
            .eq("id", payment_id)
            .eq("status", PaymentStatus.PENDING.value)
            .is_("gateway_ref", "null")
            .execute()
        )
        return len(res.data or [])
    except Exception as e:
        logger.exception("ledger.attach_gateway_session failed payment_id=%s", payment_id)
        raise LedgerUnavailable() from e

def transition_payment(
    *,
    payment_id: str,
    from_status: PaymentStatus,
    to_status: PaymentStatus,
    fields: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Compare-and-set du statut d'une tentative: retourne 1 si la garde a matché, 0 sinon.
    - Lève SettlementConflict si la facture a déjà un paiement completed (index partiel unique).
    """
    check_payment_transition(from_status, to_status)
    values = dict(fields or {})
    values.update({"status": to_status.value, "updated_at": _now_iso()})
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENTS_TABLE)
            .update(values)
            .eq("id", payment_id)
            .eq("status", from_status.value)
            .execute()
        )
        return len(res.data or [])
    except APIError as e:
        if _pg_code(e) == UNIQUE_VIOLATION:
            raise SettlementConflict(payment_id) from e
        logger.exception("ledger.transition_payment failed payment_id=%s %s->%s", payment_id, from_status.value, to_status.value)
        raise LedgerUnavailable() from e
    except Exception as e:
        logger.exception("ledger.transition_payment failed payment_id=%s %s->%s", payment_id, from_status.value, to_status.value)
        raise LedgerUnavailable() from e

def transition_invoice(
    *,
    invoice_id: str,
    from_status: InvoiceStatus,
    to_status: InvoiceStatus,
) -> int:
    """Compare-and-set du statut de paiement d'une facture: 1 si la garde a matché, 0 sinon."""
    check_invoice_transition(from_status, to_status)
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(INVOICES_TABLE)
            .update({"payment_status": to_status.value, "updated_at": _now_iso()})
            .eq("id", invoice_id)
            .eq("payment_status", from_status.value)
            .execute()
        )
        return len(res.data or [])
    except Exception as e:
        logger.exception("ledger.transition_invoice failed invoice_id=%s %s->%s", invoice_id, from_status.value, to_status.value)
        raise LedgerUnavailable() from e

def insert_payment_event(*, kind: str, gateway_ref: Optional[str], payment_id: Optional[str] = None,
                         invoice_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> bool:
    """
    Journal des événements de réconciliation (confirmation, commission, notifications sans correspondance).
    Retourne False si l'événement existe déjà (23505 sur (kind, payment_id)), ce qui rend l'écriture idempotente.
    """
    row = {
        "kind": kind,
        "gateway_ref": gateway_ref,
        "payment_id": payment_id,
        "invoice_id": invoice_id,
        "payload": payload or {},
    }
    try:
        supabase_client.get_service_supabase().table(PAYMENT_EVENTS_TABLE).insert(row).execute()
        return True
    except APIError as e:
        if _pg_code(e) == UNIQUE_VIOLATION:
            return False
        logger.exception("ledger.insert_payment_event failed kind=%s ref=%s", kind, gateway_ref)
        raise LedgerUnavailable() from e
    except Exception as e:
        logger.exception("ledger.insert_payment_event failed kind=%s ref=%s", kind, gateway_ref)
        raise LedgerUnavailable() from e

def list_undispatched_events(*, kind: str, created_before: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Événements `kind` dont les effets n'ont jamais été marqués traités, plus anciens que `created_before`."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENT_EVENTS_TABLE)
            .select("id, kind, gateway_ref, payment_id, invoice_id, payload, created_at")
            .eq("kind", kind)
            .is_("dispatched_at", "null")
            .lt("created_at", created_before)
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return res.data or []
    except Exception as e:
        logger.exception("ledger.list_undispatched_events failed kind=%s", kind)
        raise LedgerUnavailable() from e

def mark_event_dispatched(*, kind: str, payment_id: str, results: Optional[Dict[str, Any]] = None) -> int:
    """Marque les effets d'un événement comme exécutés (une seule fois: garde dispatched_at IS NULL)."""
    try:
        res = (
            supabase_client.get_service_supabase()
            .table(PAYMENT_EVENTS_TABLE)
            .update({"dispatched_at": _now_iso(), "dispatch_results": results or {}})
            .eq("kind", kind)
            .eq("payment_id", payment_id)
            .is_("dispatched_at", "null")
            .execute()
        )
        return len(res.data or [])
    except Exception as e:
        logger.exception("ledger.mark_event_dispatched failed kind=%s payment_id=%s", kind, payment_id)
        raise LedgerUnavailable() from e
