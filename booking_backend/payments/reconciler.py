# module booking_backend.payments.reconciler
"""
Réconciliation des notifications passerelle avec le ledger (factures + paiements).

Chaque variante d'événement (payments.events) est liée à UNE fonction de transition gardée:
    - CheckoutCompleted (fonds capturés)  -> pending -> completed, facture -> paid
    - CheckoutCompleted (paiement différé)-> facture unpaid -> processing, tentative inchangée
    - AsyncPaymentSucceeded / IntentSucceeded -> même chemin que completed
    - AsyncPaymentFailed                  -> pending -> failed, facture processing -> failed
    - IntentPaymentFailed                 -> pending -> failed (la facture reste payable)
    - SessionExpired                      -> pending -> expired (la facture reste unpaid)
    - UnknownEvent                        -> journalisé, aucune mutation

Toutes les mutations sont des compare-and-set sur le statut persisté: une garde qui ne correspond
plus (livraison dupliquée, ordre inversé) est un no-op réussi. L'effet PaymentConfirmed n'est
produit qu'une fois par tentative completed, par l'écriture qui crée son événement 'payment_confirmed'.
Une livraison interrompue après le CAS de la tentative (stockage indisponible) est reprise à la relivraison.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import logging

from booking_backend.ledger import repository as ledger
from booking_backend.ledger.models import SETTLED_INVOICE_STATUSES, InvoiceStatus, PaymentMethod, PaymentStatus
from booking_backend.payments import stripe_client
from booking_backend.payments.effects import CONFIRMATION_EVENT_KIND, PaymentConfirmed, build_effect
from booking_backend.payments.errors import Forbidden, NotFound
from booking_backend.payments.events import (
    AsyncPaymentFailed,
    AsyncPaymentSucceeded,
    CheckoutCompleted,
    GatewayEvent,
    IntentPaymentFailed,
    IntentSucceeded,
    SessionExpired,
    UnknownEvent,
)

logger = logging.getLogger(__name__)

UNMATCHED_EVENT_KIND = "unmatched_notification"
LATE_SETTLEMENT_REASON = "invoice already settled - refund required"

# Issues possibles d'une réconciliation (renvoyées au webhook et journalisées)
COMPLETED = "completed"
PROCESSING = "processing"
FAILED = "failed"
EXPIRED = "expired"
NOOP = "noop"
UNMATCHED = "unmatched"
IGNORED = "ignored"
CONFLICT = "conflict"


@dataclass
class ReconciliationOutcome:
    outcome: str
    gateway_ref: Optional[str] = None
    payment_id: Optional[str] = None
    invoice_id: Optional[str] = None
    effect: Optional[PaymentConfirmed] = None

    def as_ack(self) -> Dict[str, Any]:
        return {"received": True, "outcome": self.outcome}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _outcome(outcome: str, payment: Dict[str, Any], effect: Optional[PaymentConfirmed] = None) -> ReconciliationOutcome:
    return ReconciliationOutcome(
        outcome=outcome,
        gateway_ref=payment.get("gateway_ref"),
        payment_id=payment.get("id"),
        invoice_id=payment.get("invoice_id"),
        effect=effect,
    )


def _settle_invoice(invoice_id: str) -> bool:
    """
    Amène la facture à 'paid' en respectant le graphe unpaid -> processing -> paid.
    La première étape est ignorée si la facture est déjà processing (paiement différé).
    """
    ledger.transition_invoice(invoice_id=invoice_id, from_status=InvoiceStatus.UNPAID, to_status=InvoiceStatus.PROCESSING)
    return ledger.transition_invoice(
        invoice_id=invoice_id, from_status=InvoiceStatus.PROCESSING, to_status=InvoiceStatus.PAID
    ) == 1


def _finalize_completed(completed: Dict[str, Any]) -> ReconciliationOutcome:
    """
    Suite d'une tentative completed: facture soldée puis confirmation persistée.
    Rejouable: si une livraison précédente a échoué après le CAS de la tentative, la relivraison
    reprend ici. L'effet n'est émis que par l'écriture qui crée la ligne 'payment_confirmed'.
    """
    invoice = ledger.get_invoice(completed["invoice_id"])
    if invoice and InvoiceStatus(invoice.get("payment_status") or "unpaid") not in SETTLED_INVOICE_STATUSES:
        if not _settle_invoice(completed["invoice_id"]):
            logger.warning("reconcile.invoice_not_settled invoice_id=%s (status guard did not match)",
                           completed["invoice_id"])
    effect = build_effect(completed, invoice)
    created = ledger.insert_payment_event(
        kind=CONFIRMATION_EVENT_KIND,
        gateway_ref=completed.get("gateway_ref"),
        payment_id=completed["id"],
        invoice_id=completed["invoice_id"],
        payload=effect.as_payload(),
    )
    if not created:
        return _outcome(NOOP, completed)
    return _outcome(COMPLETED, completed, effect)


def _complete(payment: Dict[str, Any], transaction_id: Optional[str]) -> ReconciliationOutcome:
    fields = {"processed_at": _now_iso(), "failure_reason": None}
    if transaction_id:
        fields["transaction_id"] = transaction_id
    try:
        changed = ledger.transition_payment(
            payment_id=payment["id"],
            from_status=PaymentStatus.PENDING,
            to_status=PaymentStatus.COMPLETED,
            fields=fields,
        )
    except ledger.SettlementConflict:
        # Une autre tentative a déjà soldé la facture: cette capture tardive doit être remboursée
        ledger.transition_payment(
            payment_id=payment["id"],
            from_status=PaymentStatus.PENDING,
            to_status=PaymentStatus.FAILED,
            fields={"processed_at": _now_iso(), "failure_reason": LATE_SETTLEMENT_REASON,
                    **({"transaction_id": transaction_id} if transaction_id else {})},
        )
        logger.error(
            "reconcile.conflict payment_id=%s invoice_id=%s ref=%s: invoice already settled by another attempt",
            payment["id"], payment.get("invoice_id"), payment.get("gateway_ref"),
        )
        return _outcome(CONFLICT, payment)
    if changed:
        return _finalize_completed(dict(payment, status=PaymentStatus.COMPLETED.value, **fields))

    current = ledger.get_payment_by_gateway_ref(payment["gateway_ref"])
    if not current or current.get("status") != PaymentStatus.COMPLETED.value:
        return _outcome(NOOP, payment)
    return _finalize_completed(current)


def _fail(payment: Dict[str, Any], reason: str, *, fail_invoice: bool) -> ReconciliationOutcome:
    changed = ledger.transition_payment(
        payment_id=payment["id"],
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.FAILED,
        fields={"processed_at": _now_iso(), "failure_reason": reason},
    )
    if not changed:
        return _outcome(NOOP, payment)
    if fail_invoice:
        ledger.transition_invoice(
            invoice_id=payment["invoice_id"], from_status=InvoiceStatus.PROCESSING, to_status=InvoiceStatus.FAILED
        )
    return _outcome(FAILED, payment)


def _expire(payment: Dict[str, Any]) -> ReconciliationOutcome:
    changed = ledger.transition_payment(
        payment_id=payment["id"],
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.EXPIRED,
        fields={"processed_at": _now_iso()},
    )
    return _outcome(EXPIRED if changed else NOOP, payment)


def _mark_processing(payment: Dict[str, Any]) -> ReconciliationOutcome:
    if payment.get("status") != PaymentStatus.PENDING.value:
        return _outcome(NOOP, payment)
    changed = ledger.transition_invoice(
        invoice_id=payment["invoice_id"], from_status=InvoiceStatus.UNPAID, to_status=InvoiceStatus.PROCESSING
    )
    return _outcome(PROCESSING if changed else NOOP, payment)


def _on_checkout_completed(event: CheckoutCompleted, payment):
    if event.funds_captured:
        return _complete(payment, event.transaction_id)
    return _mark_processing(payment)

def _on_async_succeeded(event: AsyncPaymentSucceeded, payment):
    return _complete(payment, event.transaction_id)

def _on_intent_succeeded(event: IntentSucceeded, payment):
    return _complete(payment, event.transaction_id)

def _on_async_failed(event: AsyncPaymentFailed, payment):
    return _fail(payment, event.reason, fail_invoice=True)

def _on_intent_failed(event: IntentPaymentFailed, payment):
    return _fail(payment, event.reason, fail_invoice=False)

def _on_expired(event: SessionExpired, payment):
    return _expire(payment)


_TRANSITIONS: Dict[type, Callable[[Any, Dict[str, Any]], ReconciliationOutcome]] = {
    CheckoutCompleted: _on_checkout_completed,
    AsyncPaymentSucceeded: _on_async_succeeded,
    AsyncPaymentFailed: _on_async_failed,
    SessionExpired: _on_expired,
    IntentSucceeded: _on_intent_succeeded,
    IntentPaymentFailed: _on_intent_failed,
}


def _record_unmatched(event: GatewayEvent) -> ReconciliationOutcome:
    ledger.insert_payment_event(
        kind=UNMATCHED_EVENT_KIND,
        gateway_ref=event.gateway_ref,
        payload={"event_type": type(event).__name__, "event_id": event.event_id},
    )
    return ReconciliationOutcome(outcome=UNMATCHED, gateway_ref=event.gateway_ref)


def reconcile(event: GatewayEvent) -> ReconciliationOutcome:
    """
    Applique un événement authentifié au ledger, au plus une fois.
    - Jamais d'erreur métier: doublon, ordre inversé ou référence inconnue se résolvent en no-op acquitté.
    - Seule une indisponibilité du stockage remonte (LedgerUnavailable) pour que la passerelle relivre.
    """
    if isinstance(event, UnknownEvent):
        logger.info("reconcile.ignored type=%s event_id=%s", event.event_type, event.event_id)
        return ReconciliationOutcome(outcome=IGNORED, gateway_ref=event.gateway_ref)

    payment = ledger.get_payment_by_gateway_ref(event.gateway_ref)
    if not payment:
        result = _record_unmatched(event)
    else:
        result = _TRANSITIONS[type(event)](event, payment)

    logger.info(
        "reconcile event=%s event_id=%s ref=%s payment_id=%s outcome=%s",
        type(event).__name__, event.event_id, event.gateway_ref, result.payment_id, result.outcome,
    )
    return result


def _pull_intent(payment: Dict[str, Any]) -> ReconciliationOutcome:
    intent = stripe_client.retrieve_payment_intent(payment["gateway_ref"])
    if intent.get("status") == "succeeded":
        return reconcile(IntentSucceeded(intent["id"], None, intent.get("latest_charge") or intent["id"]))
    return _outcome(NOOP, payment)


def confirm_from_gateway(session_id: str, user: Dict[str, Any]) -> ReconciliationOutcome:
    """
    Réconciliation à la demande (page de retour sans webhook): relit la session (ou l'intent) côté Stripe
    et applique la même transition que le webhook correspondant.
    - NotFound si la référence n'est liée à aucune tentative, Forbidden si elle appartient à un autre utilisateur.
    """
    payment = ledger.get_payment_by_gateway_ref(session_id)
    if not payment:
        raise NotFound("Session de paiement introuvable")
    if str(payment.get("user_id")) != str(user.get("id")):
        raise Forbidden("Session d'un autre utilisateur")
    if payment.get("status") == PaymentStatus.COMPLETED.value:
        # Reprend une finalisation interrompue; sinon no-op (confirmation déjà persistée)
        return _finalize_completed(payment)
    if payment.get("status") != PaymentStatus.PENDING.value:
        return _outcome(NOOP, payment)
    if payment.get("method") == PaymentMethod.STRIPE_INTENT.value:
        return _pull_intent(payment)

    session = stripe_client.get_session(session_id)
    if session.get("payment_status") in ("paid", "no_payment_required"):
        event = CheckoutCompleted(session_id, None, "paid", session.get("payment_intent"))
    elif session.get("status") == "expired":
        return reconcile(SessionExpired(session_id, None))
    elif session.get("status") == "complete":
        event = CheckoutCompleted(session_id, None, str(session.get("payment_status") or ""), session.get("payment_intent"))
    else:
        return _outcome(NOOP, payment)
    return reconcile(event)
