"""
Cas d'usage 'payments': création d'une tentative de paiement liée à une facture.

Préconditions (dans cet ordre, chacune une erreur distincte):
  1) facture existante       -> NotFound
  2) facture de l'utilisateur -> Forbidden
  3) facture non soldée       -> AlreadySettled (paid/refunded), InvoiceNotPayable (processing/failed)

La tentative 'pending' est persistée AVANT l'appel Stripe. Une tentative pending encore valide
est réutilisée; une tentative périmée est close côté Stripe puis marquée expired avant d'en ouvrir une autre.
Le client peut aussi abandonner une tentative (cancel_attempt): même fermeture côté Stripe, puis CAS gardé.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode
import logging

from booking_backend import config
from booking_backend.ledger import repository as ledger
from booking_backend.ledger.models import (
    SETTLED_INVOICE_STATUSES,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
)
from booking_backend.payments import stripe_client
from booking_backend.payments.errors import (
    AlreadySettled,
    Forbidden,
    GatewayError,
    GatewayUnavailable,
    InvoiceNotPayable,
    NotFound,
)

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"
GATEWAY_FAILURE_REASON = "gateway_unavailable"
CANCELLED_REASON = "cancelled_by_user"

# Une pending sans référence plus vieille que ce délai ne peut plus être une création en cours
ORPHAN_GRACE_SECONDS = 2 * stripe_client.CREATION_BUDGET_SECONDS


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def load_payable_invoice(invoice_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    invoice = ledger.get_invoice(invoice_id)
    if not invoice:
        raise NotFound("Facture introuvable")
    if not user.get("id") or str(invoice.get("user_id")) != str(user.get("id")):
        raise Forbidden()
    status = InvoiceStatus(invoice.get("payment_status") or InvoiceStatus.UNPAID.value)
    if status in SETTLED_INVOICE_STATUSES:
        raise AlreadySettled()
    if status != InvoiceStatus.UNPAID:
        raise InvoiceNotPayable(f"Facture en statut '{status.value}'")
    if int(invoice.get("amount") or 0) <= 0:
        raise InvoiceNotPayable("Montant de facture invalide")
    return invoice


def _reusable(pending: Dict[str, Any], method: PaymentMethod, now: datetime) -> bool:
    if pending.get("method") != method.value or not pending.get("gateway_ref"):
        return False
    if method == PaymentMethod.STRIPE_INTENT:
        return True
    expires_at = _parse_ts(pending.get("expires_at"))
    margin = timedelta(seconds=config.PENDING_SESSION_REUSE_MARGIN_SECONDS)
    return expires_at is not None and expires_at > now + margin


def _close_at_gateway(payment: Dict[str, Any], ref: str) -> None:
    """Ferme la session/l'intent côté Stripe: il ne pourra plus aboutir."""
    if payment.get("method") == PaymentMethod.STRIPE_INTENT.value:
        stripe_client.cancel_payment_intent(ref)
    else:
        stripe_client.expire_session(ref)


def _supersede(pending: Dict[str, Any], now: datetime) -> None:
    """
    Clôt une tentative pending non réutilisable.
    - Avec référence Stripe: la session/l'intent est fermé d'abord, pour qu'il ne puisse plus aboutir.
    - Sans référence: création concurrente en cours (récente) ou crash entre insertion et appel Stripe (ancienne).
    """
    ref = pending.get("gateway_ref")
    if ref:
        try:
            _close_at_gateway(pending, ref)
        except GatewayError as e:
            # Refusé si la session a déjà abouti: sa notification 'completed' est en route
            raise InvoiceNotPayable("Un paiement est en cours de finalisation pour cette facture") from e
    else:
        created_at = _parse_ts(pending.get("created_at"))
        if created_at is None or created_at > now - timedelta(seconds=ORPHAN_GRACE_SECONDS):
            raise GatewayUnavailable("Une session de paiement est en cours de création, réessayez")
    ledger.transition_payment(
        payment_id=pending["id"],
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.EXPIRED,
        fields={"processed_at": now.isoformat(), "failure_reason": SUPERSEDED_REASON},
    )
    logger.info("payments.superseded payment_id=%s ref=%s", pending["id"], ref)


def _open_attempt(invoice: Dict[str, Any], user_id: str, method: PaymentMethod) -> Dict[str, Any]:
    """
    Retourne {"payment", "reused"} pour la facture: réutilise la pending valide, sinon en insère une.
    Une course avec une requête concurrente (PendingConflict) se résout en relisant la pending gagnante.
    """
    now = datetime.now(timezone.utc)
    pending = ledger.find_pending_payment(invoice["id"])
    if pending and _reusable(pending, method, now):
        return {"payment": pending, "reused": True}
    if pending:
        _supersede(pending, now)
    try:
        payment = ledger.insert_pending_payment(invoice=invoice, user_id=user_id, method=method.value)
    except ledger.PendingConflict:
        winner = ledger.find_pending_payment(invoice["id"])
        if winner and _reusable(winner, method, now):
            return {"payment": winner, "reused": True}
        raise GatewayUnavailable("Une session de paiement est en cours de création, réessayez")
    return {"payment": payment, "reused": False}


def _abandon(payment: Dict[str, Any]) -> None:
    ledger.transition_payment(
        payment_id=payment["id"],
        from_status=PaymentStatus.PENDING,
        to_status=PaymentStatus.FAILED,
        fields={"processed_at": datetime.now(timezone.utc).isoformat(), "failure_reason": GATEWAY_FAILURE_REASON},
    )


def _attach(payment: Dict[str, Any], ref: str, **session_fields: Any) -> None:
    """
    Lie la référence Stripe à la tentative. Si la tentative n'est plus pending (remplacée pendant
    l'appel Stripe), la session créée ne doit pas être servie: elle est fermée et l'appelant réessaie.
    """
    if ledger.attach_gateway_session(payment["id"], gateway_ref=ref, **session_fields):
        return
    logger.error("payments.attach_lost payment_id=%s ref=%s: attempt closed during gateway call", payment["id"], ref)
    try:
        _close_at_gateway(payment, ref)
    except (GatewayError, GatewayUnavailable):
        logger.exception("payments.orphan_close_failed payment_id=%s ref=%s", payment["id"], ref)
    raise GatewayUnavailable("La tentative a été remplacée pendant la création, réessayez")


def _metadata(invoice: Dict[str, Any], user_id: str, payment: Dict[str, Any]) -> Dict[str, str]:
    return {
        "invoice_id": str(invoice["id"]),
        "invoice_number": str(invoice.get("invoice_number") or ""),
        "user_id": str(user_id),
        "payment_id": str(payment["id"]),
        "method": str(payment.get("method") or ""),
    }


def build_redirect_urls(invoice_id: str) -> Dict[str, str]:
    # {CHECKOUT_SESSION_ID} est substitué par Stripe, il ne doit pas être encodé
    success = (
        f"{config.FRONTEND_URL}{config.CHECKOUT_SUCCESS_PATH}"
        f"?session_id={{CHECKOUT_SESSION_ID}}&{urlencode({'invoice_id': invoice_id})}"
    )
    cancel = f"{config.FRONTEND_URL}{config.CHECKOUT_CANCEL_PATH}?{urlencode({'invoice_id': invoice_id})}"
    return {"success_url": success, "cancel_url": cancel}


def create_checkout_session(
    invoice_id: str,
    user: Dict[str, Any],
    *,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Crée (ou réutilise) une session Stripe Checkout pour la facture.
    Retour: {"session_id", "url", "payment_id", "expires_at", "reused"}
    """
    invoice = load_payable_invoice(invoice_id, user)
    attempt = _open_attempt(invoice, user["id"], PaymentMethod.STRIPE_CHECKOUT)
    payment = attempt["payment"]
    if attempt["reused"]:
        logger.info("payments.checkout reused payment_id=%s invoice_id=%s", payment["id"], invoice_id)
        return {
            "session_id": payment["gateway_ref"],
            "url": payment.get("checkout_url"),
            "payment_id": payment["id"],
            "expires_at": payment.get("expires_at"),
            "reused": True,
        }

    urls = build_redirect_urls(str(invoice["id"]))
    try:
        session = stripe_client.create_session(
            amount=int(invoice["amount"]),
            currency=str(invoice.get("currency") or "usd"),
            success_url=success_url or urls["success_url"],
            cancel_url=cancel_url or urls["cancel_url"],
            description=f"Facture {invoice.get('invoice_number') or invoice['id']}",
            metadata=_metadata(invoice, user["id"], payment),
            idempotency_key=f"checkout-{payment['id']}",
            customer_email=invoice.get("client_email") or user.get("email"),
        )
    except (GatewayUnavailable, GatewayError):
        _abandon(payment)
        raise

    _attach(payment, session["id"], checkout_url=session.get("url"), expires_at=session.get("expires_at"))
    logger.info("payments.checkout created payment_id=%s invoice_id=%s ref=%s", payment["id"], invoice_id, session["id"])
    return {
        "session_id": session["id"],
        "url": session.get("url"),
        "payment_id": payment["id"],
        "expires_at": session.get("expires_at"),
        "reused": False,
    }


def create_payment_intent(invoice_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    """
    Variante paiement côté client: retourne le client_secret d'un PaymentIntent.
    Une pending de type intent est réutilisée (son secret est relu chez Stripe, jamais stocké).
    """
    invoice = load_payable_invoice(invoice_id, user)
    attempt = _open_attempt(invoice, user["id"], PaymentMethod.STRIPE_INTENT)
    payment = attempt["payment"]
    if attempt["reused"]:
        intent = stripe_client.retrieve_payment_intent(payment["gateway_ref"])
        return {
            "intent_id": intent["id"],
            "client_secret": intent.get("client_secret"),
            "payment_id": payment["id"],
            "reused": True,
        }

    try:
        intent = stripe_client.create_payment_intent(
            amount=int(invoice["amount"]),
            currency=str(invoice.get("currency") or "usd"),
            description=f"Facture {invoice.get('invoice_number') or invoice['id']}",
            metadata=_metadata(invoice, user["id"], payment),
            idempotency_key=f"intent-{payment['id']}",
        )
    except (GatewayUnavailable, GatewayError):
        _abandon(payment)
        raise

    _attach(payment, intent["id"])
    logger.info("payments.intent created payment_id=%s invoice_id=%s ref=%s", payment["id"], invoice_id, intent["id"])
    return {
        "intent_id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "payment_id": payment["id"],
        "reused": False,
    }


def cancel_attempt(gateway_ref: str, user: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
    """
    Abandon signalé par le client (retour 'cancel' de Checkout, paiement intégré abandonné).
    - NotFound / Forbidden comme pour la création; tentative déjà terminale: no-op.
    - La session/l'intent est fermé chez Stripe d'abord. Un refus (paiement déjà abouti) -> InvoiceNotPayable.
    - Checkout -> expired, intent -> failed; la facture reste payable.
    Retour: {"payment_id", "status", "cancelled"}
    """
    payment = ledger.get_payment_by_gateway_ref(gateway_ref)
    if not payment:
        raise NotFound("Tentative de paiement introuvable")
    if str(payment.get("user_id")) != str(user.get("id")):
        raise Forbidden("Tentative d'un autre utilisateur")
    if payment.get("status") != PaymentStatus.PENDING.value:
        return {"payment_id": payment["id"], "status": payment.get("status"), "cancelled": False}

    try:
        _close_at_gateway(payment, gateway_ref)
    except GatewayError as e:
        raise InvoiceNotPayable("Le paiement est en cours de finalisation") from e

    target = PaymentStatus.FAILED if payment.get("method") == PaymentMethod.STRIPE_INTENT.value else PaymentStatus.EXPIRED
    changed = ledger.transition_payment(
        payment_id=payment["id"],
        from_status=PaymentStatus.PENDING,
        to_status=target,
        fields={"processed_at": datetime.now(timezone.utc).isoformat(), "failure_reason": reason or CANCELLED_REASON},
    )
    if changed:
        status = target.value
    else:
        # Un webhook a tranché entre-temps
        status = (ledger.get_payment_by_gateway_ref(gateway_ref) or payment).get("status")
    logger.info("payments.cancel payment_id=%s ref=%s status=%s", payment["id"], gateway_ref, status)
    return {"payment_id": payment["id"], "status": status, "cancelled": bool(changed)}
