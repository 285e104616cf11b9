"""
Effets post-paiement: exécutés après la réponse au webhook, jamais sur le chemin de requête.
- Le reconciler persiste un événement 'payment_confirmed' (payment_events) en même temps qu'il solde
  la facture; seule l'écriture qui a créé cette ligne émet l'effet, une livraison dupliquée ne redéclenche rien.
- Chaque handler est réessayé (tenacity) puis, en cas d'échec persistant, journalisé et abandonné:
  un effet en échec ne revient jamais sur l'état comptable.
- Une fois les handlers passés, l'événement est marqué traité. Ceux restés non traités (arrêt du process
  entre le commit et la tâche de fond) sont relancés au démarrage par redeliver_undispatched.
"""
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional
import logging
import smtplib

from tenacity import RetryError, Retrying, stop_after_attempt, wait_exponential

from booking_backend import config
from booking_backend.ledger import repository as ledger
from booking_backend.payments.errors import LedgerUnavailable
from booking_backend.payments.receipts import format_amount, receipt_filename, render_receipt_pdf

logger = logging.getLogger(__name__)

CONFIRMATION_EVENT_KIND = "payment_confirmed"
COMMISSION_EVENT_KIND = "commission_accrued"


@dataclass(frozen=True)
class PaymentConfirmed:
    invoice_id: str
    payment_id: str
    amount: int
    currency: str
    recipient_address: Optional[str]
    invoice_number: Optional[str] = None
    client_name: Optional[str] = None
    hotel_name: Optional[str] = None
    gateway_ref: Optional[str] = None
    transaction_id: Optional[str] = None
    processed_at: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "PaymentConfirmed":
        data = {f.name: payload.get(f.name) for f in fields(cls)}
        data["amount"] = int(data["amount"] or 0)
        return cls(**data)


def _deliver(msg: EmailMessage) -> None:
    server = smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.GATEWAY_TIMEOUT_SECONDS)
    try:
        server.starttls()
        if config.SMTP_USER and config.SMTP_PASSWORD:
            server.login(config.SMTP_USER, config.SMTP_PASSWORD)
        server.send_message(msg)
    except Exception:
        server.close()
        raise
    # Message accepté par le serveur: une erreur à la fermeture ne doit pas provoquer de renvoi
    try:
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("effects.email quit failed after delivery: %s", e)


def send_confirmation_email(effect: PaymentConfirmed) -> None:
    """Email de confirmation au client, reçu PDF joint (ignoré si SMTP ou destinataire absents)."""
    if not config.SMTP_HOST or not effect.recipient_address:
        logger.info("effects.email skipped payment_id=%s (smtp or recipient missing)", effect.payment_id)
        return
    msg = EmailMessage()
    msg["Subject"] = f"Confirmation de paiement - facture {effect.invoice_number or effect.invoice_id}"
    msg["From"] = config.EMAIL_FROM or config.SMTP_USER
    msg["To"] = effect.recipient_address
    greeting = f"Bonjour {effect.client_name}," if effect.client_name else "Bonjour,"
    lines = [
        greeting,
        "",
        f"Nous confirmons la réception de votre paiement de {format_amount(effect.amount, effect.currency)}",
        f"pour la facture {effect.invoice_number or effect.invoice_id}"
        + (f" ({effect.hotel_name})." if effect.hotel_name else "."),
    ]
    if effect.transaction_id:
        lines.append(f"Référence de transaction: {effect.transaction_id}")
    msg.set_content("\n".join(lines))
    msg.add_attachment(
        render_receipt_pdf(effect), maintype="application", subtype="pdf", filename=receipt_filename(effect)
    )

    _deliver(msg)
    logger.info("effects.email sent payment_id=%s to=%s", effect.payment_id, effect.recipient_address)


def record_commission_event(effect: PaymentConfirmed) -> None:
    """Événement de commission pour la facturation (idempotent: unique sur (kind, payment_id))."""
    created = ledger.insert_payment_event(
        kind=COMMISSION_EVENT_KIND,
        gateway_ref=effect.gateway_ref,
        payment_id=effect.payment_id,
        invoice_id=effect.invoice_id,
        payload={"amount": effect.amount, "currency": effect.currency, "invoice_number": effect.invoice_number},
    )
    if not created:
        logger.info("effects.commission already recorded payment_id=%s", effect.payment_id)


Handler = Callable[[PaymentConfirmed], None]


@dataclass
class EffectDispatcher:
    handlers: List[Handler] = field(default_factory=lambda: [send_confirmation_email, record_commission_event])
    max_attempts: int = config.EFFECT_MAX_ATTEMPTS
    wait_multiplier: float = 0.5

    def _run(self, handler: Handler, effect: PaymentConfirmed) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(multiplier=self.wait_multiplier, max=10),
        )
        retrying(handler, effect)

    def dispatch(self, effect: PaymentConfirmed) -> Dict[str, Any]:
        """
        Exécute tous les handlers; l'échec de l'un n'empêche pas les autres.
        Retour: {"<nom_handler>": True|False} (utile aux logs et aux tests).
        """
        results: Dict[str, Any] = {}
        for handler in self.handlers:
            name = getattr(handler, "__name__", repr(handler))
            try:
                self._run(handler, effect)
                results[name] = True
            except RetryError as e:
                cause = e.last_attempt.exception() if e.last_attempt else e
                logger.error("effects.%s failed payment_id=%s attempts=%s: %s",
                             name, effect.payment_id, self.max_attempts, cause)
                results[name] = False
            except Exception:
                logger.exception("effects.%s failed payment_id=%s", name, effect.payment_id)
                results[name] = False
        try:
            ledger.mark_event_dispatched(kind=CONFIRMATION_EVENT_KIND, payment_id=effect.payment_id, results=results)
        except LedgerUnavailable:
            logger.error("effects.mark_dispatched failed payment_id=%s (relancé au prochain démarrage)", effect.payment_id)
        return results


def redeliver_undispatched(dispatcher: Optional[EffectDispatcher] = None, *,
                           older_than_seconds: Optional[int] = None, limit: int = 50) -> int:
    """
    Relance les confirmations persistées dont les effets n'ont jamais été marqués traités.
    Le délai évite de doubler une tâche de fond encore en cours. Retourne le nombre d'effets relancés.
    """
    dispatcher = dispatcher or default_dispatcher
    delay = config.EFFECT_RECOVERY_DELAY_SECONDS if older_than_seconds is None else older_than_seconds
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=delay)).isoformat()
    rows = ledger.list_undispatched_events(kind=CONFIRMATION_EVENT_KIND, created_before=cutoff, limit=limit)
    for row in rows:
        effect = PaymentConfirmed.from_payload(row.get("payload") or {})
        logger.warning("effects.redeliver payment_id=%s invoice_id=%s", effect.payment_id, effect.invoice_id)
        dispatcher.dispatch(effect)
    return len(rows)


def build_effect(payment: Dict[str, Any], invoice: Optional[Dict[str, Any]]) -> PaymentConfirmed:
    inv = invoice or {}
    return PaymentConfirmed(
        invoice_id=str(payment.get("invoice_id")),
        payment_id=str(payment.get("id")),
        amount=int(payment.get("amount") or inv.get("amount") or 0),
        currency=str(payment.get("currency") or inv.get("currency") or ""),
        recipient_address=inv.get("client_email"),
        invoice_number=inv.get("invoice_number"),
        client_name=inv.get("client_name"),
        hotel_name=inv.get("hotel_name"),
        gateway_ref=payment.get("gateway_ref"),
        transaction_id=payment.get("transaction_id"),
        processed_at=payment.get("processed_at"),
    )


default_dispatcher = EffectDispatcher()
