"""
Adaptateur Stripe: centralise les appels et la configuration Stripe.
- Appels sortants bornés par GATEWAY_TIMEOUT_SECONDS, erreurs réseau traduites en GatewayUnavailable.
- Clé d'idempotence = id de la tentative locale: rejouer l'appel ne crée pas de seconde session.
- Vérification des webhooks sur le body brut (jamais une copie re-sérialisée).
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import Request
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from booking_backend.config import (
    GATEWAY_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE,
)
from booking_backend.payments.errors import (
    GatewayError,
    GatewayUnavailable,
    InvalidSignature,
    MalformedNotification,
    WebhookNotConfigured,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

# Création de session/intent: 2 essais, attente bornée entre les deux
CREATE_ATTEMPTS = 2
CREATE_RETRY_WAIT_MAX = 2
# Durée maximale d'un appel de création, réessai compris
CREATION_BUDGET_SECONDS = CREATE_ATTEMPTS * GATEWAY_TIMEOUT_SECONDS + (CREATE_ATTEMPTS - 1) * CREATE_RETRY_WAIT_MAX

# Erreurs Stripe transitoires: réessayables côté appelant
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def require_stripe():
    """
    Prépare et retourne le module stripe prêt à l'emploi.
    - Configure stripe.api_key et un client HTTP à timeout borné.
    - Sans clé, aucune session ne peut être créée: GatewayUnavailable.
    """
    if not STRIPE_SECRET_KEY:
        raise GatewayUnavailable("STRIPE_SECRET_KEY manquant")
    stripe.api_key = STRIPE_SECRET_KEY
    if not isinstance(stripe.default_http_client, stripe.RequestsClient):
        stripe.default_http_client = stripe.RequestsClient(timeout=GATEWAY_TIMEOUT_SECONDS)
    return stripe


def _translate(op: str, e: Exception) -> Exception:
    if isinstance(e, _TRANSIENT_ERRORS):
        logger.warning("stripe.%s transient error: %s", op, e)
        return GatewayUnavailable()
    logger.error("stripe.%s rejected: %s", op, e)
    return GatewayError(str(getattr(e, "user_message", None) or "Requête refusée par Stripe"))


def _iso_from_unix(ts: Optional[int]) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


@retry(
    retry=retry_if_exception_type(GatewayUnavailable),
    stop=stop_after_attempt(CREATE_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=CREATE_RETRY_WAIT_MAX),
    reraise=True,
)
def create_session(
    *,
    amount: int,
    currency: str,
    success_url: str,
    cancel_url: str,
    description: str,
    metadata: Dict[str, str],
    idempotency_key: str,
    customer_email: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Crée une session Stripe Checkout pour un montant unique (unités mineures).
    Retour: {"id": "cs_...", "url": "https://...", "expires_at": "<iso>"}
    """
    require_stripe()
    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{
            "quantity": 1,
            "price_data": {
                "currency": currency.lower(),
                "unit_amount": int(amount),
                "product_data": {"name": description},
            },
        }],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata,
        "payment_intent_data": {"metadata": metadata},
    }
    if customer_email:
        params["customer_email"] = customer_email
    try:
        session = stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
    except stripe.StripeError as e:
        raise _translate("create_session", e) from e
    return {
        "id": session["id"],
        "url": session.get("url"),
        "expires_at": _iso_from_unix(session.get("expires_at")),
    }


@retry(
    retry=retry_if_exception_type(GatewayUnavailable),
    stop=stop_after_attempt(CREATE_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=CREATE_RETRY_WAIT_MAX),
    reraise=True,
)
def create_payment_intent(
    *,
    amount: int,
    currency: str,
    description: str,
    metadata: Dict[str, str],
    idempotency_key: str,
) -> Dict[str, Any]:
    """Crée un PaymentIntent (paiement côté client). Retour: {"id": "pi_...", "client_secret": "..."}"""
    require_stripe()
    try:
        intent = stripe.PaymentIntent.create(
            amount=int(amount),
            currency=currency.lower(),
            description=description,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
    except stripe.StripeError as e:
        raise _translate("create_payment_intent", e) from e
    return {"id": intent["id"], "client_secret": intent.get("client_secret")}


def retrieve_payment_intent(intent_id: str) -> Dict[str, Any]:
    """Retour: {"id", "client_secret", "status", "latest_charge"} (latest_charge réduit à son id)."""
    require_stripe()
    try:
        intent = stripe.PaymentIntent.retrieve(intent_id)
    except stripe.StripeError as e:
        raise _translate("retrieve_payment_intent", e) from e
    charge = intent.get("latest_charge")
    if charge is not None and not isinstance(charge, str):
        charge = charge.get("id")
    return {
        "id": intent["id"],
        "client_secret": intent.get("client_secret"),
        "status": intent.get("status"),
        "latest_charge": charge,
    }


def expire_session(session_id: str) -> None:
    """Ferme une session Checkout ouverte: elle ne pourra plus aboutir (Stripe émet checkout.session.expired)."""
    require_stripe()
    try:
        stripe.checkout.Session.expire(session_id)
    except stripe.StripeError as e:
        raise _translate("expire_session", e) from e


def cancel_payment_intent(intent_id: str) -> None:
    require_stripe()
    try:
        stripe.PaymentIntent.cancel(intent_id)
    except stripe.StripeError as e:
        raise _translate("cancel_payment_intent", e) from e


def get_session(session_id: str) -> Dict[str, Any]:
    """
    Récupère une session Checkout (lecture serveur-à-serveur, donc fiable).
    Retour: {"id", "payment_status", "status", "payment_intent"} avec payment_intent réduit à son id.
    """
    require_stripe()
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.StripeError as e:
        raise _translate("get_session", e) from e
    intent = session.get("payment_intent")
    if intent is not None and not isinstance(intent, str):
        intent = intent.get("id")
    return {
        "id": session["id"],
        "payment_status": session.get("payment_status"),
        "status": session.get("status"),
        "payment_intent": intent,
    }


def verify_and_parse_webhook(raw_body: bytes, signature_header: Optional[str], secret: str) -> Dict[str, Any]:
    """
    Authentifie puis décode une notification Stripe.
    - La signature est vérifiée sur les octets reçus (schéma t=..., v1=HMAC-SHA256).
    - InvalidSignature si en-tête absent/faux, MalformedNotification si le JSON signé est inexploitable.
    """
    if not secret:
        raise WebhookNotConfigured()
    if not signature_header:
        raise InvalidSignature("En-tête Stripe-Signature manquant")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidSignature("Body non décodable") from e
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, STRIPE_WEBHOOK_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature() from e
    try:
        event = json.loads(payload)
    except ValueError as e:
        raise MalformedNotification() from e
    if not isinstance(event, dict) or not event.get("type"):
        raise MalformedNotification("Événement sans type")
    return event


async def parse_event(request: Request) -> Dict[str, Any]:
    """
    Lit le body brut + en-tête Stripe-Signature et valide l'événement avec STRIPE_WEBHOOK_SECRET.
    Retour: l'événement (dict) si la signature est valide.
    """
    payload = await request.body()
    sig_header = request.headers.get(SIGNATURE_HEADER)
    return verify_and_parse_webhook(payload, sig_header, STRIPE_WEBHOOK_SECRET)
