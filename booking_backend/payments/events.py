"""
Variantes d'événements passerelle, décodées depuis un événement Stripe vérifié.
Chaque type Stripe connu correspond à une variante, elle-même liée à une transition gardée
dans le reconciler. Tout autre type devient UnknownEvent (acquitté sans mutation).
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from booking_backend.ledger.models import PaymentMethod
from booking_backend.payments.errors import MalformedNotification


@dataclass(frozen=True)
class CheckoutCompleted:
    """checkout.session.completed: payment_status 'paid' = fonds capturés, sinon paiement différé en cours."""
    gateway_ref: str
    event_id: Optional[str]
    payment_status: str
    transaction_id: Optional[str]

    @property
    def funds_captured(self) -> bool:
        return self.payment_status == "paid"


@dataclass(frozen=True)
class AsyncPaymentSucceeded:
    gateway_ref: str
    event_id: Optional[str]
    transaction_id: Optional[str]


@dataclass(frozen=True)
class AsyncPaymentFailed:
    gateway_ref: str
    event_id: Optional[str]
    reason: str


@dataclass(frozen=True)
class SessionExpired:
    gateway_ref: str
    event_id: Optional[str]


@dataclass(frozen=True)
class IntentSucceeded:
    gateway_ref: str
    event_id: Optional[str]
    transaction_id: Optional[str]


@dataclass(frozen=True)
class IntentPaymentFailed:
    gateway_ref: str
    event_id: Optional[str]
    reason: str


@dataclass(frozen=True)
class UnknownEvent:
    event_type: str
    event_id: Optional[str]
    gateway_ref: Optional[str] = None


GatewayEvent = Union[
    CheckoutCompleted,
    AsyncPaymentSucceeded,
    AsyncPaymentFailed,
    SessionExpired,
    IntentSucceeded,
    IntentPaymentFailed,
    UnknownEvent,
]


def _intent_id(obj: Dict[str, Any]) -> Optional[str]:
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent or None

def _failure_message(obj: Dict[str, Any], fallback: str) -> str:
    err = obj.get("last_payment_error") or {}
    return str(err.get("message") or err.get("code") or fallback)


def _opened_by_checkout(obj: Dict[str, Any]) -> bool:
    """PaymentIntent sous-jacent d'une session Checkout: la session porte la réconciliation."""
    metadata = obj.get("metadata") or {}
    return metadata.get("method") == PaymentMethod.STRIPE_CHECKOUT.value


def _checkout_completed(obj, event_id):
    return CheckoutCompleted(obj["id"], event_id, str(obj.get("payment_status") or ""), _intent_id(obj))

def _async_succeeded(obj, event_id):
    return AsyncPaymentSucceeded(obj["id"], event_id, _intent_id(obj))

def _async_failed(obj, event_id):
    return AsyncPaymentFailed(obj["id"], event_id, "Paiement différé refusé")

def _session_expired(obj, event_id):
    return SessionExpired(obj["id"], event_id)

def _intent_succeeded(obj, event_id):
    return IntentSucceeded(obj["id"], event_id, obj.get("latest_charge") or obj["id"])

def _intent_failed(obj, event_id):
    return IntentPaymentFailed(obj["id"], event_id, _failure_message(obj, "Paiement refusé"))


_PARSERS: Dict[str, Callable[[Dict[str, Any], Optional[str]], GatewayEvent]] = {
    "checkout.session.completed": _checkout_completed,
    "checkout.session.async_payment_succeeded": _async_succeeded,
    "checkout.session.async_payment_failed": _async_failed,
    "checkout.session.expired": _session_expired,
    "payment_intent.succeeded": _intent_succeeded,
    "payment_intent.payment_failed": _intent_failed,
}


def from_stripe_event(event: Dict[str, Any]) -> GatewayEvent:
    """
    Décode un événement Stripe (déjà authentifié) en variante typée.
    - MalformedNotification si un type connu n'a pas d'objet identifiable.
    - Les événements payment_intent.* d'un paiement Checkout sont ignorés (doublons des événements de session).
    """
    event_type = str(event.get("type") or "")
    event_id = event.get("id")
    obj = ((event.get("data") or {}).get("object")) or {}
    parser = _PARSERS.get(event_type)
    if parser is None:
        ref = obj.get("id") if isinstance(obj, dict) else None
        return UnknownEvent(event_type, event_id, ref)
    if not isinstance(obj, dict) or not obj.get("id"):
        raise MalformedNotification(f"Objet manquant pour {event_type}")
    if event_type.startswith("payment_intent.") and _opened_by_checkout(obj):
        return UnknownEvent(event_type, event_id, obj["id"])
    return parser(obj, event_id)
