import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from booking_backend.utils.security import require_user
from booking_backend.utils.rate_limit import optional_rate_limit

# Modules importés entiers pour bénéficier des monkeypatchs de tests
from booking_backend.payments import effects as payments_effects
from booking_backend.payments import events as payments_events
from booking_backend.payments import orchestrator
from booking_backend.payments import reconciler
from booking_backend.payments import status as payments_status
from booking_backend.payments import stripe_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])


class CreateSessionRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CreateIntentRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)


class ConfirmRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=200)


def get_dispatcher() -> payments_effects.EffectDispatcher:
    return payments_effects.default_dispatcher


# module booking_backend.payments.views
@router.post("/create-session", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_checkout_session(body: CreateSessionRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Crée (ou réutilise) une session Stripe Checkout pour une facture de l'utilisateur authentifié.
    - Entrée JSON: { "invoice_id": "<uuid>" } (+ success_url/cancel_url optionnels)
    - Réponse: { session_id, url, payment_id, expires_at, reused }
    - Erreurs: 404 facture absente, 403 autre propriétaire, 409 déjà payée / non payable, 503 passerelle indisponible
    """
    return orchestrator.create_checkout_session(
        body.invoice_id, user, success_url=body.success_url, cancel_url=body.cancel_url
    )


@router.post("/create-intent", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
def create_payment_intent(body: CreateIntentRequest, user: Dict[str, Any] = Depends(require_user)):
    """Variante paiement intégré: { intent_id, client_secret, payment_id, reused }."""
    return orchestrator.create_payment_intent(body.invoice_id, user)


@router.post("/webhook", include_in_schema=False)
async def webhook_stripe(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: payments_effects.EffectDispatcher = Depends(get_dispatcher),
):
    """
    Webhook Stripe: authentifie puis réconcilie la notification.
    - Signature: stripe_client.parse_event sur le body brut (400 si invalide, aucune mutation)
    - Toute notification authentifiée est acquittée en 200, quel que soit le résultat métier
    - Les effets (email, commission) partent en tâche de fond après la réponse
    - 503 uniquement si le ledger est indisponible (Stripe relivrera)
    """
    event = await stripe_client.parse_event(request)
    variant = payments_events.from_stripe_event(event)
    result = reconciler.reconcile(variant)
    if result.effect is not None:
        background_tasks.add_task(dispatcher.dispatch, result.effect)
    return JSONResponse(result.as_ack())


@router.post("/confirm")
def confirm_checkout(
    body: ConfirmRequest,
    background_tasks: BackgroundTasks,
    user: Dict[str, Any] = Depends(require_user),
    dispatcher: payments_effects.EffectDispatcher = Depends(get_dispatcher),
):
    """
    Alternative sans webhook: relit la session chez Stripe et applique la même transition.
    Idempotent avec le webhook: le premier arrivé gagne, l'autre est un no-op.
    """
    result = reconciler.confirm_from_gateway(body.session_id, user)
    if result.effect is not None:
        background_tasks.add_task(dispatcher.dispatch, result.effect)
    return payments_status.get_status_by_session(body.session_id)


@router.post("/cancel")
def cancel_payment(body: CancelRequest, user: Dict[str, Any] = Depends(require_user)):
    """
    Abandon de paiement signalé par le client (page d'annulation Checkout, paiement intégré abandonné).
    - La session/l'intent est fermé chez Stripe puis la tentative passe expired (Checkout) ou failed (intent)
    - 409 si le paiement est déjà en cours de finalisation; tentative déjà terminale: aucun changement
    """
    orchestrator.cancel_attempt(body.session_id, user, body.reason)
    return payments_status.get_status_by_session(body.session_id)


@router.get("/session/{session_id}")
def get_session_status(session_id: str):
    """Statut courant pour la page de retour Stripe: { status, terminal, invoice, payment }."""
    return payments_status.get_status_by_session(session_id)


@router.get("/invoices/{invoice_id}/status")
def get_invoice_status(invoice_id: str, user: Dict[str, Any] = Depends(require_user)):
    return payments_status.get_status_by_invoice(invoice_id, user["id"])


@router.get("/invoices")
def list_invoices(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, List[Dict[str, Any]]]:
    return {"invoices": payments_status.list_invoices_with_latest_payment(user["id"])}


@router.get("/history")
def list_payment_history(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, List[Dict[str, Any]]]:
    return {"payments": payments_status.payment_history(user["id"])}


@router.get("/invoices/{invoice_id}/receipt")
def download_receipt(invoice_id: str, user: Dict[str, Any] = Depends(require_user)):
    """Reçu PDF d'une facture payée (propriétaire uniquement); 409 si la facture n'est pas payée."""
    filename, pdf = payments_status.get_receipt(invoice_id, user["id"])
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
