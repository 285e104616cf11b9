# module booking_backend.health.service
"""
Diagnostics de santé: joignabilité Supabase et configuration du moteur de paiement.
Aucun secret n'est exposé, seulement des booléens de présence.
"""
from typing import Any, Dict
import logging

import booking_backend.infra.supabase_client as supabase_client
from booking_backend import config
from booking_backend.ledger.models import INVOICES_TABLE

logger = logging.getLogger(__name__)


def health_supabase_info() -> Dict[str, Any]:
    info: Dict[str, Any] = {"configured": bool(config.SUPABASE_URL and config.SUPABASE_SERVICE_KEY)}
    if not info["configured"]:
        info["ok"] = False
        return info
    try:
        supabase_client.get_service_supabase().table(INVOICES_TABLE).select("id").limit(1).execute()
        info["ok"] = True
    except Exception as e:
        logger.warning("health.supabase unreachable: %s", e)
        info["ok"] = False
        info["error"] = type(e).__name__
    return info


def health_payments_info() -> Dict[str, Any]:
    return {
        "stripe_configured": bool(config.STRIPE_SECRET_KEY),
        "webhook_configured": bool(config.STRIPE_WEBHOOK_SECRET),
        "email_configured": bool(config.SMTP_HOST),
        "gateway_timeout_seconds": config.GATEWAY_TIMEOUT_SECONDS,
        "effect_max_attempts": config.EFFECT_MAX_ATTEMPTS,
    }
