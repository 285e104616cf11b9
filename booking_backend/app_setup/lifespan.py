"""
Lifespan FastAPI: limiteur de débit (création de sessions) et état de la configuration paiement.
Variables d'environnement:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: pas de limiteur (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: fakeredis au lieu de Redis
  - RATE_LIMIT_REDIS_URL: URL Redis (défaut redis://127.0.0.1:6379/0)
  - LOCAL_RATE_LIMIT_FALLBACK=1: fenêtre en mémoire si Redis est injoignable
  - EFFECT_RECOVERY_ON_STARTUP=false: pas de reprise des effets post-paiement non exécutés
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter
from starlette.concurrency import run_in_threadpool

from booking_backend import config
from booking_backend.payments import effects
from booking_backend.payments.errors import LedgerUnavailable

logger = logging.getLogger("uvicorn.error")


def _redis_connection():
    if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
        from fakeredis.aioredis import FakeRedis  # extra 'test'
        return FakeRedis(decode_responses=True)
    url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
    return redis.from_url(url, encoding="utf-8", decode_responses=True)


async def init_rate_limiter(app: FastAPI) -> None:
    """Positionne app.state.rate_limit_enabled, lu par optional_rate_limit."""
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return
    try:
        await FastAPILimiter.init(_redis_connection())
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        # Le fallback mémoire est géré par optional_rate_limit via LOCAL_RATE_LIMIT_FALLBACK
        app.state.rate_limit_enabled = os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1"
        logger.warning("Rate limiter init failed (%s), enabled=%s", e, app.state.rate_limit_enabled)


def log_payments_config() -> None:
    logger.info(
        "Payments config: stripe_key=%s webhook_secret=%s smtp=%s frontend=%s",
        bool(config.STRIPE_SECRET_KEY), bool(config.STRIPE_WEBHOOK_SECRET), bool(config.SMTP_HOST), config.FRONTEND_URL,
    )
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET absent: les webhooks seront refusés (500)")
    if not config.SUPABASE_SERVICE_KEY:
        logger.warning("SUPABASE_SERVICE_KEY absent: le ledger est inaccessible")


def recover_pending_effects() -> int:
    """Relance les effets des paiements confirmés restés non traités (arrêt entre commit et tâche de fond)."""
    try:
        count = effects.redeliver_undispatched()
    except LedgerUnavailable:
        logger.warning("Effect recovery skipped: ledger unavailable")
        return 0
    if count:
        logger.info("Effect recovery: %s confirmation(s) redelivered", count)
    return count


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_rate_limiter(app)
    log_payments_config()
    if config.EFFECT_RECOVERY_ON_STARTUP:
        # En tâche de fond: un SMTP lent ne retarde pas le démarrage
        app.state.effect_recovery = asyncio.create_task(run_in_threadpool(recover_pending_effects))
    yield
    if app.state.rate_limit_enabled and FastAPILimiter.redis is not None:
        await FastAPILimiter.close()
