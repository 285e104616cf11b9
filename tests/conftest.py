import copy
import hashlib
import hmac
import itertools
import json
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")
os.environ.setdefault("EFFECT_RECOVERY_ON_STARTUP", "false")

from booking_backend.app import app as fastapi_app
from booking_backend.ledger import repository as ledger_repo
from booking_backend.ledger.models import (
    InvoiceStatus,
    PaymentStatus,
    check_invoice_transition,
    check_payment_transition,
)
from booking_backend.payments import effects as payments_effects
from booking_backend.payments import stripe_client
from booking_backend.payments.views import get_dispatcher
from booking_backend.utils.security import require_user

TEST_USER_ID = "test-user"
WEBHOOK_SECRET = "whsec_test_secret"


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def test_user() -> Dict[str, Any]:
    return {
        "id": TEST_USER_ID,
        "email": "test@example.com",
        "role": "user",
        "metadata": {"full_name": "Test User"},
        "token": "fake-token",
    }


# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app, test_user):
    app.dependency_overrides[require_user] = lambda: test_user
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)


# Aucun accès réseau à Supabase pendant les tests
@pytest.fixture(autouse=True)
def mock_db_dependency(monkeypatch):
    monkeypatch.setattr("booking_backend.infra.supabase_client.get_supabase", lambda: MagicMock())
    monkeypatch.setattr("booking_backend.infra.supabase_client.get_service_supabase", lambda: MagicMock())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeLedger:
    """
    Ledger en mémoire avec la sémantique du stockage réel:
    compare-and-set sur le statut, index uniques (pending / completed par facture, événements).
    `writes` compte les mutations effectives.
    """

    def __init__(self):
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.writes = 0
        self._seq = itertools.count(1)

    # --- données de test ---
    def add_invoice(self, invoice_id: str, *, amount: int = 50000, currency: str = "usd",
                    status: str = "unpaid", user_id: str = TEST_USER_ID, **extra) -> Dict[str, Any]:
        row = {
            "id": invoice_id,
            "invoice_number": extra.pop("invoice_number", invoice_id),
            "user_id": user_id,
            "reservation_id": extra.pop("reservation_id", f"res-{invoice_id}"),
            "amount": amount,
            "currency": currency,
            "payment_status": status,
            "client_name": extra.pop("client_name", "Jane Doe"),
            "client_email": extra.pop("client_email", "jane@example.com"),
            "hotel_name": extra.pop("hotel_name", "Hotel Azur"),
            "created_at": (_now() + timedelta(microseconds=next(self._seq))).isoformat(),
        }
        row.update(extra)
        self.invoices[invoice_id] = row
        return row

    def add_payment(self, payment_id: str, invoice_id: str, *, status: str = "pending",
                    gateway_ref: Optional[str] = None, method: str = "stripe_checkout",
                    expires_at: Optional[str] = None, user_id: str = TEST_USER_ID, **extra) -> Dict[str, Any]:
        inv = self.invoices[invoice_id]
        row = {
            "id": payment_id,
            "invoice_id": invoice_id,
            "user_id": user_id,
            "gateway_ref": gateway_ref,
            "amount": inv["amount"],
            "currency": inv["currency"],
            "status": status,
            "method": method,
            "transaction_id": None,
            "processed_at": None,
            "failure_reason": None,
            "checkout_url": f"https://checkout.stripe.test/{gateway_ref}" if gateway_ref else None,
            "expires_at": expires_at,
            "created_at": (_now() + timedelta(microseconds=next(self._seq))).isoformat(),
        }
        row.update(extra)
        self.payments[payment_id] = row
        return row

    def payments_for(self, invoice_id: str) -> List[Dict[str, Any]]:
        return [p for p in self.payments.values() if p["invoice_id"] == invoice_id]

    # --- interface du repository ---
    def get_invoice(self, invoice_id):
        row = self.invoices.get(invoice_id)
        return copy.deepcopy(row) if row else None

    def get_payment_by_gateway_ref(self, gateway_ref):
        for p in self.payments.values():
            if p["gateway_ref"] == gateway_ref:
                return copy.deepcopy(p)
        return None

    def _sorted(self, rows):
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    def find_pending_payment(self, invoice_id):
        rows = [p for p in self.payments_for(invoice_id) if p["status"] == "pending"]
        return copy.deepcopy(self._sorted(rows)[0]) if rows else None

    def get_latest_payment(self, invoice_id):
        rows = self._sorted(self.payments_for(invoice_id))
        return copy.deepcopy(rows[0]) if rows else None

    def list_user_invoices(self, user_id, limit=50):
        rows = [i for i in self.invoices.values() if i["user_id"] == user_id]
        return copy.deepcopy(self._sorted(rows)[:limit])

    def list_invoices_payments(self, invoice_ids):
        ids = set(invoice_ids)
        return copy.deepcopy(self._sorted([p for p in self.payments.values() if p["invoice_id"] in ids]))

    def list_user_payments(self, user_id, limit=50):
        out = []
        for p in self._sorted([p for p in self.payments.values() if p["user_id"] == user_id])[:limit]:
            row = copy.deepcopy(p)
            inv = self.invoices.get(p["invoice_id"]) or {}
            row["invoices"] = {"invoice_number": inv.get("invoice_number"), "hotel_name": inv.get("hotel_name")}
            out.append(row)
        return out

    def insert_pending_payment(self, *, invoice, user_id, method):
        if any(p["status"] == "pending" for p in self.payments_for(invoice["id"])):
            raise ledger_repo.PendingConflict(invoice["id"])
        pid = f"pay-{next(self._seq)}"
        self.writes += 1
        row = self.add_payment(pid, invoice["id"], method=method, user_id=user_id)
        return copy.deepcopy(row)

    def attach_gateway_session(self, payment_id, *, gateway_ref, checkout_url=None, expires_at=None):
        p = self.payments.get(payment_id)
        if not p or p["status"] != "pending" or p["gateway_ref"] is not None:
            return 0
        self.writes += 1
        p.update({"gateway_ref": gateway_ref, "checkout_url": checkout_url, "expires_at": expires_at})
        return 1

    def transition_payment(self, *, payment_id, from_status, to_status, fields=None):
        check_payment_transition(from_status, to_status)
        p = self.payments.get(payment_id)
        if not p or p["status"] != PaymentStatus(from_status).value:
            return 0
        if to_status == PaymentStatus.COMPLETED and any(
            o["status"] == "completed" for o in self.payments_for(p["invoice_id"]) if o["id"] != payment_id
        ):
            raise ledger_repo.SettlementConflict(payment_id)
        self.writes += 1
        p.update(fields or {})
        p["status"] = PaymentStatus(to_status).value
        return 1

    def transition_invoice(self, *, invoice_id, from_status, to_status):
        check_invoice_transition(from_status, to_status)
        inv = self.invoices.get(invoice_id)
        if not inv or inv["payment_status"] != InvoiceStatus(from_status).value:
            return 0
        self.writes += 1
        inv["payment_status"] = InvoiceStatus(to_status).value
        return 1

    def insert_payment_event(self, *, kind, gateway_ref, payment_id=None, invoice_id=None, payload=None):
        if payment_id is not None and any(e["kind"] == kind and e["payment_id"] == payment_id for e in self.events):
            return False
        self.writes += 1
        self.events.append({"id": f"evt-{next(self._seq)}", "kind": kind, "gateway_ref": gateway_ref,
                            "payment_id": payment_id, "invoice_id": invoice_id, "payload": copy.deepcopy(payload or {}),
                            "dispatched_at": None, "dispatch_results": None, "created_at": _now().isoformat()})
        return True

    def events_of(self, kind: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["kind"] == kind]

    def get_completed_payment(self, invoice_id):
        rows = [p for p in self.payments_for(invoice_id) if p["status"] == "completed"]
        return copy.deepcopy(rows[0]) if rows else None

    def list_undispatched_events(self, *, kind, created_before, limit=50):
        rows = [e for e in self.events_of(kind) if e["dispatched_at"] is None and e["created_at"] < created_before]
        return copy.deepcopy(rows[:limit])

    def mark_event_dispatched(self, *, kind, payment_id, results=None):
        for e in self.events_of(kind):
            if e["payment_id"] == payment_id and e["dispatched_at"] is None:
                self.writes += 1
                e["dispatched_at"] = _now().isoformat()
                e["dispatch_results"] = dict(results or {})
                return 1
        return 0


_LEDGER_FUNCTIONS = (
    "get_invoice", "get_payment_by_gateway_ref", "find_pending_payment", "get_latest_payment",
    "list_user_invoices", "list_invoices_payments", "list_user_payments", "insert_pending_payment",
    "attach_gateway_session", "transition_payment", "transition_invoice", "insert_payment_event",
    "get_completed_payment", "list_undispatched_events", "mark_event_dispatched",
)


@pytest.fixture()
def ledger(monkeypatch) -> FakeLedger:
    fake = FakeLedger()
    for name in _LEDGER_FUNCTIONS:
        monkeypatch.setattr(ledger_repo, name, getattr(fake, name))
    return fake


class FakeGateway:
    """
    Remplace les appels Stripe sortants; `fail_with` simule une panne.
    `during_create` est appelé pendant la création (simule une écriture concurrente côté ledger).
    """

    def __init__(self):
        self.sessions: List[Dict[str, Any]] = []
        self.intents: List[Dict[str, Any]] = []
        self.expired: List[str] = []
        self.cancelled: List[str] = []
        self.remote_sessions: Dict[str, Dict[str, Any]] = {}
        self.remote_intents: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Optional[Exception] = None
        self.expire_error: Optional[Exception] = None
        self.during_create: Optional[Callable[[], None]] = None

    def _creating(self):
        if self.fail_with:
            raise self.fail_with
        if self.during_create:
            self.during_create()

    def create_session(self, **kwargs):
        self._creating()
        self.sessions.append(kwargs)
        sid = f"cs_test_{len(self.sessions)}"
        return {
            "id": sid,
            "url": f"https://checkout.stripe.test/{sid}",
            "expires_at": (_now() + timedelta(hours=24)).isoformat(),
        }

    def create_payment_intent(self, **kwargs):
        self._creating()
        self.intents.append(kwargs)
        iid = f"pi_test_{len(self.intents)}"
        return {"id": iid, "client_secret": f"{iid}_secret"}

    def retrieve_payment_intent(self, intent_id):
        default = {"status": "requires_payment_method", "latest_charge": None}
        remote = self.remote_intents.get(intent_id, default)
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", **remote}

    def expire_session(self, session_id):
        if self.expire_error:
            raise self.expire_error
        self.expired.append(session_id)

    def cancel_payment_intent(self, intent_id):
        self.cancelled.append(intent_id)

    def get_session(self, session_id):
        return self.remote_sessions[session_id]


@pytest.fixture()
def gateway(monkeypatch) -> FakeGateway:
    fake = FakeGateway()
    for name in ("create_session", "create_payment_intent", "retrieve_payment_intent",
                 "expire_session", "cancel_payment_intent", "get_session"):
        monkeypatch.setattr(stripe_client, name, getattr(fake, name))
    return fake


class RecordingDispatcher(payments_effects.EffectDispatcher):
    def __init__(self):
        super().__init__(handlers=[])
        self.dispatched: List[payments_effects.PaymentConfirmed] = []

    def dispatch(self, effect):
        self.dispatched.append(effect)
        return {}


@pytest.fixture()
def dispatcher(app) -> Generator[RecordingDispatcher, None, None]:
    rec = RecordingDispatcher()
    app.dependency_overrides[get_dispatcher] = lambda: rec
    try:
        yield rec
    finally:
        app.dependency_overrides.pop(get_dispatcher, None)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """En-tête Stripe-Signature valide (t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>"))."""
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test") -> str:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


@pytest.fixture()
def webhook_secret(monkeypatch) -> str:
    monkeypatch.setattr(stripe_client, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture()
def post_webhook(client, webhook_secret):
    """Poste un événement Stripe signé sur /api/v1/payments/webhook."""
    def _post(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test"):
        payload = stripe_event(event_type, obj, event_id)
        return client.post(
            "/api/v1/payments/webhook",
            content=payload,
            headers={"stripe-signature": sign_payload(payload), "content-type": "application/json"},
        )
    return _post
