from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from booking_backend.ledger import repository as repo
from booking_backend.ledger.models import InvoiceStatus, PaymentStatus, InvalidTransition
from booking_backend.payments.errors import LedgerUnavailable


def _client_returning(data):
    """Client Supabase factice: toute chaîne table().x().y().execute() renvoie `data`."""
    client = MagicMock()
    chain = client.table.return_value
    for name in ("select", "update", "insert", "eq", "is_", "in_", "lt", "order", "limit"):
        getattr(chain, name).return_value = chain
    chain.execute.return_value = SimpleNamespace(data=data)
    return client, chain


def _client_raising(exc):
    client, chain = _client_returning(None)
    chain.execute.side_effect = exc
    return client, chain


@pytest.fixture
def use_client(monkeypatch):
    def _use(client):
        monkeypatch.setattr("booking_backend.infra.supabase_client.get_service_supabase", lambda: client)
    return _use


def test_get_invoice_returns_first_row(use_client):
    client, chain = _client_returning([{"id": "inv-1", "payment_status": "unpaid"}])
    use_client(client)
    assert repo.get_invoice("inv-1") == {"id": "inv-1", "payment_status": "unpaid"}
    client.table.assert_called_with("invoices")
    chain.eq.assert_called_with("id", "inv-1")


def test_get_payment_by_gateway_ref_absent(use_client):
    client, _ = _client_returning([])
    use_client(client)
    assert repo.get_payment_by_gateway_ref("cs_unknown") is None


def test_read_failure_is_ledger_unavailable(use_client):
    client, _ = _client_raising(RuntimeError("connection reset"))
    use_client(client)
    with pytest.raises(LedgerUnavailable):
        repo.get_invoice("inv-1")


def test_transition_payment_is_guarded_by_current_status(use_client):
    client, chain = _client_returning([{"id": "pay-1", "status": "completed"}])
    use_client(client)

    changed = repo.transition_payment(
        payment_id="pay-1", from_status=PaymentStatus.PENDING, to_status=PaymentStatus.COMPLETED,
        fields={"transaction_id": "pi_1"},
    )
    assert changed == 1
    values = chain.update.call_args.args[0]
    assert values["status"] == "completed"
    assert values["transaction_id"] == "pi_1"
    chain.eq.assert_any_call("id", "pay-1")
    chain.eq.assert_any_call("status", "pending")


def test_transition_payment_guard_miss_returns_zero(use_client):
    client, _ = _client_returning([])
    use_client(client)
    assert repo.transition_payment(
        payment_id="pay-1", from_status=PaymentStatus.PENDING, to_status=PaymentStatus.EXPIRED
    ) == 0


def test_transition_payment_unique_violation_is_settlement_conflict(use_client):
    client, _ = _client_raising(APIError({"code": "23505", "message": "duplicate key", "details": "", "hint": ""}))
    use_client(client)
    with pytest.raises(repo.SettlementConflict):
        repo.transition_payment(
            payment_id="pay-2", from_status=PaymentStatus.PENDING, to_status=PaymentStatus.COMPLETED
        )


def test_transition_rejects_edges_outside_the_graph(use_client):
    client, chain = _client_returning([])
    use_client(client)
    with pytest.raises(InvalidTransition):
        repo.transition_invoice(invoice_id="inv-1", from_status=InvoiceStatus.UNPAID, to_status=InvoiceStatus.PAID)
    chain.update.assert_not_called()


def test_transition_invoice_cas(use_client):
    client, chain = _client_returning([{"id": "inv-1"}])
    use_client(client)
    assert repo.transition_invoice(
        invoice_id="inv-1", from_status=InvoiceStatus.PROCESSING, to_status=InvoiceStatus.PAID
    ) == 1
    chain.eq.assert_any_call("payment_status", "processing")
    assert chain.update.call_args.args[0]["payment_status"] == "paid"


def test_insert_pending_payment_conflict(use_client):
    client, _ = _client_raising(APIError({"code": "23505", "message": "dup", "details": "", "hint": ""}))
    use_client(client)
    with pytest.raises(repo.PendingConflict):
        repo.insert_pending_payment(invoice={"id": "inv-1", "amount": 100, "currency": "USD"}, user_id="u1", method="stripe_checkout")


def test_insert_pending_payment_payload(use_client):
    client, chain = _client_returning([{"id": "pay-9", "status": "pending"}])
    use_client(client)
    row = repo.insert_pending_payment(
        invoice={"id": "inv-1", "amount": 50000, "currency": "USD"}, user_id="u1", method="stripe_checkout"
    )
    assert row["id"] == "pay-9"
    payload = chain.insert.call_args.args[0]
    assert payload == {
        "invoice_id": "inv-1", "user_id": "u1", "amount": 50000, "currency": "usd",
        "status": "pending", "method": "stripe_checkout",
    }


def test_attach_gateway_session_only_once(use_client):
    client, chain = _client_returning([])
    use_client(client)
    assert repo.attach_gateway_session("pay-1", gateway_ref="cs_1") == 0
    chain.is_.assert_called_with("gateway_ref", "null")


def test_insert_payment_event_duplicate_returns_false(use_client):
    client, _ = _client_raising(APIError({"code": "23505", "message": "dup", "details": "", "hint": ""}))
    use_client(client)
    assert repo.insert_payment_event(kind="payment_confirmed", gateway_ref="cs_1", payment_id="pay-1") is False


def test_insert_payment_event_other_error_propagates(use_client):
    client, _ = _client_raising(APIError({"code": "42P01", "message": "no table", "details": "", "hint": ""}))
    use_client(client)
    with pytest.raises(LedgerUnavailable):
        repo.insert_payment_event(kind="unmatched_notification", gateway_ref="cs_x")


def test_get_completed_payment_filters_status(use_client):
    client, chain = _client_returning([{"id": "pay-1", "status": "completed"}])
    use_client(client)
    assert repo.get_completed_payment("inv-1")["id"] == "pay-1"
    chain.eq.assert_any_call("status", "completed")


def test_undispatched_events_query(use_client):
    client, chain = _client_returning([{"id": "evt-1", "payment_id": "pay-1"}])
    use_client(client)
    rows = repo.list_undispatched_events(kind="payment_confirmed", created_before="2026-01-01T00:00:00+00:00")
    assert rows == [{"id": "evt-1", "payment_id": "pay-1"}]
    chain.is_.assert_called_with("dispatched_at", "null")
    chain.lt.assert_called_with("created_at", "2026-01-01T00:00:00+00:00")


def test_mark_event_dispatched_is_guarded(use_client):
    client, chain = _client_returning([])
    use_client(client)
    assert repo.mark_event_dispatched(kind="payment_confirmed", payment_id="pay-1", results={"h": True}) == 0
    chain.is_.assert_called_with("dispatched_at", "null")
    values = chain.update.call_args.args[0]
    assert values["dispatch_results"] == {"h": True}
