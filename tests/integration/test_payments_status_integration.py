def test_session_status_unknown_is_404(client, ledger):
    res = client.get("/api/v1/payments/session/cs_unknown")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"
    assert ledger.writes == 0


def test_session_status_is_public(app, client, ledger):
    from booking_backend.utils.security import require_user
    app.dependency_overrides.pop(require_user, None)
    ledger.add_invoice("INV-1")
    ledger.add_payment("pay_1", "INV-1", gateway_ref="cs_1")

    res = client.get("/api/v1/payments/session/cs_1")
    assert res.status_code == 200
    assert res.json()["status"] == "pending"


def test_invoice_status_and_listings(client, ledger):
    ledger.add_invoice("INV-1", status="paid")
    ledger.add_payment("pay_1", "INV-1", gateway_ref="cs_1", status="completed")
    ledger.add_invoice("INV-2", user_id="other")

    assert client.get("/api/v1/payments/invoices/INV-1/status").json()["status"] == "paid"
    assert client.get("/api/v1/payments/invoices/INV-2/status").status_code == 403

    invoices = client.get("/api/v1/payments/invoices").json()["invoices"]
    assert [i["invoice"]["id"] for i in invoices] == ["INV-1"]

    history = client.get("/api/v1/payments/history").json()["payments"]
    assert [p["id"] for p in history] == ["pay_1"]


def test_receipt_for_paid_invoice(client, ledger):
    ledger.add_invoice("INV-1", status="paid", invoice_number="INV-20260101-001")
    ledger.add_payment("pay_1", "INV-1", gateway_ref="cs_1", status="completed",
                       transaction_id="pi_1", processed_at="2026-01-01T12:00:00+00:00")

    res = client.get("/api/v1/payments/invoices/INV-1/receipt")

    assert res.status_code == 200
    assert res.headers["content-type"] == "application/pdf"
    assert 'filename="receipt-INV-20260101-001.pdf"' in res.headers["content-disposition"]
    assert res.content.startswith(b"%PDF")


def test_receipt_refused_for_unpaid_or_foreign_invoice(client, ledger):
    ledger.add_invoice("INV-2")
    ledger.add_invoice("INV-3", status="paid", user_id="other")

    res = client.get("/api/v1/payments/invoices/INV-2/receipt")
    assert res.status_code == 409
    assert res.json()["code"] == "receipt_unavailable"
    assert client.get("/api/v1/payments/invoices/INV-3/receipt").status_code == 403
    assert client.get("/api/v1/payments/invoices/INV-404/receipt").status_code == 404
