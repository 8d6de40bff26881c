import json

import pytest

from shopease.payments import bakong_client


@pytest.fixture()
def bakong_order_id(client, make_product, order_payload):
    pid = make_product(price="5.00", stock=5)
    res = client.post("/orders", json=order_payload([{"productId": pid, "quantity": 1}], payment_method="Bakong"))
    assert res.status_code == 201
    return res.json()["id"]


@pytest.fixture()
def webhook_secret(monkeypatch):
    monkeypatch.setattr("shopease.config.BAKONG_WEBHOOK_SECRET", "whsec_test")
    return "whsec_test"


def _signed_post(client, payload, secret):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        bakong_client.SIGNATURE_HEADER: bakong_client.compute_signature(body, secret),
    }
    return client.post("/payments/webhook", content=body, headers=headers)


def test_payment_qr_returns_payload_and_image(client, bakong_order_id):
    res = client.get(f"/orders/{bakong_order_id}/payment-qr")
    assert res.status_code == 200
    data = res.json()
    assert data["amount"] == 20000
    assert data["qrImage"].startswith("data:image/png;base64,")
    assert data["expiresIn"] > 0


def test_payment_qr_for_cash_order_is_rejected(client, make_product, order_payload):
    pid = make_product()
    order = client.post("/orders", json=order_payload([{"productId": pid, "quantity": 1}])).json()
    res = client.get(f"/orders/{order['id']}/payment-qr")
    assert res.status_code == 400
    assert res.json()["error"] == "PaymentNotApplicable"


def test_payment_qr_unknown_order(client, engine):
    assert client.get("/orders/4242/payment-qr").status_code == 404


def test_signed_webhook_confirms_payment(client, bakong_order_id, webhook_secret):
    session = client.get(f"/orders/{bakong_order_id}/payment-qr").json()

    res = _signed_post(client, {"correlationId": session["correlationId"], "outcome": "paid"}, webhook_secret)
    again = _signed_post(client, {"correlationId": session["correlationId"], "outcome": "paid"}, webhook_secret)

    assert res.status_code == 200
    assert res.json()["status"] == "resolved"
    assert again.json()["status"] == "already_resolved"
    assert res.json()["orderStatus"] == "processing"


def test_webhook_with_bad_signature_is_rejected(client, bakong_order_id, webhook_secret, monkeypatch):
    monkeypatch.setattr("shopease.config.BAKONG_ACCESS_TOKEN", "")
    session = client.get(f"/orders/{bakong_order_id}/payment-qr").json()
    res = client.post(
        "/payments/webhook",
        json={"correlationId": session["correlationId"], "outcome": "paid"},
        headers={bakong_client.SIGNATURE_HEADER: "deadbeef"},
    )
    assert res.status_code == 400
    status = client.get(f"/orders/{bakong_order_id}/payment-status")
    assert status.json()["orderStatus"] == "pending"


def test_webhook_rejects_invalid_json_and_unknown_session(client, engine, webhook_secret):
    bad = client.post(
        "/payments/webhook",
        content=b"not json",
        headers={bakong_client.SIGNATURE_HEADER: bakong_client.compute_signature(b"not json", webhook_secret)},
    )
    assert bad.status_code == 400
    unknown = _signed_post(client, {"correlationId": "f" * 32, "outcome": "paid"}, webhook_secret)
    assert unknown.status_code == 400


def test_payment_status_polls_gateway(client, bakong_order_id, monkeypatch):
    session = client.get(f"/orders/{bakong_order_id}/payment-qr").json()
    answers = iter([None, {"hash": "gw"}])
    seen = []

    def fake_check(md5):
        seen.append(md5)
        return next(answers)

    monkeypatch.setattr(bakong_client, "check_transaction_by_md5", fake_check)

    pending = client.get(f"/orders/{bakong_order_id}/payment-status").json()
    done = client.get(f"/orders/{bakong_order_id}/payment-status").json()
    after = client.get(f"/orders/{bakong_order_id}/payment-status").json()

    assert pending["paymentStatus"] == "pending"
    assert done["paymentStatus"] == "completed"
    assert after["orderStatus"] == "processing"
    assert seen == [session["correlationId"]] * 2


def test_payment_status_with_unreachable_gateway_stays_pending(client, bakong_order_id, monkeypatch):
    client.get(f"/orders/{bakong_order_id}/payment-qr")
    # Aucun jeton configuré: GatewayError journalisée, le paiement reste en attente
    monkeypatch.setattr("shopease.config.BAKONG_ACCESS_TOKEN", "")
    res = client.get(f"/orders/{bakong_order_id}/payment-status")
    assert res.status_code == 200
    assert res.json()["paymentStatus"] == "pending"


def test_cancelled_order_qr_and_status(client, as_admin, bakong_order_id, monkeypatch):
    client.get(f"/orders/{bakong_order_id}/payment-qr")
    cancelled = client.patch(f"/orders/{bakong_order_id}/status", json={"status": "cancelled", "note": "Client"})
    assert cancelled.status_code == 200

    def must_not_be_called(md5):
        raise AssertionError("gateway called for a cancelled order")

    monkeypatch.setattr(bakong_client, "check_transaction_by_md5", must_not_be_called)

    qr = client.get(f"/orders/{bakong_order_id}/payment-qr")
    assert qr.status_code == 400
    assert qr.json()["error"] == "PaymentNotApplicable"
    status = client.get(f"/orders/{bakong_order_id}/payment-status").json()
    assert status["paymentStatus"] == "failed"
    assert status["orderStatus"] == "cancelled"
