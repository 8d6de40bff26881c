import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from shopease.infra.database import utcnow
from shopease.payments import bakong_client
from shopease.payments import service as payments_service

# Les fixtures `app`, `client` et `make_product` sont fournies par `conftest.py`

@pytest.mark.functional
class TestCheckoutFlow:
    """
    Parcours complets de commande (API JSON), de la création au paiement ou à l'expiration.
    """

    def test_bakong_checkout_paid_then_delivered(self, client: TestClient, as_admin, make_product, stock_of, order_payload, monkeypatch):
        """
        Scénario :
        1. Commande Bakong (prix client falsifié, ignoré).
        2. Demande du QR KHQR.
        3. Webhook signé "paid" puis doublon.
        4. Livraison par l'admin; le stock n'est jamais restitué.
        """
        monkeypatch.setattr("shopease.config.BAKONG_WEBHOOK_SECRET", "whsec_flow")
        shoes = make_product(name="Shoes", price="30.00", stock=4)
        socks = make_product(name="Socks", price="2.50", stock=20)

        created = client.post("/orders", json=order_payload(
            [{"productId": shoes, "quantity": 1, "price": 1}, {"productId": socks, "quantity": 4}],
            payment_method="Bakong",
            declared_total=5,
        ))
        assert created.status_code == 201
        order = created.json()
        assert order["total"] == 40.0
        assert (stock_of(shoes), stock_of(socks)) == (3, 16)

        qr = client.get(f"/orders/{order['id']}/payment-qr").json()
        assert qr["amount"] == 160000

        body = json.dumps({"correlationId": qr["correlationId"], "outcome": "paid", "reference": "bk-1"}).encode()
        headers = {bakong_client.SIGNATURE_HEADER: bakong_client.compute_signature(body, "whsec_flow")}
        assert client.post("/payments/webhook", content=body, headers=headers).json()["status"] == "resolved"
        assert client.post("/payments/webhook", content=body, headers=headers).json()["status"] == "already_resolved"

        delivered = client.patch(f"/orders/{order['id']}/status", json={"status": "delivered"})
        assert delivered.json()["order"]["status"] == "delivered"

        tracking = client.get(f"/orders/{order['id']}/tracking").json()
        assert [h["status"] for h in tracking["history"]] == ["pending", "processing", "delivered"]
        assert (stock_of(shoes), stock_of(socks)) == (3, 16)

    def test_bakong_checkout_abandoned_expires_and_restocks(self, client: TestClient, db_factory, make_product, stock_of, order_payload, monkeypatch):
        """
        Scénario :
        1. Commande Bakong + QR, aucun paiement.
        2. Balayage à t+16 min: commande expirée, stock restitué.
        3. Le QR n'est plus disponible (410), le statut reste "expired".
        """
        monkeypatch.setattr("shopease.config.BAKONG_ACCESS_TOKEN", "")
        pid = make_product(price="10.00", stock=2)
        order = client.post("/orders", json=order_payload([{"productId": pid, "quantity": 2}], payment_method="Bakong")).json()
        assert stock_of(pid) == 0
        client.get(f"/orders/{order['id']}/payment-qr")

        result = payments_service.expire_stale_sessions(db_factory, now=utcnow() + timedelta(minutes=16))

        assert result["sessions"] == 1
        assert stock_of(pid) == 2
        assert client.get(f"/orders/{order['id']}/payment-qr").status_code == 410
        status = client.get(f"/orders/{order['id']}/payment-status").json()
        assert status["paymentStatus"] == "expired"
        assert status["orderStatus"] == "expired"

        # Le stock libéré est de nouveau disponible
        again = client.post("/orders", json=order_payload([{"productId": pid, "quantity": 2}]))
        assert again.status_code == 201

    def test_cash_on_delivery_cancelled_by_admin(self, client: TestClient, as_admin, make_product, stock_of, order_payload):
        pid = make_product(stock=3)
        order = client.post("/orders", json=order_payload([{"productId": pid, "quantity": 3}])).json()
        assert client.post("/orders", json=order_payload([{"productId": pid, "quantity": 1}])).status_code == 400

        client.patch(f"/orders/{order['id']}/status", json={"status": "processing"})
        cancelled = client.patch(f"/orders/{order['id']}/status", json={"status": "cancelled", "note": "Adresse introuvable"})

        assert cancelled.json()["stockRelease"]["released"] == [{"productId": pid, "quantity": 3}]
        assert stock_of(pid) == 3
        report = client.get("/admin/orders/cancelled").json()
        assert report["data"][0]["reason"] == "Adresse introuvable"
