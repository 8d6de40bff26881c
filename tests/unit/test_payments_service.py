import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from shopease.errors import PaymentNotApplicable, SessionExpired, WebhookRejected, GatewayError
from shopease.infra.database import utcnow
from shopease.orders import repository as orders_repo
from shopease.orders import service as orders_service
from shopease.orders.models import Order
from shopease.orders.schemas import CreateOrderRequest
from shopease.payments import khqr
from shopease.payments import service as payments_service
from shopease.payments.bakong_client import WebhookEvent
from shopease.payments.models import PaymentOutcome, PaymentSession


@pytest.fixture()
def bakong_order(db, make_product, order_payload):
    """Commande Bakong en attente (quantité 2 d'un produit en stock 5). Retourne (order, product_id)."""
    def _make(quantity: int = 2, stock: int = 5):
        pid = make_product(price="12.50", stock=stock)
        req = CreateOrderRequest.model_validate(
            order_payload([{"productId": pid, "quantity": quantity}], payment_method="Bakong")
        )
        return orders_service.create_order(db, req), pid
    return _make


def _session_row(db_factory, order_id):
    with db_factory() as s:
        return s.execute(select(PaymentSession).where(PaymentSession.order_id == order_id)).scalars().first()


def _order_status(db_factory, order_id):
    with db_factory() as s:
        return s.get(Order, order_id).status


def _history_statuses(db_factory, order_id):
    with db_factory() as s:
        return [h.status for h in orders_repo.list_history(s, order_id)]


def _paid(correlation_id, reference="tx-hash"):
    return WebhookEvent(outcome=PaymentOutcome.PAID, correlation_id=correlation_id, reference=reference)


def test_create_session_builds_khqr_for_order_total(db, bakong_order):
    order, _ = bakong_order()
    now = utcnow()

    session = payments_service.create_session(db, order["id"], now=now)

    assert session["amount"] == 100000
    assert session["currency"] == "KHR"
    assert session["correlationId"] == khqr.md5_hex(session["qrPayload"])
    assert session["expiresIn"] == 15 * 60
    assert session["resolved"] is False
    assert khqr.decode_payload(session["qrPayload"])["54"] == "100000"


def test_create_session_is_idempotent(db, db_factory, bakong_order):
    order, _ = bakong_order()
    now = utcnow()
    first = payments_service.create_session(db, order["id"], now=now)
    second = payments_service.create_session(db, order["id"], now=now + timedelta(minutes=5))

    assert second["correlationId"] == first["correlationId"]
    assert second["expiresIn"] == 10 * 60
    with db_factory() as s:
        assert s.get(Order, order["id"]).payment_correlation_id == first["correlationId"]


def test_create_session_rejects_non_bakong_order(db, make_product, order_payload):
    pid = make_product()
    order = orders_service.create_order(
        db, CreateOrderRequest.model_validate(order_payload([{"productId": pid, "quantity": 1}]))
    )
    with pytest.raises(PaymentNotApplicable):
        payments_service.create_session(db, order["id"])
    with pytest.raises(PaymentNotApplicable):
        payments_service.get_payment_status(db, order["id"])


def test_webhook_paid_moves_order_to_processing(db, db_factory, stock_of, bakong_order):
    # Arrange
    order, pid = bakong_order()
    session = payments_service.create_session(db, order["id"])
    # Act
    result = payments_service.handle_webhook(db, _paid(session["correlationId"]))
    # Assert
    assert result == {"status": "resolved", "orderId": order["id"], "orderStatus": "processing", "outcome": "paid"}
    row = _session_row(db_factory, order["id"])
    assert row.resolved and row.resolved_via == "webhook" and row.gateway_reference == "tx-hash"
    assert stock_of(pid) == 3


def test_webhook_declined_fails_order_and_releases_stock(db, db_factory, stock_of, bakong_order):
    order, pid = bakong_order()
    session = payments_service.create_session(db, order["id"])

    event = WebhookEvent(outcome=PaymentOutcome.DECLINED, correlation_id=session["correlationId"])
    result = payments_service.handle_webhook(db, event)

    assert result["orderStatus"] == "failed"
    assert stock_of(pid) == 5


def test_duplicate_webhook_is_acknowledged_without_effect(db, db_factory, bakong_order):
    order, _ = bakong_order()
    session = payments_service.create_session(db, order["id"])

    payments_service.handle_webhook(db, _paid(session["correlationId"]))
    again = payments_service.handle_webhook(db, _paid(session["correlationId"], reference="other"))

    assert again["status"] == "already_resolved"
    assert _history_statuses(db_factory, order["id"]).count("processing") == 1
    assert _session_row(db_factory, order["id"]).gateway_reference == "tx-hash"


def test_webhook_matches_by_order_number(db, bakong_order):
    order, _ = bakong_order()
    payments_service.create_session(db, order["id"])
    event = WebhookEvent(outcome=PaymentOutcome.PAID, order_number=order["orderNumber"], reference="h")
    assert payments_service.handle_webhook(db, event)["orderStatus"] == "processing"


def test_webhook_unknown_session_is_rejected(db, engine):
    with pytest.raises(WebhookRejected):
        payments_service.handle_webhook(db, _paid("0" * 32))


def test_webhook_without_outcome_is_ignored(db, engine):
    event = WebhookEvent(outcome=None, correlation_id="abc", raw_status="PROCESSING")
    assert payments_service.handle_webhook(db, event) == {"status": "ignored"}


def test_paid_webhook_after_deadline_but_before_sweep_is_honored(db, bakong_order):
    order, _ = bakong_order()
    now = utcnow()
    session = payments_service.create_session(db, order["id"], now=now)

    result = payments_service.handle_webhook(db, _paid(session["correlationId"]), now=now + timedelta(minutes=16))

    assert result["orderStatus"] == "processing"


def test_poll_confirms_payment_through_gateway(db, db_factory, bakong_order):
    order, _ = bakong_order()
    session = payments_service.create_session(db, order["id"])
    calls = []

    def check(md5):
        calls.append(md5)
        return {"hash": "gw-hash"}

    status = payments_service.get_payment_status(db, order["id"], check_transaction=check)

    assert calls == [session["correlationId"]]
    assert status["paymentStatus"] == "completed"
    assert status["orderStatus"] == "processing"
    assert status["resolved"] is True
    assert _session_row(db_factory, order["id"]).resolved_via == "poll"


def test_poll_gateway_error_keeps_payment_pending(db, bakong_order):
    order, _ = bakong_order()
    payments_service.create_session(db, order["id"])

    def broken(md5):
        raise GatewayError("timeout")

    status = payments_service.get_payment_status(db, order["id"], check_transaction=broken)

    assert status["paymentStatus"] == "pending"
    assert status["orderStatus"] == "pending"
    assert status["secondsRemaining"] > 0


def test_poll_after_deadline_expires_lazily_without_gateway_call(db, stock_of, bakong_order):
    order, pid = bakong_order()
    now = utcnow()
    payments_service.create_session(db, order["id"], now=now)

    def must_not_be_called(md5):
        raise AssertionError("gateway called on an expired session")

    status = payments_service.get_payment_status(
        db, order["id"], now=now + timedelta(minutes=16), check_transaction=must_not_be_called
    )

    assert status["paymentStatus"] == "expired"
    assert status["orderStatus"] == "expired"
    assert status["isExpired"] is True
    assert stock_of(pid) == 5


def test_expired_session_releases_stock_exactly_once(db, db_factory, stock_of, bakong_order):
    # Arrange
    order, pid = bakong_order()
    now = utcnow()
    session = payments_service.create_session(db, order["id"], now=now)
    later = now + timedelta(minutes=16)
    # Act: balayage, puis polling, puis webhook tardif et nouveau balayage
    swept = payments_service.expire_stale_sessions(db_factory, now=later)
    payments_service.get_payment_status(db, order["id"], now=later, check_transaction=lambda md5: None)
    late = payments_service.handle_webhook(db, _paid(session["correlationId"]), now=later)
    again = payments_service.expire_stale_sessions(db_factory, now=later)
    # Assert
    assert swept == {"sessions": 1, "orders": 0}
    assert again == {"sessions": 0, "orders": 0}
    assert late["status"] == "already_resolved"
    assert _order_status(db_factory, order["id"]) == "expired"
    assert stock_of(pid) == 5


def test_create_session_after_expiry_raises_session_expired(db, db_factory, bakong_order):
    order, _ = bakong_order()
    now = utcnow()
    payments_service.create_session(db, order["id"], now=now)

    with pytest.raises(SessionExpired):
        payments_service.create_session(db, order["id"], now=now + timedelta(minutes=16))
    with pytest.raises(SessionExpired):
        payments_service.create_session(db, order["id"], now=now + timedelta(minutes=17))
    assert _order_status(db_factory, order["id"]) == "expired"


def test_orphan_bakong_order_is_expired_by_sweep(db, db_factory, stock_of, bakong_order):
    # Commande Bakong dont le QR n'a jamais été demandé
    order, pid = bakong_order()

    result = payments_service.expire_stale_sessions(db_factory, now=utcnow() + timedelta(minutes=16))

    assert result == {"sessions": 0, "orders": 1}
    assert _order_status(db_factory, order["id"]) == "expired"
    assert stock_of(pid) == 5


def test_orphan_order_requesting_qr_too_late_is_expired(db, db_factory, bakong_order):
    order, _ = bakong_order()
    with pytest.raises(SessionExpired):
        payments_service.create_session(db, order["id"], now=utcnow() + timedelta(minutes=16))
    assert _order_status(db_factory, order["id"]) == "expired"


def test_cancel_closes_session_and_late_payment_is_flagged(db, db_factory, stock_of, bakong_order, caplog):
    order, pid = bakong_order()
    session = payments_service.create_session(db, order["id"])
    orders_service.update_status(db, order["id"], "cancelled")

    row = _session_row(db_factory, order["id"])
    assert row.resolved and row.outcome == "declined" and row.resolved_via == "order"

    result = payments_service.handle_webhook(db, _paid(session["correlationId"]))

    assert result["status"] == "already_resolved"
    assert result["orderStatus"] == "cancelled"
    assert "processing" not in _history_statuses(db_factory, order["id"])
    assert stock_of(pid) == 5
    assert "refund review needed" in caplog.text


def test_cancelled_order_serves_no_qr(db, bakong_order):
    order, _ = bakong_order()
    payments_service.create_session(db, order["id"])
    orders_service.update_status(db, order["id"], "cancelled")

    with pytest.raises(PaymentNotApplicable):
        payments_service.create_session(db, order["id"])


def test_poll_on_cancelled_order_never_reaches_gateway(db, db_factory, bakong_order):
    order, _ = bakong_order()
    payments_service.create_session(db, order["id"])
    orders_service.update_status(db, order["id"], "cancelled")

    def must_not_be_called(md5):
        raise AssertionError("gateway called for a cancelled order")

    status = payments_service.get_payment_status(db, order["id"], check_transaction=must_not_be_called)

    assert status["paymentStatus"] == "failed"
    assert status["orderStatus"] == "cancelled"
    assert _order_status(db_factory, order["id"]) == "cancelled"


def test_admin_expiry_closes_session_as_expired(db, db_factory, bakong_order):
    order, _ = bakong_order()
    payments_service.create_session(db, order["id"])
    orders_service.update_status(db, order["id"], "expired")

    assert _session_row(db_factory, order["id"]).outcome == "expired"
    with pytest.raises(SessionExpired):
        payments_service.create_session(db, order["id"])


def test_declined_signal_on_processed_order_resolves_session_without_transition(db, db_factory, stock_of, bakong_order, caplog):
    order, pid = bakong_order()
    session = payments_service.create_session(db, order["id"])
    orders_service.update_status(db, order["id"], "processing")

    event = WebhookEvent(outcome=PaymentOutcome.DECLINED, correlation_id=session["correlationId"])
    result = payments_service.handle_webhook(db, event)

    assert result["status"] == "resolved"
    assert result["orderStatus"] == "processing"
    assert stock_of(pid) == 3
    assert "no transition" in caplog.text


def test_resolver_locks_order_before_claiming_session(monkeypatch, db, bakong_order):
    order, _ = bakong_order()
    session = payments_service.create_session(db, order["id"])
    calls = []
    real_lock = orders_repo.get_order_for_update
    real_claim = payments_service.repository.claim

    def lock(s, order_id):
        calls.append("order")
        return real_lock(s, order_id)

    def claim(s, session_id, **kwargs):
        calls.append("session")
        return real_claim(s, session_id, **kwargs)

    monkeypatch.setattr(orders_repo, "get_order_for_update", lock)
    monkeypatch.setattr(payments_service.repository, "claim", claim)

    payments_service.handle_webhook(db, _paid(session["correlationId"]))

    assert calls[:2] == ["order", "session"]


def test_concurrent_webhook_and_poll_resolve_once(db_factory, db, bakong_order):
    # Arrange
    order, _ = bakong_order()
    session = payments_service.create_session(db, order["id"])
    barrier = threading.Barrier(2)
    errors = []

    def webhook():
        s = db_factory()
        try:
            barrier.wait()
            payments_service.handle_webhook(s, _paid(session["correlationId"], reference="from-webhook"))
        except Exception as e:
            errors.append(e)
        finally:
            s.close()

    def poll():
        s = db_factory()
        try:
            barrier.wait()
            payments_service.get_payment_status(s, order["id"], check_transaction=lambda md5: {"hash": "from-poll"})
        except Exception as e:
            errors.append(e)
        finally:
            s.close()

    # Act
    threads = [threading.Thread(target=webhook), threading.Thread(target=poll)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    # Assert
    assert errors == []
    assert _order_status(db_factory, order["id"]) == "processing"
    assert _history_statuses(db_factory, order["id"]).count("processing") == 1
    assert _session_row(db_factory, order["id"]).resolved_via in ("webhook", "poll")


@pytest.mark.parametrize("expiry_path", ["sweep", "poll"])
def test_concurrent_declined_webhook_and_expiry_release_stock_once(db_factory, db, stock_of, bakong_order, expiry_path):
    # Arrange: session échue, refus bancaire et expiration arrivent ensemble
    order, pid = bakong_order()
    now = utcnow()
    session = payments_service.create_session(db, order["id"], now=now)
    later = now + timedelta(minutes=16)
    assert stock_of(pid) == 3
    barrier = threading.Barrier(2)
    errors = []

    def webhook():
        s = db_factory()
        try:
            barrier.wait()
            event = WebhookEvent(outcome=PaymentOutcome.DECLINED, correlation_id=session["correlationId"])
            payments_service.handle_webhook(s, event, now=later)
        except Exception as e:
            errors.append(e)
        finally:
            s.close()

    def expire():
        s = db_factory()
        try:
            barrier.wait()
            if expiry_path == "sweep":
                payments_service.expire_stale_sessions(db_factory, now=later)
            else:
                payments_service.get_payment_status(s, order["id"], now=later, check_transaction=lambda md5: None)
        except Exception as e:
            errors.append(e)
        finally:
            s.close()

    # Act
    threads = [threading.Thread(target=webhook), threading.Thread(target=expire)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    # Assert: un seul gagnant, une seule restitution
    assert errors == []
    history = _history_statuses(db_factory, order["id"])
    releasing = [s for s in history if s in ("failed", "expired")]
    assert len(releasing) == 1
    assert _order_status(db_factory, order["id"]) == releasing[0]
    row = _session_row(db_factory, order["id"])
    assert row.resolved and row.outcome == {"failed": "declined", "expired": "expired"}[releasing[0]]
    assert stock_of(pid) == 5
