import json

import pytest

from fulfillment_service.app.models import Order, OrderStatus, Payment, PaymentStatus
from fulfillment_service.app.payments import PaymentReconciliation

WEBHOOK_URL = "/api/v1/webhooks/razorpay"


def payment_for(db, order_id):
    db.expire_all()
    return db.query(Payment).filter(Payment.order_id == order_id).one()


def payment_entity(payment, payment_ref="pay_hook_1", status="captured", **extra):
    entity = {
        "id": payment_ref,
        "order_id": "order_rzp_1",
        "status": status,
        "method": "upi",
        "notes": {"order_id": str(payment.order_id), "payment_id": str(payment.id)},
    }
    entity.update(extra)
    return entity


@pytest.fixture
def deliver(client, gateway):
    """Posts a signed webhook; returns the response."""
    def _deliver(payload, signature=None, url=WEBHOOK_URL):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        if signature is None:
            signature = gateway.sign_webhook(body)
        return client.post(
            url,
            content=body,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": signature},
        )
    return _deliver


class TestPaymentEvents:
    def test_capture_completes_payment_and_order(self, db, deliver, place_order, publisher):
        order_id = place_order()
        payment = payment_for(db, order_id)

        response = deliver({
            "event": "payment.captured",
            "payload": {"payment": {"entity": payment_entity(payment)}},
        })

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["received"] is True
        assert data["outcome"] == "processed"
        assert "timestamp" in data
        payment = payment_for(db, order_id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.transaction_id == "pay_hook_1"
        assert payment.payment_details["method"] == "upi"
        assert db.get(Order, order_id).status == OrderStatus.PROCESSING
        assert publisher.routing_keys[-2:] == ["payment.succeeded", "order.processing"]

    def test_redelivery_is_a_duplicate(self, db, deliver, place_order):
        order_id = place_order()
        payment = payment_for(db, order_id)
        payload = {
            "event": "payment.authorized",
            "payload": {"payment": {"entity": payment_entity(payment, status="authorized")}},
        }

        first = deliver(payload)
        second = deliver(payload)

        assert first.json()["data"]["outcome"] == "processed"
        assert second.json()["data"]["outcome"] == "duplicate"
        db.expire_all()
        history = db.get(Order, order_id).status_history
        assert [h.status for h in history] == [OrderStatus.PENDING, OrderStatus.PROCESSING]

    def test_failure_records_the_reason(self, db, deliver, place_order):
        order_id = place_order()
        payment = payment_for(db, order_id)

        response = deliver({
            "event": "payment.failed",
            "payload": {"payment": {"entity": payment_entity(
                payment, status="failed", error_code="BAD_REQUEST_ERROR",
                error_description="Card declined",
            )}},
        })

        assert response.json()["data"]["outcome"] == "processed"
        payment = payment_for(db, order_id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.payment_details["error_description"] == "Card declined"
        assert payment.payment_details["error_code"] == "BAD_REQUEST_ERROR"
        assert db.get(Order, order_id).status == OrderStatus.PENDING

    def test_late_capture_after_failure(self, db, deliver, place_order):
        order_id = place_order()
        payment = payment_for(db, order_id)
        deliver({
            "event": "payment.failed",
            "payload": {"payment": {"entity": payment_entity(payment, status="failed")}},
        })

        response = deliver({
            "event": "payment.captured",
            "payload": {"payment": {"entity": payment_entity(payment)}},
        })

        assert response.json()["data"]["outcome"] == "processed"
        assert payment_for(db, order_id).status == PaymentStatus.COMPLETED

    def test_unknown_payment_is_ignored(self, deliver, place_order):
        place_order()

        response = deliver({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_unknown", "notes": {}}}},
        })

        assert response.json()["data"]["outcome"] == "ignored"


class TestRefundEvents:
    def test_refund_processed_refunds_payment_and_order(self, db, service, customer, gateway,
                                                        deliver, place_order):
        order_id = place_order()
        params = service.start_payment(customer, order_id)
        service.verify_payment(
            customer, order_id, params["order_id"], "pay_001", gateway.sign(params["order_id"], "pay_001")
        )

        response = deliver({
            "event": "refund.processed",
            "payload": {"refund": {"entity": {
                "id": "rfnd_hook", "payment_id": "pay_001", "amount": 6550,
                "notes": {"reason": "Changed mind"},
            }}},
        })

        assert response.json()["data"]["outcome"] == "processed"
        payment = payment_for(db, order_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.payment_details["razorpay_refund_id"] == "rfnd_hook"
        assert payment.payment_details["refund_amount"] == "65.50"
        assert payment.payment_details["refund_reason"] == "Changed mind"
        assert payment.payment_details["refunded_by"] == "system"
        assert db.get(Order, order_id).status == OrderStatus.REFUNDED

    def test_refund_for_unsettled_payment_is_ignored(self, db, deliver, place_order):
        order_id = place_order()

        response = deliver({
            "event": "refund.processed",
            "payload": {"refund": {"entity": {"id": "rfnd_x", "payment_id": "pay_nobody"}}},
        })

        assert response.json()["data"]["outcome"] == "ignored"
        assert payment_for(db, order_id).status == PaymentStatus.PENDING


class TestDelivery:
    @pytest.mark.parametrize(
        "payload",
        [
            {"event": "order.paid", "payload": {}},
            {"payload": {"payment": {}}},
            b"{not json",
            b"[1, 2, 3]",
        ],
    )
    def test_unusable_payloads_are_acknowledged(self, db, deliver, place_order, payload):
        order_id = place_order()

        response = deliver(payload)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["outcome"] == "ignored"
        assert payment_for(db, order_id).status == PaymentStatus.PENDING

    def test_bad_signature_is_refused(self, db, deliver, place_order):
        order_id = place_order()
        payment = payment_for(db, order_id)

        response = deliver(
            {"event": "payment.captured",
             "payload": {"payment": {"entity": payment_entity(payment)}}},
            signature="forged",
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert payment_for(db, order_id).status == PaymentStatus.PENDING

    def test_unsupported_gateway(self, deliver):
        response = deliver({"event": "charge.succeeded"}, url="/api/v1/webhooks/stripe")

        assert response.status_code == 200
        assert response.json()["data"]["outcome"] == "ignored"

    def test_internal_failure_still_answers_success(self, deliver, monkeypatch, caplog):
        def explode(self, body, signature):
            raise RuntimeError("database went away")

        monkeypatch.setattr(PaymentReconciliation, "handle_webhook", explode)

        response = deliver({"event": "payment.captured"})

        assert response.status_code == 200
        assert response.json()["data"]["outcome"] == "error"
        assert "Webhook processing failed" in caplog.text
