"""
Payment tests.

Verifies:
- Explicit authorize/capture flow moves the order to PAID exactly once
- Toss confirm fails closed on amount mismatches and gateway errors
- Replayed confirms return the stored payment without calling the gateway
- Cart confirm checks the total and reports per-order failures
"""

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from settlehub.models import Order, Payment
from settlehub.services import order_service
from settlehub.services import payment_service
from settlehub.services.payment_service import normalize_status
from settlehub.services.state_machine import StateConflictError
from settlehub.services.toss_client import GatewayError
from settlehub.validation import ConflictError, ValidationError

from conftest import captured_payment, fresh


def _order(client, headers, product, quantity=1):
    return client.post("/orders", json={"productId": product.id, "quantity": quantity}, headers=headers).json


def _confirm_body(order, payment_key="pk_test_1", amount=None):
    return {
        "dbOrderId": order["id"],
        "paymentKey": payment_key,
        "tossOrderId": f"toss-{order['id']}",
        "amount": order["amount"] if amount is None else amount,
    }


# =============================================================================
# EXPLICIT FLOW
# =============================================================================


class TestExplicitFlow:

    def test_create_authorize_capture(self, client, buyer_headers, admin_headers, product):
        order = _order(client, buyer_headers, product, quantity=2)

        resp = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "card"}, headers=buyer_headers)
        assert resp.status_code == 201
        payment = resp.json
        assert payment["amount"] == 20_000
        assert payment["status"] == "CREATED"
        assert payment["payment_method"] == "CARD"

        resp = client.patch(
            f"/payments/{payment['id']}/authorize",
            json={"pgTransactionId": "pg-123"},
            headers=admin_headers,
        )
        assert resp.json["status"] == "AUTHORIZED"
        assert resp.json["pg_transaction_id"] == "pg-123"

        resp = client.patch(f"/payments/{payment['id']}/capture", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["status"] == "CAPTURED"
        assert resp.json["captured_at"] is not None
        assert fresh(Order, order["id"]).status == "PAID"

    def test_duplicate_capture_conflicts(self, client, buyer_headers, admin_headers, product):
        order = _order(client, buyer_headers, product)
        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json
        client.patch(f"/payments/{payment['id']}/authorize", headers=admin_headers)
        client.patch(f"/payments/{payment['id']}/capture", headers=admin_headers)

        resp = client.patch(f"/payments/{payment['id']}/capture", headers=admin_headers)
        assert resp.status_code == 409
        assert fresh(Payment, payment["id"]).status == "CAPTURED"

    def test_capture_requires_authorization_first(self, client, buyer_headers, admin_headers, product):
        order = _order(client, buyer_headers, product)
        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json
        assert client.patch(f"/payments/{payment['id']}/capture", headers=admin_headers).status_code == 409

    def test_capture_is_admin_only(self, client, buyer_headers, product):
        order = _order(client, buyer_headers, product)
        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json
        assert client.patch(f"/payments/{payment['id']}/authorize", headers=buyer_headers).status_code == 403

    def test_one_open_payment_per_order(self, client, buyer_headers, product):
        order = _order(client, buyer_headers, product)
        client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers)
        resp = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "MOBILE"}, headers=buyer_headers)
        assert resp.status_code == 409

    def test_unknown_method(self, client, buyer_headers, product):
        order = _order(client, buyer_headers, product)
        resp = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CASH"}, headers=buyer_headers)
        assert resp.status_code == 400

    def test_fail_payment_then_retry(self, client, buyer_headers, admin_headers, product):
        order = _order(client, buyer_headers, product)
        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json

        resp = client.patch(f"/payments/{payment['id']}/fail", headers=admin_headers)
        assert resp.json["status"] == "FAILED"

        resp = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers)
        assert resp.status_code == 201

    def test_other_user_cannot_pay_or_read(self, client, buyer_headers, other_headers, product):
        order = _order(client, buyer_headers, product)
        resp = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=other_headers)
        assert resp.status_code == 403

        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json
        assert client.get(f"/payments/{payment['id']}", headers=other_headers).status_code == 403
        assert client.get(f"/payments/{payment['id']}", headers=buyer_headers).status_code == 200

    def test_order_payments_status_filter(self, client, buyer_headers, product):
        order = _order(client, buyer_headers, product)
        payment = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "CARD"}, headers=buyer_headers).json

        resp = client.get(f"/payments/order/{order['id']}?status=ready", headers=buyer_headers)
        assert [p["id"] for p in resp.json["items"]] == [payment["id"]]

        resp = client.get(f"/payments/order/{order['id']}?status=CAPTURED", headers=buyer_headers)
        assert resp.json["items"] == []

        assert client.get(f"/payments/order/{order['id']}?status=bogus", headers=buyer_headers).status_code == 400


class TestConcurrentTransitions:
    """A request that read the row before another one committed must not apply twice."""

    def test_capture_on_stale_read_conflicts(self, buyer, product):
        payment = captured_payment(buyer, product)

        # This session still sees the row as it was before the winning capture
        stale = fresh(Payment, payment.id)
        assert stale.status == "CAPTURED"
        set_committed_value(stale, "status", "AUTHORIZED")

        with pytest.raises(StateConflictError):
            payment_service.capture_payment(payment.id)

        assert fresh(Payment, payment.id).status == "CAPTURED"
        assert fresh(Order, payment.order_id).status == "PAID"

    def test_conflict_is_a_409(self, client, buyer, admin_headers, product):
        payment = captured_payment(buyer, product)
        stale = fresh(Payment, payment.id)
        assert stale.status == "CAPTURED"
        set_committed_value(stale, "status", "AUTHORIZED")

        resp = client.patch(f"/payments/{payment.id}/capture", headers=admin_headers)
        assert resp.status_code == 409
        assert "modified concurrently" in resp.json["error"]


class TestStatusNames:

    @pytest.mark.parametrize(
        "value,expected",
        [("READY", "CREATED"), ("ready", "CREATED"), (" captured ", "CAPTURED"), (None, None)],
    )
    def test_normalize_status(self, value, expected):
        assert normalize_status(value) == expected

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            normalize_status("SETTLED")


# =============================================================================
# TOSS SINGLE-ORDER CONFIRM
# =============================================================================


class TestTossConfirm:

    def test_confirm_captures_and_pays_order(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert resp.status_code == 201
        assert resp.json["status"] == "CAPTURED"
        assert resp.json["payment_method"] == "TOSS"
        assert resp.json["pg_transaction_id"] == "pk_test_1"
        assert fresh(Order, order["id"]).status == "PAID"
        assert fake_toss.calls == [{"payment_key": "pk_test_1", "order_id": f"toss-{order['id']}", "amount": 10_000}]

    def test_replay_returns_stored_payment(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        first = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)

        again = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert again.status_code == 200
        assert again.json["id"] == first.json["id"]
        assert len(fake_toss.calls) == 1

    def test_confirm_reuses_open_payment(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        opened = client.post("/payments", json={"orderId": order["id"], "paymentMethod": "TOSS"}, headers=buyer_headers).json

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert resp.json["id"] == opened["id"]

    def test_client_amount_mismatch_never_reaches_gateway(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order, amount=9_000), headers=buyer_headers)
        assert resp.status_code == 400
        assert fake_toss.calls == []
        assert fresh(Order, order["id"]).status == "CREATED"

    def test_gateway_amount_mismatch(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        fake_toss.reported_amount = 1_000

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert resp.status_code == 400
        assert fresh(Order, order["id"]).status == "CREATED"
        assert payment_service.get_order_payments(order["id"]) == []

    def test_gateway_rejection(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        fake_toss.error = GatewayError("rejected", code="REJECT_CARD_COMPANY", status_code=403)

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert resp.status_code == 502
        assert resp.json["code"] == "REJECT_CARD_COMPANY"
        assert fresh(Order, order["id"]).status == "CREATED"

    def test_canceled_order_cannot_be_confirmed(self, client, buyer_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        order_service.cancel_order(order["id"])

        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=buyer_headers)
        assert resp.status_code == 409
        assert fake_toss.calls == []

    @pytest.mark.parametrize("field", ["paymentKey", "tossOrderId"])
    def test_required_fields(self, client, buyer_headers, product, fake_toss, field):
        order = _order(client, buyer_headers, product)
        body = _confirm_body(order)
        body[field] = ""
        assert client.post("/payments/toss/confirm", json=body, headers=buyer_headers).status_code == 400

    def test_other_user_cannot_confirm(self, client, buyer_headers, other_headers, product, fake_toss):
        order = _order(client, buyer_headers, product)
        resp = client.post("/payments/toss/confirm", json=_confirm_body(order), headers=other_headers)
        assert resp.status_code == 403
        assert fake_toss.calls == []


# =============================================================================
# TOSS CART CONFIRM
# =============================================================================


class TestTossCartConfirm:

    def _body(self, orders, total=None, payment_key="pk_cart_1"):
        return {
            "orderIds": [o["id"] for o in orders],
            "paymentKey": payment_key,
            "tossOrderId": "toss-cart-1",
            "totalAmount": sum(o["amount"] for o in orders) if total is None else total,
        }

    def test_cart_confirm_pays_every_order(self, client, buyer_headers, product, fake_toss):
        orders = [_order(client, buyer_headers, product), _order(client, buyer_headers, product, quantity=2)]

        resp = client.post("/payments/toss/cart/confirm", json=self._body(orders), headers=buyer_headers)
        assert resp.status_code == 201
        assert resp.json["failed"] == []
        assert sorted(p["amount"] for p in resp.json["payments"]) == [10_000, 20_000]
        assert fake_toss.calls[0]["amount"] == 30_000
        for o in orders:
            assert fresh(Order, o["id"]).status == "PAID"

    def test_cart_replay(self, client, buyer_headers, product, fake_toss):
        orders = [_order(client, buyer_headers, product), _order(client, buyer_headers, product)]
        client.post("/payments/toss/cart/confirm", json=self._body(orders), headers=buyer_headers)

        resp = client.post("/payments/toss/cart/confirm", json=self._body(orders), headers=buyer_headers)
        assert resp.status_code == 200
        assert len(resp.json["payments"]) == 2
        assert len(fake_toss.calls) == 1

    def test_cart_total_mismatch(self, client, buyer_headers, product, fake_toss):
        orders = [_order(client, buyer_headers, product), _order(client, buyer_headers, product)]

        resp = client.post("/payments/toss/cart/confirm", json=self._body(orders, total=15_000), headers=buyer_headers)
        assert resp.status_code == 400
        assert fake_toss.calls == []

    def test_cart_rejects_unpayable_order_before_gateway(self, client, buyer_headers, product, fake_toss):
        orders = [_order(client, buyer_headers, product), _order(client, buyer_headers, product)]
        order_service.cancel_order(orders[1]["id"])

        resp = client.post("/payments/toss/cart/confirm", json=self._body(orders), headers=buyer_headers)
        assert resp.status_code == 409
        assert fake_toss.calls == []

    @pytest.mark.parametrize("order_ids", [[], "1,2", [1, "2"]])
    def test_cart_order_ids_shape(self, client, buyer_headers, db_session, fake_toss, order_ids):
        body = {"orderIds": order_ids, "paymentKey": "pk", "tossOrderId": "t", "totalAmount": 100}
        assert client.post("/payments/toss/cart/confirm", json=body, headers=buyer_headers).status_code == 400

    def test_cart_partial_failure(self, client, buyer_headers, product, fake_toss, monkeypatch):
        orders = [_order(client, buyer_headers, product), _order(client, buyer_headers, product)]
        broken_id = orders[1]["id"]
        original = payment_service._capture_confirmed

        def flaky_capture(order_id, payment_key):
            if order_id == broken_id:
                raise ConflictError(f"Order {order_id} changed during confirmation")
            return original(order_id, payment_key)

        monkeypatch.setattr(payment_service, "_capture_confirmed", flaky_capture)

        resp = client.post("/payments/toss/cart/confirm", json=self._body(orders), headers=buyer_headers)
        assert resp.status_code == 207
        assert [p["order_id"] for p in resp.json["payments"]] == [orders[0]["id"]]
        assert resp.json["failed"][0]["orderId"] == broken_id
        assert fresh(Order, orders[0]["id"]).status == "PAID"
        assert fresh(Order, broken_id).status == "CREATED"
