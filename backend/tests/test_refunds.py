"""
Refund tests.

Verifies:
- Same Idempotency-Key never refunds twice
- Refunds never exceed the captured amount
- A full refund cascades to payment, order and pending or confirmed settlement
- A same-key retry racing the first request resolves to the first refund
"""

import pytest

from settlehub.extensions import db
from settlehub.models import Order, Payment, Refund, Settlement
from settlehub.services import order_service
from settlehub.services import payment_service
from settlehub.services import refund_service
from settlehub.services import settlement_service
from settlehub.services.refund_service import RefundError, RefundExceedsPayment
from settlehub.time_utils import utcnow
from settlehub.validation import ValidationError

from conftest import captured_payment, fresh


def _refund(client, headers, payment_id, amount, key, reason=None):
    body = {"amount": amount}
    if reason:
        body["reason"] = reason
    return client.post(f"/refunds/{payment_id}", json=body, headers={**headers, "Idempotency-Key": key})


class TestIdempotency:

    def test_retry_with_same_key_refunds_once(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product, quantity=5)
        assert payment.amount == 50_000

        first = _refund(client, buyer_headers, payment.id, 20_000, "K1", reason="size")
        assert first.status_code == 201
        assert first.json["payment"]["refunded_amount"] == 20_000

        again = _refund(client, buyer_headers, payment.id, 20_000, "K1")
        assert again.status_code == 200
        assert again.json["id"] == first.json["id"]
        assert again.json["payment"]["refunded_amount"] == 20_000

        too_much = _refund(client, buyer_headers, payment.id, 40_000, "K2")
        assert too_much.status_code == 400
        assert fresh(Payment, payment.id).refunded_amount == 20_000
        assert db.session.query(Refund).filter_by(payment_id=payment.id).count() == 1

    def test_replay_ignores_changed_amount(self, buyer, product):
        payment = captured_payment(buyer, product, quantity=5)
        refund, created = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=10_000)
        replay, replay_created = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=30_000)

        assert created is True
        assert replay_created is False
        assert replay.id == refund.id
        assert replay.amount == 10_000
        assert fresh(Payment, payment.id).refunded_amount == 10_000

    def test_keys_are_scoped_per_payment(self, buyer, product):
        p1 = captured_payment(buyer, product)
        p2 = captured_payment(buyer, product)

        _, c1 = refund_service.create_refund(payment_id=p1.id, idempotency_key="same", amount=1_000)
        _, c2 = refund_service.create_refund(payment_id=p2.id, idempotency_key="same", amount=1_000)
        assert c1 and c2

    def test_header_required(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product)
        resp = client.post(f"/refunds/{payment.id}", json={"amount": 1_000}, headers=buyer_headers)
        assert resp.status_code == 400

    @pytest.mark.parametrize("key", ["", "   ", "k" * 129])
    def test_bad_keys(self, buyer, product, key):
        payment = captured_payment(buyer, product)
        with pytest.raises(ValidationError):
            refund_service.create_refund(payment_id=payment.id, idempotency_key=key, amount=1_000)


@pytest.fixture
def stale_key_lookup(monkeypatch):
    """The first key lookup misses, as if it ran before a same-key request committed."""
    real_lookup = refund_service._find_by_key
    calls = []

    def lookup(payment_id, idempotency_key):
        calls.append(idempotency_key)
        if len(calls) == 1:
            return None
        return real_lookup(payment_id, idempotency_key)

    def arm():
        calls.clear()
        monkeypatch.setattr(refund_service, "_find_by_key", lookup)

    return arm


class TestConcurrentRetries:

    def test_partial_retry_after_winner_committed(self, buyer, product, stale_key_lookup):
        payment = captured_payment(buyer, product, quantity=5)
        first, _ = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=30_000)

        stale_key_lookup()
        replay, created = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=30_000)

        assert created is False
        assert replay.id == first.id
        assert fresh(Payment, payment.id).refunded_amount == 30_000
        assert db.session.query(Refund).filter_by(payment_id=payment.id).count() == 1

    def test_full_retry_after_winner_committed(self, buyer, product, stale_key_lookup):
        payment = captured_payment(buyer, product)
        first, _ = refund_service.process_full_refund(payment_id=payment.id, idempotency_key=f"full-{payment.id}")

        stale_key_lookup()
        replay, created = refund_service.process_full_refund(payment_id=payment.id, idempotency_key=f"full-{payment.id}")

        assert created is False
        assert replay.id == first.id
        assert fresh(Payment, payment.id).status == "REFUNDED"

    def test_insert_collision_resolves_to_winner(self, buyer, product, stale_key_lookup):
        payment = captured_payment(buyer, product, quantity=5)
        first, _ = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=10_000)

        # Balance checks pass; the unique key rejects the second row
        stale_key_lookup()
        replay, created = refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=10_000)

        assert created is False
        assert replay.id == first.id
        assert fresh(Payment, payment.id).refunded_amount == 10_000
        assert db.session.query(Refund).filter_by(payment_id=payment.id).count() == 1

    def test_new_key_still_rejected_when_balance_is_gone(self, buyer, product, stale_key_lookup):
        payment = captured_payment(buyer, product, quantity=5)
        refund_service.create_refund(payment_id=payment.id, idempotency_key="K1", amount=30_000)

        stale_key_lookup()
        with pytest.raises(RefundExceedsPayment):
            refund_service.create_refund(payment_id=payment.id, idempotency_key="K2", amount=30_000)


class TestRefundRules:

    @pytest.mark.parametrize("amount", [0, -500])
    def test_amount_must_be_positive(self, client, buyer, buyer_headers, product, amount):
        payment = captured_payment(buyer, product)
        assert _refund(client, buyer_headers, payment.id, amount, "K").status_code == 400

    def test_uncaptured_payment_not_refundable(self, client, buyer, buyer_headers, product):
        order = order_service.create_order(user_id=buyer.id, product_id=product.id, quantity=1)
        payment = payment_service.create_payment(order_id=order.id, payment_method="CARD")

        assert _refund(client, buyer_headers, payment.id, 1_000, "K").status_code == 400
        with pytest.raises(RefundError):
            refund_service.create_refund(payment_id=payment.id, idempotency_key="K", amount=1_000)

    def test_sequential_refunds_cannot_overdraw(self, buyer, product):
        payment = captured_payment(buyer, product, quantity=5)
        refund_service.create_refund(payment_id=payment.id, idempotency_key="a", amount=30_000)

        with pytest.raises(RefundExceedsPayment):
            refund_service.create_refund(payment_id=payment.id, idempotency_key="b", amount=30_000)
        assert fresh(Payment, payment.id).refunded_amount == 30_000

    def test_other_user_forbidden(self, client, buyer, other_headers, product):
        payment = captured_payment(buyer, product)
        assert _refund(client, other_headers, payment.id, 1_000, "K").status_code == 403

    def test_admin_can_refund_any_payment(self, client, buyer, admin_headers, product):
        payment = captured_payment(buyer, product)
        assert _refund(client, admin_headers, payment.id, 1_000, "K").status_code == 201

    def test_unknown_payment(self, client, buyer_headers, db_session):
        assert _refund(client, buyer_headers, 999999, 1_000, "K").status_code == 404


class TestFullAndPartialRefund:

    def test_full_refund_cascades(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product, quantity=2)
        settlement_service.create_daily_settlements(utcnow().date())

        resp = client.post(f"/refunds/full/{payment.id}", json={}, headers=buyer_headers)
        assert resp.status_code == 201
        assert resp.json["amount"] == 20_000
        assert resp.json["idempotency_key"] == f"full-{payment.id}"
        assert resp.json["payment"]["status"] == "REFUNDED"

        assert fresh(Order, payment.order_id).status == "REFUNDED"
        settlement = db.session.query(Settlement).filter_by(payment_id=payment.id).one()
        assert settlement.status == "CANCELED"
        assert settlement.refunded_amount == 20_000

        replay = client.post(f"/refunds/full/{payment.id}", json={}, headers=buyer_headers)
        assert replay.status_code == 200
        assert replay.json["id"] == resp.json["id"]

    def test_full_refund_after_partial_takes_the_rest(self, buyer, product):
        payment = captured_payment(buyer, product, quantity=5)
        refund_service.process_partial_refund(payment_id=payment.id, refund_amount=15_000, idempotency_key="p1")

        refund, _ = refund_service.process_full_refund(payment_id=payment.id, idempotency_key="f1")
        assert refund.amount == 35_000
        assert fresh(Payment, payment.id).status == "REFUNDED"

    def test_partial_refund_shrinks_settlement(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product, quantity=5)
        created = settlement_service.create_daily_settlements(utcnow().date())
        settlement_id = created["settlement_ids"][0]
        assert fresh(Settlement, settlement_id).commission == 1_500

        resp = client.post(
            f"/refunds/partial/{payment.id}?refundAmount=10000",
            headers={**buyer_headers, "Idempotency-Key": "partial-1"},
        )
        assert resp.status_code == 201
        assert resp.json["payment"]["status"] == "CAPTURED"

        settlement = fresh(Settlement, settlement_id)
        assert settlement.status == "PENDING"
        assert settlement.refunded_amount == 10_000
        assert settlement.commission == 1_200
        assert settlement.net_amount == 38_800

    def test_full_refund_cancels_confirmed_settlement(self, buyer, product):
        payment = captured_payment(buyer, product)
        settlement_id = settlement_service.create_daily_settlements(utcnow().date())["settlement_ids"][0]
        settlement_service.confirm_settlement(settlement_id)

        refund, _ = refund_service.process_full_refund(payment_id=payment.id, idempotency_key="f")
        settlement = fresh(Settlement, settlement_id)
        assert settlement.status == "CANCELED"
        assert settlement.net_amount == 0

        adjustments = settlement_service.list_adjustments(settlement_id)
        assert [(a.refund_id, a.amount, a.status) for a in adjustments] == [(refund.id, 10_000, "PENDING")]
        assert adjustments[0].adjustment_date == utcnow().date()

    def test_refunds_on_completed_settlement_are_booked_as_adjustments(
        self, client, buyer, buyer_headers, admin_headers, product
    ):
        payment = captured_payment(buyer, product, quantity=5)
        settlement_id = settlement_service.create_daily_settlements(utcnow().date())["settlement_ids"][0]
        settlement_service.confirm_settlement(settlement_id)
        settlement_service.complete_settlement(settlement_id)

        late = _refund(client, buyer_headers, payment.id, 10_000, "late")
        assert late.status_code == 201

        settlement = fresh(Settlement, settlement_id)
        assert settlement.status == "COMPLETED"
        assert settlement.net_amount == 38_800

        refund_service.process_full_refund(payment_id=payment.id, idempotency_key="rest")
        assert fresh(Settlement, settlement_id).status == "COMPLETED"

        listing = client.get(f"/api/settlements/{settlement_id}/adjustments", headers=admin_headers).json
        assert listing["count"] == 2
        assert [a["amount"] for a in listing["items"]] == [10_000, 40_000]
        assert listing["items"][0]["refund_id"] == late.json["id"]

    def test_pending_settlement_gets_no_adjustment(self, buyer, product):
        payment = captured_payment(buyer, product, quantity=2)
        settlement_id = settlement_service.create_daily_settlements(utcnow().date())["settlement_ids"][0]

        refund_service.create_refund(payment_id=payment.id, idempotency_key="p", amount=5_000)
        assert settlement_service.list_adjustments(settlement_id) == []

    def test_partial_requires_header_and_amount(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product)
        resp = client.post(f"/refunds/partial/{payment.id}?refundAmount=100", headers=buyer_headers)
        assert resp.status_code == 400

        resp = client.post(f"/refunds/partial/{payment.id}", headers={**buyer_headers, "Idempotency-Key": "x"})
        assert resp.status_code == 400


class TestFailedPaymentAndQueries:

    def test_cancel_failed_payment(self, client, buyer, buyer_headers, product):
        order = order_service.create_order(user_id=buyer.id, product_id=product.id, quantity=1)
        payment = payment_service.create_payment(order_id=order.id, payment_method="CARD")
        payment_service.fail_payment(payment.id)

        resp = client.post(f"/refunds/failed/{payment.id}", headers=buyer_headers)
        assert resp.status_code == 200
        assert resp.json["status"] == "CANCELED"
        assert db.session.query(Refund).filter_by(payment_id=payment.id).count() == 0

    def test_captured_payment_cannot_be_voided(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product)
        assert client.post(f"/refunds/failed/{payment.id}", headers=buyer_headers).status_code == 409

    def test_list_and_get(self, client, buyer, buyer_headers, other_headers, product):
        payment = captured_payment(buyer, product, quantity=3)
        first = _refund(client, buyer_headers, payment.id, 1_000, "a").json
        second = _refund(client, buyer_headers, payment.id, 2_000, "b").json

        listing = client.get(f"/refunds/payment/{payment.id}", headers=buyer_headers).json
        assert [r["id"] for r in listing["items"]] == [first["id"], second["id"]]

        resp = client.get(f"/refunds/{second['id']}", headers=buyer_headers)
        assert resp.json["amount"] == 2_000
        assert resp.json["payment"]["refunded_amount"] == 3_000

        assert client.get(f"/refunds/{second['id']}", headers=other_headers).status_code == 403
        assert client.get("/refunds/999999", headers=buyer_headers).status_code == 404
