"""
Order tests: server-side pricing, stock reservation, cancellation, ownership.
"""

import pytest

from settlehub.models import Order, Payment, Product
from settlehub.services import payment_service
from settlehub.services import products_service

from conftest import captured_payment, fresh


class TestCreateOrder:

    def test_amount_is_price_times_quantity(self, client, buyer, buyer_headers, product):
        resp = client.post("/orders", json={"productId": product.id, "quantity": 3}, headers=buyer_headers)
        assert resp.status_code == 201
        assert resp.json["amount"] == 30_000
        assert resp.json["status"] == "CREATED"
        assert resp.json["user_id"] == buyer.id
        assert fresh(Product, product.id).stock_quantity == 97

    def test_matching_client_amount_is_accepted(self, client, buyer_headers, product):
        resp = client.post(
            "/orders",
            json={"productId": product.id, "quantity": 2, "amount": 20_000},
            headers=buyer_headers,
        )
        assert resp.status_code == 201

    def test_tampered_amount_rejected(self, client, buyer_headers, product):
        resp = client.post(
            "/orders",
            json={"productId": product.id, "quantity": 2, "amount": 100},
            headers=buyer_headers,
        )
        assert resp.status_code == 400
        assert fresh(Product, product.id).stock_quantity == 100

    def test_amount_only_order(self, client, buyer_headers, db_session):
        resp = client.post("/orders", json={"amount": 50_000}, headers=buyer_headers)
        assert resp.status_code == 201
        assert resp.json["product_id"] is None
        assert resp.json["amount"] == 50_000

    @pytest.mark.parametrize(
        "payload",
        [
            {"amount": 0},
            {"amount": -10},
            {},
            {"quantity": 2, "amount": 100},
        ],
    )
    def test_amount_only_validation(self, client, buyer_headers, db_session, payload):
        assert client.post("/orders", json=payload, headers=buyer_headers).status_code == 400

    @pytest.mark.parametrize("quantity", [0, -1, 10_001])
    def test_quantity_bounds(self, client, buyer_headers, product, quantity):
        resp = client.post("/orders", json={"productId": product.id, "quantity": quantity}, headers=buyer_headers)
        assert resp.status_code == 400

    def test_product_not_on_sale(self, client, buyer_headers, product):
        products_service.deactivate_product(product.id)
        resp = client.post("/orders", json={"productId": product.id}, headers=buyer_headers)
        assert resp.status_code == 400

    def test_insufficient_stock(self, client, buyer_headers, product):
        resp = client.post("/orders", json={"productId": product.id, "quantity": 101}, headers=buyer_headers)
        assert resp.status_code == 409
        assert fresh(Product, product.id).stock_quantity == 100

    def test_unknown_product(self, client, buyer_headers, db_session):
        resp = client.post("/orders", json={"productId": 999999}, headers=buyer_headers)
        assert resp.status_code == 404

    def test_ordering_for_another_user(self, client, buyer_headers, admin_headers, other_buyer, product):
        resp = client.post(
            "/orders",
            json={"productId": product.id, "userId": other_buyer.id},
            headers=buyer_headers,
        )
        assert resp.status_code == 403

        resp = client.post(
            "/orders",
            json={"productId": product.id, "userId": other_buyer.id},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json["user_id"] == other_buyer.id


class TestOrderAccess:

    def test_owner_and_admin_can_read(self, client, buyer_headers, admin_headers, other_headers, product):
        order = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json

        assert client.get(f"/orders/{order['id']}", headers=buyer_headers).status_code == 200
        assert client.get(f"/orders/{order['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/orders/{order['id']}", headers=other_headers).status_code == 403

    def test_user_order_history(self, client, buyer, buyer_headers, other_headers, product):
        first = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json
        second = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json

        resp = client.get(f"/orders/user/{buyer.id}", headers=buyer_headers)
        assert resp.json["count"] == 2
        assert {o["id"] for o in resp.json["items"]} == {first["id"], second["id"]}

        assert client.get(f"/orders/user/{buyer.id}", headers=other_headers).status_code == 403

    def test_missing_order(self, client, buyer_headers, db_session):
        assert client.get("/orders/999999", headers=buyer_headers).status_code == 404


class TestCancelOrder:

    def test_cancel_restores_stock(self, client, buyer_headers, product):
        order = client.post("/orders", json={"productId": product.id, "quantity": 4}, headers=buyer_headers).json
        assert fresh(Product, product.id).stock_quantity == 96

        resp = client.patch(f"/orders/{order['id']}/cancel", headers=buyer_headers)
        assert resp.status_code == 200
        assert resp.json["status"] == "CANCELED"
        assert fresh(Product, product.id).stock_quantity == 100

    def test_cancel_closes_open_payment(self, client, buyer_headers, product):
        order = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json
        payment = payment_service.create_payment(order_id=order["id"], payment_method="CARD")

        client.patch(f"/orders/{order['id']}/cancel", headers=buyer_headers)
        assert fresh(Payment, payment.id).status == "CANCELED"

    def test_cancel_twice_conflicts(self, client, buyer_headers, product):
        order = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json
        client.patch(f"/orders/{order['id']}/cancel", headers=buyer_headers)

        resp = client.patch(f"/orders/{order['id']}/cancel", headers=buyer_headers)
        assert resp.status_code == 409
        assert fresh(Product, product.id).stock_quantity == 100

    def test_paid_order_cannot_be_canceled(self, client, buyer, buyer_headers, product):
        payment = captured_payment(buyer, product)
        resp = client.patch(f"/orders/{payment.order_id}/cancel", headers=buyer_headers)
        assert resp.status_code == 409
        assert fresh(Order, payment.order_id).status == "PAID"

    def test_other_user_cannot_cancel(self, client, buyer_headers, other_headers, product):
        order = client.post("/orders", json={"productId": product.id}, headers=buyer_headers).json
        assert client.patch(f"/orders/{order['id']}/cancel", headers=other_headers).status_code == 403
