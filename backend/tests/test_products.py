"""
Product catalog tests: CRUD, stock adjustment, status lifecycle, images.
"""

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from settlehub.models import Product
from settlehub.services import order_service
from settlehub.services import products_service
from settlehub.services.products_service import InsufficientStockError, ProductError

from conftest import fresh


# =============================================================================
# CRUD
# =============================================================================


class TestProductCrud:

    def test_create_requires_admin(self, client, buyer_headers):
        resp = client.post("/api/products", json={"name": "Keyboard", "price": 50_000}, headers=buyer_headers)
        assert resp.status_code == 403

    def test_create_starts_active_even_without_stock(self, client, admin_headers):
        resp = client.post(
            "/api/products",
            json={"name": "Keyboard", "price": 50_000, "stockQuantity": 0},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json["status"] == "ACTIVE"
        assert resp.json["stock_quantity"] == 0
        assert resp.json["available_for_sale"] is False

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "Bad", "price": -1},
            {"name": "Bad", "price": 100, "stockQuantity": -5},
            {"name": "Bad", "price": 1.5},
            {"price": 100},
            {"name": "Bad", "price": 100, "status": "DISCONTINUED"},
        ],
    )
    def test_create_validation(self, client, admin_headers, payload):
        resp = client.post("/api/products", json=payload, headers=admin_headers)
        assert resp.status_code == 400

    def test_get_and_list_are_public(self, client, product):
        assert client.get(f"/api/products/{product.id}").json["name"] == "Wireless Mouse"

        listing = client.get("/api/products?page=1&per_page=10").json
        assert listing["pagination"]["total"] == 1
        assert listing["items"][0]["id"] == product.id

    def test_get_missing_product(self, client, db_session):
        assert client.get("/api/products/999999").status_code == 404

    def test_update_info_and_price(self, client, admin_headers, product):
        resp = client.patch(
            f"/api/products/{product.id}/info",
            json={"name": "Silent Mouse", "description": "Bluetooth"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json["name"] == "Silent Mouse"

        resp = client.patch(f"/api/products/{product.id}/price", json={"newPrice": 12_000}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["price"] == 12_000

        resp = client.patch(f"/api/products/{product.id}/price", json={"price": -10}, headers=admin_headers)
        assert resp.status_code == 400

    def test_delete_unordered_product(self, client, admin_headers, product):
        assert client.delete(f"/api/products/{product.id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/products/{product.id}").status_code == 404

    def test_delete_ordered_product_conflicts(self, client, admin_headers, product, buyer):
        order_service.create_order(user_id=buyer.id, product_id=product.id, quantity=1)
        resp = client.delete(f"/api/products/{product.id}", headers=admin_headers)
        assert resp.status_code == 409


# =============================================================================
# STOCK
# =============================================================================


class TestStock:

    def test_decrease_then_oversized_decrease(self, client, admin_headers, product):
        resp = client.patch(
            f"/api/products/{product.id}/stock",
            json={"quantity": 30, "operation": "DECREASE"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json["stock_quantity"] == 70

        resp = client.patch(
            f"/api/products/{product.id}/stock",
            json={"quantity": 80, "operation": "DECREASE"},
            headers=admin_headers,
        )
        assert resp.status_code == 409
        assert fresh(Product, product.id).stock_quantity == 70

    def test_increase(self, client, admin_headers, product):
        resp = client.patch(
            f"/api/products/{product.id}/stock",
            json={"quantity": 5, "operation": "increase"},
            headers=admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json["stock_quantity"] == 105

    @pytest.mark.parametrize(
        "payload",
        [
            {"quantity": 0, "operation": "INCREASE"},
            {"quantity": -3, "operation": "DECREASE"},
            {"quantity": 3, "operation": "SET"},
        ],
    )
    def test_invalid_adjustments(self, client, admin_headers, product, payload):
        resp = client.patch(f"/api/products/{product.id}/stock", json=payload, headers=admin_headers)
        assert resp.status_code == 400

    def test_sequential_decreases_never_go_negative(self, product):
        products_service.update_product_stock(product.id, quantity=60, operation="DECREASE")
        with pytest.raises(InsufficientStockError):
            products_service.update_product_stock(product.id, quantity=60, operation="DECREASE")
        assert fresh(Product, product.id).stock_quantity == 40

    def test_decrease_on_stale_read_cannot_oversell(self, product):
        products_service.update_product_stock(product.id, quantity=98, operation="DECREASE")

        # This session still sees the stock from before the other decrease committed
        stale = fresh(Product, product.id)
        assert stale.stock_quantity == 2
        set_committed_value(stale, "stock_quantity", 100)

        with pytest.raises(InsufficientStockError) as exc_info:
            products_service.update_product_stock(product.id, quantity=5, operation="DECREASE")

        assert "available=2" in str(exc_info.value)
        assert fresh(Product, product.id).stock_quantity == 2

    def test_selling_out_marks_out_of_stock(self, product):
        products_service.update_product_stock(product.id, quantity=100, operation="DECREASE")
        assert fresh(Product, product.id).status == "OUT_OF_STOCK"

        products_service.update_product_stock(product.id, quantity=1, operation="INCREASE")
        assert fresh(Product, product.id).status == "ACTIVE"


# =============================================================================
# STATUS LIFECYCLE
# =============================================================================


class TestStatusLifecycle:

    def test_deactivate_and_activate(self, client, admin_headers, product):
        resp = client.patch(f"/api/products/{product.id}/deactivate", headers=admin_headers)
        assert resp.json["status"] == "INACTIVE"

        resp = client.patch(f"/api/products/{product.id}/activate", headers=admin_headers)
        assert resp.json["status"] == "ACTIVE"

    def test_activate_without_stock_is_out_of_stock(self, product):
        products_service.update_product(product_id=product.id, patch={"stock_quantity": 0})
        products_service.deactivate_product(product.id)
        assert products_service.activate_product(product.id)["status"] == "OUT_OF_STOCK"

    def test_discontinued_cannot_be_deactivated(self, client, admin_headers, product):
        client.patch(f"/api/products/{product.id}/discontinue", headers=admin_headers)
        resp = client.patch(f"/api/products/{product.id}/deactivate", headers=admin_headers)
        assert resp.status_code == 400

        with pytest.raises(ProductError):
            products_service.deactivate_product(product.id)

    def test_discontinued_can_be_relisted(self, product):
        products_service.discontinue_product(product.id)
        assert products_service.activate_product(product.id)["status"] == "ACTIVE"

    def test_status_and_available_listings(self, client, product):
        hidden = products_service.create_product(patch={"name": "Old Mouse", "price": 5_000, "stock_quantity": 3})
        products_service.deactivate_product(hidden["id"])

        available = client.get("/api/products/available").json
        assert [p["id"] for p in available["items"]] == [product.id]

        inactive = client.get("/api/products/status/inactive").json
        assert [p["id"] for p in inactive["items"]] == [hidden["id"]]

        assert client.get("/api/products/status/UNKNOWN").status_code == 400


# =============================================================================
# IMAGES
# =============================================================================


class TestProductImages:

    def _add(self, client, headers, product_id, name):
        return client.post(
            f"/admin/products/{product_id}/images",
            json={
                "url": f"https://cdn.test/{name}",
                "contentType": "image/png",
                "sizeBytes": 2048,
                "originalFileName": name,
            },
            headers=headers,
        )

    def test_first_image_is_primary(self, client, admin_headers, product):
        first = self._add(client, admin_headers, product.id, "a.png")
        second = self._add(client, admin_headers, product.id, "b.png")
        assert first.status_code == 201
        assert first.json["is_primary"] is True
        assert second.json["is_primary"] is False
        assert second.json["order_index"] == 1

    def test_reject_bad_type_and_size(self, client, admin_headers, product):
        resp = client.post(
            f"/admin/products/{product.id}/images",
            json={"url": "https://cdn.test/a.gif", "contentType": "image/gif", "sizeBytes": 10},
            headers=admin_headers,
        )
        assert resp.status_code == 400

        resp = client.post(
            f"/admin/products/{product.id}/images",
            json={"url": "https://cdn.test/a.png", "contentType": "image/png", "sizeBytes": 6 * 1024 * 1024},
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_primary_reorder_and_delete(self, client, admin_headers, product):
        a = self._add(client, admin_headers, product.id, "a.png").json
        b = self._add(client, admin_headers, product.id, "b.png").json
        c = self._add(client, admin_headers, product.id, "c.png").json

        resp = client.patch(f"/admin/products/{product.id}/images/{b['id']}/primary", headers=admin_headers)
        assert resp.json["is_primary"] is True

        resp = client.put(
            f"/admin/products/{product.id}/images/order",
            json={"imageIds": [c["id"], b["id"], a["id"]]},
            headers=admin_headers,
        )
        assert [i["id"] for i in resp.json["items"]] == [c["id"], b["id"], a["id"]]

        client.delete(f"/admin/products/{product.id}/images/{b['id']}", headers=admin_headers)
        images = client.get(f"/admin/products/{product.id}/images", headers=admin_headers).json["items"]
        assert [i["id"] for i in images] == [c["id"], a["id"]]
        assert images[0]["is_primary"] is True

    def test_reorder_must_list_every_image(self, client, admin_headers, product):
        a = self._add(client, admin_headers, product.id, "a.png").json
        self._add(client, admin_headers, product.id, "b.png")
        resp = client.put(
            f"/admin/products/{product.id}/images/order",
            json={"imageIds": [a["id"]]},
            headers=admin_headers,
        )
        assert resp.status_code == 400
