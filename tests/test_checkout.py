import re

import pytest

from fulfillment_service.app.models import CartItem, InventoryRecord, Order, Payment


def cart_size(db, cart_id="cart-1"):
    return db.query(CartItem).filter(CartItem.cart_id == cart_id).count()


def set_stock(db, variant_id, quantity):
    db.query(InventoryRecord).filter(InventoryRecord.product_variant_id == variant_id).update(
        {InventoryRecord.quantity: quantity}
    )
    db.commit()


class TestCheckout:
    def test_two_line_checkout(self, client, auth, checkout_body, seed, db, stock, publisher):
        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        order = body["data"]
        assert order["status"] == "pending"
        assert order["subtotal"] == "55.00"
        assert order["shipping_fee"] == "5.00"
        assert order["tax_amount"] == "5.50"
        assert order["total_amount"] == "65.50"
        assert order["shipping_method"] == "Standard"
        assert re.match(r"^ORD-\d{8}-\d{5}$", order["order_number"])

        assert [(i["sku"], i["quantity"], i["price"]) for i in order["items"]] == [
            ("TS-S", 3, "10.00"),
            ("TS-L", 1, "25.00"),
        ]
        assert order["items"][0]["product_name"] == "T-Shirt"
        assert [h["status"] for h in order["status_history"]] == ["pending"]
        assert order["payment"]["status"] == "pending"
        assert order["payment"]["amount"] == "65.50"

        assert (stock(seed.variant_a), stock(seed.variant_b)) == (7, 4)
        assert cart_size(db) == 0
        assert publisher.routing_keys == ["order.created"]
        assert publisher.events[0][1]["order_number"] == order["order_number"]

    def test_order_notes_are_kept(self, client, auth, checkout_body):
        checkout_body["notes"] = "Leave at the door"

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.json()["data"]["notes"] == "Leave at the door"

    def test_shipping_fee_comes_from_the_method(self, client, auth, checkout_body):
        checkout_body["shipping_method"] = "Express"

        order = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer).json()["data"]

        assert order["shipping_fee"] == "15.00"
        assert order["total_amount"] == "75.50"

    @pytest.mark.parametrize("variant, available", [("variant_a", 2), ("variant_b", 0)])
    def test_any_shortfall_rolls_everything_back(self, client, auth, checkout_body, seed, db,
                                                 stock, publisher, variant, available):
        set_stock(db, getattr(seed, variant), available)
        before = (stock(seed.variant_a), stock(seed.variant_b))

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INSUFFICIENT_INVENTORY"
        assert body["error"]["details"]["product_variant_id"] == getattr(seed, variant)
        assert db.query(Order).count() == 0
        assert db.query(Payment).count() == 0
        assert (stock(seed.variant_a), stock(seed.variant_b)) == before
        assert cart_size(db) == 2
        assert publisher.events == []


class TestCheckoutValidation:
    def test_empty_cart(self, client, auth, checkout_body, seed, db):
        db.query(CartItem).filter(CartItem.cart_id == seed.cart).delete()
        db.commit()

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cart is empty"

    def test_cart_of_another_user(self, client, auth, checkout_body, seed):
        checkout_body["cart_id"] = seed.other_cart

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_address_of_another_user(self, client, auth, checkout_body, seed, stock):
        checkout_body["shipping_address_id"] = seed.other_address

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 404
        assert response.json()["error"]["message"] == (
            f"Shipping address with ID {seed.other_address} not found"
        )
        assert stock(seed.variant_a) == 10

    @pytest.mark.parametrize("method", ["Pigeon", "Teleport"])
    def test_unusable_shipping_method(self, client, auth, checkout_body, method):
        checkout_body["shipping_method"] = method

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == f"Invalid shipping method: {method}"

    def test_requires_authentication(self, client, checkout_body, db):
        response = client.post("/api/v1/orders", json=checkout_body)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert db.query(Order).count() == 0

    def test_rejects_unknown_token(self, client, checkout_body):
        response = client.post(
            "/api/v1/orders", json=checkout_body, headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401

    def test_malformed_body(self, client, auth, checkout_body):
        del checkout_body["cart_id"]
        checkout_body["shipping_address_id"] = "home"

        response = client.post("/api/v1/orders", json=checkout_body, headers=auth.customer)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        failing = {tuple(d["loc"]) for d in error["details"]}
        assert ("body", "cart_id") in failing
        assert ("body", "shipping_address_id") in failing
