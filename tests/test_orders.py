import re

import pytest

import config
import orders


def item(product, quantity=1, variant=None):
    line = {"product_id": str(product["_id"]), "quantity": quantity}
    if variant is not None:
        line["variant_id"] = str(variant["_id"])
    return line


def test_compute_totals_example():
    totals = orders.compute_totals(40.0, 4.0)
    assert totals == {"subtotal": 40.0, "discount": 4.0, "shipping": 10.0, "tax": 2.88, "total": 48.88}


@pytest.mark.parametrize("subtotal,discount", [(0.0, 0.0), (49.99, 0.0), (50.0, 0.0), (120.5, 20.0), (75.0, 75.0)])
def test_total_identity_and_free_shipping(subtotal, discount):
    totals = orders.compute_totals(subtotal, discount)
    expected = totals["subtotal"] - totals["discount"] + totals["shipping"] + totals["tax"]
    assert totals["total"] == pytest.approx(expected, abs=0.005)
    assert (totals["shipping"] == 0) == (subtotal >= config.FREE_SHIPPING_THRESHOLD)


def test_order_number_format():
    number = orders.generate_order_number()
    assert re.fullmatch(r"ORD-\d{13}-[A-Z0-9]{9}", number)
    assert number != orders.generate_order_number()


def test_unit_price_prefers_variant_then_sale_price():
    product = {"price": 30.0, "sale_price": 25.0}
    assert orders.unit_price(product) == 25.0
    assert orders.unit_price(product, {"price": 27.5}) == 27.5
    assert orders.unit_price(product, {"price": None}) == 25.0
    assert orders.unit_price({"price": 30.0, "sale_price": None}) == 30.0


def test_checkout_with_coupon(client, db, fake_stripe, make_product, make_coupon, checkout_payload):
    product = make_product(price=40.0, stock=3)
    make_coupon()
    resp = client.post("/api/orders", json=checkout_payload([item(product)], coupon_code="welcome10"))
    assert resp.status_code == 201
    body = resp.json()
    order = body["order"]
    assert order["subtotal"] == 40.0
    assert order["discount"] == 4.0
    assert order["shipping"] == 10.0
    assert order["tax"] == 2.88
    assert order["total"] == 48.88
    assert order["coupon_code"] == "WELCOME10"
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["billing_address"] == order["shipping_address"]
    assert body["client_secret"] == "pi_1_secret"
    assert order["payment_id"] == "pi_1"

    assert fake_stripe.created[0]["amount"] == 4888
    assert fake_stripe.created[0]["currency"] == "usd"
    assert fake_stripe.created[0]["metadata"]["order_number"] == order["order_number"]

    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 2
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 1


def test_price_comes_from_catalog_and_is_snapshotted(client, db, fake_stripe, make_product, checkout_payload):
    product = make_product(name="Consultation", price=100.0, sale_price=80.0)
    resp = client.post("/api/orders", json=checkout_payload([item(product, quantity=2)]))
    order = resp.json()["order"]
    assert order["items"][0]["price"] == 80.0
    assert order["items"][0]["subtotal"] == 160.0
    assert order["shipping"] == 0.0

    db["product"].update_one({"_id": product["_id"]}, {"$set": {"price": 999.0, "sale_price": None,
                                                                "name": "Renamed"}})
    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["items"][0]["price"] == 80.0
    assert stored["items"][0]["name"] == "Consultation"


def test_variant_price_and_stock(client, db, fake_stripe, make_product, make_variant, checkout_payload):
    product = make_product(price=20.0, stock=100)
    variant = make_variant(product, price=25.0, stock=2)
    resp = client.post("/api/orders", json=checkout_payload([item(product, 2, variant)]))
    assert resp.status_code == 201
    line = resp.json()["order"]["items"][0]
    assert line["price"] == 25.0
    assert line["sku"] == "SKU-M"
    assert line["variant"] == {"size": "M"}
    assert db["productvariant"].find_one({"_id": variant["_id"]})["stock"] == 0
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 100


def test_zero_stock_is_rejected(client, db, fake_stripe, make_product, checkout_payload):
    product = make_product(stock=0)
    resp = client.post("/api/orders", json=checkout_payload([item(product)]))
    assert resp.status_code == 409
    assert "Insufficient stock" in resp.json()["error"]
    assert db["order"].count_documents({}) == 0
    assert fake_stripe.created == []


def test_failed_line_releases_earlier_reservations_and_coupon(client, db, fake_stripe, make_product,
                                                               make_coupon, checkout_payload):
    plenty = make_product(stock=5)
    scarce = make_product(stock=1)
    make_coupon()
    resp = client.post("/api/orders", json=checkout_payload([item(plenty, 2), item(scarce, 2)],
                                                            coupon_code="WELCOME10"))
    assert resp.status_code == 409
    assert db["product"].find_one({"_id": plenty["_id"]})["stock"] == 5
    assert db["product"].find_one({"_id": scarce["_id"]})["stock"] == 1
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 0


def test_exhausted_coupon_blocks_checkout(client, fake_stripe, make_product, make_coupon, checkout_payload):
    product = make_product()
    make_coupon(code="LAST", max_uses=1, uses=1)
    resp = client.post("/api/orders", json=checkout_payload([item(product)], coupon_code="LAST"))
    assert resp.status_code == 400
    assert resp.json()["valid"] is False


def test_unknown_and_inactive_products(client, fake_stripe, make_product, checkout_payload):
    resp = client.post("/api/orders", json=checkout_payload([{"product_id": "not-an-id", "quantity": 1}]))
    assert resp.status_code == 404
    hidden = make_product(active=False)
    resp = client.post("/api/orders", json=checkout_payload([item(hidden)]))
    assert resp.status_code == 400


def test_empty_cart_rejected(client, checkout_payload):
    resp = client.post("/api/orders", json=checkout_payload([]))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Cart is empty"}


def test_missing_fields_rejected(client):
    resp = client.post("/api/orders", json={"customer_email": "ann@example.com"})
    assert resp.status_code == 422
    assert resp.json()["error"] == "Invalid request"


def test_idempotency_key_replays_order(client, db, fake_stripe, make_product, checkout_payload):
    product = make_product(stock=5)
    headers = {"Idempotency-Key": "checkout-123"}
    first = client.post("/api/orders", json=checkout_payload([item(product)]), headers=headers)
    second = client.post("/api/orders", json=checkout_payload([item(product)]), headers=headers)
    assert first.status_code == second.status_code == 201
    assert first.json()["order"]["order_number"] == second.json()["order"]["order_number"]
    assert second.json()["client_secret"] == first.json()["client_secret"]
    assert db["order"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 4


def test_idempotent_retry_after_cart_checkout(client, db, fake_stripe, make_product, checkout_payload):
    product = make_product(stock=5)
    client.post("/api/cart/add", json={"cart_key": "g", "product_id": str(product["_id"]), "quantity": 1})
    headers = {"Idempotency-Key": "k-1"}
    first = client.post("/api/orders", json=checkout_payload([], cart_key="g"), headers=headers)
    assert first.status_code == 201
    assert db["cart"].count_documents({}) == 0

    retry = client.post("/api/orders", json=checkout_payload([], cart_key="g"), headers=headers)
    assert retry.status_code == 201
    assert retry.json()["order"]["order_number"] == first.json()["order"]["order_number"]
    assert retry.json()["client_secret"] == first.json()["client_secret"]
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 4


def test_concurrent_idempotent_checkout_keeps_one_order(client, db, fake_stripe, make_product, make_coupon,
                                                        checkout_payload, monkeypatch):
    product = make_product(stock=5)
    make_coupon()
    headers = {"Idempotency-Key": "race-1"}
    body = checkout_payload([item(product)], coupon_code="WELCOME10")
    first = client.post("/api/orders", json=body, headers=headers).json()["order"]

    # The second request reads before the first one's insert lands.
    real_lookup = orders.existing_order
    calls = {"n": 0}

    def stale_lookup(key):
        calls["n"] += 1
        return None if calls["n"] == 1 else real_lookup(key)

    monkeypatch.setattr(orders, "existing_order", stale_lookup)
    resp = client.post("/api/orders", json=body, headers=headers)
    assert resp.status_code == 201
    assert resp.json()["order"]["order_number"] == first["order_number"]
    assert db["order"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 4
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 1
    assert fake_stripe.cancelled == ["pi_2"]


def test_keyless_orders_do_not_collide(client, db, fake_stripe, make_product, checkout_payload):
    product = make_product(stock=5)
    for _ in range(2):
        assert client.post("/api/orders", json=checkout_payload([item(product)])).status_code == 201
    assert db["order"].count_documents({}) == 2
    assert db["order"].count_documents({"idempotency_key": {"$exists": True}}) == 0


def test_failed_insert_releases_everything(client, db, fake_stripe, make_product, make_coupon, checkout_payload,
                                           monkeypatch):
    product = make_product(stock=5)
    make_coupon()
    monkeypatch.setattr(orders, "generate_order_number", lambda: "ORD-1-SAMENUMBR")
    body = checkout_payload([item(product)], coupon_code="WELCOME10")
    assert client.post("/api/orders", json=body).status_code == 201

    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 409
    assert db["order"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 4
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 1
    assert fake_stripe.cancelled == ["pi_2"]


def test_payment_provider_error_rolls_back(client, db, make_product, make_coupon, checkout_payload, monkeypatch):
    import stripe

    def decline(**kwargs):
        raise stripe.StripeError("Your card was declined.")

    monkeypatch.setattr(stripe.PaymentIntent, "create", decline)
    product = make_product(stock=2)
    make_coupon()
    resp = client.post("/api/orders", json=checkout_payload([item(product)], coupon_code="WELCOME10"))
    assert resp.status_code == 402
    assert resp.json() == {"error": "Your card was declined."}
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 2
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 0
    assert db["order"].count_documents({}) == 0


def test_dummy_provider_requires_flag(client, db, make_product, checkout_payload, monkeypatch):
    product = make_product()
    resp = client.post("/api/orders", json=checkout_payload([item(product)], payment_provider="dummy"))
    assert resp.status_code == 400
    monkeypatch.setattr(config, "ENABLE_DUMMY_PAYMENTS", True)
    resp = client.post("/api/orders", json=checkout_payload([item(product)], payment_provider="dummy"))
    assert resp.status_code == 201
    order = resp.json()["order"]
    assert order["payment_status"] == "paid"
    assert order["status"] == "processing"
    assert resp.json()["client_secret"] is None


def test_checkout_from_server_cart(client, db, fake_stripe, make_product, make_coupon, checkout_payload):
    product = make_product(price=15.0)
    make_coupon()
    client.post("/api/cart/add", json={"cart_key": "guest-1", "product_id": str(product["_id"]), "quantity": 1})
    resp = client.post("/api/cart/add", json={"cart_key": "guest-1", "product_id": str(product["_id"]),
                                              "quantity": 2})
    body = resp.json()
    assert body["items"][0]["quantity"] == 3
    assert body["totals"]["subtotal"] == 45.0

    resp = client.post("/api/cart/update", json={"cart_key": "guest-1", "coupon_code": "welcome10",
                                                 "items": [{"product_id": str(product["_id"]), "quantity": 3}]})
    assert resp.json()["totals"]["discount"] == 4.5

    resp = client.post("/api/orders", json=checkout_payload([], cart_key="guest-1"))
    assert resp.status_code == 201
    assert resp.json()["order"]["discount"] == 4.5
    assert db["cart"].count_documents({}) == 0


def test_cart_reports_bad_coupon_without_failing(client, make_product):
    product = make_product()
    resp = client.post("/api/cart/update", json={"cart_key": "k", "coupon_code": "NOPE",
                                                 "items": [{"product_id": str(product["_id"]), "quantity": 1}]})
    assert resp.status_code == 200
    assert resp.json()["coupon_error"] == "Invalid coupon code"
    assert resp.json()["totals"]["discount"] == 0.0


def test_order_lookup(client, fake_stripe, make_product, checkout_payload, admin_headers, customer_headers):
    product = make_product()
    number = client.post("/api/orders", json=checkout_payload([item(product)])).json()["order"]["order_number"]

    assert client.get("/api/orders", params={"order_number": number}).status_code == 404
    resp = client.get("/api/orders", params={"order_number": number, "email": "ANN@example.com"})
    assert resp.status_code == 200
    assert client.get("/api/orders", params={"order_number": number}, headers=customer_headers).status_code == 200

    all_orders = client.get("/api/orders", headers=admin_headers).json()
    assert all_orders["count"] == 1

    mine = client.get("/api/account/orders", headers=customer_headers).json()
    assert [o["order_number"] for o in mine["orders"]] == [number]


def test_admin_status_transitions(client, db, fake_stripe, make_product, make_coupon, checkout_payload,
                                  admin_headers):
    product = make_product(stock=3)
    make_coupon()
    number = client.post("/api/orders", json=checkout_payload([item(product, 2)], coupon_code="WELCOME10")
                         ).json()["order"]["order_number"]

    resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "status": "shipped"})
    assert resp.status_code == 400

    resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "status": "bogus"})
    assert resp.status_code == 400

    resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "status": "cancelled"})
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "cancelled"
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 3
    assert db["coupon"].find_one({"code": "WELCOME10"})["uses"] == 0

    resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "status": "processing"})
    assert resp.status_code == 400


def test_admin_can_walk_fulfilment(client, fake_stripe, make_product, checkout_payload, admin_headers):
    product = make_product()
    number = client.post("/api/orders", json=checkout_payload([item(product)])).json()["order"]["order_number"]
    for status in ("processing", "shipped", "delivered", "completed"):
        resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "status": status})
        assert resp.status_code == 200
        assert resp.json()["order"]["status"] == status
    resp = client.put("/api/orders", headers=admin_headers, json={"order_number": number, "payment_status": "paid"})
    assert resp.json()["order"]["payment_status"] == "paid"
    original_items = resp.json()["order"]["items"]
    assert original_items[0]["product_id"] == str(product["_id"])


def test_status_update_requires_admin(client, customer_headers):
    resp = client.put("/api/orders", headers=customer_headers, json={"order_number": "X", "status": "cancelled"})
    assert resp.status_code == 403
