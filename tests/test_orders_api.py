from datetime import timedelta

from bson import ObjectId
from pymongo.errors import PyMongoError

import main
from database import now
from tests.conftest import SHIPPING_ADDRESS, auth_headers


def order_body(product, quantity=1, **overrides):
    body = {
        "shippingAddress": SHIPPING_ADDRESS,
        "paymentMethod": "cod",
        "currency": "AF",
        "items": [{"product": str(product["_id"]), "quantity": quantity}],
        "guestEmail": "guest@example.com",
    }
    body.update(overrides)
    return body


def test_guest_order_created(client, db, make_user, make_product):
    seller = make_user(email="seller@example.com", roles=["seller"])
    product = make_product(price=300, seller=seller, quantity=5)
    res = client.post("/api/create-order", json=order_body(product, quantity=2))
    assert res.status_code == 201
    data = res.json()
    assert data["success"] is True
    assert data["order"]["order_number"].startswith("ORD-")
    assert data["order"]["status"] == "pending"

    order = db["order"].find_one({"_id": ObjectId(data["order"]["id"])})
    assert order["guest_email"] == "guest@example.com"
    assert order["customer"] is None
    assert order["items"][0]["product_seller"] == str(seller["_id"])
    assert order["items"][0]["total"] == 600
    # default settings: free above 1000, otherwise 50
    assert order["shipping"] == 50
    assert order["total"] == 650

    stored = db["product"].find_one({"_id": product["_id"]})
    assert stored["quantity"] == 3
    assert stored["total_sold"] == 2


def test_order_uses_site_shipping_settings(client, db, make_product):
    db["sitesettings"].insert_one({"shipping_mode": "always_free", "shipping_cost": 80, "free_delivery_threshold": 0})
    product = make_product(price=10)
    order_id = client.post("/api/create-order", json=order_body(product)).json()["order"]["id"]
    assert db["order"].find_one({"_id": ObjectId(order_id)})["shipping"] == 0


def test_sale_price_wins(client, db, make_product):
    product = make_product(price=100, sale_price=80)
    order_id = client.post("/api/create-order", json=order_body(product, quantity=2)).json()["order"]["id"]
    assert db["order"].find_one({"_id": ObjectId(order_id)})["subtotal"] == 160


def test_create_order_validation(client, make_product):
    product = make_product(quantity=1)
    body = order_body(product)
    del body["paymentMethod"]
    res = client.post("/api/create-order", json=body)
    assert res.status_code == 400
    assert res.json()["error"].startswith("Missing required fields")

    res = client.post("/api/create-order", json=order_body(product, guestEmail=None))
    assert res.json()["error"] == "Email is required for guest checkout"

    res = client.post("/api/create-order", json=order_body(product, items=[]))
    assert res.json()["error"] == "Cart items are required for guest checkout"

    res = client.post("/api/create-order", json=order_body(product, quantity=2))
    assert res.status_code == 400
    assert res.json()["error"].startswith("Insufficient stock")

    res = client.post("/api/create-order", json=order_body({"_id": ObjectId()}))
    assert res.status_code == 400
    assert "not found" in res.json()["error"]


def test_backorders_skip_stock_check(client, make_product):
    product = make_product(quantity=0, allow_backorders=True)
    assert client.post("/api/create-order", json=order_body(product, quantity=3)).status_code == 201


def test_authenticated_order_from_saved_cart(client, db, make_user, make_product):
    product = make_product(price=500)
    user = make_user(cart=[{"product_id": str(product["_id"]), "quantity": 3, "variant_id": None}])
    body = order_body(product, items=None, guestEmail=None, saveAddress=True,
                      shippingAddress=dict(SHIPPING_ADDRESS, label="Home"))
    res = client.post("/api/create-order", json=body, headers=auth_headers(user))
    assert res.status_code == 201
    order = db["order"].find_one({"_id": ObjectId(res.json()["order"]["id"])})
    assert order["customer"] == str(user["_id"])
    assert order["guest_email"] is None
    assert order["total"] == 1500
    refreshed = db["user"].find_one({"_id": user["_id"]})
    assert refreshed["cart"] == []
    assert refreshed["addresses"][0]["label"] == "Home"


def test_idempotency_key_returns_existing_order(client, db, make_product):
    product = make_product(quantity=10)
    headers = {"Idempotency-Key": "checkout-123"}
    first = client.post("/api/create-order", json=order_body(product), headers=headers)
    second = client.post("/api/create-order", json=order_body(product), headers=headers)
    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["order"]["id"] == second.json()["order"]["id"]
    assert db["order"].count_documents({}) == 1
    assert db["product"].find_one({"_id": product["_id"]})["quantity"] == 9


def test_order_confirmation_access(client, db, make_user, make_product):
    product = make_product()
    order_id = client.post("/api/create-order", json=order_body(product)).json()["order"]["id"]
    res = client.get(f"/api/order-confirmation/{order_id}")
    assert res.status_code == 200
    assert res.json()["items"][0]["product"]["name"] == "Saffron Tea"

    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"created_at": now() - timedelta(hours=25)}})
    assert client.get(f"/api/order-confirmation/{order_id}").status_code == 403

    assert client.get(f"/api/order-confirmation/{ObjectId()}").status_code == 404
    assert client.get("/api/order-confirmation/not-an-id").status_code == 400


def test_order_confirmation_for_customer(client, db, make_user, make_product):
    user = make_user()
    other = make_user(email="other@example.com")
    product = make_product()
    order_id = client.post("/api/create-order", json=order_body(product, guestEmail=None),
                           headers=auth_headers(user)).json()["order"]["id"]
    assert client.get(f"/api/order-confirmation/{order_id}", headers=auth_headers(user)).status_code == 200
    assert client.get(f"/api/order-confirmation/{order_id}", headers=auth_headers(other)).status_code == 403


def test_order_detail_gating(client, make_user, make_product, make_storefront):
    seller = make_user(email="seller@example.com", roles=["storefront_owner"])
    store = make_storefront(seller)
    product = make_product(stores=[store])
    stranger = make_user(email="stranger@example.com")
    admin = make_user(email="admin@example.com", roles=["admin"])
    order_id = client.post("/api/create-order", json=order_body(product)).json()["order"]["id"]

    assert client.get(f"/api/orders/{order_id}").status_code == 401
    assert client.get(f"/api/orders/{order_id}?email=GUEST@example.com").status_code == 200
    assert client.get(f"/api/orders/{order_id}?email=wrong@example.com").status_code == 403
    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(stranger)).status_code == 403
    assert client.get(f"/api/orders/{order_id}", headers=auth_headers(admin)).status_code == 200
    res = client.get(f"/api/orders/{order_id}", headers=auth_headers(seller))
    assert res.status_code == 200
    assert res.json()["seller_summary"]["item_count"] == 1


def test_user_orders_lists_own_orders(client, make_user, make_product):
    user = make_user()
    product = make_product(quantity=50)
    for _ in range(2):
        client.post("/api/create-order", json=order_body(product, guestEmail=None), headers=auth_headers(user))
    client.post("/api/create-order", json=order_body(product))
    res = client.get("/api/user-orders", headers=auth_headers(user))
    assert res.status_code == 200
    assert res.json()["total_docs"] == 2


def test_seller_status_updates(client, db, make_user, make_product, make_storefront):
    seller = make_user(email="seller@example.com", roles=["seller"])
    product = make_product(seller=seller)
    order_id = client.post("/api/create-order", json=order_body(product)).json()["order"]["id"]
    headers = auth_headers(seller)

    res = client.patch(f"/api/orders/{order_id}", json={"status": "shipped", "paymentStatus": "paid"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "shipped"
    assert res.json()["payment_status"] == "paid"

    assert client.patch(f"/api/orders/{order_id}", json={"status": "cancelled"}, headers=headers).status_code == 403
    assert client.patch(f"/api/orders/{order_id}", json={"paymentStatus": "refunded"}, headers=headers).status_code == 403
    assert client.patch(f"/api/orders/{order_id}", json={}, headers=headers).status_code == 400

    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "cancelled", "payment_status": "failed"}})
    assert client.patch(f"/api/orders/{order_id}", json={"status": "processing"}, headers=headers).status_code == 400
    assert client.patch(f"/api/orders/{order_id}", json={"paymentStatus": "paid"}, headers=headers).status_code == 400


def test_other_sellers_and_customers_cannot_update(client, make_user, make_product):
    seller = make_user(email="seller@example.com", roles=["seller"])
    rival = make_user(email="rival@example.com", roles=["seller"])
    customer = make_user(email="customer@example.com")
    admin = make_user(email="admin@example.com", roles=["admin"])
    product = make_product(seller=seller)
    order_id = client.post("/api/create-order", json=order_body(product)).json()["order"]["id"]
    assert client.patch(f"/api/orders/{order_id}", json={"status": "shipped"}, headers=auth_headers(rival)).status_code == 403
    assert client.patch(f"/api/orders/{order_id}", json={"status": "shipped"}, headers=auth_headers(customer)).status_code == 403
    res = client.patch(f"/api/orders/{order_id}", json={"status": "cancelled", "paymentStatus": "refunded"},
                       headers=auth_headers(admin))
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"


def test_split_lines_draw_on_the_same_stock(client, db, make_product):
    product = make_product(quantity=10)
    line = {"product": str(product["_id"]), "quantity": 6}
    res = client.post("/api/create-order", json=order_body(product, items=[line, line]))
    assert res.status_code == 400
    assert res.json()["error"].startswith("Insufficient stock")
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["total_sold"]) == (10, 0)
    assert db["order"].count_documents({}) == 0

    res = client.post("/api/create-order", json=order_body(product, items=[line, dict(line, quantity=4)]))
    assert res.status_code == 201
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["total_sold"]) == (0, 10)


def test_reserve_stock_refuses_stale_reads(db, make_product):
    product = make_product(quantity=5)
    assert main.reserve_stock(db, product, 4) is True
    # same stale document: only one unit is left
    assert main.reserve_stock(db, product, 4) is False
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["total_sold"]) == (1, 4)


def test_stock_released_when_order_insert_fails(client, db, monkeypatch, make_product):
    product = make_product(quantity=5)

    def failing_insert(db, order_doc):
        raise PyMongoError("write failed")

    monkeypatch.setattr(main, "insert_order", failing_insert)
    res = client.post("/api/create-order", json=order_body(product, quantity=2))
    assert res.status_code == 500
    stored = db["product"].find_one({"_id": product["_id"]})
    assert (stored["quantity"], stored["total_sold"]) == (5, 0)


def test_order_number_clash_is_retried(client, monkeypatch, make_product):
    numbers = iter(["ORD-1", "ORD-1", "ORD-2"])
    monkeypatch.setattr(main, "new_order_number", lambda: next(numbers))
    product = make_product()
    first = client.post("/api/create-order", json=order_body(product)).json()["order"]["order_number"]
    second = client.post("/api/create-order", json=order_body(product)).json()["order"]["order_number"]
    assert (first, second) == ("ORD-1", "ORD-2")


def test_guest_order_revalidates_shipping_details(client, db, make_product):
    product = make_product(quantity=5)
    res = client.post("/api/create-order",
                      json=order_body(product, shippingAddress={"firstName": "A", "lastName": "B"}))
    assert res.status_code == 400
    assert "A valid phone number is required" in res.json()["error"]
    assert "Please pick your delivery location on the map" in res.json()["error"]
    assert db["order"].count_documents({}) == 0
    assert db["product"].find_one({"_id": product["_id"]})["quantity"] == 5


def test_member_order_uses_the_given_address(client, make_user, make_product):
    product = make_product()
    body = order_body(product, guestEmail=None, shippingAddress={"firstName": "A", "lastName": "B"})
    assert client.post("/api/create-order", json=body, headers=auth_headers(make_user())).status_code == 201
