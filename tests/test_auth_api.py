from database import now
from tests.conftest import auth_headers


def register(client, **overrides):
    body = {"email": "New@Example.com", "password": "password123", "firstName": "Sara", "lastName": "Ahmadi"}
    body.update(overrides)
    return client.post("/api/register", json=body)


def test_register_creates_customer_and_sets_cookie(client, db):
    res = register(client)
    assert res.status_code == 201
    data = res.json()
    assert data["success"] is True
    assert data["user"]["email"] == "new@example.com"
    assert data["user"]["roles"] == ["customer"]
    assert "kakamalem-token" in res.cookies
    assert db["user"].find_one({"email": "new@example.com"})["password_hash"] != "password123"


def test_register_validation(client):
    assert register(client, firstName="").status_code == 400
    res = register(client, email="not-an-email")
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid email format"
    res = register(client, password="short")
    assert res.status_code == 400
    assert "8 characters" in res.json()["error"]


def test_register_duplicate_email(client):
    assert register(client).status_code == 201
    res = register(client, email="new@example.com")
    assert res.status_code == 409


def test_register_migrates_guest_orders(client, db):
    db["order"].insert_one({"order_number": "ORD-1", "customer": None, "guest_email": "new@example.com",
                            "items": [], "created_at": now()})
    db["order"].insert_one({"order_number": "ORD-2", "customer": None, "guest_email": "other@example.com",
                            "items": [], "created_at": now()})
    uid = register(client).json()["user"]["id"]
    migrated = db["order"].find_one({"order_number": "ORD-1"})
    assert migrated["customer"] == uid
    assert migrated["guest_email"] is None
    assert db["order"].find_one({"order_number": "ORD-2"})["customer"] is None


def test_login_flow(client, make_user):
    make_user(email="buyer@example.com")
    assert client.post("/api/login", json={"email": "", "password": ""}).status_code == 400
    assert client.post("/api/login", json={"email": "nobody@example.com", "password": "x"}).status_code == 404
    assert client.post("/api/login", json={"email": "buyer@example.com", "password": "wrong-pass"}).status_code == 401
    res = client.post("/api/login", json={"email": "Buyer@Example.com", "password": "password123", "stayLoggedIn": True})
    assert res.status_code == 200
    assert "Max-Age=604800" in res.headers["set-cookie"]
    # the cookie alone authenticates follow-up requests
    me = client.get("/api/users/me")
    assert me.status_code == 200
    assert me.json()["email"] == "buyer@example.com"


def test_login_links_guest_orders(client, db, make_user):
    user = make_user(email="buyer@example.com")
    db["order"].insert_one({"order_number": "ORD-9", "guest_email": "buyer@example.com", "items": []})
    client.post("/api/login", json={"email": "buyer@example.com", "password": "password123"})
    assert db["order"].find_one({"order_number": "ORD-9"})["customer"] == str(user["_id"])


def test_logout_clears_cookie(client, make_user):
    make_user()
    client.post("/api/login", json={"email": "buyer@example.com", "password": "password123"})
    client.post("/api/logout")
    assert client.get("/api/users/me").status_code == 401


def test_me_requires_auth(client):
    res = client.get("/api/users/me")
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": "Authentication required"}


def test_update_profile_and_addresses(client, make_user):
    user = make_user()
    headers = auth_headers(user)
    res = client.patch("/api/users/me", json={"firstName": " Omid "}, headers=headers)
    assert res.json()["first_name"] == "Omid"

    home = {"label": "Home", "firstName": "Omid", "lastName": "Noori", "city": "Herat", "isDefault": True}
    work = {"label": "Work", "firstName": "Omid", "lastName": "Noori", "city": "Kabul", "isDefault": True}
    client.post("/api/users/me/addresses", json=home, headers=headers)
    res = client.post("/api/users/me/addresses", json=work, headers=headers)
    assert res.status_code == 201
    addresses = res.json()["addresses"]
    assert [a["is_default"] for a in addresses] == [False, True]

    assert client.delete("/api/users/me/addresses/5", headers=headers).status_code == 404
    res = client.delete("/api/users/me/addresses/0", headers=headers)
    assert [a["label"] for a in res.json()["addresses"]] == ["Work"]
