from bson import ObjectId

from conftest import fill_cart, make_address, make_product, make_user


def test_root(client):
    assert client.get("/").json() == {"message": "Helmet Store API running"}


def test_register_login_and_profile(client):
    res = client.post("/auth/register", json={
        "name": "New Rider", "email": "New.Rider@Example.com", "password": "correct-horse",
    })
    assert res.status_code == 201
    assert res.json()["user"]["email"] == "new.rider@example.com"

    res = client.post("/auth/login", json={"email": "new.rider@example.com", "password": "correct-horse"})
    assert res.status_code == 200
    headers = {"Authorization": f"Bearer {res.json()['token']}"}

    assert client.get("/me", headers=headers).json()["name"] == "New Rider"
    res = client.put("/me", json={"phone": "9876543210"}, headers=headers)
    assert res.json()["phone"] == "9876543210"


def test_duplicate_registration_conflicts(client):
    body = {"name": "Rider", "email": "dup@example.com", "password": "correct-horse"}
    assert client.post("/auth/register", json=body).status_code == 201
    res = client.post("/auth/register", json=body)
    assert res.status_code == 409
    assert res.json()["code"] == "CONFLICT"


def test_wrong_password(client):
    client.post("/auth/register", json={"name": "Rider", "email": "pw@example.com", "password": "correct-horse"})
    res = client.post("/auth/login", json={"email": "pw@example.com", "password": "wrong-horse"})
    assert res.status_code == 401
    assert res.json() == {
        "success": False,
        "error": "Invalid credentials",
        "code": "AUTHENTICATION_ERROR",
        "request_id": None,
    }


def test_missing_and_bad_tokens(client):
    res = client.get("/me")
    assert res.status_code == 401
    assert res.headers["www-authenticate"] == "Bearer"
    res = client.get("/me", headers={"Authorization": "Bearer nonsense", "X-Request-ID": "req-7"})
    assert res.json()["code"] == "INVALID_TOKEN"
    assert res.json()["request_id"] == "req-7"


def test_unknown_fields_are_rejected(client, customer):
    res = client.post("/orders", headers=customer["headers"], json={
        "address_id": str(ObjectId()), "payment_method": "COD", "total": 1,
    })
    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert any("total" in d for d in body["details"])


def test_unknown_payment_method_is_rejected(client, customer):
    res = client.post("/orders", headers=customer["headers"], json={
        "address_id": str(ObjectId()), "payment_method": "BITCOIN",
    })
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"


def test_unknown_route(client):
    res = client.get("/no-such-thing")
    assert res.status_code == 404
    assert res.json()["code"] == "ROUTE_NOT_FOUND"


def test_addresses(client, customer):
    body = {"full_name": "Asha Rider", "line1": "12 MG Road", "city": "Pune", "postal_code": "411001",
            "is_default": True}
    first = client.post("/me/addresses", json=body, headers=customer["headers"]).json()
    second = client.post("/me/addresses", json=body, headers=customer["headers"]).json()
    items = client.get("/me/addresses", headers=customer["headers"]).json()["items"]
    defaults = {a["id"]: a["is_default"] for a in items}
    assert defaults == {first["id"]: False, second["id"]: True}
    assert client.delete(f"/me/addresses/{first['id']}", headers=customer["headers"]).status_code == 200
    assert client.delete(f"/me/addresses/{first['id']}", headers=customer["headers"]).status_code == 404


def test_change_password(client):
    client.post("/auth/register", json={"name": "Rider", "email": "pw2@example.com", "password": "correct-horse"})
    token = client.post("/auth/login", json={"email": "pw2@example.com", "password": "correct-horse"}).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    res = client.put("/me/password", json={"current_password": "wrong-horse", "new_password": "battery-staple"},
                     headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_PASSWORD"
    res = client.put("/me/password", json={"current_password": "correct-horse", "new_password": "short"},
                     headers=headers)
    assert res.status_code == 400

    res = client.put("/me/password", json={"current_password": "correct-horse", "new_password": "battery-staple"},
                     headers=headers)
    assert res.status_code == 200
    old = client.post("/auth/login", json={"email": "pw2@example.com", "password": "correct-horse"})
    assert old.status_code == 401
    new = client.post("/auth/login", json={"email": "pw2@example.com", "password": "battery-staple"})
    assert new.status_code == 200


def test_update_address(client, store, settings, customer):
    body = {"full_name": "Asha Rider", "line1": "12 MG Road", "city": "Pune", "postal_code": "411001",
            "is_default": True}
    first = client.post("/me/addresses", json=body, headers=customer["headers"]).json()
    second = client.post("/me/addresses", json=body, headers=customer["headers"]).json()

    res = client.put(f"/me/addresses/{first['id']}", json={"is_default": True, "postal_code": "411002"},
                     headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["postal_code"] == "411002"
    assert res.json()["city"] == "Pune"
    items = client.get("/me/addresses", headers=customer["headers"]).json()["items"]
    assert {a["id"]: a["is_default"] for a in items} == {first["id"]: True, second["id"]: False}

    stranger = make_user(store, settings, email="stranger@example.com")
    res = client.put(f"/me/addresses/{first['id']}", json={"city": "Goa"}, headers=stranger["headers"])
    assert res.status_code == 404
    res = client.put(f"/me/addresses/{first['id']}", json={"user_id": "someone"}, headers=customer["headers"])
    assert res.status_code == 400


def test_admin_lists_every_order(client, store, settings, customer, admin):
    other = make_user(store, settings, email="pillion@example.com")
    pid, _ = make_product(store, price=1000.0, stock=10)
    placed = []
    for user, method in ((customer, "COD"), (other, "COD"), (other, "RAZORPAY")):
        fill_cart(store, user, (pid, 1))
        res = client.post("/orders", json={"address_id": make_address(store, user), "payment_method": method},
                          headers=user["headers"])
        assert res.status_code == 201
        placed.append(res.json()["order"])

    body = client.get("/admin/orders", headers=admin["headers"]).json()
    assert body["total"] == 3
    assert {o["user_id"] for o in body["items"]} == {str(customer["_id"]), str(other["_id"])}

    client.put(f"/admin/orders/{placed[1]['id']}/status", json={"order_status": "CONFIRMED"},
               headers=admin["headers"])
    res = client.get("/admin/orders", params={"payment_status": "PENDING", "order_status": "CONFIRMED"},
                     headers=admin["headers"])
    assert [o["id"] for o in res.json()["items"]] == [placed[1]["id"]]
    res = client.get("/admin/orders", params={"order_status": "PENDING"}, headers=admin["headers"])
    assert {o["id"] for o in res.json()["items"]} == {placed[0]["id"], placed[2]["id"]}
    res = client.get("/admin/orders", params={"limit": 1, "page": 2}, headers=admin["headers"])
    assert res.json()["has_next"] and res.json()["has_prev"]

    assert client.get("/admin/orders", params={"order_status": "LOST"}, headers=admin["headers"]).status_code == 400
    assert client.get("/admin/orders", headers=customer["headers"]).status_code == 403
    assert client.get("/orders", headers=customer["headers"]).json()["total"] == 1


def test_product_with_variants(client, store):
    pid, (vid,) = make_product(store, price=2499.0, discount_price=1999.0,
                               variants=[{"size": "XL", "additional_price": 150, "stock": 2}])
    body = client.get(f"/products/{pid}").json()
    assert body["discount_price"] == 1999.0
    assert body["variants"][0]["id"] == vid
    assert client.get(f"/products/{ObjectId()}").status_code == 404


def test_cart_respects_stock(client, store, customer):
    pid, (vid,) = make_product(store, price=2499.0, discount_price=1999.0, stock=10,
                               variants=[{"size": "XL", "additional_price": 150, "stock": 2}])
    add = {"product_id": pid, "variant_id": vid, "quantity": 2}
    res = client.post("/cart/add", json=add, headers=customer["headers"])
    assert res.status_code == 200
    cart = res.json()
    assert cart["items"][0]["unit_price"] == 2149.0
    assert cart["subtotal"] == 4298.0

    res = client.post("/cart/add", json=dict(add, quantity=1), headers=customer["headers"])
    assert res.status_code == 400
    assert res.json() == {
        "success": False,
        "error": "Only 2 items available",
        "code": "INSUFFICIENT_STOCK",
        "request_id": None,
    }

    res = client.post("/cart/update", json=dict(add, quantity=1), headers=customer["headers"])
    assert res.json()["items"][0]["quantity"] == 1
    res = client.post("/cart/remove", json={"product_id": pid, "variant_id": vid}, headers=customer["headers"])
    assert res.json()["items"] == []
    res = client.post("/cart/remove", json={"product_id": pid, "variant_id": vid}, headers=customer["headers"])
    assert res.status_code == 404


def test_cart_quantity_is_bounded(client, store, customer):
    pid, _ = make_product(store, stock=50)
    res = client.post("/cart/add", json={"product_id": pid, "quantity": 11}, headers=customer["headers"])
    assert res.status_code == 400


def test_admin_endpoints_require_admin(client, customer):
    assert client.post("/admin/seed", headers=customer["headers"]).status_code == 403
    assert client.get("/admin/coupons", headers=customer["headers"]).status_code == 403
    res = client.post("/products", json={"name": "X", "slug": "x", "price": 1}, headers=customer["headers"])
    assert res.status_code == 403
    assert res.json()["error"] == "Admin only"


def test_admin_coupon_management(client, admin):
    coupon = {
        "code": "monsoon25", "discount_type": "FIXED", "discount_value": 250, "min_purchase": 1500,
        "usage_limit": 100, "valid_from": "2025-06-01T00:00:00Z", "valid_until": "2025-09-30T23:59:59+05:30",
    }
    res = client.post("/admin/coupons", json=coupon, headers=admin["headers"])
    assert res.status_code == 201
    assert res.json()["code"] == "MONSOON25"
    assert res.json()["used_count"] == 0
    assert client.post("/admin/coupons", json=coupon, headers=admin["headers"]).status_code == 409

    res = client.post("/admin/coupons", json=dict(coupon, code="BACKWARDS", valid_until="2025-01-01T00:00:00Z"),
                      headers=admin["headers"])
    assert res.status_code == 400
    assert [c["code"] for c in client.get("/admin/coupons", headers=admin["headers"]).json()["items"]] == ["MONSOON25"]


def test_seed_catalog(client, store, admin):
    res = client.post("/admin/seed", headers=admin["headers"])
    assert res.json() == {"seeded": True, "count": 3}
    assert store["productvariant"].count_documents({}) == 4
    assert {c["code"] for c in store["coupon"].find()} == {"WELCOME10", "HELMET20", "RIDE15"}
    assert client.post("/admin/seed", headers=admin["headers"]).json()["seeded"] is False


def test_admin_manages_products(client, store, admin, customer):
    res = client.post("/products", headers=admin["headers"], json={
        "name": "Trail Dual-Sport Helmet", "slug": "trail-dual-sport", "price": 5499, "stock": 12,
    })
    assert res.status_code == 201
    pid = res.json()["id"]
    res = client.post(f"/products/{pid}/variants", json={"size": "S", "stock": 6}, headers=admin["headers"])
    assert res.status_code == 201

    client.put(f"/products/{pid}", json={"discount_price": 4999}, headers=admin["headers"])
    body = client.get(f"/products/{pid}").json()
    assert body["discount_price"] == 4999
    assert len(body["variants"]) == 1

    client.put(f"/products/{pid}", json={"is_active": False}, headers=admin["headers"])
    assert client.get(f"/products/{pid}").status_code == 404
    res = client.post("/cart/add", json={"product_id": pid, "quantity": 1}, headers=customer["headers"])
    assert res.status_code == 404

    assert client.delete(f"/products/{pid}", headers=admin["headers"]).json()["deleted"] is True
    assert store["productvariant"].count_documents({"product_id": pid}) == 0


def test_clear_cart(client, store, customer):
    pid, _ = make_product(store)
    client.post("/cart/add", json={"product_id": pid, "quantity": 3}, headers=customer["headers"])
    assert client.delete("/cart", headers=customer["headers"]).json() == {"cleared": True}
    assert client.get("/cart", headers=customer["headers"]).json()["items"] == []
