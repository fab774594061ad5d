import pytest
from fastapi.testclient import TestClient

from shopping_assistant.api.main import create_app


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def new_session(client, user_id="u1"):
    response = client.post("/sessions", json={"user_id": user_id})
    assert response.status_code == 200
    return response.json()["session_id"]


def test_root_and_lifespan(service):
    with TestClient(create_app(service)) as client:
        assert client.get("/").json()["status"] == "online"
        assert service.session_manager._sweeper is not None
    assert service.session_manager._sweeper is None


def test_session_lifecycle(client):
    session_id = new_session(client)

    response = client.post(f"/sessions/{session_id}/cart", json={"product_id": "P002", "quantity": 1})
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["new_state"] == "Shopping"
    assert body["evaluation"]["fired_rules"] == ["BIG-CART", "FREE-SHIP", "PHONE-CASE"]

    response = client.put(f"/sessions/{session_id}/cart/P002", json={"quantity": 2})
    assert response.json()["cart"]["item_count"] == 2

    assert client.post(f"/sessions/{session_id}/checkout").json()["new_state"] == "Checkout"
    response = client.post(f"/sessions/{session_id}/checkout/complete", json={
        "name": "Ada Lovelace", "email": "ada@example.com", "card_number": "4111111111111111",
    })
    body = response.json()
    assert body["success"] is True
    assert body["order_id"].startswith("ORD-")

    session = client.get(f"/sessions/{session_id}").json()["session"]
    assert session["current_state"] == "Completed"
    assert session["order_id"] == body["order_id"]


def test_business_rejections_are_not_errors(client):
    session_id = new_session(client)
    response = client.post(f"/sessions/{session_id}/checkout")
    assert response.status_code == 200
    assert response.json() == {
        "success": False,
        "message": "Cart is empty. Add items before checkout.",
        "state": "Browsing",
    }


def test_invalid_state_operation_is_409(client):
    session_id = new_session(client)
    response = client.post(f"/sessions/{session_id}/checkout/cancel")
    assert response.status_code == 409
    assert response.json() == {"detail": "cancel_checkout() not allowed in Browsing state", "state": "Browsing"}


def test_missing_resources_are_404(client):
    assert client.get("/sessions/SESSION-missing").status_code == 404
    session_id = new_session(client)
    assert client.post(f"/sessions/{session_id}/cart", json={"product_id": "NOPE"}).status_code == 404
    assert client.get("/products/NOPE").status_code == 404
    assert client.get("/users/nobody/recommendations").status_code == 404


def test_coupons_over_http(client):
    session_id = new_session(client)
    coupons = client.get("/users/u1/coupons").json()["coupons"]
    assert "FIRSTBUY" in [c["code"] for c in coupons]

    client.post(f"/sessions/{session_id}/cart", json={"product_id": "P003"})
    body = client.post(f"/sessions/{session_id}/coupon", json={"code": "FIRSTBUY"}).json()
    assert body["success"] is True
    assert body["discount_amount"] == pytest.approx(10.0)


def test_products_and_users(client):
    audio = client.get("/products", params={"category": "audio"}).json()
    assert [p["id"] for p in audio] == ["P001", "P010", "P013"]

    created = client.post("/products", json={"id": "X1", "name": "Widget", "price": 3.5, "category": "gadgets"})
    assert created.json()["category"] == "gadgets"
    assert client.get("/products/X1").json()["price"] == 3.5
    assert client.post("/products", json={"id": "X2", "name": "Bad", "price": -1}).status_code == 422

    user = client.post("/users", json={"id": "stu", "name": "Sam", "is_student": True}).json()
    assert user["is_student"] is True
    assert "STUDENT2024" in [c["code"] for c in client.get("/users/stu/coupons").json()["coupons"]]


def test_statistics(client):
    new_session(client)
    stats = client.get("/statistics").json()
    assert stats["sessions"]["total"] == 1
    assert stats["events"]["total_products"] == 15


# Rules API

def test_list_and_get_rules(client):
    rules = client.get("/api/rules").json()
    assert len(rules) == 7
    assert client.get("/api/rules/STUDENT-FLAG").json()["action_variable"] == "segment"
    assert client.get("/api/rules/NOPE").status_code == 404
    assert client.get("/api/rules/stats").json()["total"] == 7


def test_create_rule_goes_live(client, service):
    response = client.post("/api/rules", json={
        "rule_id": "PAPER", "name": "Paper lover", "type": "SEGMENT", "priority": 5,
        "condition": "cart.stationery.count >= 1", "action_variable": "paper", "action_value": "true",
    })
    assert response.status_code == 200
    assert service.rule_base.get_rule("PAPER") is not None

    session_id = new_session(client)
    body = client.post(f"/sessions/{session_id}/cart", json={"product_id": "P014"}).json()
    assert body["evaluation"]["variables"]["paper"] is True

    assert client.post("/api/rules", json={"rule_id": "PAPER", "name": "Again", "action_variable": "x"}).status_code == 400

    response = client.put("/api/rules/PAPER", json={"active": False})
    assert response.json()["active"] is False
    assert "PAPER" not in [r.id for r in service.rule_base.get_rules_by_priority()]

    assert client.delete("/api/rules/PAPER").json()["success"] is True
    assert service.rule_base.get_rule("PAPER") is None
    assert client.delete("/api/rules/PAPER").status_code == 404


def test_invalid_rules_are_rejected(client):
    response = client.post("/api/rules", json={"name": "Broken", "condition": "cart.total >=", "action_variable": "x"})
    assert response.status_code == 400
    assert response.json()["detail"]["errors"]

    assert client.put("/api/rules/NOPE", json={"priority": 1}).status_code == 404


def test_update_with_broken_condition_is_rejected(client, service):
    original = client.get("/api/rules/STUDENT-FLAG").json()

    response = client.put("/api/rules/STUDENT-FLAG", json={"condition": "user.is_student ~~ ((("})

    assert response.status_code == 400
    assert response.json()["detail"]["errors"]
    assert client.get("/api/rules/STUDENT-FLAG").json() == original
    assert service.rule_base.get_rule("STUDENT-FLAG") is not None

    result = client.post("/api/rules/validate", json={"name": "Always", "action_variable": "x"}).json()
    assert result["valid"] is True
    assert result["warnings"] == ["Rule has no condition and will fire on every evaluation"]
