"""
backend/tests/test_error_contract.py
Error envelope: {"error": {code, message, request_id, details?}, "detail"} plus x-request-id.
"""

from fastapi.testclient import TestClient

from backend.main import app

client = TestClient(app)


def test_missing_user_header_is_401():
    resp = client.get("/v1/accounts/me")
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["detail"] == body["error"]["message"]


def test_request_id_is_echoed():
    resp = client.get("/v1/accounts/me", headers={"X-User-Id": "nobody", "x-request-id": "rid-123"})
    assert resp.status_code == 404
    assert resp.headers["x-request-id"] == "rid-123"
    assert resp.json()["error"]["request_id"] == "rid-123"


def test_request_id_generated_when_absent():
    resp = client.get("/healthz")
    assert resp.headers.get("x-request-id")


def test_admin_route_without_key_is_403():
    resp = client.put("/v1/accounts/brand-1/tier", json={"tier": "pro"}, headers={"X-User-Id": "brand-1"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_details_omitted_when_empty():
    resp = client.get("/v1/accounts/me", headers={"X-User-Id": "nobody"})
    assert "details" not in resp.json()["error"]


def test_precondition_details_carried():
    client.post("/v1/accounts", json={"account_id": "brand-9", "role": "brand"}, headers={"X-User-Id": "brand-9"})
    resp = client.post("/v1/verification/payments", json={"payment_ref": "p"}, headers={"X-User-Id": "brand-9"})
    assert resp.status_code == 412
    error = resp.json()["error"]
    assert error["code"] == "precondition_failed"
    assert error["details"]["missing"] == ["phone_verified", "paid_tier"]


def test_body_validation_uses_framework_422():
    resp = client.post("/v1/accounts", json={"account_id": "x"}, headers={"X-User-Id": "x"})
    assert resp.status_code == 422
