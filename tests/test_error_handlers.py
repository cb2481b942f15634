from __future__ import annotations

from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.errors import register_error_handlers
from app.observability import ObservabilityMiddleware
from app.services.gateways.errors import (
    DeclinedError,
    InvalidSignatureError,
    TransientError,
    ValidationError,
)


def _build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ObservabilityMiddleware)
    register_error_handlers(app)

    api_router = APIRouter(prefix="/api/v1")

    @api_router.get("/http-409")
    def api_http_409():
        raise HTTPException(status_code=409, detail="Record already exists")

    @api_router.get("/needs-int")
    def api_needs_int(value: int):
        return {"value": value}

    @api_router.get("/declined")
    def api_declined():
        raise DeclinedError(
            "card_declined: insufficient funds",
            decline_code="insufficient_funds",
            gateway="stripe",
            code="card_declined",
        )

    @api_router.get("/rejected")
    def api_rejected():
        raise ValidationError("No such price: price_x", gateway="stripe", code="resource_missing")

    @api_router.get("/bad-signature")
    def api_bad_signature():
        raise InvalidSignatureError("Stripe signature mismatch", gateway="stripe")

    @api_router.get("/unavailable")
    def api_unavailable():
        raise TransientError("HTTP 503 from upstream", gateway="stripe", status_code=503)

    @api_router.get("/crash")
    def api_crash():
        raise RuntimeError("boom")

    app.include_router(api_router)
    return app


def test_http_exception_returns_json_payload() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/http-409", headers={"X-Request-ID": "req-1"})
    assert resp.status_code == 409
    body = resp.json()
    assert body == {
        "code": "http_409",
        "message": "Record already exists",
        "details": None,
        "request_id": "req-1",
    }


def test_unknown_route_is_json_404() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "http_404"


def test_request_validation_error_is_422() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/needs-int", params={"value": "abc"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["code"] == "validation_error"
    assert body["details"][0]["loc"] == ["query", "value"]
    assert "ctx" not in body["details"][0]


def test_declined_error_is_402_with_friendly_message() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/declined")
    assert resp.status_code == 402
    body = resp.json()
    assert body["code"] == "card_declined"
    assert body["message"] == DeclinedError.default_user_message
    assert body["details"] == {
        "gateway": "stripe",
        "gateway_code": "card_declined",
        "decline_code": "insufficient_funds",
    }


def test_gateway_validation_error_is_400() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/rejected")
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "gateway_validation_error"
    assert body["message"] == "No such price: price_x"
    assert body["details"] == {"gateway": "stripe", "gateway_code": "resource_missing"}


def test_invalid_signature_is_400() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/bad-signature")
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_signature"


def test_transient_error_is_503_without_upstream_detail() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/unavailable")
    assert resp.status_code == 503
    body = resp.json()
    assert body["code"] == "gateway_unavailable"
    assert "upstream" not in body["message"]


def test_unhandled_exception_is_500_with_request_id() -> None:
    client = TestClient(_build_app(), raise_server_exceptions=False)
    resp = client.get("/api/v1/crash", headers={"X-Request-ID": "req-crash"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["code"] == "internal_error"
    assert body["request_id"] == "req-crash"
    assert "boom" not in body["message"]
