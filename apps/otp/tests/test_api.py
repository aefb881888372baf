import pytest
from fastapi.testclient import TestClient

from app.main import create_app

from conftest import CANONICAL_PHONE, PHONE


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as c:
        yield c


def _request(client, identifier=PHONE, purpose="guest_checkout", session="sess-api"):
    return client.post("/otp/request_otp", json={"identifier": identifier, "purpose": purpose, "sessionId": session})


def _verify(client, code, identifier=PHONE, purpose="guest_checkout", session="sess-api"):
    return client.post(
        "/otp/verify_otp",
        json={"identifier": identifier, "code": code, "sessionId": session, "purpose": purpose},
    )


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers.get("X-Request-ID")


def test_metrics_exposed(client):
    _request(client)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "otp_issued_total" in r.text


def test_request_and_verify_flow(client, delivery):
    r = _request(client)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["expiresIn"] == 300
    assert body["attemptsRemaining"] == 5
    assert body["identifierType"] == "phone"
    assert body["devCode"] == delivery.last_code
    assert r.headers["Cache-Control"] == "no-store"

    r2 = _verify(client, delivery.last_code)
    assert r2.status_code == 200, r2.text
    assert r2.json() == {"success": True, "identifier": CANONICAL_PHONE, "identifierType": "phone"}

    r3 = _verify(client, delivery.last_code)
    assert r3.status_code == 409
    assert r3.json()["error"]["code"] == "already_used"


def test_dev_code_hidden_when_echo_disabled(client, monkeypatch):
    from app import config

    monkeypatch.setattr(config.settings, "OTP_ECHO_CODE", False)
    r = _request(client)
    assert r.status_code == 200
    assert "devCode" not in r.json()


def test_invalid_identifier_envelope(client):
    r = _request(client, identifier="12345")
    assert r.status_code == 400
    err = r.json()["error"]
    assert err["code"] == "invalid_identifier"
    assert "01XXXXXXXXX" in err["message"]


def test_bad_code_shape_is_422(client):
    _request(client)
    assert _verify(client, "12a4").status_code == 422
    assert _verify(client, "12345").status_code == 422


def test_unknown_purpose_is_422(client):
    assert _request(client, purpose="login").status_code == 422


def test_cooldown_returns_retry_after(client, clock):
    assert _request(client).status_code == 200
    clock.advance(15)
    r = _request(client)
    assert r.status_code == 429
    err = r.json()["error"]
    assert err["code"] == "cooldown_active"
    assert err["details"]["retryAfterSeconds"] == 45
    assert r.headers["Retry-After"] == "45"
    assert "Please wait 45 seconds" in err["message"]


def test_wrong_codes_then_lockout(client, delivery):
    _request(client)
    wrong = "0000" if delivery.last_code != "0000" else "1111"
    for remaining in (4, 3, 2, 1):
        r = _verify(client, wrong)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "invalid_code"
        assert r.json()["error"]["details"]["attemptsRemaining"] == remaining
    r = _verify(client, wrong)
    assert r.status_code == 429
    assert r.json()["error"]["code"] == "max_attempts_exceeded"
    assert "Retry-After" not in r.headers
    r = _verify(client, delivery.last_code)
    assert r.status_code == 429


def test_expired_and_not_found(client, delivery, clock):
    assert _verify(client, "1234").status_code == 404
    _request(client)
    clock.advance(301)
    r = _verify(client, delivery.last_code)
    assert r.status_code == 410
    assert r.json()["error"]["code"] == "expired"


def test_status_endpoint(client, delivery):
    params = {"identifier": PHONE, "sessionId": "sess-api", "purpose": "guest_checkout"}
    r = client.get("/otp/status", params=params)
    assert r.status_code == 200
    assert r.json() == {"verified": False}
    _request(client)
    r = client.get("/otp/status", params=params)
    assert r.json()["verified"] is False and r.json()["expiresAt"]
    _verify(client, delivery.last_code)
    assert client.get("/otp/status", params=params).json() == {"verified": True}


def test_delivery_failure_is_reported_softly(client, delivery):
    delivery.fail = True
    r = _request(client)
    assert r.status_code == 200
    assert r.json()["deliveryFailed"] is True


def test_request_id_propagates(client):
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"
