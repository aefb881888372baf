import json

import httpx
import pytest

from storefront_client import api
from storefront_client.api import ApiSettings, Err, Issued, Ok, OtpApiClient, parse_retry_after
from storefront_client.controller import (
    AWAITING_CODE,
    IDLE,
    LOCKED,
    VERIFIED,
    ControllerState,
    VerificationController,
    apply_issue,
    apply_verify,
)
from storefront_client.countdown import Countdown


def _error(status, code, message, **details):
    return httpx.Response(status, json={"error": {"code": code, "message": message, "details": details}})


def _issued():
    return httpx.Response(
        200,
        json={"success": True, "message": "A verification code has been sent to 01712345678", "expiresIn": 300,
              "attemptsRemaining": 5, "identifierType": "phone"},
    )


def _verified():
    return httpx.Response(200, json={"success": True, "identifier": "+8801712345678", "identifierType": "phone"})


class FakeServer:
    """Queue of canned responses per path; records every request body."""

    def __init__(self):
        self.responses = {"/otp/request_otp": [], "/otp/verify_otp": [], "/otp/status": []}
        self.requests = []
        self.during = None

    def queue(self, path, *responses):
        self.responses[path].extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.url.path, json.loads(request.content or b"{}")))
        if self.during is not None:
            self.during(request)
        response = self.responses[request.url.path].pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def client(server):
    c = OtpApiClient(ApiSettings(base_url="http://otp.test"), transport=httpx.MockTransport(server))
    yield c
    c.close()


@pytest.fixture
def controller(client):
    verified = []
    ctl = VerificationController(
        client,
        "01712345678",
        "guest_checkout",
        session_id="sess-ui",
        countdown=Countdown(ticker_factory=None),
        on_verified=verified.append,
    )
    ctl.verified = verified
    yield ctl
    ctl.close()


def _type(ctl, code):
    for ch in code:
        ctl.type_digit(ch)


def test_request_then_verify_emits_identifier(controller, server):
    server.queue("/otp/request_otp", _issued())
    server.queue("/otp/verify_otp", httpx.Response(200, json={"success": True, "identifier": "+8801712345678",
                                                              "identifierType": "phone"}))
    assert controller.state.phase == IDLE
    assert controller.request_code() is True
    assert controller.state.phase == AWAITING_CODE
    assert controller.state.cooldown_remaining == 60
    assert controller.state.can_resend is False

    controller.paste("1234")
    assert controller.state.input.focus == 3
    assert controller.submit() is True
    assert controller.state.phase == VERIFIED
    assert controller.verified == ["+8801712345678"]
    assert controller._countdown.active is False
    assert server.requests[-1] == ("/otp/verify_otp", {"identifier": "01712345678", "code": "1234",
                                                       "sessionId": "sess-ui", "purpose": "guest_checkout"})


def test_submit_requires_all_boxes(controller, server):
    server.queue("/otp/request_otp", _issued())
    controller.request_code()
    _type(controller, "123")
    assert controller.submit() is False
    assert [p for p, _ in server.requests] == ["/otp/request_otp"]


def test_invalid_code_clears_and_shows_remaining(controller, server):
    server.queue("/otp/request_otp", _issued())
    server.queue("/otp/verify_otp", _error(400, "invalid_code", "Invalid OTP. 4 attempts remaining", attemptsRemaining=4))
    controller.request_code()
    _type(controller, "9999")
    assert controller.submit() is False
    state = controller.state
    assert state.phase == AWAITING_CODE
    assert state.attempts_remaining == 4
    assert state.input.value == "" and state.input.focus == 0
    assert controller.message == "Invalid OTP. 4 attempts remaining"


def test_max_attempts_locks_and_starts_countdown(controller, server):
    server.queue("/otp/request_otp", _issued(), _issued())
    server.queue("/otp/verify_otp", _error(429, "max_attempts_exceeded", "Maximum attempts exceeded", attemptsRemaining=0))
    controller.request_code()
    for _ in range(60):
        controller._countdown.tick()
    assert controller.state.cooldown_remaining == 0

    _type(controller, "9999")
    controller.submit()
    state = controller.state
    assert state.phase == LOCKED
    assert state.input.value == ""
    assert state.cooldown_remaining == 60
    # locked: typing and submitting are refused until a resend
    controller.type_digit("1")
    assert controller.state.input.value == ""
    assert controller.submit() is False
    assert controller.resend() is False

    for _ in range(60):
        controller._countdown.tick()
    assert controller.resend() is True
    assert controller.state.phase == AWAITING_CODE
    assert controller.state.attempts_remaining == 5


def test_expired_offers_new_code(controller, server):
    server.queue("/otp/request_otp", _issued())
    server.queue("/otp/verify_otp", _error(410, "expired", "OTP has expired. Please request a new one"))
    controller.request_code()
    _type(controller, "1234")
    controller.submit()
    assert controller.state.needs_new_code is True
    _type(controller, "1234")
    assert controller.state.can_submit is False


def test_cooldown_response_starts_live_countdown(controller, server):
    server.queue("/otp/request_otp", _error(429, "cooldown_active", "Please wait 42 seconds before requesting a new code",
                                            retryAfterSeconds=42))
    assert controller.request_code() is False
    assert controller.state.error is None
    assert controller.state.cooldown_remaining == 42
    controller._countdown.tick()
    assert controller.state.cooldown_remaining == 41


def test_network_error_keeps_code_for_manual_retry(controller, server):
    server.queue("/otp/request_otp", _issued())
    controller.request_code()
    _type(controller, "1234")

    server.queue("/otp/verify_otp", httpx.ConnectError("offline"))
    assert controller.submit() is False
    assert controller.state.error == api.NETWORK_ERROR
    assert controller.state.input.value == "1234"
    assert controller.state.can_submit is True


def test_initial_code_prefill(client):
    ctl = VerificationController(client, "01712345678", "guest_checkout", initial_code="5678",
                                 countdown=Countdown(ticker_factory=None))
    assert ctl.state.input.value == "5678"
    assert ctl.session_id
    ctl.close()


def test_cancel_discards_state_and_stops_timer(controller, server):
    server.queue("/otp/request_otp", _issued())
    controller.request_code()
    controller.cancel()
    assert controller.state == ControllerState()
    assert controller._countdown.active is False
    assert controller.request_code() is False


def test_pending_call_blocks_resend_and_submit():
    state = ControllerState(phase=AWAITING_CODE, pending="verify")
    assert state.can_submit is False
    assert state.can_resend is False


def test_apply_issue_success_resets_attempts():
    state = ControllerState(phase=LOCKED, attempts_remaining=0)
    issued = Issued(message="sent", expires_in=300, attempts_remaining=5, identifier_type="phone")
    t = apply_issue(state, Ok(issued), cooldown_secs=60)
    assert t.state.phase == AWAITING_CODE
    assert t.state.attempts_remaining == 5
    assert t.start_countdown == 60


def test_apply_verify_locked_keeps_running_countdown():
    state = ControllerState(phase=AWAITING_CODE, cooldown_remaining=20)
    t = apply_verify(state, Err(api.MAX_ATTEMPTS, "Maximum attempts exceeded"), cooldown_secs=60)
    assert t.state.phase == LOCKED
    assert t.start_countdown is None
    assert t.state.cooldown_remaining == 20


def test_parse_retry_after_fallback():
    assert parse_retry_after("Please wait 17 seconds before requesting a new code") == 17
    assert parse_retry_after("nope") is None


def test_error_without_structured_retry_uses_message():
    res = api.error_from_response(httpx.Response(429, json={"error": {"code": "cooldown_active",
                                                                       "message": "Please wait 9 seconds"}}))
    assert res.retry_after == 9


def test_countdown_ticks_to_zero_and_stops():
    seen = []
    cd = Countdown(on_tick=seen.append, ticker_factory=None)
    cd.start(3)
    assert cd.active
    for _ in range(5):
        cd.tick()
    assert seen == [2, 1, 0, 0, 0]
    assert not cd.active


def test_countdown_with_thread_ticker_is_torn_down():
    cd = Countdown(interval=0.01)
    cd.start(1000)
    ticker = cd._ticker
    assert ticker is not None and ticker.running
    cd.stop()
    assert not ticker.running
    assert cd.remaining == 0


def test_non_json_success_body_does_not_wedge_the_widget(controller, server):
    server.queue("/otp/request_otp", httpx.Response(200, text="<html>proxy</html>"), _issued())
    assert controller.request_code() is False
    assert controller.state.pending is None
    assert controller.state.error == api.UNKNOWN
    assert controller.state.can_resend is True

    assert controller.request_code() is True
    assert [p for p, _ in server.requests] == ["/otp/request_otp", "/otp/request_otp"]

    controller.paste("1234")
    server.queue("/otp/verify_otp", httpx.Response(200, text="<html>proxy</html>"), _verified())
    assert controller.submit() is False
    assert controller.state.pending is None
    assert controller.state.input.value == "1234"
    assert controller.state.can_submit is True
    assert controller.submit() is True
    assert controller.state.phase == VERIFIED


def test_client_exception_becomes_an_error(controller, monkeypatch):
    def boom(*args):
        raise RuntimeError("broken client")

    monkeypatch.setattr(controller.client, "issue", boom)
    assert controller.request_code() is False
    assert controller.state.pending is None
    assert controller.state.error == api.UNKNOWN
    assert controller.state.can_resend is True


def test_submit_and_resend_refused_while_call_in_flight(controller, server):
    server.queue("/otp/request_otp", _issued())
    server.queue("/otp/verify_otp", _verified())
    seen = []
    server.during = lambda request: seen.append((request.url.path, controller.submit(), controller.resend()))

    assert controller.request_code() is True
    for _ in range(60):
        controller._countdown.tick()
    controller.paste("1234")
    assert controller.submit() is True

    assert seen == [("/otp/request_otp", False, False), ("/otp/verify_otp", False, False)]
    assert [p for p, _ in server.requests] == ["/otp/request_otp", "/otp/verify_otp"]
    assert controller.verified == ["+8801712345678"]


def test_rate_limited_issue_disables_resend_until_window_passes(controller, server):
    server.queue("/otp/request_otp", _error(429, "rate_limited", "Too many requests", retryAfterSeconds=30), _issued())
    assert controller.request_code() is False
    state = controller.state
    assert state.error == api.RATE_LIMITED
    assert state.message == "Too many requests"
    assert state.cooldown_remaining == 30
    assert state.can_resend is False
    assert controller.resend() is False

    for _ in range(30):
        controller._countdown.tick()
    assert controller.resend() is True
    assert len(server.requests) == 2


def test_rate_limit_retry_after_is_read_for_any_429():
    res = api.error_from_response(httpx.Response(429, json={"error": {"code": "rate_limited",
                                                                       "message": "Too many requests",
                                                                       "details": {"retryAfterSeconds": 12}}}))
    assert res.kind == api.RATE_LIMITED
    assert res.retry_after == 12

    res = api.error_from_response(httpx.Response(429, headers={"Retry-After": "7"}, text="slow down"))
    assert res.kind == api.UNKNOWN
    assert res.retry_after == 7


def test_validation_error_maps_by_field():
    def _422(*loc):
        return httpx.Response(422, json={"detail": [{"loc": list(loc), "msg": "bad value", "type": "value_error"}]})

    assert api.error_from_response(_422("body", "identifier")).kind == api.INVALID_IDENTIFIER
    assert api.error_from_response(_422("body", "code")).kind == api.UNKNOWN
    assert api.error_from_response(_422("body", "sessionId")).kind == api.UNKNOWN


def test_status_with_undecodable_body(client, server):
    server.queue("/otp/status", httpx.Response(200, text="not json"))
    res = client.status("sess-ui", "01712345678", "guest_checkout")
    assert isinstance(res, Err)
    assert res.kind == api.UNKNOWN
