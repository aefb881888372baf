"""Client-side verification flow.

``ControllerState`` is immutable and every network outcome is folded in by a
pure function (``apply_issue`` / ``apply_verify``) that returns a
``Transition``: the next state plus what the owner should do with the
countdown and whether to announce success. ``VerificationController`` owns
the side effects: the HTTP calls, the countdown and the callbacks.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from . import api
from .api import Err, Issued, OtpApiClient, Result, Verified
from .code_input import CodeInput
from .countdown import Countdown

logger = logging.getLogger("storefront.client")

IDLE = "idle"
AWAITING_CODE = "awaitingCode"
VERIFYING = "verifying"
VERIFIED = "verified"
LOCKED = "locked"

PENDING_ISSUE = "issue"
PENDING_VERIFY = "verify"

DEFAULT_COOLDOWN_SECS = 60
DEFAULT_MAX_ATTEMPTS = 5

_NEEDS_NEW_CODE = {api.EXPIRED, api.NOT_FOUND, api.ALREADY_USED}


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ControllerState:
    phase: str = IDLE
    attempts_remaining: int = DEFAULT_MAX_ATTEMPTS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    cooldown_remaining: int = 0
    pending: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    needs_new_code: bool = False
    verified_identifier: Optional[str] = None
    input: CodeInput = field(default_factory=CodeInput.empty)

    @property
    def accepts_input(self) -> bool:
        return self.phase == AWAITING_CODE and self.pending is None

    @property
    def can_submit(self) -> bool:
        return self.accepts_input and not self.needs_new_code and self.input.is_complete

    @property
    def can_resend(self) -> bool:
        return self.pending is None and self.phase != VERIFIED and self.cooldown_remaining == 0


@dataclass(frozen=True)
class Transition:
    state: ControllerState
    start_countdown: Optional[int] = None
    stop_countdown: bool = False
    emit_verified: bool = False


def begin(state: ControllerState, pending: str) -> ControllerState:
    phase = VERIFYING if pending == PENDING_VERIFY else state.phase
    return replace(state, pending=pending, phase=phase, error=None)


def apply_issue(state: ControllerState, result: Result[Issued], cooldown_secs: int) -> Transition:
    if isinstance(result, Err):
        if result.kind == api.COOLDOWN_ACTIVE:
            # A code was sent recently; show the countdown instead of an error.
            phase = AWAITING_CODE if state.phase == IDLE else state.phase
            wait = result.retry_after or cooldown_secs
            nxt = replace(state, pending=None, phase=phase, error=None, message=None, cooldown_remaining=wait)
            return Transition(nxt, start_countdown=wait)
        nxt = replace(state, pending=None, error=result.kind, message=result.message)
        if result.retry_after:
            # Rate limited: resend stays disabled until the limiter window has passed.
            return Transition(replace(nxt, cooldown_remaining=result.retry_after), start_countdown=result.retry_after)
        return Transition(nxt)
    issued = result.value
    nxt = replace(
        state,
        phase=AWAITING_CODE,
        pending=None,
        error=None,
        message=issued.message,
        attempts_remaining=issued.attempts_remaining,
        max_attempts=issued.attempts_remaining,
        needs_new_code=False,
        cooldown_remaining=cooldown_secs,
        input=state.input if state.phase == IDLE else state.input.clear(),
    )
    if issued.delivery_failed:
        nxt = replace(nxt, error="delivery_failed")
    return Transition(nxt, start_countdown=cooldown_secs)


def apply_verify(state: ControllerState, result: Result[Verified], cooldown_secs: int) -> Transition:
    if not isinstance(result, Err):
        nxt = replace(
            state,
            phase=VERIFIED,
            pending=None,
            error=None,
            message=None,
            cooldown_remaining=0,
            verified_identifier=result.value.identifier,
        )
        return Transition(nxt, stop_countdown=True, emit_verified=True)

    base = replace(state, pending=None, error=result.kind, message=result.message)
    if result.kind == api.INVALID_CODE:
        remaining = result.attempts_remaining
        if remaining is None:
            remaining = max(state.attempts_remaining - 1, 0)
        return Transition(replace(base, phase=AWAITING_CODE, attempts_remaining=remaining, input=state.input.clear()))
    if result.kind == api.MAX_ATTEMPTS:
        locked = replace(base, phase=LOCKED, attempts_remaining=0, input=state.input.clear())
        if state.cooldown_remaining > 0:
            return Transition(locked)
        return Transition(replace(locked, cooldown_remaining=cooldown_secs), start_countdown=cooldown_secs)
    if result.kind in _NEEDS_NEW_CODE:
        return Transition(replace(base, phase=AWAITING_CODE, needs_new_code=True, input=state.input.clear()))
    # Network and unexpected errors keep the typed code so the user can re-submit.
    return Transition(replace(base, phase=AWAITING_CODE))


def apply_tick(state: ControllerState, remaining: int) -> ControllerState:
    return replace(state, cooldown_remaining=remaining)


class VerificationController:
    """Drives one verification widget for a single identifier and purpose.

    Network calls run synchronously on the caller's thread; while one is in
    flight both submit and resend are refused. The countdown runs on its own
    ticker and must be torn down with ``close()`` (or by using the controller
    as a context manager).
    """

    def __init__(
        self,
        client: OtpApiClient,
        identifier: str,
        purpose: str,
        session_id: Optional[str] = None,
        *,
        cooldown_secs: int = DEFAULT_COOLDOWN_SECS,
        initial_code: str = "",
        on_verified: Optional[Callable[[str], None]] = None,
        on_change: Optional[Callable[[ControllerState], None]] = None,
        countdown: Optional[Countdown] = None,
    ):
        self.client = client
        self.identifier = identifier
        self.purpose = purpose
        self.session_id = session_id or new_session_id()
        self.cooldown_secs = cooldown_secs
        self.on_verified = on_verified
        self.on_change = on_change
        self.messages: List[str] = []
        self._lock = threading.RLock()
        self._closed = False
        self._countdown = countdown or Countdown()
        self._countdown.on_tick = self._on_tick
        state = ControllerState()
        if initial_code:
            state = replace(state, input=state.input.paste(initial_code))
        self._state = state

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def message(self) -> Optional[str]:
        return self._state.message

    def __enter__(self) -> "VerificationController":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _set(self, state: ControllerState) -> None:
        with self._lock:
            self._state = state
        if state.message and (not self.messages or self.messages[-1] != state.message):
            self.messages.append(state.message)
        if self.on_change is not None:
            self.on_change(state)

    def _apply(self, transition: Transition) -> None:
        if transition.stop_countdown:
            self._countdown.stop()
        if transition.start_countdown:
            self._countdown.start(transition.start_countdown)
        self._set(transition.state)
        if transition.emit_verified and self.on_verified is not None:
            self.on_verified(transition.state.verified_identifier or self.identifier)

    def _on_tick(self, remaining: int) -> None:
        with self._lock:
            if self._closed:
                return
            self._set(apply_tick(self._state, remaining))

    # -- network operations -------------------------------------------------

    def _guarded(self, call: Callable[..., Result], *args: str) -> Result:
        """Run a client call; anything it raises becomes an Err so the pending flag is cleared."""
        try:
            return call(*args)
        except Exception:
            logger.exception("OTP client call %s raised", getattr(call, "__name__", call))
            return Err(api.UNKNOWN, "Something went wrong. Please try again")

    def request_code(self) -> bool:
        """Issue (or re-issue) a code. Returns False when refused locally."""
        with self._lock:
            if self._closed or not self._state.can_resend:
                return False
            self._state = begin(self._state, PENDING_ISSUE)
        result = self._guarded(self.client.issue, self.session_id, self.identifier, self.purpose)
        if isinstance(result, Err):
            logger.info("OTP request failed: %s", result.kind)
        with self._lock:
            if self._closed:
                return False
            transition = apply_issue(self._state, result, self.cooldown_secs)
        self._apply(transition)
        return result.ok

    resend = request_code

    def submit(self) -> bool:
        with self._lock:
            if self._closed or not self._state.can_submit:
                return False
            code = self._state.input.value
            self._state = begin(self._state, PENDING_VERIFY)
        result = self._guarded(self.client.verify, self.session_id, self.identifier, code, self.purpose)
        if isinstance(result, Err):
            logger.info("OTP verify failed: %s", result.kind)
        with self._lock:
            if self._closed:
                return False
            transition = apply_verify(self._state, result, self.cooldown_secs)
        self._apply(transition)
        return result.ok

    # -- input --------------------------------------------------------------

    def _edit(self, fn: Callable[[CodeInput], CodeInput]) -> None:
        with self._lock:
            if not self._state.accepts_input:
                return
            self._set(replace(self._state, input=fn(self._state.input)))

    def type_digit(self, ch: str) -> None:
        self._edit(lambda inp: inp.type_digit(ch))

    def backspace(self) -> None:
        self._edit(CodeInput.backspace)

    def arrow_left(self) -> None:
        self._edit(CodeInput.arrow_left)

    def arrow_right(self) -> None:
        self._edit(CodeInput.arrow_right)

    def focus_at(self, index: int) -> None:
        self._edit(lambda inp: inp.focus_at(index))

    def paste(self, text: str) -> None:
        self._edit(lambda inp: inp.paste(text))

    # -- teardown -----------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._countdown.stop()

    def cancel(self) -> None:
        """Abandon the flow. The server-side challenge is left to expire."""
        self.close()
        with self._lock:
            self._state = ControllerState()
