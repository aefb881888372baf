from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

import httpx

logger = logging.getLogger("storefront.client.api")

T = TypeVar("T")

# Error kinds seen by the controller. Server codes map 1:1, plus network_error.
INVALID_IDENTIFIER = "invalid_identifier"
COOLDOWN_ACTIVE = "cooldown_active"
INVALID_CODE = "invalid_code"
EXPIRED = "expired"
ALREADY_USED = "already_used"
MAX_ATTEMPTS = "max_attempts_exceeded"
NOT_FOUND = "not_found"
RATE_LIMITED = "rate_limited"
NETWORK_ERROR = "network_error"
UNKNOWN = "unknown"

_KNOWN_KINDS = {
    INVALID_IDENTIFIER,
    COOLDOWN_ACTIVE,
    INVALID_CODE,
    EXPIRED,
    ALREADY_USED,
    MAX_ATTEMPTS,
    NOT_FOUND,
    RATE_LIMITED,
}

_PLEASE_WAIT = re.compile(r"please wait (\d+)", re.IGNORECASE)
_ATTEMPTS_LEFT = re.compile(r"(\d+) attempts? remaining", re.IGNORECASE)

_UNEXPECTED = "Unexpected response from server. Please try again"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: str
    message: str = ""
    attempts_remaining: Optional[int] = None
    retry_after: Optional[int] = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


@dataclass(frozen=True)
class Issued:
    message: str
    expires_in: int
    attempts_remaining: int
    identifier_type: str
    delivery_failed: bool = False
    dev_code: Optional[str] = None


@dataclass(frozen=True)
class Verified:
    identifier: str
    identifier_type: str


@dataclass(frozen=True)
class Status:
    verified: bool
    expires_at: Optional[str] = None


@dataclass
class ApiSettings:
    base_url: str
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ApiSettings":
        return cls(
            base_url=os.getenv("OTP_API_BASE_URL", "http://localhost:8090"),
            timeout=float(os.getenv("OTP_API_TIMEOUT", "10.0")),
        )


def parse_retry_after(message: str) -> Optional[int]:
    """Seconds from a "Please wait N seconds" message, for servers without retryAfterSeconds."""
    m = _PLEASE_WAIT.search(message or "")
    return int(m.group(1)) if m else None


def _validation_error(res: httpx.Response, detail: Any) -> Err:
    """FastAPI 422: only a failure on the identifier field is an invalid identifier."""
    for item in detail if isinstance(detail, list) else []:
        loc = item.get("loc") if isinstance(item, dict) else None
        if isinstance(loc, (list, tuple)) and "identifier" in loc:
            return Err(INVALID_IDENTIFIER, str(item.get("msg") or "Invalid phone number or email"))
    return Err(UNKNOWN, f"Request failed ({res.status_code})")


def _retry_after_from(res: httpx.Response, message: str) -> Optional[int]:
    header = res.headers.get("Retry-After")
    if header and header.isdigit():
        return int(header)
    return parse_retry_after(message)


def error_from_response(res: httpx.Response) -> Err:
    try:
        body = res.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        # FastAPI validation errors and proxies that answer without the envelope
        detail = body.get("detail") if isinstance(body, dict) else None
        if res.status_code == 422:
            return _validation_error(res, detail)
        message = detail if isinstance(detail, str) else f"Request failed ({res.status_code})"
        retry_after = _retry_after_from(res, message) if res.status_code == 429 else None
        return Err(UNKNOWN, message, retry_after=retry_after)
    message = str(error.get("message") or "")
    details = error.get("details")
    if not isinstance(details, dict):
        details = {}
    kind = error.get("code") if error.get("code") in _KNOWN_KINDS else UNKNOWN
    retry_after = details.get("retryAfterSeconds")
    if retry_after is None and (kind in (COOLDOWN_ACTIVE, RATE_LIMITED) or res.status_code == 429):
        retry_after = _retry_after_from(res, message)
    attempts = details.get("attemptsRemaining")
    if attempts is None and kind == INVALID_CODE:
        m = _ATTEMPTS_LEFT.search(message)
        attempts = int(m.group(1)) if m else None
    try:
        return Err(
            kind=kind,
            message=message,
            attempts_remaining=int(attempts) if attempts is not None else None,
            retry_after=int(retry_after) if retry_after is not None else None,
        )
    except (TypeError, ValueError):
        return Err(kind, message)


def _unexpected(path: str, exc: Exception) -> Err:
    logger.warning("OTP API %s returned an undecodable body: %s", path, exc)
    return Err(UNKNOWN, _UNEXPECTED)


class OtpApiClient:
    """Issue / Verify / Status over HTTP. Never raises for transport or API errors."""

    def __init__(
        self,
        settings: Optional[ApiSettings] = None,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings = settings or ApiSettings.from_env()
        self._client = httpx.Client(
            base_url=self.settings.base_url,
            timeout=self.settings.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, path: str, **kwargs: Any) -> Union[httpx.Response, Err]:
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("OTP API %s %s failed: %s", method, path, exc)
            return Err(NETWORK_ERROR, "Network error. Please check your connection and try again")

    def issue(self, session_id: str, identifier: str, purpose: str) -> Result[Issued]:
        res = self._call(
            "POST",
            "/otp/request_otp",
            json={"identifier": identifier, "purpose": purpose, "sessionId": session_id},
        )
        if isinstance(res, Err):
            return res
        if res.status_code >= 400:
            return error_from_response(res)
        try:
            data = res.json()
            issued = Issued(
                message=data.get("message", ""),
                expires_in=int(data.get("expiresIn", 0)),
                attempts_remaining=int(data.get("attemptsRemaining", 0)),
                identifier_type=data.get("identifierType", ""),
                delivery_failed=bool(data.get("deliveryFailed", False)),
                dev_code=data.get("devCode"),
            )
        except (ValueError, TypeError, AttributeError) as exc:
            return _unexpected("/otp/request_otp", exc)
        return Ok(issued)

    def verify(self, session_id: str, identifier: str, code: str, purpose: str) -> Result[Verified]:
        res = self._call(
            "POST",
            "/otp/verify_otp",
            json={"identifier": identifier, "code": code, "sessionId": session_id, "purpose": purpose},
        )
        if isinstance(res, Err):
            return res
        if res.status_code >= 400:
            return error_from_response(res)
        try:
            data = res.json()
            verified = Verified(identifier=data.get("identifier", ""), identifier_type=data.get("identifierType", ""))
        except (ValueError, TypeError, AttributeError) as exc:
            return _unexpected("/otp/verify_otp", exc)
        return Ok(verified)

    def status(self, session_id: str, identifier: str, purpose: str) -> Result[Status]:
        res = self._call(
            "GET",
            "/otp/status",
            params={"identifier": identifier, "sessionId": session_id, "purpose": purpose},
        )
        if isinstance(res, Err):
            return res
        if res.status_code >= 400:
            return error_from_response(res)
        try:
            data = res.json()
            status = Status(verified=bool(data.get("verified")), expires_at=data.get("expiresAt"))
        except (ValueError, TypeError, AttributeError) as exc:
            return _unexpected("/otp/status", exc)
        return Ok(status)
