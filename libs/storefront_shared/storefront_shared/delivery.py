from __future__ import annotations

import logging
import os
import re
import smtplib
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Optional, Protocol

import httpx

from .env import env_bool, env_int
from .env_loader import ensure_loaded as _ensure_env_loaded
from .identifiers import EMAIL, mask_identifier

logger = logging.getLogger("storefront.delivery")


_PURPOSE_LABELS = {
    "guest_checkout": "checkout",
    "phone_verification": "phone verification",
    "password_reset": "password reset",
}

DEFAULT_SMS_TEMPLATE = "Your {purpose} verification code is {code}. It expires in 5 minutes."
DEFAULT_EMAIL_SUBJECT = "Your verification code"


class MessageBackend(Protocol):
    def send(self, to: str, message: str, subject: Optional[str] = None) -> None:  # pragma: no cover - interface
        ...


@dataclass
class LogBackend:
    channel: str = "sms"

    def send(self, to: str, message: str, subject: Optional[str] = None) -> None:
        logger.info(
            "OTP log backend channel=%s to=%s msg=%s",
            self.channel,
            mask_identifier(to),
            _mask_code_in_message(message),
        )


@dataclass
class HttpBackend:
    """Generic SMS gateway: POST {"to", "message", "sender"} as JSON."""

    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    timeout: float = 5.0
    transport: Optional[httpx.BaseTransport] = None

    def send(self, to: str, message: str, subject: Optional[str] = None) -> None:
        if not (self.url or "").strip():
            raise RuntimeError("OTP_SMS_HTTP_URL must be configured for http SMS provider")
        payload = {"to": to, "message": message}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        def _call():
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                return client.post(self.url, json=payload, headers=headers)

        def _validate(res: httpx.Response) -> None:
            if res.status_code >= 400:
                raise RuntimeError(f"SMS HTTP send failed ({res.status_code}): {res.text}")

        _send_with_retry(_call, backend_name="http", validator=_validate)


@dataclass
class SmtpBackend:
    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = ""
    use_tls: bool = True
    timeout: float = 10.0

    def send(self, to: str, message: str, subject: Optional[str] = None) -> None:
        if not (self.host and self.sender):
            raise RuntimeError("SMTP_HOST and SMTP_FROM must be configured for smtp email provider")
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject or DEFAULT_EMAIL_SUBJECT
        msg.set_content(message)

        def _call():
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)

        _send_with_retry(_call, backend_name="smtp")


@dataclass
class OTPDelivery:
    """Routes a code to the SMS or email backend; the optional fallback gets a
    second chance when the primary backend raises."""

    sms: MessageBackend = field(default_factory=lambda: LogBackend("sms"))
    email: MessageBackend = field(default_factory=lambda: LogBackend("email"))
    fallback: Optional[MessageBackend] = None
    sms_template: str = DEFAULT_SMS_TEMPLATE
    email_subject: str = DEFAULT_EMAIL_SUBJECT

    def build_message(self, code: str, purpose: str) -> str:
        label = _PURPOSE_LABELS.get(purpose, "account")
        try:
            return self.sms_template.format(code=code, purpose=label)
        except (KeyError, IndexError, ValueError):
            return f"Your verification code is {code}"

    def deliver(self, identifier: str, identifier_type: str, code: str, purpose: str) -> None:
        backend = self.email if identifier_type == EMAIL else self.sms
        message = self.build_message(code, purpose)
        subject = self.email_subject if identifier_type == EMAIL else None
        try:
            backend.send(identifier, message, subject)
            logger.debug(
                "OTP dispatched via %s to=%s code=%s",
                backend.__class__.__name__,
                mask_identifier(identifier),
                _mask_code(code),
            )
        except Exception as exc:
            logger.warning(
                "Primary OTP provider %s failed for %s (%s)",
                backend.__class__.__name__,
                mask_identifier(identifier),
                exc,
            )
            if self.fallback is None:
                raise
            self.fallback.send(identifier, message, subject)
            logger.debug(
                "OTP dispatched via fallback %s to=%s",
                self.fallback.__class__.__name__,
                mask_identifier(identifier),
            )


def _resolve_sms_backend(name: str) -> MessageBackend:
    provider = (name or "log").lower()
    if provider == "log":
        return LogBackend("sms")
    if provider == "http":
        return HttpBackend(
            url=os.getenv("OTP_SMS_HTTP_URL", ""),
            auth_token=os.getenv("OTP_SMS_HTTP_AUTH_TOKEN", "") or None,
            sender_name=os.getenv("OTP_SMS_SENDER_NAME", "") or None,
        )
    raise RuntimeError(f"Unsupported OTP_SMS_PROVIDER '{provider}'")


def _resolve_email_backend(name: str) -> MessageBackend:
    provider = (name or "log").lower()
    if provider == "log":
        return LogBackend("email")
    if provider == "smtp":
        return SmtpBackend(
            host=os.getenv("SMTP_HOST", ""),
            port=env_int("SMTP_PORT", default=587, minimum=1),
            username=os.getenv("SMTP_USER", "") or None,
            password=os.getenv("SMTP_PASSWORD", "") or None,
            sender=os.getenv("SMTP_FROM", ""),
            use_tls=env_bool("SMTP_USE_TLS", default=True),
        )
    raise RuntimeError(f"Unsupported OTP_EMAIL_PROVIDER '{provider}'")


def delivery_from_env() -> OTPDelivery:
    """Build the delivery collaborator from environment variables."""
    _ensure_env_loaded()
    fallback_name = os.getenv("OTP_DELIVERY_FALLBACK", "").strip().lower()
    fallback: Optional[MessageBackend] = None
    if fallback_name == "log":
        fallback = LogBackend("fallback")
    elif fallback_name:
        raise RuntimeError(f"Unsupported OTP_DELIVERY_FALLBACK '{fallback_name}'")
    return OTPDelivery(
        sms=_resolve_sms_backend(os.getenv("OTP_SMS_PROVIDER", "log")),
        email=_resolve_email_backend(os.getenv("OTP_EMAIL_PROVIDER", "log")),
        fallback=fallback,
        sms_template=os.getenv("OTP_SMS_TEMPLATE", "") or DEFAULT_SMS_TEMPLATE,
        email_subject=os.getenv("OTP_EMAIL_SUBJECT", "") or DEFAULT_EMAIL_SUBJECT,
    )


def _mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def _mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{2,})", lambda m: _mask_code(m.group(0)), message)


def _send_with_retry(callable_fn, backend_name: str, validator=None, max_attempts: int = 3, delay: float = 0.5) -> None:
    for attempt in range(1, max_attempts + 1):
        try:
            res = callable_fn()
            if validator is not None:
                validator(res)
            return
        except Exception as exc:
            if attempt == max_attempts:
                raise
            logger.warning("%s OTP send attempt %s failed: %s", backend_name, attempt, exc)
            time.sleep(delay)
            delay *= 2


__all__ = [
    "MessageBackend",
    "LogBackend",
    "HttpBackend",
    "SmtpBackend",
    "OTPDelivery",
    "delivery_from_env",
]
