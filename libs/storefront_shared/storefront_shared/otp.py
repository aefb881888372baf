import hashlib
import hmac
import logging
import math
import os
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .challenge_store import (
    ACTIVE,
    CONSUMED,
    EXPIRED,
    LOCKED,
    Challenge,
    ChallengeKey,
    ChallengeStore,
)
from .env import env_int
from .env_loader import ensure_loaded as _ensure_env_loaded
from .identifiers import (
    IdentifierValidationError,
    display_identifier,
    mask_identifier,
    normalize,
)

logger = logging.getLogger("storefront.otp")

PURPOSES = ("guest_checkout", "phone_verification", "password_reset")


class OTPError(Exception):
    """Base exception for OTP operations."""

    code = "otp_error"
    default_message = "Verification failed"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidIdentifierError(OTPError):
    code = "invalid_identifier"
    default_message = "Please enter a valid phone number or email address"


class OTPCooldownError(OTPError):
    code = "cooldown_active"

    def __init__(self, retry_after: int):
        super().__init__(f"Please wait {retry_after} seconds before requesting a new code")
        self.retry_after = retry_after


class InvalidCodeError(OTPError):
    code = "invalid_code"

    def __init__(self, attempts_remaining: int):
        super().__init__(f"Invalid OTP. {attempts_remaining} attempts remaining")
        self.attempts_remaining = attempts_remaining


class OTPExpiredError(OTPError):
    code = "expired"
    default_message = "OTP has expired. Please request a new one"


class OTPAlreadyUsedError(OTPError):
    code = "already_used"
    default_message = "This OTP has already been used. Please request a new one"


class OTPLockoutError(OTPError):
    code = "max_attempts_exceeded"
    default_message = "Maximum attempts exceeded. Please request a new OTP"


class OTPNotFoundError(OTPError):
    code = "not_found"
    default_message = "No active code found. Please request a new one"


@dataclass
class OTPConfig:
    store: str = "memory"  # "memory", "redis" or "sql"
    ttl_secs: int = 300
    cooldown_secs: int = 60
    max_attempts: int = 5
    code_length: int = 4
    grace_secs: int = 600
    redis_url: Optional[str] = None
    storage_secret: Optional[str] = None
    dev_code: str = ""
    dev_mode: bool = True


def from_env(prefix: str = "") -> OTPConfig:
    _ensure_env_loaded()
    p = f"{prefix}" if not prefix else f"{prefix}_"
    store = (os.getenv(f"{p}OTP_STORE", "memory") or "memory").lower()
    # Prefer per-test override if provided, then normal REDIS_URL
    redis_url = os.getenv(f"{p}REDIS_TEST_URL") or os.getenv(f"{p}REDIS_URL")
    storage_secret = os.getenv(f"{p}OTP_STORAGE_SECRET") or os.getenv("OTP_STORAGE_SECRET")
    env = os.getenv(f"{p}ENV") or os.getenv("ENV", "dev")
    cooldown = env_int(f"{p}OTP_COOLDOWN_SECS", default=60, minimum=0)
    return OTPConfig(
        store=store,
        ttl_secs=env_int(f"{p}OTP_TTL_SECS", default=300, minimum=1),
        cooldown_secs=cooldown,
        max_attempts=env_int(f"{p}OTP_MAX_ATTEMPTS", default=5, minimum=1),
        grace_secs=max(env_int(f"{p}OTP_GRACE_SECS", default=600, minimum=0), cooldown),
        redis_url=redis_url,
        storage_secret=storage_secret,
        dev_code=(os.getenv(f"{p}OTP_DEV_CODE", "") or "").strip(),
        dev_mode=(env or "dev").lower() == "dev",
    )


def generate_otp_code(length: int = 4) -> str:
    return f"{secrets.randbelow(10**length):0{length}d}"


def hash_code(secret: str, key: ChallengeKey, nonce: str, code: str) -> str:
    msg = "|".join([key.identifier, key.session_id, key.purpose, nonce, code]).encode()
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


class Delivery(Protocol):
    def deliver(self, identifier: str, identifier_type: str, code: str, purpose: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class IssueResult:
    identifier: str
    identifier_type: str
    purpose: str
    expires_in: int
    attempts_remaining: int
    message: str
    delivery_failed: bool = False
    dev_code: Optional[str] = None
    success: bool = True


@dataclass
class VerifyResult:
    identifier: str
    identifier_type: str
    purpose: str
    success: bool = True


@dataclass
class StatusResult:
    verified: bool
    expires_at: Optional[str] = None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class OTPService:
    """Issues and verifies one-time codes.

    Every read-modify-write of a challenge goes through ``store.mutate`` so two
    requests for the same (session, identifier, purpose) never interleave.
    Delivery happens after the challenge is stored and a delivery failure does
    not undo it.
    """

    def __init__(
        self,
        cfg: OTPConfig,
        store: ChallengeStore,
        delivery: Delivery,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.store = store
        self.delivery = delivery
        self.clock = clock

    def _secret(self) -> str:
        secret = self.cfg.storage_secret or os.getenv("OTP_STORAGE_SECRET")
        if not secret and not self.cfg.dev_mode:
            raise RuntimeError("OTP_STORAGE_SECRET must be configured when ENV!=dev")
        return secret or ""

    def _normalize(self, raw_identifier: str):
        try:
            return normalize(raw_identifier)
        except IdentifierValidationError as exc:
            raise InvalidIdentifierError(str(exc)) from exc

    def _check_purpose(self, purpose: str) -> None:
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown OTP purpose {purpose!r}")

    def _new_code(self) -> str:
        if self.cfg.dev_mode and self.cfg.dev_code:
            return self.cfg.dev_code
        return generate_otp_code(self.cfg.code_length)

    def issue(self, session_id: str, raw_identifier: str, purpose: str) -> IssueResult:
        self._check_purpose(purpose)
        identifier, identifier_type = self._normalize(raw_identifier)
        key = ChallengeKey(session_id, identifier, purpose)
        secret = self._secret()
        cfg = self.cfg

        def _issue(current: Optional[Challenge]):
            now = self.clock()
            if current is not None:
                elapsed = now - current.last_issued_at
                if elapsed < cfg.cooldown_secs:
                    return None, OTPCooldownError(max(math.ceil(cfg.cooldown_secs - elapsed), 1))
            code = self._new_code()
            nonce = secrets.token_hex(16)
            challenge = Challenge(
                session_id=session_id,
                identifier=identifier,
                identifier_type=identifier_type,
                purpose=purpose,
                code_hash=hash_code(secret, key, nonce, code),
                nonce=nonce,
                status=ACTIVE,
                attempts_used=0,
                max_attempts=cfg.max_attempts,
                created_at=now,
                expires_at=now + cfg.ttl_secs,
                last_issued_at=now,
            )
            return challenge, code

        outcome = self.store.mutate(key, _issue)
        if isinstance(outcome, OTPError):
            logger.info(
                "OTP issue refused for %s purpose=%s: %s",
                mask_identifier(identifier),
                purpose,
                outcome.code,
            )
            raise outcome
        code = outcome

        delivery_failed = False
        try:
            self.delivery.deliver(identifier, identifier_type, code, purpose)
        except Exception as exc:
            delivery_failed = True
            logger.warning(
                "OTP delivery failed for %s via %s (%s)",
                mask_identifier(identifier),
                identifier_type,
                exc,
            )
        logger.info("OTP issued for %s purpose=%s", mask_identifier(identifier), purpose)

        if delivery_failed:
            message = "Code created but could not be delivered. Please try resending shortly"
        else:
            message = f"A verification code has been sent to {display_identifier(identifier)}"
        return IssueResult(
            identifier=identifier,
            identifier_type=identifier_type,
            purpose=purpose,
            expires_in=cfg.ttl_secs,
            attempts_remaining=cfg.max_attempts,
            message=message,
            delivery_failed=delivery_failed,
            dev_code=code if cfg.dev_mode else None,
        )

    def verify(self, session_id: str, raw_identifier: str, code: str, purpose: str) -> VerifyResult:
        self._check_purpose(purpose)
        identifier, identifier_type = self._normalize(raw_identifier)
        key = ChallengeKey(session_id, identifier, purpose)
        secret = self._secret()
        submitted = (code or "").strip()

        def _verify(current: Optional[Challenge]):
            now = self.clock()
            if current is None:
                return None, OTPNotFoundError()
            # Expiry wins over every other state, including a correct code.
            if current.is_expired(now):
                if current.status == ACTIVE:
                    current.status = EXPIRED
                    return current, OTPExpiredError()
                return None, OTPExpiredError()
            if current.status == CONSUMED:
                return None, OTPAlreadyUsedError()
            if current.status == LOCKED:
                return None, OTPLockoutError()
            if current.status == EXPIRED:
                return None, OTPExpiredError()
            if current.attempts_used >= current.max_attempts:
                current.status = LOCKED
                return current, OTPLockoutError()
            expected = hash_code(secret, key, current.nonce, submitted)
            if hmac.compare_digest(current.code_hash, expected):
                current.status = CONSUMED
                return current, None
            current.attempts_used += 1
            if current.attempts_used >= current.max_attempts:
                current.status = LOCKED
                return current, OTPLockoutError()
            return current, InvalidCodeError(current.attempts_remaining)

        error = self.store.mutate(key, _verify)
        if error is not None:
            logger.info(
                "OTP verify failed for %s purpose=%s: %s",
                mask_identifier(identifier),
                purpose,
                error.code,
            )
            raise error
        logger.info("OTP verified for %s purpose=%s", mask_identifier(identifier), purpose)
        return VerifyResult(identifier=identifier, identifier_type=identifier_type, purpose=purpose)

    def status(self, session_id: str, raw_identifier: str, purpose: str) -> StatusResult:
        self._check_purpose(purpose)
        identifier, _ = self._normalize(raw_identifier)
        record = self.store.get(ChallengeKey(session_id, identifier, purpose))
        if record is None:
            return StatusResult(verified=False)
        if record.status == CONSUMED:
            return StatusResult(verified=True)
        if record.effective_status(self.clock()) == ACTIVE:
            return StatusResult(verified=False, expires_at=_iso(record.expires_at))
        return StatusResult(verified=False)

    def purge_expired(self) -> int:
        removed = self.store.purge_expired(self.clock())
        if removed:
            logger.debug("Purged %s stale OTP challenges", removed)
        return removed
