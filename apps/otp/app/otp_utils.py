from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import Counter

from storefront_shared import (
    MemoryChallengeStore,
    OTPConfig,
    OTPError,
    OTPService,
    RedisChallengeStore,
    delivery_from_env,
    otp_config_from_env,
)
from storefront_shared.otp import IssueResult, StatusResult, VerifyResult

from .config import settings

logger = logging.getLogger("storefront.otp.service")

OTP_ISSUED = Counter("otp_issued_total", "OTP challenges issued", ["purpose", "identifier_type"])
OTP_ISSUE_REFUSED = Counter("otp_issue_refused_total", "OTP issue requests refused", ["purpose", "reason"])
OTP_VERIFY = Counter("otp_verify_total", "OTP verification outcomes", ["purpose", "outcome"])
OTP_DELIVERY_FAILURES = Counter("otp_delivery_failures_total", "OTP deliveries that failed", ["channel"])


def build_store(cfg: OTPConfig):
    if cfg.store == "redis":
        url = cfg.redis_url or settings.REDIS_URL
        return RedisChallengeStore.from_url(url, grace_secs=cfg.grace_secs)
    if cfg.store == "sql":
        from .database import SessionLocal, engine
        from .models import Base
        from .sql_store import SqlChallengeStore

        if settings.AUTO_CREATE_SCHEMA:
            Base.metadata.create_all(bind=engine)
        return SqlChallengeStore(SessionLocal, grace_secs=cfg.grace_secs)
    if cfg.store == "memory":
        return MemoryChallengeStore(grace_secs=cfg.grace_secs)
    raise RuntimeError(f"Unsupported OTP_STORE '{cfg.store}'")


def build_otp_service(cfg: Optional[OTPConfig] = None) -> OTPService:
    cfg = cfg or otp_config_from_env()
    return OTPService(cfg, build_store(cfg), delivery_from_env())


_service: Optional[OTPService] = None


def get_otp_service() -> OTPService:
    global _service
    if _service is None:
        _service = build_otp_service()
        logger.info("OTP service ready store=%s", _service.cfg.store)
    return _service


def reset_otp_service() -> None:
    global _service
    _service = None


def issue_code(service: OTPService, session_id: str, identifier: str, purpose: str) -> IssueResult:
    try:
        result = service.issue(session_id, identifier, purpose)
    except OTPError as exc:
        OTP_ISSUE_REFUSED.labels(purpose, exc.code).inc()
        raise
    OTP_ISSUED.labels(purpose, result.identifier_type).inc()
    if result.delivery_failed:
        OTP_DELIVERY_FAILURES.labels(result.identifier_type).inc()
    return result


def verify_code(service: OTPService, session_id: str, identifier: str, code: str, purpose: str) -> VerifyResult:
    try:
        result = service.verify(session_id, identifier, code, purpose)
    except OTPError as exc:
        OTP_VERIFY.labels(purpose, exc.code).inc()
        raise
    OTP_VERIFY.labels(purpose, "success").inc()
    return result


def code_status(service: OTPService, session_id: str, identifier: str, purpose: str) -> StatusResult:
    return service.status(session_id, identifier, purpose)
