import os

import pytest


# Ensure sensible defaults for tests before app import
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("OTP_STORE", "memory")
os.environ.setdefault("OTP_STORAGE_SECRET", "test-storage-secret")
os.environ.setdefault("OTP_PURGE_INTERVAL_SECS", "0")
os.environ.setdefault("DB_URL", "sqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "false")
# Keep the limiter generous; rate limit tests build their own app
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("RATE_LIMIT_OTP_PER_MINUTE", "100000")

from storefront_shared import MemoryChallengeStore, OTPConfig, OTPService  # noqa: E402

PHONE = "01712345678"
CANONICAL_PHONE = "+8801712345678"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDelivery:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def deliver(self, identifier, identifier_type, code, purpose):
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append((identifier, identifier_type, code, purpose))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def make_service(clock, delivery):
    def _make(store=None, **overrides):
        params = dict(store="memory", ttl_secs=300, cooldown_secs=60, max_attempts=5, storage_secret="s3cret")
        params.update(overrides)
        cfg = OTPConfig(**params)
        return OTPService(cfg, store or MemoryChallengeStore(grace_secs=cfg.grace_secs), delivery, clock=clock)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()
