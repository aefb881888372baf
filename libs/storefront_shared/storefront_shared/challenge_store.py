from __future__ import annotations

import json
import threading
import zlib
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, NamedTuple, Optional, Protocol, Tuple, TypeVar

try:
    import redis  # type: ignore
except Exception:  # pragma: no cover
    redis = None  # type: ignore


ACTIVE = "active"
CONSUMED = "consumed"
EXPIRED = "expired"
LOCKED = "locked"

STATUSES = (ACTIVE, CONSUMED, EXPIRED, LOCKED)

T = TypeVar("T")


class ChallengeKey(NamedTuple):
    session_id: str
    identifier: str
    purpose: str

    def storage_key(self, prefix: str = "otp_challenge") -> str:
        return f"{prefix}:{self.purpose}:{self.identifier}:{self.session_id}"


@dataclass
class Challenge:
    session_id: str
    identifier: str
    identifier_type: str
    purpose: str
    code_hash: str
    nonce: str
    status: str = ACTIVE
    attempts_used: int = 0
    max_attempts: int = 5
    created_at: float = 0.0
    expires_at: float = 0.0
    last_issued_at: float = 0.0

    @property
    def key(self) -> ChallengeKey:
        return ChallengeKey(self.session_id, self.identifier, self.purpose)

    @property
    def attempts_remaining(self) -> int:
        return max(self.max_attempts - self.attempts_used, 0)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def effective_status(self, now: float) -> str:
        """Stored status, except that a challenge past ``expires_at`` is always expired."""
        if self.is_expired(now):
            return EXPIRED
        return self.status

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Challenge":
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(**data)


# A mutation receives the current record (or None) and returns the record to
# persist (None leaves storage untouched) together with the caller's result.
Mutation = Callable[[Optional[Challenge]], Tuple[Optional[Challenge], T]]


class ChallengeStore(Protocol):
    def get(self, key: ChallengeKey) -> Optional[Challenge]:  # pragma: no cover - interface
        ...

    def mutate(self, key: ChallengeKey, fn: Mutation) -> T:  # pragma: no cover - interface
        ...

    def purge_expired(self, now: float) -> int:  # pragma: no cover - interface
        ...

    def ping(self) -> bool:  # pragma: no cover - interface
        ...


class MemoryChallengeStore:
    """Process-local store; one lock stripe per key hash so distinct keys rarely contend."""

    def __init__(self, grace_secs: int = 600, stripes: int = 64):
        self.grace_secs = grace_secs
        self._records: Dict[ChallengeKey, Challenge] = {}
        self._stripes = [threading.Lock() for _ in range(max(stripes, 1))]
        self._index_lock = threading.Lock()

    def _lock_for(self, key: ChallengeKey) -> threading.Lock:
        digest = zlib.crc32(key.storage_key().encode())
        return self._stripes[digest % len(self._stripes)]

    def get(self, key: ChallengeKey) -> Optional[Challenge]:
        with self._lock_for(key):
            current = self._records.get(key)
            return replace(current) if current is not None else None

    def mutate(self, key: ChallengeKey, fn: Mutation) -> T:
        with self._lock_for(key):
            current = self._records.get(key)
            new, result = fn(replace(current) if current is not None else None)
            if new is not None:
                with self._index_lock:
                    self._records[key] = new
            return result

    def purge_expired(self, now: float) -> int:
        with self._index_lock:
            stale = [k for k, c in self._records.items() if now > c.expires_at + self.grace_secs]
        removed = 0
        for key in stale:
            with self._lock_for(key):
                current = self._records.get(key)
                if current is not None and now > current.expires_at + self.grace_secs:
                    with self._index_lock:
                        del self._records[key]
                    removed += 1
        return removed

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._records)


class RedisChallengeStore:
    """One JSON document per challenge; writes go through WATCH/MULTI so
    concurrent mutations of the same key retry instead of overwriting each other.
    Each write sets the key TTL to the challenge lifetime plus ``grace_secs``."""

    def __init__(
        self,
        client,
        *,
        grace_secs: int = 600,
        prefix: str = "otp_challenge",
    ):
        self.redis = client
        self.grace_secs = grace_secs
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChallengeStore":
        if redis is None:
            raise RuntimeError("redis package is required for OTP_STORE=redis")
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _name(self, key: ChallengeKey) -> str:
        return key.storage_key(self.prefix)

    def _ttl(self, challenge: Challenge) -> int:
        # Relative to the challenge's own timestamps, not the wall clock.
        return max(int(challenge.expires_at - challenge.last_issued_at) + self.grace_secs, 1)

    def get(self, key: ChallengeKey) -> Optional[Challenge]:
        raw = self.redis.get(self._name(key))
        return Challenge.from_json(raw) if raw else None

    def mutate(self, key: ChallengeKey, fn: Mutation) -> T:
        name = self._name(key)

        def _txn(pipe):
            raw = pipe.get(name)
            current = Challenge.from_json(raw) if raw else None
            new, result = fn(current)
            pipe.multi()
            if new is not None:
                pipe.set(name, new.to_json(), ex=self._ttl(new))
            return result

        return self.redis.transaction(_txn, name, value_from_callable=True)

    def purge_expired(self, now: float) -> int:
        # Redis drops keys through their TTL.
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except Exception:
            return False


__all__ = [
    "ACTIVE",
    "CONSUMED",
    "EXPIRED",
    "LOCKED",
    "STATUSES",
    "Challenge",
    "ChallengeKey",
    "ChallengeStore",
    "MemoryChallengeStore",
    "RedisChallengeStore",
]
