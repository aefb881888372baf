from __future__ import annotations

import threading
import zlib
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from storefront_shared.challenge_store import Challenge, ChallengeKey, Mutation

from .database import session_scope
from .models import OtpChallenge


def _to_dt(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _to_ts(dt: datetime) -> float:
    return dt.replace(tzinfo=timezone.utc).timestamp()


def _to_challenge(row: OtpChallenge) -> Challenge:
    return Challenge(
        session_id=row.session_id,
        identifier=row.identifier,
        identifier_type=row.identifier_type,
        purpose=row.purpose,
        code_hash=row.code_hash,
        nonce=row.nonce,
        status=row.status,
        attempts_used=row.attempts_used,
        max_attempts=row.max_attempts,
        created_at=_to_ts(row.created_at),
        expires_at=_to_ts(row.expires_at),
        last_issued_at=_to_ts(row.last_issued_at),
    )


def _apply(row: OtpChallenge, c: Challenge) -> None:
    row.identifier_type = c.identifier_type
    row.code_hash = c.code_hash
    row.nonce = c.nonce
    row.status = c.status
    row.attempts_used = c.attempts_used
    row.max_attempts = c.max_attempts
    row.created_at = _to_dt(c.created_at)
    row.expires_at = _to_dt(c.expires_at)
    row.last_issued_at = _to_dt(c.last_issued_at)


class SqlChallengeStore:
    """Challenge store on the ``otp_challenges`` table.

    Rows are read with ``SELECT ... FOR UPDATE`` so workers in other processes
    serialize on the row; threads in this process also share a lock stripe per
    key, which is what keeps SQLite (no row locks) consistent.
    """

    def __init__(self, session_factory, *, grace_secs: int = 600, stripes: int = 64):
        self.session_factory = session_factory
        self.grace_secs = grace_secs
        self._stripes = [threading.Lock() for _ in range(max(stripes, 1))]

    def _lock_for(self, key: ChallengeKey) -> threading.Lock:
        return self._stripes[zlib.crc32(key.storage_key().encode()) % len(self._stripes)]

    def _query(self, key: ChallengeKey):
        return select(OtpChallenge).where(
            OtpChallenge.session_id == key.session_id,
            OtpChallenge.identifier == key.identifier,
            OtpChallenge.purpose == key.purpose,
        )

    def get(self, key: ChallengeKey) -> Optional[Challenge]:
        with session_scope(self.session_factory) as db:
            row = db.execute(self._query(key)).scalar_one_or_none()
            return _to_challenge(row) if row is not None else None

    def mutate(self, key: ChallengeKey, fn: Mutation):
        with self._lock_for(key):
            try:
                return self._mutate_once(key, fn)
            except IntegrityError:
                # Another process inserted the same scope first; its row is now lockable.
                return self._mutate_once(key, fn)

    def _mutate_once(self, key: ChallengeKey, fn: Mutation):
        with session_scope(self.session_factory) as db:
            row = db.execute(self._query(key).with_for_update()).scalar_one_or_none()
            current = _to_challenge(row) if row is not None else None
            new, result = fn(current)
            if new is not None:
                if row is None:
                    row = OtpChallenge(
                        session_id=new.session_id,
                        identifier=new.identifier,
                        purpose=new.purpose,
                    )
                    _apply(row, new)
                    db.add(row)
                else:
                    _apply(row, new)
                db.flush()
            return result

    def purge_expired(self, now: float) -> int:
        cutoff = _to_dt(now - self.grace_secs)
        with session_scope(self.session_factory) as db:
            res = db.execute(delete(OtpChallenge).where(OtpChallenge.expires_at < cutoff))
            return res.rowcount or 0

    def ping(self) -> bool:
        try:
            with session_scope(self.session_factory) as db:
                db.connection().exec_driver_sql("SELECT 1")
            return True
        except Exception:
            return False
