import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def default_uuid():
    return str(uuid.uuid4())


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"
    __table_args__ = (
        UniqueConstraint("session_id", "identifier", "purpose", name="uq_otp_challenge_scope"),
        Index("ix_otp_challenges_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=default_uuid)
    session_id = Column(String(128), nullable=False)
    identifier = Column(String(320), nullable=False)
    identifier_type = Column(String(8), nullable=False)  # phone|email
    purpose = Column(String(32), nullable=False)  # guest_checkout|phone_verification|password_reset
    code_hash = Column(String(64), nullable=False)
    nonce = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="active")  # active|consumed|expired|locked
    attempts_used = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
    last_issued_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<OtpChallenge purpose={self.purpose} status={self.status}>"
