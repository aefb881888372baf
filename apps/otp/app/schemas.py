from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Purpose = Literal["guest_checkout", "phone_verification", "password_reset"]


class _ApiModel(BaseModel):
    # Wire format is camelCase; Python code may use either name.
    model_config = ConfigDict(populate_by_name=True)


class RequestOtpIn(_ApiModel):
    identifier: str = Field(min_length=1, max_length=320, description="Phone number or email")
    purpose: Purpose
    session_id: str = Field(alias="sessionId", min_length=1, max_length=128)


class RequestOtpOut(_ApiModel):
    success: bool = True
    message: str
    expires_in: int = Field(alias="expiresIn")
    attempts_remaining: int = Field(alias="attemptsRemaining")
    identifier_type: Literal["phone", "email"] = Field(alias="identifierType")
    delivery_failed: bool = Field(default=False, alias="deliveryFailed")
    dev_code: Optional[str] = Field(default=None, alias="devCode")


class VerifyOtpIn(_ApiModel):
    identifier: str = Field(min_length=1, max_length=320)
    code: str = Field(pattern=r"^\d{4}$", description="Exactly 4 digits")
    session_id: str = Field(alias="sessionId", min_length=1, max_length=128)
    purpose: Purpose


class VerifyOtpOut(_ApiModel):
    success: bool = True
    identifier: str
    identifier_type: Literal["phone", "email"] = Field(alias="identifierType")


class OtpStatusOut(_ApiModel):
    verified: bool
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict = {}


class ErrorOut(BaseModel):
    error: ErrorBody
