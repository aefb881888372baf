from fastapi import APIRouter, Depends, Query, Request

from storefront_shared import OTPService

from ..config import settings
from ..otp_utils import code_status, issue_code, verify_code
from ..schemas import (
    ErrorOut,
    OtpStatusOut,
    Purpose,
    RequestOtpIn,
    RequestOtpOut,
    VerifyOtpIn,
    VerifyOtpOut,
)


router = APIRouter(prefix="/otp", tags=["otp"])

_ERRORS = {400: {"model": ErrorOut}, 429: {"model": ErrorOut}}


def get_service(request: Request) -> OTPService:
    return request.app.state.otp_service


@router.post("/request_otp", response_model=RequestOtpOut, response_model_exclude_none=True, responses=_ERRORS)
def request_otp(payload: RequestOtpIn, service: OTPService = Depends(get_service)):
    result = issue_code(service, payload.session_id, payload.identifier, payload.purpose)
    return RequestOtpOut(
        message=result.message,
        expires_in=result.expires_in,
        attempts_remaining=result.attempts_remaining,
        identifier_type=result.identifier_type,
        delivery_failed=result.delivery_failed,
        dev_code=result.dev_code if settings.OTP_ECHO_CODE else None,
    )


@router.post(
    "/verify_otp",
    response_model=VerifyOtpOut,
    responses={**_ERRORS, 404: {"model": ErrorOut}, 409: {"model": ErrorOut}, 410: {"model": ErrorOut}},
)
def verify_otp(payload: VerifyOtpIn, service: OTPService = Depends(get_service)):
    result = verify_code(service, payload.session_id, payload.identifier, payload.code, payload.purpose)
    return VerifyOtpOut(identifier=result.identifier, identifier_type=result.identifier_type)


@router.get("/status", response_model=OtpStatusOut, response_model_exclude_none=True, responses={400: {"model": ErrorOut}})
def otp_status(
    identifier: str = Query(min_length=1, max_length=320),
    session_id: str = Query(alias="sessionId", min_length=1, max_length=128),
    purpose: Purpose = Query(...),
    service: OTPService = Depends(get_service),
):
    result = code_status(service, session_id, identifier, purpose)
    return OtpStatusOut(verified=result.verified, expires_at=result.expires_at)
