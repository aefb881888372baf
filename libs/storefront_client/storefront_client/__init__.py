from .api import ApiSettings, Err, Issued, Ok, OtpApiClient, Status, Verified
from .code_input import CodeInput
from .controller import (
    AWAITING_CODE,
    IDLE,
    LOCKED,
    VERIFIED,
    VERIFYING,
    ControllerState,
    Transition,
    VerificationController,
    apply_issue,
    apply_verify,
    new_session_id,
)
from .countdown import Countdown, ThreadTicker

__all__ = [
    "ApiSettings",
    "Err",
    "Issued",
    "Ok",
    "OtpApiClient",
    "Status",
    "Verified",
    "CodeInput",
    "AWAITING_CODE",
    "IDLE",
    "LOCKED",
    "VERIFIED",
    "VERIFYING",
    "ControllerState",
    "Transition",
    "VerificationController",
    "apply_issue",
    "apply_verify",
    "new_session_id",
    "Countdown",
    "ThreadTicker",
]
