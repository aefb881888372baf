from .otp import (
    PURPOSES,
    OTPConfig,
    OTPService,
    IssueResult,
    VerifyResult,
    StatusResult,
    OTPError,
    InvalidIdentifierError,
    OTPCooldownError,
    InvalidCodeError,
    OTPExpiredError,
    OTPAlreadyUsedError,
    OTPLockoutError,
    OTPNotFoundError,
    generate_otp_code,
    from_env as otp_config_from_env,
)
from .challenge_store import (
    Challenge,
    ChallengeKey,
    ChallengeStore,
    MemoryChallengeStore,
    RedisChallengeStore,
)
from .delivery import OTPDelivery, delivery_from_env
from .env import env_bool, env_int, env_list
from .identifiers import (
    IdentifierValidationError,
    normalize,
    display_identifier,
    mask_identifier,
)

__all__ = [
    "PURPOSES",
    "OTPConfig",
    "OTPService",
    "IssueResult",
    "VerifyResult",
    "StatusResult",
    "OTPError",
    "InvalidIdentifierError",
    "OTPCooldownError",
    "InvalidCodeError",
    "OTPExpiredError",
    "OTPAlreadyUsedError",
    "OTPLockoutError",
    "OTPNotFoundError",
    "generate_otp_code",
    "otp_config_from_env",
    "Challenge",
    "ChallengeKey",
    "ChallengeStore",
    "MemoryChallengeStore",
    "RedisChallengeStore",
    "OTPDelivery",
    "delivery_from_env",
    "env_bool",
    "env_int",
    "env_list",
    "IdentifierValidationError",
    "normalize",
    "display_identifier",
    "mask_identifier",
]
