from .auth import (
    ANONYMOUS,
    Identity,
    create_access_token,
    create_realtime_credential,
    decode_token,
    get_identity,
    require_facilitator,
    require_identity,
    verify_realtime_credential,
)

__all__ = [
    "ANONYMOUS",
    "Identity",
    "create_access_token",
    "create_realtime_credential",
    "decode_token",
    "get_identity",
    "require_facilitator",
    "require_identity",
    "verify_realtime_credential",
]
