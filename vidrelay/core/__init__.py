from .errors import AppError, Forbidden, InternalFailure, RateLimited, UpstreamFailure, ValidationFailed
from .policy import (
    is_allowed_relay_target,
    is_allowed_source,
    is_private_or_local_target,
    normalize_url,
)

__all__ = [
    "AppError",
    "Forbidden",
    "InternalFailure",
    "RateLimited",
    "UpstreamFailure",
    "ValidationFailed",
    "is_allowed_relay_target",
    "is_allowed_source",
    "is_private_or_local_target",
    "normalize_url",
]
