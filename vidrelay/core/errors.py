import math
from typing import Dict, Optional


class AppError(Exception):
    """Error carrying a short user-facing message and an HTTP status"""

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}


class ValidationFailed(AppError):
    """Missing, malformed or disallowed URL"""
    status_code = 400


class Forbidden(AppError):
    """Private network target or domain outside the relay allow-list"""
    status_code = 403


class RateLimited(AppError):
    status_code = 429

    def __init__(self, message: str, reset_in_ms: int):
        retry_after = max(1, math.ceil(reset_in_ms / 1000))
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class UpstreamFailure(AppError):
    """Extractor or upstream fetch failure; status depends on the cause"""
    status_code = 500


class InternalFailure(AppError):
    status_code = 500
