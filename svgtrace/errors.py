"""
SVGTrace Errors.

Every failure a conversion can end in is a ``ConversionError``. Each error
knows the outcome a transport binding should report (``status_code``), a
machine-readable ``code`` and the pipeline stage it was raised in.
"""

import math
from typing import Any, Dict, Optional, Tuple


class ConversionError(Exception):
    """Base class for conversion failures."""

    status_code = 500
    code = "server_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.stage = None

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(ConversionError):
    """Bad method, content type, MIME type, size or dimensions. Never retried."""

    status_code = 400
    code = "invalid_request"


class BusyError(ConversionError):
    """The admission gate is saturated; the caller should retry later."""

    status_code = 429
    code = "BUSY"

    def __init__(self, retry_after_ms: int, message: str = "Server is busy converting other images."):
        super().__init__(message)
        self.retry_after_ms = int(retry_after_ms)

    @property
    def retry_after_seconds(self) -> int:
        return int(math.ceil(self.retry_after_ms / 1000))

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retryAfterMs"] = self.retry_after_ms
        return body


class PreprocessError(ConversionError):
    """Image decoding or normalization failed. The preprocessor recovers from it."""

    code = "preprocess_failed"


class TraceError(ConversionError):
    """The tracing engine failed or returned unusable output."""

    code = "trace_failed"


class PostProcessError(ConversionError):
    """Traced markup has no recognizable root element."""

    code = "postprocess_failed"


GENERIC_FAILURE = "Server error during conversion."


def error_payload(exc: BaseException) -> Tuple[int, Dict[str, Any], Dict[str, str]]:
    """
    Map an exception onto a transport-neutral response.

    Args:
        exc: Any exception raised by a conversion.

    Returns:
        Tuple of (status code, JSON-able body, extra headers).
    """
    if isinstance(exc, BusyError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
        return exc.status_code, exc.to_dict(), headers
    if isinstance(exc, ValidationError):
        return exc.status_code, exc.to_dict(), {}
    if isinstance(exc, ConversionError):
        # Internal failures keep their code but not their details
        return exc.status_code, {"error": GENERIC_FAILURE, "code": exc.code}, {}
    return 500, {"error": GENERIC_FAILURE, "code": ConversionError.code}, {}
