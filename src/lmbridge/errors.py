"""Error taxonomy shared by the bridge and the compatibility proxy.

Every failure that can reach a client is a ``BridgeError`` carrying an
HTTP-style ``status_code``.  Provider failures are normalized exactly once,
at the provider boundary, into a ``NormalizedError`` so no provider-specific
exception object ever leaks into a downstream protocol.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "BridgeError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "PayloadTooLargeError",
    "ClientClosedError",
    "OverloadError",
    "UpstreamError",
    "TranslationError",
    "LanguageModelError",
    "NormalizedError",
    "normalize_language_model_error",
    "normalize_bridge_error",
    "coerce_bridge_error",
    "summarize_error_details",
]


class BridgeError(Exception):
    """Base error with an HTTP status and an optional raw body / details."""

    status_code: int = 500
    default_message: str = "Internal Server Error"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        body: str | None = None,
        details: Any = None,
    ) -> None:
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.body = body
        self.details = details
        super().__init__(self.message)

    def normalized(self) -> NormalizedError:
        return NormalizedError(self.status_code, self.message)


class ValidationError(BridgeError):
    status_code = 400
    default_message = "Invalid request payload"


class AuthError(BridgeError):
    status_code = 401
    default_message = "Unauthorized"


class NotFoundError(BridgeError):
    status_code = 404
    default_message = "Not Found"


class PayloadTooLargeError(BridgeError):
    status_code = 413
    default_message = "Payload Too Large"


class ClientClosedError(BridgeError):
    """The downstream client went away. Not a fault; logged at warning level."""

    status_code = 499
    default_message = "Client Closed Request"


class OverloadError(BridgeError):
    status_code = 503
    default_message = "Server Busy"


class UpstreamError(BridgeError):
    status_code = 502
    default_message = "Language model request failed"


class TranslationError(BridgeError):
    """A malformed SSE frame or JSON payload met during protocol translation."""

    status_code = 502
    default_message = "Invalid bridge stream"


class LanguageModelError(Exception):
    """Typed failure raised by a model provider.

    ``code`` is provider specific (``model_not_found``, ``quota_exceeded``...)
    and is mapped onto an HTTP status by ``normalize_language_model_error``.
    """

    def __init__(self, message: str, code: str = "unknown") -> None:
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class NormalizedError:
    status_code: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"statusCode": self.status_code, "message": self.message}


_MODEL_NOT_AVAILABLE = NormalizedError(404, "Requested model not available")
_ACCESS_DENIED = NormalizedError(403, "Model access not permitted")
_QUOTA_EXCEEDED = NormalizedError(429, "Quota exceeded")

FALLBACK_LANGUAGE_MODEL_ERROR = NormalizedError(502, "Language model request failed")
INTERNAL_ERROR = NormalizedError(500, "Internal Server Error")

LANGUAGE_MODEL_ERROR_MAP: dict[str, NormalizedError] = {
    "provider_not_found": _MODEL_NOT_AVAILABLE,
    "model_not_found": _MODEL_NOT_AVAILABLE,
    "NotFound": _MODEL_NOT_AVAILABLE,
    "not_allowed": _ACCESS_DENIED,
    "consent_required": _ACCESS_DENIED,
    "NoPermissions": _ACCESS_DENIED,
    "quota_exceeded": _QUOTA_EXCEEDED,
    "Blocked": _QUOTA_EXCEEDED,
}


def normalize_language_model_error(error: BaseException) -> NormalizedError:
    """Map any exception raised while talking to the provider onto a status."""
    if isinstance(error, LanguageModelError):
        logger.warning("Language model error (%s): %s", error.code, error)
        return (
            LANGUAGE_MODEL_ERROR_MAP.get(error.code)
            or LANGUAGE_MODEL_ERROR_MAP.get(error.code.lower())
            or FALLBACK_LANGUAGE_MODEL_ERROR
        )
    if isinstance(error, BridgeError):
        return error.normalized()

    logger.error("Unhandled chat error: %r", error)
    return INTERNAL_ERROR


# ---------------------------------------------------------------------------
# Client-side normalization (proxy → bridge responses)
# ---------------------------------------------------------------------------

_DEFAULT_BRIDGE_ERROR = (502, "Bridge request failed")

_BRIDGE_STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request sent to bridge",
    401: "Bridge authentication failed",
    403: "Bridge denied the request",
    404: "Requested resource not available",
    413: "Prompt payload too large",
    429: "Bridge quota exceeded",
    499: "Bridge cancelled the request",
    503: "Bridge service unavailable",
}


def _parse_json(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def normalize_bridge_error(status: int, response_text: str | None = None) -> BridgeError:
    """Build a ``BridgeError`` for a non-2xx bridge response."""
    if status in _BRIDGE_STATUS_MESSAGES:
        status_code, message = status, _BRIDGE_STATUS_MESSAGES[status]
    else:
        status_code, message = _DEFAULT_BRIDGE_ERROR
    details = None

    if response_text:
        parsed = _parse_json(response_text)
        if isinstance(parsed, dict):
            if isinstance(parsed.get("message"), str):
                message = parsed["message"]
            if isinstance(parsed.get("error"), str):
                message = parsed["error"]
            details = parsed.get("details")
        else:
            message = f"{message}: {response_text}".strip()

    return BridgeError(message, status_code=status_code, body=response_text, details=details)


def coerce_bridge_error(error: BaseException) -> BridgeError:
    """Coerce anything raised on the proxy side into a ``BridgeError``."""
    if isinstance(error, BridgeError):
        if error.details is None and error.body:
            parsed = _parse_json(error.body)
            if parsed is not None:
                error.details = parsed
        return error
    return BridgeError(str(error) or BridgeError.default_message, status_code=500)


def summarize_error_details(details: Any) -> str | None:
    """Render validation details as a short bullet list for humans."""
    if not details:
        return None

    if isinstance(details, list):
        parts = []
        for entry in details:
            if isinstance(entry, dict):
                path = entry.get("path")
                message = entry.get("message")
                if path and message:
                    parts.append(f"- {path}: {message}")
                    continue
                if message:
                    parts.append(f"- {message}")
                    continue
            parts.append(f"- {json.dumps(entry)}")
        if parts:
            return "\n".join(parts)

    if isinstance(details, str):
        return details

    if isinstance(details, dict):
        return json.dumps(details, indent=2)

    return None
