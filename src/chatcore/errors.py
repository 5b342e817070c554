"""Error types shared by the channel layer and the chat flows."""

import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Classification of failures raised by adapters and the transport."""
    CONFIG_ERROR = "CONFIG_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    CANCELLED_ERROR = "CANCELLED_ERROR"


class ErrorCode:
    """Stable error codes reported to callers."""
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_DISABLED = "CONFIG_DISABLED"
    MAX_TOOL_ITERATIONS = "MAX_TOOL_ITERATIONS"
    NO_HISTORY = "NO_HISTORY"
    INVALID_STATE = "INVALID_STATE"
    NO_FUNCTION_CALLS = "NO_FUNCTION_CALLS"
    CANCELLED = "CANCELLED"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    INVALID_MESSAGE_ROLE = "INVALID_MESSAGE_ROLE"
    NOT_ENOUGH_ROUNDS = "NOT_ENOUGH_ROUNDS"
    EMPTY_SUMMARY = "EMPTY_SUMMARY"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ChannelError(Exception):
    """A failure talking to (or decoding the answer of) a model provider.

    ``details`` carries whatever the provider sent back (usually the
    decoded error body) and is shown to the caller verbatim.
    """

    def __init__(self, error_type: ErrorType, message: str, details: Any = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details

    def __repr__(self) -> str:
        return f"ChannelError({self.error_type.value}, {self.message!r})"


class ConfigError(ValueError):
    """Invalid or incomplete provider configuration."""


def format_error(exc: BaseException) -> Dict[str, str]:
    """Turn an exception into the ``{code, message}`` shape callers receive."""
    if isinstance(exc, ChannelError):
        message = exc.message
        if exc.details:
            if isinstance(exc.details, str):
                detail_text: Optional[str] = exc.details
            else:
                try:
                    detail_text = json.dumps(exc.details, indent=2, ensure_ascii=False)
                except (TypeError, ValueError):
                    detail_text = str(exc.details)
            message = f"{exc.message}\n{detail_text}"
        return {"code": exc.error_type.value, "message": message}

    code = getattr(exc, "code", None)
    return {
        "code": code if isinstance(code, str) and code else ErrorCode.UNKNOWN_ERROR,
        "message": str(exc) or "Unknown error",
    }
