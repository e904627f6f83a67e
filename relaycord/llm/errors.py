from __future__ import annotations

from typing import Tuple

import httpx


class LLMError(Exception):
    """Base error for backend failures."""


class LLMTimeoutError(LLMError):
    pass


class LLMConnectionError(LLMError):
    pass


class LLMRateLimitError(LLMError):
    pass


class LLMAuthError(LLMError):
    pass


class LLMNotFoundError(LLMError):
    pass


class LLMForbiddenError(LLMError):
    pass


class LLMResponseError(LLMError):
    """Malformed or unexpected backend response."""


_STATUS_ERRORS: dict[int, type[LLMError]] = {
    401: LLMAuthError,
    403: LLMForbiddenError,
    404: LLMNotFoundError,
    429: LLMRateLimitError,
}


def translate_http_error(error: Exception) -> LLMError:
    """
    Map an httpx exception onto the backend error taxonomy.
    Anything that is already an LLMError is returned unchanged.
    """
    if isinstance(error, LLMError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return LLMTimeoutError(f"Backend request timeout: {error}")
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        cls = _STATUS_ERRORS.get(status, LLMResponseError)
        return cls(f"Backend returned HTTP {status}")
    if isinstance(error, (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError)):
        return LLMConnectionError(f"Backend connection failed: {error}")
    return LLMError(f"{type(error).__name__}: {error}")


def parse_error_message(error: Exception) -> str:
    """
    Map raw exceptions into short, human-readable messages.
    Used for logs and the status surface.
    """
    s, t = str(error), type(error).__name__
    if isinstance(error, LLMRateLimitError) or "429" in s:
        return "⚠️ Rate Limited: backend is temporarily rate-limited. Please retry shortly."
    if isinstance(error, LLMAuthError) or "401" in s:
        return "❌ Authentication Error: backend rejected the credentials."
    if isinstance(error, LLMNotFoundError):
        return "❌ Not Found: the backend endpoint was not found."
    if isinstance(error, LLMForbiddenError):
        return "❌ Forbidden: the backend refused the request."
    if isinstance(error, LLMTimeoutError):
        return "⏱️ Timeout: the backend took too long to respond."
    if isinstance(error, LLMConnectionError) or "ECONNREFUSED" in s:
        return "❌ Connection Error: unable to connect to the backend."
    return f"❌ {t}: {s.split(chr(10))[0][:100]}"


def format_user_friendly_error(error: Exception) -> str:
    """
    Short, safe error message suitable for end users.
    One of three classes: timeout, connection, everything else.
    """
    if isinstance(error, LLMTimeoutError) or "timeout" in str(error).lower():
        return "⚠️ **Timeout Error**\n> The AI service took too long to respond. Please try again!"
    if isinstance(error, LLMConnectionError):
        return "⚠️ **Connection Error**\n> Cannot connect to the AI service. Please check if the backend is running!"
    detail = str(error).split("\n")[0][:100] or type(error).__name__
    return f"⚠️ **Error**\n> {detail}\n\nPlease try again or contact support if the issue persists."


def error_messages(error: Exception) -> Tuple[str, str]:
    """
    Convenience helper returning (log_message, user_message).
    """
    return parse_error_message(error), format_user_friendly_error(error)
