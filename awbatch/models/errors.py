"""Exceptions raised by the LLM request layer."""

from typing import Optional


class LLMError(RuntimeError):
    """A failed LLM call.

    The message is what error categorization looks at, so it always names the
    failure kind, e.g. ``"Server Error 503: ..."`` or ``"Request timeout ..."``.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class StreamIdleTimeout(LLMError):
    """No stream fragment arrived within the idle window."""


class ResponseParseError(ValueError):
    """Model output matched none of the known response shapes."""
