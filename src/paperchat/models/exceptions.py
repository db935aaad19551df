"""
Custom exceptions raised by provider adapters and the chat layer.

Every failure carries enough context (provider, HTTP status, root cause) for
the chat manager to turn it into an error message the user can act on while
the log keeps the full traceback.
"""
from __future__ import annotations

from typing import Optional


class LLMServiceError(Exception):
    """
    Base exception for failures that originate from talking to an LLM backend.

    Args:
        message: Human-readable description of the error.
        provider_id: Optional provider identifier associated with the failure.
        status_code: HTTP status returned by the backend, when there was one.
        cause: Optional underlying exception that triggered the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code
        self.__cause__ = cause


class LLMConnectionError(LLMServiceError):
    """
    Raised when the backend cannot be reached (DNS, TLS, refused connection)
    or answers with a server-side failure.
    """


class LLMTimeoutError(LLMConnectionError):
    """
    Raised when the transport gives up waiting for the backend.
    """


class LLMAuthError(LLMServiceError):
    """
    Raised when the backend rejects the configured credentials (401/403).
    """


class LLMRateLimitError(LLMServiceError):
    """
    Raised when an LLM provider signals that the client exceeded a rate limit
    or quota threshold.
    """


class LLMRequestError(LLMServiceError):
    """
    Raised when the backend rejects the request itself (4xx other than auth
    and rate limiting).
    """


class LLMDecodeError(LLMServiceError):
    """
    Raised when a response body does not match the expected wire format.
    """


class LLMAbortedError(LLMServiceError):
    """
    Raised when a request is cancelled cooperatively through its cancel token.
    """

    def __init__(self, message: str = "Request aborted", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProviderNotConfiguredError(LLMServiceError):
    """
    Raised when a provider lacks credentials or a model and no request was sent.
    """
