"""Transport-level errors raised by the backend API client."""

from __future__ import annotations


class ApiClientError(Exception):
    """Base class for failures talking to the backend."""


class NoConnection(ApiClientError, ConnectionError):
    """The backend could not be reached."""


class RequestTimeout(ApiClientError, TimeoutError):
    """The backend did not answer in time."""


class InvalidResponse(ApiClientError, ValueError):
    """The backend answered with a body that could not be decoded."""


class HttpStatusError(ApiClientError):
    """Non-2xx response without a structured error body."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"HTTP error {status_code}")
        self.status_code = status_code


class ApiError(HttpStatusError):
    """Non-2xx response carrying the backend's ``{error, message}`` body."""

    def __init__(self, status_code: int, error: str, message: str) -> None:
        super().__init__(status_code, message)
        self.error = error
        self.message = message
