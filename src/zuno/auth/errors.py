"""
Errors surfaced by the authentication layer.

PasskeyError subclasses are what the relying-party driver raises. Each one
carries a user-facing description and a recovery suggestion so callers never
need to know about platform or transport specifics.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Passkey flow errors
# ---------------------------------------------------------------------------


class PasskeyError(Exception):
    """Base class for failures of a registration or login ceremony."""

    description = "An unknown error occurred"
    recovery_suggestion = "Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.description)


class InvalidChallenge(PasskeyError):
    description = "Invalid challenge received from server"
    recovery_suggestion = "Please try again."


class UnsupportedCredentialType(PasskeyError):
    description = "Unsupported credential type"
    recovery_suggestion = "Your device returned an unexpected credential. Please try again."


class UserCancelled(PasskeyError):
    description = "Authentication was cancelled"
    recovery_suggestion = "Please try again when you're ready."


class BiometricFailed(PasskeyError):
    description = "Biometric authentication failed"
    recovery_suggestion = "Please try again or use your device passcode."


class NetworkError(PasskeyError):
    recovery_suggestion = "Please check your internet connection and try again."

    def __init__(self, detail: str) -> None:
        self.detail = detail
        self.description = f"Network error: {detail}"
        super().__init__(self.description)


class ServerError(PasskeyError):
    recovery_suggestion = "The server is having trouble. Please try again later."

    def __init__(self, http_status: int) -> None:
        self.http_status = http_status
        self.description = f"Server error (code: {http_status})"
        super().__init__(self.description)


class UserAlreadyExists(PasskeyError):
    description = "This Zuno tag is already registered"
    recovery_suggestion = "This Zuno tag is already taken. Use the Login option to sign in to your existing account."


class _DetailedPasskeyError(PasskeyError):
    prefix = "Error"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        self.description = f"{self.prefix}: {detail}"
        super().__init__(self.description)


class RegistrationFailed(_DetailedPasskeyError):
    prefix = "Registration failed"
    recovery_suggestion = "Please try again."


class AuthenticationFailed(_DetailedPasskeyError):
    prefix = "Authentication failed"
    recovery_suggestion = "Please try again."


class UnknownError(_DetailedPasskeyError):
    prefix = "Unknown error"
    recovery_suggestion = "Please try again."


# ---------------------------------------------------------------------------
# Session / domain errors
# ---------------------------------------------------------------------------


class InvalidHandle(ValueError):
    """Raised when a Zuno tag fails client-side format validation."""


class NotAuthenticated(PermissionError):
    """Raised when an operation needs a session and none is established."""


class TokenExpired(PermissionError):
    """Raised when the stored session was rejected; a full passkey login is required."""

    recovery_suggestion = "Your session has expired. Please sign in with your passkey."


class NoStoredCredentials(LookupError):
    """Raised when quick unlock is attempted without a stored session."""


class BiometricsNotAvailable(RuntimeError):
    """Raised when the device has no usable biometric sensor."""


class BiometricAuthenticationFailed(PermissionError):
    """Raised when the biometric gate rejects the user."""
