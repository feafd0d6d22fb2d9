from __future__ import annotations


class AuthError(Exception):
    """
    Base class for recoverable, user-facing sign-in failures.

    The login UI renders `message` inline; `code` is stable for clients and `status`
    is the HTTP status the API maps it to.
    """

    code = "auth_error"
    status = 400
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status = 401
    default_message = "Invalid email or password"


class DeliveryError(AuthError):
    code = "delivery_failed"
    status = 502
    default_message = "Failed to send verification code"


class NoActiveChallenge(AuthError):
    code = "no_active_challenge"
    status = 400
    default_message = "Invalid or expired code"


class CodeMismatch(AuthError):
    code = "code_mismatch"
    status = 400
    default_message = "Invalid code"


class TooManyAttempts(AuthError):
    code = "too_many_attempts"
    status = 429
    default_message = "Too many attempts. Please try again later."


class ProviderError(AuthError):
    code = "provider_error"
    status = 400
    default_message = "Social sign-in failed"


class ProviderNotConfigured(AuthError):
    code = "provider_not_configured"
    status = 404
    default_message = "Sign-in provider is not enabled"


class AccountExists(AuthError):
    code = "account_exists"
    status = 409
    default_message = "An account with this email already exists"


class WeakPassword(AuthError):
    code = "weak_password"
    status = 400
    default_message = "Password is too short"


class StoreUnavailable(Exception):
    """Credential store is not configured or cannot be reached (fatal at startup)."""


class ConfigError(Exception):
    """Required authentication settings are missing (fatal at startup)."""
