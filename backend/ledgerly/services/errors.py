"""Service-layer errors with stable machine-readable codes.

Each subclass carries the HTTP status the API layer should answer with. None of
these are unexpected failures: they are rendered as ordinary error envelopes,
never as a generic 500.
"""


class AuthError(Exception):
    """Base class for recoverable, user-facing authentication errors."""

    status_code: int = 400
    code: str = "INVALID_INPUT"
    default_message: str = "Invalid request"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInputError(AuthError):
    status_code = 400
    code = "INVALID_INPUT"
    default_message = "Invalid input"


class OtpNotFoundError(AuthError):
    status_code = 400
    code = "OTP_NOT_FOUND_OR_EXPIRED"
    default_message = "OTP not found or expired"


class InvalidOtpError(AuthError):
    status_code = 400
    code = "INVALID_OTP"
    default_message = "Invalid OTP"


class TooManyAttemptsError(AuthError):
    status_code = 429
    code = "TOO_MANY_ATTEMPTS"
    default_message = "Too many attempts"


class InvalidRefreshTokenError(AuthError):
    status_code = 401
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class TokenReuseDetectedError(InvalidRefreshTokenError):
    """A superseded refresh token was replayed; its session is now revoked."""

    code = "TOKEN_REUSE_DETECTED"
    default_message = "Suspicious activity detected. Sessions revoked. Please log in again."

    def __init__(self, session_id: str | None = None, user_id: str | None = None):
        super().__init__()
        self.session_id = session_id
        self.user_id = user_id


class CsrfMismatchError(AuthError):
    status_code = 403
    code = "CSRF_MISMATCH"
    default_message = "CSRF validation failed"


class UnauthorizedError(AuthError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class InvalidTokenError(UnauthorizedError):
    """Access token failed verification. The reason is never exposed."""

    default_message = "Invalid token"


class NotFoundError(AuthError):
    """Missing or not owned by the caller; the two are not distinguished."""

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"
