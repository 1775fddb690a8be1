class AuthError(Exception):
    """Base exception for the authentication subsystem."""

    public_message = "Authentication failed. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class NotFoundError(AuthError):
    """Raised when a user, device or code row does not exist."""

    public_message = "Verification failed."


class ValidationFailure(AuthError):
    """Raised for user-correctable input problems (bad code, wrong password)."""

    public_message = "Verification failed."


class RateLimitedError(AuthError):
    """Raised when a key exceeded its attempt budget. Carries the retry-after delay."""

    public_message = "Too many requests. Please try again later."

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class CriticalRiskError(AuthError):
    """Raised when a login attempt is blocked by the risk engine."""

    public_message = "Verification failed."


class TransientInfraError(AuthError):
    """Raised when persistence or a delivery channel is unavailable."""

    public_message = "Something went wrong. Please try again."


class NotificationDeliveryError(TransientInfraError):
    """Raised when an email could not be delivered."""

    pass


class PasswordPolicyViolation(ValidationFailure):
    """Raised when a new password breaks the password policy. `errors` lists every broken rule."""

    public_message = "Password does not meet the requirements."

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors
