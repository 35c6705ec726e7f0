"""Error taxonomy for the chat core."""

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat core."""

    pass


class InvalidMessage(ChatError, ValueError):
    """Raised when a message cannot be constructed from the given input."""

    pass


class DecryptionFailure(ChatError):
    """Stored ciphertext could not be decrypted or parsed."""

    pass


class StorageError(ChatError):
    """A persistence backend read or write failed (I/O, quota, encoding)."""

    pass


class CredentialMissing(ChatError):
    """No API key is configured for the completion service."""

    def __init__(self, message: str = "API key not configured. Please configure it in Settings.") -> None:
        super().__init__(message)


class RemoteServiceError(ChatError):
    """The completion service answered with an error or could not be reached."""

    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    NETWORK = "network"
    GENERIC = "generic"

    def __init__(
        self,
        message: str,
        kind: str = GENERIC,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, detail: Optional[str] = None) -> "RemoteServiceError":
        """Classify an HTTP error status."""
        if status_code in (401, 403):
            kind, fallback = cls.UNAUTHORIZED, "Invalid or expired API key"
        elif status_code == 429:
            kind, fallback = cls.RATE_LIMITED, "API rate limit exceeded"
        elif status_code in (502, 503, 504):
            kind, fallback = cls.UNAVAILABLE, "Service temporarily unavailable"
        else:
            kind, fallback = cls.GENERIC, f"Unexpected API error ({status_code})"
        return cls(f"API Error: {detail or fallback}", kind=kind, status_code=status_code)


class RunFailed(RemoteServiceError):
    """A remote run reached a terminal status other than ``completed``."""

    def __init__(self, run_status: str) -> None:
        super().__init__(f"Run failed with status: {run_status}")
        self.run_status = run_status


class RequestTimeout(ChatError):
    """The client's own timer cancelled an outbound call."""

    def __init__(self, message: str = "Request timed out. Please try again.") -> None:
        super().__init__(message)


class PollTimeout(ChatError):
    """A remote run did not reach a terminal status within the attempt budget."""

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Request timeout: assistant is taking too long to respond ({attempts} polls)"
        )
        self.attempts = attempts


def user_facing_message(error: BaseException) -> str:
    """Translate an error into guidance text suitable for the conversation view."""
    if isinstance(error, CredentialMissing):
        return "API key not configured. Please open Settings to configure your API key."
    if isinstance(error, RemoteServiceError):
        if error.kind == RemoteServiceError.UNAUTHORIZED:
            return "Your API key appears to be invalid or expired. Please check your API key in Settings."
        if error.kind == RemoteServiceError.RATE_LIMITED:
            return "You've exceeded your API rate limit. Please wait a moment before trying again."
        if error.kind == RemoteServiceError.UNAVAILABLE:
            return "The service is temporarily unavailable. Please try again in a few minutes."
        if error.kind == RemoteServiceError.NETWORK:
            return "Unable to connect to the service. Please check your internet connection."
    if isinstance(error, (RequestTimeout, PollTimeout)):
        return "The request timed out. Please check your internet connection and try again."
    return (
        "Something went wrong while processing your request.\n\n"
        "Please make sure your API key is configured in Settings and try again."
    )
