"""Error taxonomy for the SPiD client.

Every terminal failure that reaches a caller is one of these. Token endpoint
failures share the `TokenError` base so the orchestrator can route them by
class, and interactive flow failures share `FlowError`.
"""

from typing import Optional


class SpidError(Exception):
    """Base exception for all SPiD client errors."""

    pass


class TokenError(SpidError):
    """Raised when a token endpoint exchange fails."""

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.description = description
        self.status = status


class NetworkFailure(TokenError):
    """The transport could not complete the exchange. Retryable."""

    pass


class InvalidGrant(TokenError):
    """The provider rejected the code, refresh token or client credentials.

    Not retryable. The stored credential must be discarded and the user must
    authorize again.
    """

    pass


class MalformedResponse(TokenError):
    """The provider answered with something that does not match the token schema."""

    pass


class Unauthorized(SpidError):
    """No usable credential and no way to obtain one without user interaction."""

    pass


class RetryLimitExceeded(SpidError):
    """A request went through more refresh cycles than allowed."""

    def __init__(self, message: str, attempt_count: int) -> None:
        super().__init__(message)
        self.attempt_count = attempt_count


class FlowError(SpidError):
    """Base exception for interactive browser flow errors."""

    pass


class FlowAlreadyInProgress(FlowError):
    """Another interactive flow is waiting for its redirect."""

    pass


class UserCancelled(FlowError):
    """The user aborted the interactive flow."""

    pass


class ProviderError(FlowError):
    """The provider redirected back with an `error` parameter."""

    def __init__(
        self, message: str, error: str, description: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.error = error
        self.description = description
