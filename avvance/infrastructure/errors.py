"""Errors raised by the Avvance API clients.

Callers branch on the type: transport errors are retryable and never
mean the operation did not happen remotely, authentication errors need
operator attention, business errors carry the remote message and
malformed responses indicate a contract defect.
"""


class AvvanceApiError(Exception):
    """Base error for remote API calls."""

    retryable = False

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.operation = operation
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{operation}] {message}")


class TransportError(AvvanceApiError):
    """Network failure or timeout; the remote outcome is unknown."""

    retryable = True


class AuthenticationError(AvvanceApiError):
    """Token could not be obtained or was rejected."""

    pass


class RemoteBusinessError(AvvanceApiError):
    """Non-success response, with the remote error message when present."""

    def __init__(
        self,
        operation: str,
        status_code: int,
        remote_message: str | None = None,
    ) -> None:
        self.remote_message = remote_message
        super().__init__(
            operation,
            remote_message or f"Unexpected response status {status_code}",
            status_code,
        )


class MalformedResponseError(AvvanceApiError):
    """Successful status code but required fields are missing."""

    pass
