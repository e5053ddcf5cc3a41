# =============================================================================
# Service Center Client -- Error Types
# =============================================================================


class ServiceCenterError(Exception):
    """Base exception for all service center client errors."""


class ServiceCenterConfigError(ServiceCenterError, ValueError):
    """Invalid client configuration (rejected before the client starts)."""


class ServiceCenterConnectionError(ServiceCenterError):
    """Connection-related errors (failed to connect, lost connection)."""


class ReconnectExhaustedError(ServiceCenterConnectionError):
    """The bounded reconnect budget is used up. Fatal for the client."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"reconnect attempts exhausted after {attempts} attempts")


class ServiceCenterAuthError(ServiceCenterError):
    """Authentication errors (invalid token, bad credentials, rejected)."""


class ServiceCenterTimeoutError(ServiceCenterError):
    """Operation timed out."""


class ServiceCenterRequestError(ServiceCenterError):
    """The server rejected a single request."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}" if code else message)


class ServiceCenterProtocolError(ServiceCenterError):
    """Wire protocol errors (malformed messages, unknown prefixes)."""


class ClientClosedError(ServiceCenterError):
    """The client has been closed; no further operations are possible."""
