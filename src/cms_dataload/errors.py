"""
Error types for cms-dataload.

Every failure raised by the harness derives from DataloadError so the CLI
can print it once and exit non-zero.
"""
from typing import Any, Dict, Optional


class DataloadError(Exception):
    """Base exception for all harness failures."""
    pass


class ConfigError(DataloadError):
    """Raised when configuration is missing or invalid."""
    pass


class ProcessError(DataloadError):
    """Raised for supervised process failures."""
    pass


class ProcessSpawnError(ProcessError):
    """Raised when a daemon cannot be spawned or its log file opened."""
    pass


class ReadinessTimeoutError(ProcessError):
    """Raised when a daemon does not print its readiness marker in time."""

    def __init__(self, name: str, marker: str, timeout: float):
        super().__init__(
            f"{name} did not report '{marker}' within {timeout:g} seconds"
        )
        self.name = name
        self.marker = marker
        self.timeout = timeout


class ProcessExitedError(ProcessError):
    """Raised when a daemon exits before it becomes ready."""

    def __init__(self, name: str, returncode: Optional[int]):
        super().__init__(f"{name} exited with status {returncode} before it was ready")
        self.name = name
        self.returncode = returncode


class CommandError(ProcessError):
    """Raised when a one-shot helper command exits non-zero."""

    def __init__(self, argv, returncode: int, output: str = ""):
        joined = " ".join(str(arg) for arg in argv)
        message = f"Command failed ({returncode}): {joined}"
        if output.strip():
            message += f"\n{output.strip()}"
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output


class APIError(DataloadError):
    """Raised for a non-success response from the cmswww API."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[int] = None,
                 error_context: Optional[Any] = None,
                 route: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_context = error_context
        self.route = route

    @classmethod
    def from_reply(cls, route: str, status_code: int, body: Dict[str, Any]) -> "APIError":
        """Build the typed error matching an HTTP status and error body."""
        if status_code == 400:
            error_cls = ValidationError
        elif status_code in (401, 403):
            error_cls = AuthenticationError
        elif status_code == 404:
            error_cls = NotFoundError
        else:
            error_cls = APIError

        error_code = body.get("errorcode")
        error_context = body.get("errorcontext")
        message = f"{route} failed with HTTP {status_code}"
        if error_code is not None:
            message += f", error code {error_code}"
        if error_context:
            context = error_context
            if isinstance(context, (list, tuple)):
                context = ", ".join(str(item) for item in context)
            message += f": {context}"
        return error_cls(message, status_code=status_code, error_code=error_code,
                         error_context=error_context, route=route)


class AuthenticationError(APIError):
    """Raised when the service rejects credentials or the session."""
    pass


class ValidationError(APIError):
    """Raised when the service rejects a request payload."""
    pass


class NotFoundError(APIError):
    """Raised when a user, invoice or token is unknown to the service."""
    pass


class SessionError(DataloadError):
    """Raised when login/logout are called out of order."""
    pass


class NotAuthenticatedError(SessionError):
    """Raised when a role-scoped call is made without an active session."""

    def __init__(self, operation: str):
        super().__init__(f"{operation} requires an active session; log in first")
        self.operation = operation


class WorkflowAssertionError(DataloadError):
    """Raised when a verification step observes an unexpected result."""
    pass
