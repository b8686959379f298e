"""Exception hierarchy for the telemetry buddy client."""

from __future__ import annotations

from enum import Enum


class TelemetryBuddyError(Exception):
    """Base exception for telemetry buddy client errors."""
    pass


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(TelemetryBuddyError):
    """Misconfiguration. Not retryable; show the message to the user as-is."""
    pass


class ConfigNotFoundError(ConfigError):
    """No configuration file could be found."""

    def __init__(self, searched: list[str] | None = None):
        self.searched = list(searched or [])
        message = "No configuration file found."
        if self.searched:
            message += " Searched: " + ", ".join(self.searched)
        message += " Run 'bctb init' to create one."
        super().__init__(message)


class ConfigParseError(ConfigError):
    """Configuration file exists but could not be parsed."""
    pass


class NoProfileSpecifiedError(ConfigError):
    """Multi-profile document without an explicit, env or default profile."""

    def __init__(self, available: list[str] | None = None):
        self.available = list(available or [])
        message = "No profile specified. Pass a profile name, set BCTB_PROFILE or set defaultProfile"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class ProfileNotFoundError(ConfigError):
    """Named profile (or parent profile) does not exist."""

    def __init__(self, name: str, referenced_by: str | None = None):
        self.name = name
        self.referenced_by = referenced_by
        if referenced_by:
            message = f"Profile '{name}' not found (extended by '{referenced_by}')"
        else:
            message = f"Profile '{name}' not found"
        super().__init__(message)


class InvalidProfileNameError(ConfigError):
    """Profile name is empty or whitespace."""
    pass


class CircularInheritanceError(ConfigError):
    """Profile 'extends' chain loops back on itself."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular profile inheritance detected: {' -> '.join(self.cycle)}"
        )


class UnsetVariableError(ConfigError):
    """${VAR} reference to an unset environment variable (strict expansion only)."""

    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Environment variable '{variable}' referenced in config is not set")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class AuthError(TelemetryBuddyError):
    """Authentication failed. Carries the auth flow and a remediation hint."""

    def __init__(self, message: str, flow: str | None = None, remediation: str | None = None):
        super().__init__(message)
        self.flow = flow
        self.remediation = remediation

    def __str__(self) -> str:
        message = super().__str__()
        if self.remediation:
            return f"{message}\n{self.remediation}"
        return message


class AuthFailedError(AuthError):
    """The selected strategy could not obtain a token."""
    pass


class AzureCliNotInstalledError(AuthFailedError):
    """The az executable is not installed or not on PATH."""
    pass


class AzureCliNotLoggedInError(AuthFailedError):
    """az is installed but has no logged-in session."""
    pass


class MissingCredentialsError(AuthError):
    """client_credentials flow without a client id or secret."""
    pass


class TokenUnavailableError(AuthError):
    """Host-delegated flow but the host did not inject a token."""
    pass


# ---------------------------------------------------------------------------
# Query execution
# ---------------------------------------------------------------------------

class QueryErrorKind(str, Enum):
    INVALID_QUERY = "InvalidQuery"
    AUTHENTICATION = "AuthenticationError"
    RATE_LIMIT = "RateLimitExceeded"
    TRANSPORT = "TransportError"
    UNKNOWN = "Unknown"


_QUERY_MESSAGE_TEMPLATES: dict[QueryErrorKind, str] = {
    QueryErrorKind.INVALID_QUERY: "Invalid query: {detail}",
    QueryErrorKind.AUTHENTICATION: (
        "Authentication failed: {detail}. Check your credentials and permissions."
    ),
    QueryErrorKind.RATE_LIMIT: "Rate limit exceeded: {detail}. Please try again later.",
    QueryErrorKind.TRANSPORT: "Could not reach the telemetry backend: {detail}",
    QueryErrorKind.UNKNOWN: "Query execution failed: {detail}",
}


class QueryError(TelemetryBuddyError):
    """Query execution failed. Never retried inside the client."""

    kind: QueryErrorKind = QueryErrorKind.UNKNOWN

    def __init__(self, detail: str, status_code: int | None = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(self.user_message())

    def user_message(self) -> str:
        return _QUERY_MESSAGE_TEMPLATES[self.kind].format(detail=self.detail)


class InvalidQueryError(QueryError):
    kind = QueryErrorKind.INVALID_QUERY


class AuthenticationError(QueryError):
    """401/403 from the backend. Re-authenticate before trying again."""
    kind = QueryErrorKind.AUTHENTICATION


class RateLimitExceededError(QueryError):
    kind = QueryErrorKind.RATE_LIMIT


class TransportError(QueryError):
    """Network-level failure; the original exception is kept on ``cause``."""
    kind = QueryErrorKind.TRANSPORT

    def __init__(self, detail: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(detail)


class UnknownQueryError(QueryError):
    kind = QueryErrorKind.UNKNOWN


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

class TelemetryError(TelemetryBuddyError):
    """Raised by telemetry sinks. Always swallowed by the rate-limited gate."""
    pass


# ---------------------------------------------------------------------------
# Saved queries
# ---------------------------------------------------------------------------

class QueryLibraryError(TelemetryBuddyError):
    """Raised when a saved query cannot be written."""
    pass
