"""
Telemetry buddy client: query Application Insights with named connection profiles.

Usage:
    from bctb_client import resolve_profile, get_access_token, run_query

    profile = resolve_profile(None, "production")   # discover .bctb-config.json
    token = get_access_token(profile)
    result = run_query(profile, "traces | take 10", token)
    print(result.summary)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from .auth import AuthProvider, AuthResult, get_access_token, get_auth_provider
from .cache import QueryCache
from .client import QueryExecutor, QueryResult, run_query
from .config import ConfigurationDocument, RateLimitConfig, TelemetryConfig
from .errors import (
    AuthenticationError,
    AuthError,
    AuthFailedError,
    CircularInheritanceError,
    ConfigError,
    ConfigNotFoundError,
    InvalidQueryError,
    MissingCredentialsError,
    NoProfileSpecifiedError,
    ProfileNotFoundError,
    QueryError,
    QueryLibraryError,
    RateLimitExceededError,
    TelemetryBuddyError,
    TokenUnavailableError,
    TransportError,
)
from .profiles import AuthFlow, ResolvedProfile
from .profiles import resolve_profile as _resolve_document
from .queries import QueryLibrary, SavedQuery
from .telemetry import get_default_telemetry

__version__ = "0.1.0"


def resolve_profile(
    config_source: str | Path | Mapping[str, Any] | ConfigurationDocument | None = None,
    profile_name: str | None = None,
) -> ResolvedProfile:
    """
    Resolve a profile from a config file path, a raw mapping, a loaded
    document, or (with None) the first discovered ``.bctb-config.json``.
    """
    if config_source is None or isinstance(config_source, (str, Path)):
        document = ConfigurationDocument.load(config_source)
    elif isinstance(config_source, ConfigurationDocument):
        document = config_source
    else:
        document = ConfigurationDocument.from_dict(config_source)
    return _resolve_document(document, profile_name)


def track_event(name, properties=None, measurements=None) -> None:
    get_default_telemetry().track_event(name, properties, measurements)


def track_dependency(name, data, duration_ms, success, result_code=None, properties=None) -> None:
    get_default_telemetry().track_dependency(name, data, duration_ms, success, result_code, properties)


def track_exception(error, properties=None) -> None:
    get_default_telemetry().track_exception(error, properties)


def track_trace(message, properties=None) -> None:
    get_default_telemetry().track_trace(message, properties)


__all__ = [
    "AuthError",
    "AuthFailedError",
    "AuthFlow",
    "AuthProvider",
    "AuthResult",
    "AuthenticationError",
    "CircularInheritanceError",
    "ConfigError",
    "ConfigNotFoundError",
    "ConfigurationDocument",
    "InvalidQueryError",
    "MissingCredentialsError",
    "NoProfileSpecifiedError",
    "ProfileNotFoundError",
    "QueryCache",
    "QueryError",
    "QueryExecutor",
    "QueryLibrary",
    "QueryLibraryError",
    "QueryResult",
    "RateLimitConfig",
    "RateLimitExceededError",
    "ResolvedProfile",
    "SavedQuery",
    "TelemetryBuddyError",
    "TelemetryConfig",
    "TokenUnavailableError",
    "TransportError",
    "get_access_token",
    "get_auth_provider",
    "resolve_profile",
    "run_query",
    "track_dependency",
    "track_event",
    "track_exception",
    "track_trace",
]
