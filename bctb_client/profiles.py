"""Profile resolution: inheritance, deep merge, defaults and ${VAR} expansion."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from .config import (
    PROFILE_ENV,
    WORKSPACE_ENV,
    ConfigurationDocument,
    TelemetryConfig,
    section_mapping,
)
from .errors import (
    CircularInheritanceError,
    ConfigError,
    InvalidProfileNameError,
    NoProfileSpecifiedError,
    ProfileNotFoundError,
    UnsetVariableError,
)

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

DEFAULT_CACHE_TTL_SECONDS = 3600


class AuthFlow(str, Enum):
    """Authentication strategies a profile can select."""
    AZURE_CLI = "azure_cli"
    DEVICE_CODE = "device_code"
    CLIENT_CREDENTIALS = "client_credentials"
    VSCODE_AUTH = "vscode_auth"


# Profile keys with a typed field on ResolvedProfile. Everything else is kept in ``extra``.
_KNOWN_KEYS = frozenset({
    "connectionName",
    "tenantId",
    "clientId",
    "clientSecret",
    "authFlow",
    "applicationInsightsAppId",
    "kustoClusterUrl",
    "cacheEnabled",
    "cacheTTLSeconds",
    "removePII",
    "workspacePath",
    "queriesFolder",
    "references",
    "telemetry",
})

# Top-level keys of a flat document that are document defaults, not profile settings.
_DOCUMENT_KEYS = frozenset({"extends", "cache", "sanitize", "defaultProfile", "profiles"})


@dataclass(frozen=True)
class ResolvedProfile:
    """
    A profile with inheritance, defaults and environment expansion applied.

    Every field is concrete. ``name`` records which profile was selected and
    does not take part in equality.
    """
    connection_name: str = "Default"
    tenant_id: str = ""
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    auth_flow: AuthFlow = AuthFlow.AZURE_CLI
    app_insights_app_id: str = ""
    kusto_cluster_url: str = ""
    cache_enabled: bool = True
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    remove_pii: bool = False
    workspace_path: str = ""
    queries_folder: str = "queries"
    references: list[dict[str, Any]] = field(default_factory=list)
    telemetry: TelemetryConfig | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    name: str | None = field(default=None, compare=False)

    @property
    def identity(self) -> str:
        """Stable identifier of the backend target and credentials this profile uses."""
        key = json.dumps([
            self.connection_name,
            self.tenant_id,
            self.client_id or "",
            self.auth_flow.value,
            self.app_insights_app_id,
            self.kusto_cluster_url,
        ])
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    @property
    def cache_dir(self) -> Path:
        return Path(self.workspace_path) / ".vscode" / ".bctb" / "cache"

    def to_dict(self) -> dict[str, Any]:
        """Flat (single-profile) document equivalent to this profile."""
        data: dict[str, Any] = copy.deepcopy(self.extra)
        data.update({
            "connectionName": self.connection_name,
            "tenantId": self.tenant_id,
            "authFlow": self.auth_flow.value,
            "applicationInsightsAppId": self.app_insights_app_id,
            "kustoClusterUrl": self.kusto_cluster_url,
            "cacheEnabled": self.cache_enabled,
            "cacheTTLSeconds": self.cache_ttl_seconds,
            "removePII": self.remove_pii,
            "workspacePath": self.workspace_path,
            "queriesFolder": self.queries_folder,
            "references": copy.deepcopy(self.references),
        })
        if self.client_id is not None:
            data["clientId"] = self.client_id
        if self.client_secret is not None:
            data["clientSecret"] = self.client_secret
        if self.telemetry is not None:
            data["telemetry"] = self.telemetry.to_dict()
        return data


def deep_merge(parent: Mapping[str, Any], child: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge ``child`` over ``parent``.

    Nested mappings merge recursively; lists and scalars from the child
    replace the parent's value. The ``extends`` key is never copied.
    """
    result = copy.deepcopy(dict(parent))
    result.pop("extends", None)

    for key, value in child.items():
        if key == "extends":
            continue
        if isinstance(value, Mapping):
            base = result.get(key)
            result[key] = deep_merge(base if isinstance(base, Mapping) else {}, value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def expand_environment_variables(
    value: Any,
    environ: Mapping[str, str] | None = None,
    strict: bool = False,
) -> Any:
    """
    Replace ``${VAR_NAME}`` in every string, recursing into mappings and lists.

    Unset variables become "" (logged as a warning) unless ``strict`` is set,
    in which case ``UnsetVariableError`` is raised.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):
        def _substitute(match: re.Match[str]) -> str:
            var_name = match.group(1)
            if var_name in env:
                return env[var_name]
            if strict:
                raise UnsetVariableError(var_name)
            logger.warning(f"Environment variable '{var_name}' is not set; using empty string")
            return ""

        return _ENV_VAR_PATTERN.sub(_substitute, value)
    if isinstance(value, Mapping):
        return {k: expand_environment_variables(v, env, strict) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_environment_variables(v, env, strict) for v in value]
    return value


def inheritance_chain(profiles: Mapping[str, Any], name: str) -> list[str]:
    """
    Walk ``extends`` from ``name`` to the root ancestor.

    Returns profile names root first. Walks iteratively over names so long
    chains and cycles cannot exhaust the stack.

    Raises:
        ProfileNotFoundError: If the profile or one of its parents is missing
        CircularInheritanceError: If the chain revisits a profile
    """
    chain: list[str] = []
    visited: set[str] = set()
    current: str | None = name
    referenced_by: str | None = None

    while current is not None:
        if current in visited:
            start = chain.index(current)
            raise CircularInheritanceError(chain[start:] + [current])

        profile = profiles.get(current)
        if profile is None:
            raise ProfileNotFoundError(current, referenced_by)
        if not isinstance(profile, Mapping):
            raise ConfigError(f"Profile '{current}' must be a JSON object")

        visited.add(current)
        chain.append(current)

        parent = profile.get("extends")
        if parent is not None and not isinstance(parent, str):
            raise ConfigError(f"Profile '{current}' has a non-string 'extends' value")
        referenced_by = current
        current = parent or None

    chain.reverse()
    return chain


def merge_chain(profiles: Mapping[str, Mapping[str, Any]], chain: list[str]) -> dict[str, Any]:
    """Deep merge the profiles of an inheritance chain, root ancestor first."""
    merged: dict[str, Any] = {}
    for name in chain:
        merged = deep_merge(merged, profiles[name])
    return merged


def _select_profile_name(
    document: ConfigurationDocument,
    profile_name: str | None,
    environ: Mapping[str, str],
) -> str:
    if profile_name is not None:
        candidate = profile_name
    else:
        candidate = environ.get(PROFILE_ENV) or document.default_profile

    if candidate is None:
        names = list(document.profiles)
        if len(names) == 1:
            return names[0]
        raise NoProfileSpecifiedError(names)

    if not isinstance(candidate, str) or not candidate.strip():
        raise InvalidProfileNameError("Profile name must be a non-empty string")
    return candidate


def _apply_defaults(
    settings: dict[str, Any],
    defaults: Mapping[str, Any],
    environ: Mapping[str, str],
) -> dict[str, Any]:
    cache = section_mapping(defaults.get("cache"), "cache")
    sanitize = section_mapping(defaults.get("sanitize"), "sanitize")

    result = dict(settings)
    if "cacheEnabled" not in result:
        result["cacheEnabled"] = cache.get("enabled", True)
    if "cacheTTLSeconds" not in result:
        result["cacheTTLSeconds"] = cache.get("ttlSeconds", DEFAULT_CACHE_TTL_SECONDS)
    if "removePII" not in result:
        result["removePII"] = sanitize.get("removePII", False)
    if "references" not in result and "references" in defaults:
        result["references"] = copy.deepcopy(defaults["references"])
    if "telemetry" not in result and "telemetry" in defaults:
        result["telemetry"] = copy.deepcopy(defaults["telemetry"])
    if not result.get("workspacePath"):
        result["workspacePath"] = environ.get(WORKSPACE_ENV) or os.getcwd()
    return result


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ConfigError(f"'{key}' must be true or false, got {value!r}")


def _build_profile(settings: Mapping[str, Any], name: str | None) -> ResolvedProfile:
    raw_flow = settings.get("authFlow") or AuthFlow.AZURE_CLI.value
    try:
        auth_flow = AuthFlow(raw_flow)
    except ValueError:
        valid = ", ".join(f.value for f in AuthFlow)
        raise ConfigError(f"Unknown authFlow '{raw_flow}' (expected one of: {valid})") from None

    try:
        ttl = int(settings["cacheTTLSeconds"])
    except (TypeError, ValueError):
        raise ConfigError(
            f"'cacheTTLSeconds' must be an integer, got {settings['cacheTTLSeconds']!r}"
        ) from None

    references = settings.get("references") or []
    if not isinstance(references, list):
        raise ConfigError("'references' must be a list")

    telemetry = settings.get("telemetry")
    extra = {
        key: copy.deepcopy(value)
        for key, value in settings.items()
        if key not in _KNOWN_KEYS and key not in _DOCUMENT_KEYS
    }

    return ResolvedProfile(
        connection_name=settings.get("connectionName") or "Default",
        tenant_id=settings.get("tenantId") or "",
        client_id=settings.get("clientId"),
        client_secret=settings.get("clientSecret"),
        auth_flow=auth_flow,
        app_insights_app_id=settings.get("applicationInsightsAppId") or "",
        kusto_cluster_url=settings.get("kustoClusterUrl") or "",
        cache_enabled=_as_bool(settings["cacheEnabled"], "cacheEnabled"),
        cache_ttl_seconds=ttl,
        remove_pii=_as_bool(settings["removePII"], "removePII"),
        workspace_path=str(settings["workspacePath"]),
        queries_folder=settings.get("queriesFolder") or "queries",
        references=list(references),
        telemetry=TelemetryConfig.from_dict(telemetry) if telemetry is not None else None,
        extra=extra,
        name=name,
    )


def resolve_profile(
    document: ConfigurationDocument | Mapping[str, Any],
    profile_name: str | None = None,
    environ: Mapping[str, str] | None = None,
    strict: bool = False,
) -> ResolvedProfile:
    """
    Resolve a profile from a configuration document.

    Profile selection order: ``profile_name`` -> ``BCTB_PROFILE`` ->
    ``defaultProfile`` (or the only profile, when there is exactly one).
    Flat documents without ``profiles`` are treated as a single profile;
    a non-blank ``profile_name`` is ignored for them.

    Args:
        document: Loaded document, or its raw mapping
        profile_name: Explicit profile to resolve
        environ: Environment used for selection and ${VAR} expansion
        strict: Fail on unset ${VAR} references instead of expanding to ""

    Returns:
        ResolvedProfile with every field concrete
    """
    if not isinstance(document, ConfigurationDocument):
        document = ConfigurationDocument.from_dict(document)
    env = os.environ if environ is None else environ

    if profile_name is not None and (not isinstance(profile_name, str) or not profile_name.strip()):
        raise InvalidProfileNameError("Profile name must be a non-empty string")

    if not document.is_multi_profile:
        settings = {k: v for k, v in document.data.items() if k != "extends"}
        settings = _apply_defaults(settings, document.defaults, env)
        return _build_profile(expand_environment_variables(settings, env, strict), None)

    name = _select_profile_name(document, profile_name, env)
    profiles = document.profiles
    chain = inheritance_chain(profiles, name)
    logger.debug(f"Resolving profile '{name}' via {' <- '.join(reversed(chain))}")

    merged = merge_chain(profiles, chain)
    merged = _apply_defaults(merged, document.defaults, env)
    return _build_profile(expand_environment_variables(merged, env, strict), name)


def validate_profile(profile: ResolvedProfile) -> list[str]:
    """
    Check a resolved profile for missing settings.

    Returns a list of problems instead of raising, so callers can report
    everything at once.
    """
    errors: list[str] = []

    if profile.auth_flow not in (AuthFlow.AZURE_CLI, AuthFlow.VSCODE_AUTH) and not profile.tenant_id:
        errors.append("tenantId is required (unless using azure_cli or vscode_auth auth flow)")

    if not profile.app_insights_app_id:
        errors.append("applicationInsightsAppId is required")

    if not profile.kusto_cluster_url:
        errors.append("kustoClusterUrl is required")

    if profile.auth_flow == AuthFlow.CLIENT_CREDENTIALS:
        if not profile.client_id:
            errors.append("clientId is required for client_credentials auth flow")
        if not profile.client_secret:
            errors.append("clientSecret is required for client_credentials auth flow")

    return errors
