"""Configuration document discovery and loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import ConfigError, ConfigNotFoundError, ConfigParseError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".bctb-config.json"
WORKSPACE_ENV = "BCTB_WORKSPACE_PATH"
PROFILE_ENV = "BCTB_PROFILE"


def config_search_paths(environ: Mapping[str, str] | None = None) -> list[Path]:
    """
    Candidate config locations, in order of precedence (first existing wins).

    1. .bctb-config.json in the current directory
    2. .bctb-config.json in the workspace root (BCTB_WORKSPACE_PATH)
    3. ~/.bctb/config.json
    4. ~/.bctb-config.json
    """
    env = os.environ if environ is None else environ
    paths = [Path.cwd() / CONFIG_FILE_NAME]
    workspace = env.get(WORKSPACE_ENV)
    if workspace:
        paths.append(Path(workspace) / CONFIG_FILE_NAME)
    home = Path.home()
    paths.append(home / ".bctb" / "config.json")
    paths.append(home / CONFIG_FILE_NAME)
    return paths


def section_mapping(value: Any, key: str) -> Mapping[str, Any]:
    """Return a config section as a mapping; a missing section is empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{key}' must be a JSON object, got {value!r}")
    return value


@dataclass
class RateLimitConfig:
    """Limits applied by the rate-limited usage telemetry gate."""
    max_identical_errors: int = 10
    max_events_per_session: int = 1000
    max_events_per_minute: int = 100
    error_cooldown_ms: int = 60000

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RateLimitConfig:
        data = section_mapping(data, "telemetry.rateLimiting")
        defaults = cls()

        def _int(key: str, default: int) -> int:
            value = data.get(key, default)
            try:
                if isinstance(value, bool):
                    raise TypeError(key)
                return int(value)
            except (TypeError, ValueError):
                raise ConfigError(
                    f"'telemetry.rateLimiting.{key}' must be an integer, got {value!r}"
                ) from None

        return cls(
            max_identical_errors=_int("maxIdenticalErrors", defaults.max_identical_errors),
            max_events_per_session=_int("maxEventsPerSession", defaults.max_events_per_session),
            max_events_per_minute=_int("maxEventsPerMinute", defaults.max_events_per_minute),
            error_cooldown_ms=_int("errorCooldownMs", defaults.error_cooldown_ms),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "maxIdenticalErrors": self.max_identical_errors,
            "maxEventsPerSession": self.max_events_per_session,
            "maxEventsPerMinute": self.max_events_per_minute,
            "errorCooldownMs": self.error_cooldown_ms,
        }


@dataclass
class TelemetryConfig:
    """
    Usage telemetry settings (tracks use of this client, not the queried data).

    ``connection_string`` is an Application Insights connection string; when it
    is empty, tracked events only go to the log.
    """
    enabled: bool = False
    connection_string: str = ""
    rate_limiting: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> TelemetryConfig:
        data = section_mapping(data, "telemetry")
        enabled = data.get("enabled", False)
        if isinstance(enabled, str) and enabled.lower() in ("true", "false"):
            enabled = enabled.lower() == "true"
        if not isinstance(enabled, bool):
            raise ConfigError(f"'telemetry.enabled' must be true or false, got {enabled!r}")
        return cls(
            enabled=enabled,
            connection_string=str(data.get("connectionString") or ""),
            rate_limiting=RateLimitConfig.from_dict(data.get("rateLimiting")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "enabled": self.enabled,
            "rateLimiting": self.rate_limiting.to_dict(),
        }
        if self.connection_string:
            data["connectionString"] = self.connection_string
        return data


@dataclass
class ProfileSummary:
    """One row of ``list_profiles`` output."""
    name: str
    connection_name: str | None
    extends: str | None
    is_default: bool = False
    is_base: bool = False


@dataclass
class ConfigurationDocument:
    """
    Raw configuration as loaded from disk.

    Either a single implicit profile (flat document, the older format) or a
    ``profiles`` map with ``defaultProfile`` and document-wide defaults.
    No resolution happens here; see ``bctb_client.profiles``.
    """
    data: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None

    @property
    def is_multi_profile(self) -> bool:
        return isinstance(self.data.get("profiles"), dict)

    @property
    def profiles(self) -> dict[str, dict[str, Any]]:
        profiles = self.data.get("profiles")
        return profiles if isinstance(profiles, dict) else {}

    @property
    def default_profile(self) -> str | None:
        return self.data.get("defaultProfile")

    @property
    def defaults(self) -> dict[str, Any]:
        """Document-wide blocks that profiles inherit when they do not set their own."""
        return {
            key: self.data[key]
            for key in ("cache", "sanitize", "references", "telemetry")
            if key in self.data
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: Path | None = None) -> ConfigurationDocument:
        return cls(data=dict(data), source=source)

    @classmethod
    def from_file(cls, path: str | Path) -> ConfigurationDocument:
        """Parse one config file. JSON is read through the YAML loader."""
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigParseError(f"Failed to parse config file {path}: {e}") from e
        except OSError as e:
            raise ConfigParseError(f"Failed to read config file {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigParseError(
                f"Config file {path} must contain a JSON object, got {type(data).__name__}"
            )
        return cls.from_dict(data, source=path)

    @classmethod
    def load(
        cls,
        config_file: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ConfigurationDocument:
        """
        Load config with auto-discovery.

        An explicit ``config_file`` always wins and must exist. Otherwise the
        first existing path from ``config_search_paths`` is used.

        Raises:
            ConfigNotFoundError: If no config file exists
        """
        path = find_config_file(config_file, environ=environ)
        logger.info(f"Loading config from: {path}")
        return cls.from_file(path)


def find_config_file(
    config_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Return the config file that ``ConfigurationDocument.load`` would read."""
    if config_file:
        path = Path(config_file).expanduser().resolve()
        if not path.is_file():
            raise ConfigNotFoundError([str(path)])
        return path

    candidates = config_search_paths(environ)
    for path in candidates:
        if path.is_file():
            return path

    logger.debug("No config file found in any location")
    raise ConfigNotFoundError([str(p) for p in candidates])


def load_document(
    config_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ConfigurationDocument:
    """Load the configuration document (see ``ConfigurationDocument.load``)."""
    return ConfigurationDocument.load(config_file, environ=environ)


def list_profiles(document: ConfigurationDocument) -> list[ProfileSummary]:
    """Summarize profiles in a document. Single-profile documents yield one unnamed row."""
    if not document.is_multi_profile:
        return [
            ProfileSummary(
                name="",
                connection_name=document.data.get("connectionName"),
                extends=None,
                is_default=True,
            )
        ]

    default = document.default_profile
    return [
        ProfileSummary(
            name=name,
            connection_name=(profile or {}).get("connectionName"),
            extends=(profile or {}).get("extends"),
            is_default=name == default,
            is_base=name.startswith("_"),
        )
        for name, profile in document.profiles.items()
    ]


TEMPLATE: dict[str, Any] = {
    "defaultProfile": "production",
    "profiles": {
        "_base": {
            "authFlow": "azure_cli",
            "tenantId": "${BCTB_TENANT_ID}",
            "kustoClusterUrl": "https://ade.applicationinsights.io/subscriptions/<subscription-id>",
        },
        "production": {
            "extends": "_base",
            "connectionName": "Production",
            "applicationInsightsAppId": "<app-insights-app-id>",
        },
    },
    "cache": {"enabled": True, "ttlSeconds": 3600},
    "sanitize": {"removePII": False},
    "references": [],
}


def write_template(path: str | Path = CONFIG_FILE_NAME) -> Path:
    """Write a starter multi-profile config. Refuses to overwrite."""
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"File already exists: {path}")
    path.write_text(json.dumps(TEMPLATE, indent=2) + "\n", encoding="utf-8")
    return path
