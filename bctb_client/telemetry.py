"""
Usage telemetry: sinks and the rate-limited gate in front of them.

This tracks use of the client itself (queries run, auth attempts, errors),
not the telemetry data being queried.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from .config import RateLimitConfig, TelemetryConfig
from .errors import TelemetryError
from .telemetry_utils import create_error_properties, error_signature, generate_guid

logger = logging.getLogger(__name__)

THROTTLED_EVENT = "UsageTelemetry.ErrorThrottled"

Properties = dict[str, Any]


class Events:
    """Usage event names emitted by this package."""
    AUTH_ATTEMPT = "Auth.Attempt"
    AUTH_COMPLETED = "Auth.Completed"
    AUTH_FAILED = "Auth.Failed"
    QUERY_DEPENDENCY = "Kusto.Query"
    CACHE_CLEARED = "Cache.Cleared"
    QUERY_SAVED = "Queries.Saved"
    COMMAND_COMPLETED = "Cli.CommandCompleted"
    COMMAND_FAILED = "Cli.CommandFailed"


class UsageTelemetry(ABC):
    """Interface every usage telemetry sink implements."""

    @abstractmethod
    def track_event(
        self,
        name: str,
        properties: Properties | None = None,
        measurements: dict[str, float] | None = None,
    ) -> None:
        """Track a custom event (command invocation, tool usage)."""
        ...

    @abstractmethod
    def track_dependency(
        self,
        name: str,
        data: str,
        duration_ms: float,
        success: bool,
        result_code: str | None = None,
        properties: Properties | None = None,
    ) -> None:
        """Track a call to an external dependency (query API, auth endpoint)."""
        ...

    @abstractmethod
    def track_exception(self, error: BaseException, properties: Properties | None = None) -> None:
        ...

    @abstractmethod
    def track_trace(self, message: str, properties: Properties | None = None) -> None:
        ...

    def flush(self) -> None:
        """Send anything buffered. Default sinks have nothing to flush."""
        return None


class NoOpUsageTelemetry(UsageTelemetry):
    """Used when telemetry is disabled."""

    def track_event(self, name, properties=None, measurements=None) -> None:
        pass

    def track_dependency(self, name, data, duration_ms, success, result_code=None, properties=None) -> None:
        pass

    def track_exception(self, error, properties=None) -> None:
        pass

    def track_trace(self, message, properties=None) -> None:
        pass


class LoggingUsageTelemetry(UsageTelemetry):
    """Writes usage telemetry to a logger instead of a backend."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.DEBUG):
        self._log = log or logging.getLogger("bctb_client.usage")
        self._level = level

    def track_event(self, name, properties=None, measurements=None) -> None:
        self._log.log(self._level, f"event {name} properties={properties or {}} measurements={measurements or {}}")

    def track_dependency(self, name, data, duration_ms, success, result_code=None, properties=None) -> None:
        self._log.log(
            self._level,
            f"dependency {name} success={success} code={result_code} "
            f"duration={duration_ms:.1f}ms properties={properties or {}}",
        )

    def track_exception(self, error, properties=None) -> None:
        self._log.log(self._level, f"exception {type(error).__name__} properties={properties or {}}")

    def track_trace(self, message, properties=None) -> None:
        self._log.log(self._level, f"trace {message} properties={properties or {}}")


def parse_connection_string(connection_string: str) -> dict[str, str]:
    """Split ``Key=Value;Key=Value`` into a dict."""
    parts: dict[str, str] = {}
    for segment in connection_string.split(";"):
        if "=" not in segment:
            continue
        key, value = segment.split("=", 1)
        parts[key.strip()] = value.strip()
    return parts


def _format_duration(duration_ms: float) -> str:
    total_ms = max(int(duration_ms), 0)
    seconds, ms = divmod(total_ms, 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    return f"{days}.{hours:02d}:{minutes:02d}:{seconds:02d}.{ms:03d}"


def _stringify(properties: Properties | None) -> dict[str, str]:
    return {k: str(v) for k, v in (properties or {}).items()}


class AppInsightsUsageTelemetry(UsageTelemetry):
    """
    Sends usage telemetry to Application Insights' ingestion endpoint.

    Envelopes are buffered and posted in batches of ``batch_size`` (and on
    ``flush``). Failures raise ``TelemetryError``; wrap this sink in
    ``RateLimitedUsageTelemetry`` so they never reach callers.
    """

    DEFAULT_ENDPOINT = "https://dc.services.visualstudio.com"

    def __init__(
        self,
        connection_string: str,
        common_properties: Properties | None = None,
        batch_size: int = 25,
        timeout: float = 5.0,
    ):
        parts = parse_connection_string(connection_string)
        self.instrumentation_key = parts.get("InstrumentationKey", "")
        if not self.instrumentation_key:
            raise TelemetryError("Connection string has no InstrumentationKey")
        self.endpoint = parts.get("IngestionEndpoint", self.DEFAULT_ENDPOINT).rstrip("/")
        self.common_properties = _stringify(common_properties)
        self.batch_size = batch_size
        self.timeout = timeout
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def _envelope(self, kind: str, base_type: str, base_data: dict[str, Any]) -> dict[str, Any]:
        properties = dict(self.common_properties)
        properties.update(base_data.get("properties") or {})
        base_data["properties"] = properties
        return {
            "name": f"Microsoft.ApplicationInsights.{kind}",
            "time": datetime.now(timezone.utc).isoformat(),
            "iKey": self.instrumentation_key,
            "tags": {"ai.cloud.role": "bctb-client"},
            "data": {"baseType": base_type, "baseData": base_data},
        }

    def _enqueue(self, envelope: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(envelope)
            full = len(self._buffer) >= self.batch_size
        if full:
            self.flush()

    def track_event(self, name, properties=None, measurements=None) -> None:
        self._enqueue(self._envelope("Event", "EventData", {
            "ver": 2,
            "name": name,
            "properties": _stringify(properties),
            "measurements": dict(measurements or {}),
        }))

    def track_dependency(self, name, data, duration_ms, success, result_code=None, properties=None) -> None:
        self._enqueue(self._envelope("RemoteDependency", "RemoteDependencyData", {
            "ver": 2,
            "id": generate_guid(),
            "name": name,
            "data": data,
            "duration": _format_duration(duration_ms),
            "resultCode": result_code or ("200" if success else "500"),
            "success": success,
            "type": "HTTP",
            "properties": _stringify(properties),
        }))

    def track_exception(self, error, properties=None) -> None:
        props = _stringify(properties)
        self._enqueue(self._envelope("Exception", "ExceptionData", {
            "ver": 2,
            "exceptions": [{
                "typeName": type(error).__name__,
                "message": props.get("errorMessage", type(error).__name__),
                "hasFullStack": False,
            }],
            "properties": props,
        }))

    def track_trace(self, message, properties=None) -> None:
        self._enqueue(self._envelope("Message", "MessageData", {
            "ver": 2,
            "message": message,
            "properties": _stringify(properties),
        }))

    def flush(self) -> None:
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.endpoint}/v2/track", json=batch)
        except httpx.HTTPError as e:
            raise TelemetryError(f"Failed to send usage telemetry: {e}") from e

        if response.status_code >= 400:
            raise TelemetryError(f"Usage telemetry rejected (status {response.status_code})")


@dataclass
class RateLimitedUsageTelemetry(UsageTelemetry):
    """
    Rate-limited wrapper around a usage telemetry sink.

    Limits:
    - max_events_per_session: total events tracked by this instance
    - max_events_per_minute: sliding one-minute window, bucketed per second
    - max_identical_errors: occurrences of one exception signature before it
      is throttled for error_cooldown_ms; throttling emits one marker event

    Dropped calls are silent. Errors raised by the inner sink are logged and
    swallowed; tracking never fails the caller's operation.
    """
    inner: UsageTelemetry = field(default_factory=NoOpUsageTelemetry)
    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    enabled: bool = True
    repo_root: str | None = None
    clock: Callable[[], float] = time.monotonic

    _session_count: int = field(default=0, init=False)
    _dropped_count: int = field(default=0, init=False)
    _window: deque = field(default_factory=deque, init=False, repr=False)
    _error_counts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _throttled: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def session_count(self) -> int:
        return self._session_count

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    def _prune_window(self, now: float) -> None:
        cutoff = now - 60.0
        while self._window and self._window[0][0] <= cutoff:
            self._window.popleft()

    def _has_capacity(self, now: float) -> bool:
        if self._session_count >= self.config.max_events_per_session:
            return False
        self._prune_window(now)
        recent = sum(count for _, count in self._window)
        return recent < self.config.max_events_per_minute

    def _record(self, now: float) -> None:
        self._session_count += 1
        bucket = int(now)
        if self._window and self._window[-1][0] == bucket:
            self._window[-1][1] += 1
        else:
            self._window.append([bucket, 1])

    def _admit(self) -> bool:
        """Reserve a slot under the global caps."""
        with self._lock:
            now = self.clock()
            if not self._has_capacity(now):
                self._dropped_count += 1
                return False
            self._record(now)
            return True

    def _safely(self, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            logger.debug(f"Usage telemetry sink failed: {type(e).__name__}: {e}")

    def track_event(self, name, properties=None, measurements=None) -> None:
        if not self.enabled or not self._admit():
            return
        self._safely(lambda: self.inner.track_event(name, properties, measurements))

    def track_dependency(self, name, data, duration_ms, success, result_code=None, properties=None) -> None:
        if not self.enabled or not self._admit():
            return
        self._safely(lambda: self.inner.track_dependency(
            name, data, duration_ms, success, result_code, properties
        ))

    def track_trace(self, message, properties=None) -> None:
        if not self.enabled or not self._admit():
            return
        self._safely(lambda: self.inner.track_trace(message, properties))

    def track_exception(self, error, properties=None) -> None:
        if not self.enabled:
            return

        try:
            signature = error_signature(error, self.repo_root)
            error_props = create_error_properties(error, self.repo_root)
        except Exception as e:
            logger.debug(f"Could not build exception telemetry: {e}")
            return
        error_props.update(_stringify(properties))

        with self._lock:
            now = self.clock()
            throttled_at = self._throttled.get(signature)
            if throttled_at is not None:
                if (now - throttled_at) * 1000 < self.config.error_cooldown_ms:
                    self._dropped_count += 1
                    return
                # Cooldown over: start counting this signature from zero again
                del self._throttled[signature]
                self._error_counts.pop(signature, None)

            count = self._error_counts.get(signature, 0)
            if count < self.config.max_identical_errors:
                self._error_counts[signature] = count + 1
                if not self._has_capacity(now):
                    self._dropped_count += 1
                    return
                self._record(now)
                marker = None
            else:
                self._throttled[signature] = now
                self._dropped_count += 1
                logger.debug(f"Throttling exception telemetry for {signature} after {count} occurrences")
                if not self._has_capacity(now):
                    return
                self._record(now)
                marker = {
                    "errorType": type(error).__name__,
                    "errorKey": signature,
                    "occurrences": str(count),
                }

        if marker is None:
            self._safely(lambda: self.inner.track_exception(error, error_props))
        else:
            self._safely(lambda: self.inner.track_event(THROTTLED_EVENT, marker))

    def flush(self) -> None:
        self._safely(self.inner.flush)


def create_usage_telemetry(
    config: TelemetryConfig | None,
    common_properties: Properties | None = None,
    repo_root: str | None = None,
) -> RateLimitedUsageTelemetry:
    """
    Build the gated sink for a telemetry config.

    Disabled or missing config gives a disabled gate. Without a connection
    string events go to the log.
    """
    if config is None or not config.enabled:
        return RateLimitedUsageTelemetry(enabled=False)

    inner: UsageTelemetry
    if config.connection_string:
        try:
            inner = AppInsightsUsageTelemetry(config.connection_string, common_properties)
        except TelemetryError as e:
            logger.warning(f"Usage telemetry disabled: {e}")
            return RateLimitedUsageTelemetry(enabled=False)
    else:
        inner = LoggingUsageTelemetry()

    return RateLimitedUsageTelemetry(
        inner=inner,
        config=config.rate_limiting,
        repo_root=repo_root,
    )


# Module-level default gate, disabled until configured
_default_telemetry: RateLimitedUsageTelemetry | None = None


def get_default_telemetry() -> RateLimitedUsageTelemetry:
    """Get or create the default (initially disabled) gate."""
    global _default_telemetry
    if _default_telemetry is None:
        _default_telemetry = RateLimitedUsageTelemetry(enabled=False)
    return _default_telemetry


def set_default_telemetry(telemetry: RateLimitedUsageTelemetry | None) -> None:
    global _default_telemetry
    _default_telemetry = telemetry
