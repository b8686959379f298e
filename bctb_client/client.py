"""Query execution against the Application Insights query API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from .cache import QueryCache, fingerprint
from .errors import (
    AuthenticationError,
    ConfigError,
    InvalidQueryError,
    QueryError,
    QueryErrorKind,
    RateLimitExceededError,
    TransportError,
    UnknownQueryError,
)
from .sanitize import sanitize_object
from .telemetry import Events, get_default_telemetry
from .telemetry_utils import sanitize_error_message

if TYPE_CHECKING:
    from .profiles import ResolvedProfile
    from .telemetry import UsageTelemetry

logger = logging.getLogger(__name__)

API_BASE = "https://api.applicationinsights.io"

DANGEROUS_COMMANDS = (".drop", ".delete", ".clear", ".set-or-replace")


@dataclass
class QueryResult:
    """First result table, flattened for display."""
    columns: list[str]
    rows: list[list[Any]]
    summary: str
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"columns": self.columns, "rows": self.rows, "summary": self.summary}

    @classmethod
    def from_dict(cls, data: dict[str, Any], cached: bool = False) -> QueryResult:
        return cls(
            columns=list(data.get("columns", [])),
            rows=list(data.get("rows", [])),
            summary=data.get("summary", ""),
            cached=cached,
        )

    def records(self) -> list[dict[str, Any]]:
        """Rows as dicts keyed by column name."""
        return [dict(zip(self.columns, row)) for row in self.rows]


def validate_query(query: str) -> list[str]:
    """
    Basic safety checks before a query is sent.

    Returns a list of problems (empty when the query may run). Only catches
    empty queries and management commands; it does not parse KQL.
    """
    if not query or not query.strip():
        return ["Query cannot be empty"]

    lowered = query.lower()
    return [
        f"Query contains potentially dangerous operation: {keyword}"
        for keyword in DANGEROUS_COMMANDS
        if keyword in lowered
    ]


def apply_limit(query: str, limit: int | None) -> str:
    """Append ``| take N`` when a row limit is given."""
    if limit is None:
        return query
    if limit < 0:
        raise InvalidQueryError(f"limit must be zero or positive, got {limit}")
    return f"{query.rstrip().rstrip(';')}\n| take {limit}"


def parse_result(data: dict[str, Any]) -> QueryResult:
    """Normalize an API response to its first (primary) table."""
    tables = data.get("tables") or []
    if not tables:
        return QueryResult(columns=[], rows=[], summary="No results returned")

    primary = tables[0]
    # The v1 API names columns "name"; Kusto-style payloads use "columnName"
    columns = [col.get("name") or col.get("columnName") or "" for col in primary.get("columns", [])]
    rows = [list(row) for row in primary.get("rows", [])]
    return QueryResult(
        columns=columns,
        rows=rows,
        summary=f"Returned {len(rows)} row(s) with {len(columns)} column(s)",
    )


def _error_detail(response: httpx.Response) -> str:
    detail = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code") or ""
    if not detail:
        detail = response.text[:200] or response.reason_phrase or f"HTTP {response.status_code}"
    return sanitize_error_message(detail)


def classify_response(response: httpx.Response) -> QueryError:
    """Map an error status to the matching QueryError."""
    status = response.status_code
    detail = _error_detail(response)
    if status == 400:
        return InvalidQueryError(detail, status_code=status)
    if status in (401, 403):
        return AuthenticationError(detail, status_code=status)
    if status == 429:
        return RateLimitExceededError(detail, status_code=status)
    return UnknownQueryError(detail, status_code=status)


@dataclass
class QueryExecutor:
    """
    Runs queries for resolved profiles, with per-workspace caching.

    Every ``execute`` call reports exactly one dependency through the usage
    telemetry gate, including cache hits and rejected queries. Failed
    requests are classified and raised; nothing is retried.
    """
    cache: QueryCache | None = None
    telemetry: UsageTelemetry | None = None
    timeout: float = 60.0
    api_base: str = API_BASE
    _caches: dict[str, QueryCache] = field(default_factory=dict, init=False, repr=False)

    def _gate(self) -> UsageTelemetry:
        return self.telemetry if self.telemetry is not None else get_default_telemetry()

    def cache_for(self, profile: ResolvedProfile) -> QueryCache:
        """The explicit cache if one was given, otherwise the profile workspace's cache."""
        if self.cache is not None:
            return self.cache
        key = str(profile.cache_dir)
        if key not in self._caches:
            self._caches[key] = QueryCache(profile.cache_dir)
        return self._caches[key]

    def query_url(self, profile: ResolvedProfile) -> str:
        return f"{self.api_base.rstrip('/')}/v1/apps/{profile.app_insights_app_id}/query"

    def execute(
        self,
        profile: ResolvedProfile,
        query: str,
        token: str,
        correlation_id: str | None = None,
        limit: int | None = None,
        query_name: str | None = None,
    ) -> QueryResult:
        """
        Execute a query, consulting the cache first when the profile enables it.

        Args:
            profile: Resolved profile naming the target application
            query: Query text (never logged or reported)
            token: Bearer token for the profile
            correlation_id: Ties this call to the caller's other telemetry
            limit: Optional row limit, appended as ``| take N``
            query_name: Friendly name reported in place of the query text

        Returns:
            QueryResult; ``cached`` is True when served from the cache

        Raises:
            InvalidQueryError, AuthenticationError, RateLimitExceededError,
            TransportError, UnknownQueryError
        """
        start = time.perf_counter()
        url = self.query_url(profile)
        properties = {
            "component": "client",
            "correlationId": correlation_id or "unknown",
            "queryName": query_name or "AdHocQuery",
            "cacheHit": "false",
        }
        success = False
        result_code = "200"

        try:
            result = self._execute(profile, query, token, limit, url)
            success = True
            properties["cacheHit"] = "true" if result.cached else "false"
            return result
        except QueryError as e:
            properties["errorCategory"] = e.kind.value
            result_code = str(e.status_code) if e.status_code else "error"
            raise
        except Exception:
            properties["errorCategory"] = QueryErrorKind.UNKNOWN.value
            result_code = "error"
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self._gate().track_dependency(
                Events.QUERY_DEPENDENCY, url, duration_ms, success, result_code, properties
            )

    def _execute(
        self,
        profile: ResolvedProfile,
        query: str,
        token: str,
        limit: int | None,
        url: str,
    ) -> QueryResult:
        problems = validate_query(query)
        if problems:
            raise InvalidQueryError("; ".join(problems))
        if not profile.app_insights_app_id:
            raise ConfigError("applicationInsightsAppId is required to run queries")

        kql = apply_limit(query, limit)
        cache = self.cache_for(profile) if profile.cache_enabled else None
        key = fingerprint(profile.identity, query, limit)

        if cache is not None:
            entry = cache.get(key)
            if entry is not None:
                result = QueryResult.from_dict(entry.data, cached=True)
                return self._sanitize(profile, result)

        result = self._sanitize(profile, parse_result(self._post(url, kql, token)))

        if cache is not None:
            try:
                cache.set(key, result.to_dict(), profile.cache_ttl_seconds)
            except OSError as e:
                logger.warning(f"Could not write query cache: {e}")

        return result

    @staticmethod
    def _sanitize(profile: ResolvedProfile, result: QueryResult) -> QueryResult:
        if not profile.remove_pii:
            return result
        return QueryResult(
            columns=result.columns,
            rows=sanitize_object(result.rows),
            summary=result.summary,
            cached=result.cached,
        )

    def _post(self, url: str, kql: str, token: str) -> dict[str, Any]:
        logger.info(f"Executing query against: {url}")
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    url,
                    json={"query": kql},
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as e:
            raise TransportError(f"request timed out after {self.timeout:.0f}s", cause=e) from e
        except httpx.HTTPError as e:
            raise TransportError(sanitize_error_message(str(e)) or type(e).__name__, cause=e) from e

        if response.status_code >= 400:
            error = classify_response(response)
            logger.error(f"Query failed ({response.status_code}): {error.detail}")
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise UnknownQueryError(
                "backend returned a response that is not JSON", status_code=response.status_code
            ) from e

        logger.info(f"Query executed successfully, {len(data.get('tables') or [])} table(s) returned")
        return data


# Module-level default executor
_default_executor: QueryExecutor | None = None


def _get_executor() -> QueryExecutor:
    """Get or create the default executor."""
    global _default_executor
    if _default_executor is None:
        _default_executor = QueryExecutor()
    return _default_executor


def run_query(
    profile: ResolvedProfile,
    query: str,
    token: str,
    correlation_id: str | None = None,
    limit: int | None = None,
    query_name: str | None = None,
) -> QueryResult:
    """
    Run a query with the default executor.

    Usage:
        from bctb_client import resolve_profile, get_access_token, run_query
        profile = resolve_profile(None, "production")
        result = run_query(profile, "traces | take 10", get_access_token(profile))
        print(result.summary)
    """
    return _get_executor().execute(
        profile,
        query,
        token,
        correlation_id=correlation_id,
        limit=limit,
        query_name=query_name,
    )
