"""
Mock telemetry backend for testing without network access.

Serves the query API (``/v1/apps/{appId}/query``) and the usage telemetry
ingestion endpoint (``/v2/track``) through an httpx MockTransport.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable
from unittest.mock import patch

import httpx


def make_table(columns: list[str], rows: list[list[Any]], name: str = "PrimaryResult") -> dict:
    """Build one table in the shape the query API returns."""
    return {
        "name": name,
        "columns": [{"name": col, "type": "string"} for col in columns],
        "rows": rows,
    }


@dataclass
class MockQueryBackend:
    """
    Mock the query API and ingestion endpoint HTTP layer.

    Usage in tests:
        backend = MockQueryBackend()
        backend.add_result("app-1", ["name", "count"], [["a", 1]])

        with backend.patch_httpx():
            result = QueryExecutor().execute(profile, "traces", "token")
    """

    results: dict[str, dict] = field(default_factory=dict)
    failures: dict[str, tuple[int, dict | str]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)

    # (method, url, json body, authorization header)
    call_log: list[tuple[str, str, Any, str | None]] = field(default_factory=list)
    ingested: list[dict] = field(default_factory=list)
    ingest_status: int = 200

    custom_handlers: dict[str, Callable[[httpx.Request], httpx.Response]] = field(
        default_factory=dict
    )

    def add_result(self, app_id: str, columns: list[str], rows: list[list[Any]]) -> None:
        """Register a single-table response for an application id."""
        self.results[app_id] = {"tables": [make_table(columns, rows)]}

    def add_raw_result(self, app_id: str, payload: dict) -> None:
        self.results[app_id] = payload

    def add_failure(self, app_id: str, status_code: int, body: dict | str) -> None:
        """Make queries for ``app_id`` fail with the given status and body."""
        self.failures[app_id] = (status_code, body)

    def add_error(self, app_id: str, error: Exception) -> None:
        """Make queries for ``app_id`` raise a transport-level exception."""
        self.errors[app_id] = error

    def add_custom_handler(
        self, pattern: str, handler: Callable[[httpx.Request], httpx.Response]
    ) -> None:
        """Add a custom handler for a URL path pattern (regex)."""
        self.custom_handlers[pattern] = handler

    def _handle_request(self, request: httpx.Request) -> httpx.Response:
        path = str(request.url.path)
        body = json.loads(request.content) if request.content else None
        self.call_log.append(
            (request.method, str(request.url), body, request.headers.get("Authorization"))
        )

        for pattern, handler in self.custom_handlers.items():
            if re.match(pattern, path):
                return handler(request)

        if match := re.match(r"/v1/apps/([^/]+)/query$", path):
            app_id = match.group(1)
            if app_id in self.errors:
                raise self.errors[app_id]
            if app_id in self.failures:
                status, payload = self.failures[app_id]
                if isinstance(payload, str):
                    return httpx.Response(status, text=payload)
                return httpx.Response(status, json=payload)
            if app_id in self.results:
                return httpx.Response(200, json=self.results[app_id])
            return httpx.Response(404, json={"error": {"message": f"Application not found: {app_id}"}})

        if path == "/v2/track":
            self.ingested.extend(body or [])
            return httpx.Response(self.ingest_status, json={"itemsAccepted": len(body or [])})

        return httpx.Response(404, json={"error": {"message": f"Unknown endpoint: {path}"}})

    def get_transport(self) -> httpx.MockTransport:
        """Get httpx MockTransport for use with httpx.Client."""
        return httpx.MockTransport(self._handle_request)

    def patch_httpx(self):
        """
        Context manager to patch httpx.Client to use the mock transport.

        Usage:
            with backend.patch_httpx():
                executor.execute(profile, "traces | take 1", "token")
        """
        transport = self.get_transport()

        original_init = httpx.Client.__init__

        def patched_init(self_client, *args, **kwargs):
            kwargs["transport"] = transport
            original_init(self_client, *args, **kwargs)

        return patch.object(httpx.Client, "__init__", patched_init)

    def get_calls(self, endpoint: str | None = None) -> list[tuple[str, str, Any, str | None]]:
        """Logged calls, optionally filtered by a URL substring."""
        if endpoint is None:
            return self.call_log
        return [call for call in self.call_log if endpoint in call[1]]

    def clear_calls(self) -> None:
        self.call_log.clear()


def create_backend_with_traces(app_id: str = "app-prod") -> MockQueryBackend:
    """Backend with a small traces result for ``app_id``."""
    backend = MockQueryBackend()
    backend.add_result(
        app_id,
        ["timestamp", "message", "severityLevel"],
        [
            ["2024-01-15T10:00:00Z", "Job queue entry started", 1],
            ["2024-01-15T10:00:05Z", "Job queue entry finished", 1],
            ["2024-01-15T10:01:00Z", "Posting failed", 3],
        ],
    )
    return backend
