"""Shared pytest fixtures for bctb_client tests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from bctb_client import auth, client, telemetry
from bctb_client.profiles import AuthFlow, ResolvedProfile
from bctb_client.telemetry import UsageTelemetry


@dataclass
class RecordingTelemetry(UsageTelemetry):
    """Usage telemetry sink that records every call."""

    events: list[tuple[str, dict | None]] = field(default_factory=list)
    dependencies: list[dict[str, Any]] = field(default_factory=list)
    exceptions: list[tuple[BaseException, dict | None]] = field(default_factory=list)
    traces: list[str] = field(default_factory=list)
    flushes: int = 0

    def track_event(self, name, properties=None, measurements=None) -> None:
        self.events.append((name, properties))

    def track_dependency(self, name, data, duration_ms, success, result_code=None, properties=None) -> None:
        self.dependencies.append({
            "name": name,
            "data": data,
            "duration_ms": duration_ms,
            "success": success,
            "result_code": result_code,
            "properties": properties or {},
        })

    def track_exception(self, error, properties=None) -> None:
        self.exceptions.append((error, properties))

    def track_trace(self, message, properties=None) -> None:
        self.traces.append(message)

    def flush(self) -> None:
        self.flushes += 1

    @property
    def total(self) -> int:
        return len(self.events) + len(self.dependencies) + len(self.exceptions) + len(self.traces)


class FakeClock:
    """Manually advanced monotonic clock, in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Clear BCTB_* variables, run in a temp cwd and reset module-level state."""
    for name in ("BCTB_PROFILE", "BCTB_WORKSPACE_PATH", "BCTB_ACCESS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("USERPROFILE", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)

    auth.clear_auth_providers()
    telemetry.set_default_telemetry(None)
    client._default_executor = None
    yield
    auth.clear_auth_providers()
    telemetry.set_default_telemetry(None)
    client._default_executor = None


@pytest.fixture
def recording_telemetry():
    return RecordingTelemetry()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_profile(tmp_path):
    """Factory fixture for ResolvedProfile instances rooted in tmp_path."""
    def _factory(**kwargs) -> ResolvedProfile:
        values: dict[str, Any] = {
            "connection_name": "Test",
            "tenant_id": "tenant-1",
            "auth_flow": AuthFlow.AZURE_CLI,
            "app_insights_app_id": "app-prod",
            "kusto_cluster_url": "https://ade.example.com",
            "workspace_path": str(tmp_path / "workspace"),
        }
        values.update(kwargs)
        return ResolvedProfile(**values)
    return _factory


@pytest.fixture
def write_config(tmp_path):
    """Factory fixture writing a config document to disk."""
    def _factory(data: dict, name: str = ".bctb-config.json", directory: Path | None = None) -> Path:
        target = (directory or tmp_path) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return target
    return _factory


@pytest.fixture
def multi_profile_document():
    """Multi-profile document with a shared base profile."""
    return {
        "defaultProfile": "prod",
        "profiles": {
            "_base": {
                "tenantId": "tenant-shared",
                "kustoClusterUrl": "https://ade.example.com",
                "authFlow": "azure_cli",
                "advanced": {"timeout": 30, "retries": 2},
            },
            "prod": {
                "extends": "_base",
                "connectionName": "Production",
                "applicationInsightsAppId": "app-prod",
            },
            "dev": {
                "extends": "_base",
                "connectionName": "Development",
                "applicationInsightsAppId": "app-dev",
                "advanced": {"timeout": 60},
                "cacheTTLSeconds": 60,
            },
        },
        "cache": {"enabled": True, "ttlSeconds": 1800},
        "sanitize": {"removePII": True},
    }
