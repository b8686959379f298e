"""Tests for the bctb command line interface."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from bctb_client.cli import build_parser, main

from tests.fixtures.mock_backend import create_backend_with_traces


@pytest.fixture(autouse=True)
def no_colorama_wrapping():
    """Keep colorama from wrapping the captured stdout/stderr streams."""
    with patch("bctb_client.cli.colorama_init"):
        yield


@pytest.fixture
def host_profile_config(write_config, monkeypatch):
    """Config whose default profile uses a host-provided token."""
    monkeypatch.setenv("BCTB_ACCESS_TOKEN", "cli-token")
    return write_config({
        "defaultProfile": "prod",
        "profiles": {
            "_base": {"authFlow": "vscode_auth", "kustoClusterUrl": "https://ade.example.com"},
            "prod": {
                "extends": "_base",
                "connectionName": "Production",
                "applicationInsightsAppId": "app-prod",
            },
            "dev": {"extends": "_base", "connectionName": "Development"},
        },
    })


class TestInit:
    def test_creates_template(self, tmp_path, capsys):
        assert main(["init"]) == 0

        assert (tmp_path / ".bctb-config.json").is_file()
        assert "Created config template" in capsys.readouterr().out

    def test_refuses_existing_file(self, tmp_path, capsys):
        target = tmp_path / "custom.json"
        target.write_text("{}", encoding="utf-8")

        assert main(["init", "-o", str(target)]) == 1
        assert "already exists" in capsys.readouterr().err


class TestValidate:
    def test_valid_profile(self, host_profile_config, capsys):
        assert main(["validate"]) == 0

        out = capsys.readouterr().out
        assert "Configuration is valid" in out
        assert "Connection: Production" in out
        assert "Auth flow: vscode_auth" in out

    def test_invalid_profile(self, host_profile_config, capsys):
        assert main(["validate", "-p", "dev"]) == 1

        captured = capsys.readouterr()
        assert "applicationInsightsAppId is required" in captured.out

    def test_missing_config(self, capsys):
        assert main(["validate"]) == 1
        assert "No configuration file found" in capsys.readouterr().err

    def test_circular_profiles(self, write_config, capsys):
        write_config({"profiles": {"a": {"extends": "b"}, "b": {"extends": "a"}}})

        assert main(["validate", "-p", "a"]) == 1
        assert "a -> b -> a" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "extra,fragment",
        [
            ({"sanitize": "yes"}, "'sanitize' must be a JSON object"),
            ({"cache": True}, "'cache' must be a JSON object"),
            ({"telemetry": {"enabled": True, "rateLimiting": {"maxEventsPerMinute": "x"}}},
             "maxEventsPerMinute"),
        ],
    )
    def test_malformed_section_reported(self, write_config, capsys, extra, fragment):
        write_config({"profiles": {"p": {"applicationInsightsAppId": "app"}}, **extra})

        assert main(["validate"]) == 1
        assert fragment in capsys.readouterr().err

    def test_explicit_config_path(self, write_config, tmp_path, capsys):
        path = write_config(
            {"connectionName": "Legacy", "applicationInsightsAppId": "x", "kustoClusterUrl": "y"},
            name="legacy.json",
            directory=tmp_path / "configs",
        )

        assert main(["validate", "-c", str(path)]) == 0
        assert "Connection: Legacy" in capsys.readouterr().out


class TestListProfiles:
    def test_lists_profiles(self, host_profile_config, capsys):
        assert main(["list-profiles"]) == 0

        out = capsys.readouterr().out
        assert "_base" in out
        assert "Extends: _base" in out
        assert "Default profile: prod" in out

    def test_single_profile_mode(self, write_config, capsys):
        write_config({"connectionName": "Legacy"})

        assert main(["list-profiles"]) == 0
        assert "single config mode" in capsys.readouterr().out


class TestTestAuth:
    def test_success(self, host_profile_config, capsys):
        assert main(["test-auth"]) == 0

        out = capsys.readouterr().out
        assert "Authentication successful" in out
        assert "Expires:" in out

    def test_failure_shows_remediation(self, host_profile_config, monkeypatch, capsys):
        monkeypatch.delenv("BCTB_ACCESS_TOKEN")

        assert main(["test-auth"]) == 1
        assert "BCTB_ACCESS_TOKEN" in capsys.readouterr().err


class TestQuery:
    def test_prints_table(self, host_profile_config, capsys):
        backend = create_backend_with_traces("app-prod")

        with backend.patch_httpx():
            assert main(["query", "traces | take 3"]) == 0

        out = capsys.readouterr().out
        assert "Posting failed" in out
        assert "Returned 3 row(s) with 3 column(s)" in out
        assert backend.call_log[0][3] == "Bearer cli-token"

    def test_json_output_and_cache(self, host_profile_config, capsys):
        backend = create_backend_with_traces("app-prod")

        with backend.patch_httpx():
            assert main(["query", "traces", "--json", "--limit", "3"]) == 0
            first = json.loads(capsys.readouterr().out)
            assert main(["query", "traces", "--json", "--limit", "3"]) == 0
            second = json.loads(capsys.readouterr().out)

        assert first["cached"] is False
        assert second["cached"] is True
        assert second["rows"] == first["rows"]
        assert len(backend.call_log) == 1
        assert backend.call_log[0][2]["query"] == "traces\n| take 3"

    def test_query_from_file(self, host_profile_config, tmp_path, capsys):
        query_file = tmp_path / "errors.kql"
        query_file.write_text("traces | where severityLevel > 2", encoding="utf-8")
        backend = create_backend_with_traces("app-prod")

        with backend.patch_httpx():
            assert main(["query", "--file", str(query_file)]) == 0

        assert backend.call_log[0][2]["query"] == "traces | where severityLevel > 2"

    def test_backend_error(self, host_profile_config, capsys):
        backend = create_backend_with_traces("app-prod")
        backend.add_failure("app-prod", 400, {"error": {"message": "Syntax error"}})

        with backend.patch_httpx():
            assert main(["query", "traces |"]) == 1

        assert "Invalid query: Syntax error" in capsys.readouterr().err

    def test_requires_query_text(self):
        with pytest.raises(SystemExit):
            main(["query"])


class TestCache:
    def test_stats_clear_cleanup(self, host_profile_config, capsys):
        backend = create_backend_with_traces("app-prod")
        with backend.patch_httpx():
            main(["query", "traces"])
        capsys.readouterr()

        assert main(["cache", "stats"]) == 0
        assert "Entries: 1 (0 expired)" in capsys.readouterr().out

        assert main(["cache", "cleanup"]) == 0
        assert "Removed 0 expired" in capsys.readouterr().out

        assert main(["cache", "clear"]) == 0
        assert "Cleared 1 cache entries" in capsys.readouterr().out


class TestQueries:
    def test_save_list_search(self, host_profile_config, tmp_path, capsys):
        assert main([
            "queries", "save", "Failed jobs", "traces | where severityLevel >= 3",
            "--purpose", "Errored job queue entries", "--tags", "jobs,errors", "--category", "Monitoring",
        ]) == 0
        assert (tmp_path / "queries" / "Monitoring" / "Failed jobs.kql").is_file()
        assert "Saved query" in capsys.readouterr().out

        assert main(["queries", "list"]) == 0
        out = capsys.readouterr().out
        assert "Failed jobs" in out
        assert "[Monitoring]" in out
        assert "Tags: jobs, errors" in out

        assert main(["queries", "search", "ERRORED"]) == 0
        assert "Matching queries (1)" in capsys.readouterr().out

        assert main(["queries", "search", "nothing-like-this"]) == 0
        assert "Matching queries (0)" in capsys.readouterr().out

        assert main(["queries", "categories"]) == 0
        assert "Monitoring" in capsys.readouterr().out

    def test_save_from_file_to_custom_folder(self, write_config, tmp_path, capsys):
        write_config({"queriesFolder": "kql", "applicationInsightsAppId": "app"})
        source = tmp_path / "draft.kql"
        source.write_text("requests | take 3\n", encoding="utf-8")

        assert main(["queries", "save", "Top requests", "-f", str(source)]) == 0

        saved = (tmp_path / "kql" / "Top requests.kql").read_text(encoding="utf-8")
        assert saved.endswith("\nrequests | take 3\n")

    def test_save_rejects_unusable_name(self, host_profile_config, capsys):
        assert main(["queries", "save", "???", "traces"]) == 1
        assert "no usable characters" in capsys.readouterr().err

    def test_save_requires_query_text(self):
        with pytest.raises(SystemExit):
            main(["queries", "save", "Name"])

    def test_external_without_references(self, host_profile_config, capsys):
        assert main(["queries", "external"]) == 0
        assert "External queries (0)" in capsys.readouterr().out

    def test_list_filters_by_category(self, host_profile_config, capsys):
        main(["queries", "save", "One", "traces", "--category", "A"])
        main(["queries", "save", "Two", "traces", "--category", "B"])
        capsys.readouterr()

        assert main(["queries", "list", "--category", "B", "-p", "prod"]) == 0
        out = capsys.readouterr().out
        assert "Two" in out
        assert "One" not in out


class TestParser:
    def test_common_options_on_every_command(self):
        args = build_parser().parse_args(["cache", "stats", "-p", "dev", "-c", "x.json", "-vv"])

        assert args.profile == "dev"
        assert args.config == "x.json"
        assert args.verbose == 2
        assert args.action == "stats"
