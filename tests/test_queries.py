"""Tests for the saved query library."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from bctb_client.errors import QueryLibraryError
from bctb_client.queries import (
    ROOT_CATEGORY,
    QueryLibrary,
    SavedQuery,
    parse_query_text,
    query_file_name,
)

FAILED_JOBS = """// Query: Failed job queue entries
// Purpose: Find job queue entries that errored
// Use case: Morning health check
// Created: 2024-01-15
// Tags: jobs, errors ,

traces
| where message has "Job queue entry" and severityLevel >= 3
"""


@pytest.fixture
def library(tmp_path):
    return QueryLibrary(tmp_path / "queries")


def write_kql(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestParseQueryText:
    def test_headers_and_body(self):
        query = parse_query_text(FAILED_JOBS, Path("failed.kql"), "Monitoring")

        assert query.name == "Failed job queue entries"
        assert query.purpose == "Find job queue entries that errored"
        assert query.use_case == "Morning health check"
        assert query.created == "2024-01-15"
        assert query.tags == ["jobs", "errors"]
        assert query.category == "Monitoring"
        assert query.kql.startswith("traces\n| where")

    def test_name_defaults_to_file_name(self):
        query = parse_query_text("requests | take 5", Path("top-requests.kql"))

        assert query.name == "top-requests.kql"
        assert query.category == ROOT_CATEGORY
        assert query.tags == []

    def test_comment_only_file_has_no_query(self):
        assert parse_query_text("// Query: Empty\n// Purpose: nothing\n", Path("e.kql")) is None
        assert parse_query_text("", Path("e.kql")) is None


class TestQueryFileName:
    def test_strips_punctuation(self):
        assert query_file_name("  Errors: by   company (24h)!  ") == "Errors by company 24h.kql"

    def test_keeps_dashes(self):
        assert query_file_name("slow-pages") == "slow-pages.kql"

    def test_nothing_usable(self):
        with pytest.raises(QueryLibraryError):
            query_file_name("???")


class TestQueryLibrary:
    """Test listing, categories and saving against a temp folder."""

    def test_missing_folder_is_empty_and_not_created(self, library):
        assert library.list_queries() == []
        assert library.categories() == []
        assert library.search(["errors"]) == []
        assert not library.root.exists()

    def test_lists_recursively_with_categories(self, library):
        write_kql(library.root, "root-query.kql", "traces | take 1")
        write_kql(library.root, "Monitoring/failed.kql", FAILED_JOBS)
        write_kql(library.root, "Monitoring/deep/nested.kql", "requests | take 1")
        write_kql(library.root, "Analysis/empty.kql", "// Query: nothing here\n")
        write_kql(library.root, "Analysis/notes.txt", "not a query")

        queries = library.list_queries()

        by_file = {q.file_name: q for q in queries}
        assert set(by_file) == {"root-query.kql", "failed.kql", "nested.kql"}
        assert by_file["root-query.kql"].category == ROOT_CATEGORY
        assert by_file["failed.kql"].category == "Monitoring"
        assert by_file["nested.kql"].category == "Monitoring"
        assert library.categories() == ["Analysis", "Monitoring"]

    def test_save_writes_headers(self, library):
        path = library.save(
            "Failed jobs",
            "\ntraces | where severityLevel >= 3\n",
            purpose="Errored job queue entries",
            use_case="Triage",
            tags=["jobs", " errors ", ""],
            category="Monitoring",
        )

        assert path == library.root / "Monitoring" / "Failed jobs.kql"
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines[:4] == [
            "// Query: Failed jobs",
            "// Category: Monitoring",
            "// Purpose: Errored job queue entries",
            "// Use case: Triage",
        ]
        assert re.fullmatch(r"// Created: \d{4}-\d{2}-\d{2}", lines[4])
        assert lines[5:] == ["// Tags: jobs, errors", "", "traces | where severityLevel >= 3"]

    def test_saved_query_reads_back(self, library):
        library.save("Slow pages", "pageViews | where duration > 5000", tags=["performance"])

        (query,) = library.list_queries()

        assert query.name == "Slow pages"
        assert query.category == ROOT_CATEGORY
        assert query.tags == ["performance"]
        assert query.kql == "pageViews | where duration > 5000"

    def test_save_replaces_existing(self, library):
        library.save("Top", "traces | take 1")
        library.save("Top", "traces | take 2")

        (query,) = library.list_queries()
        assert query.kql == "traces | take 2"

    def test_save_rejects_empty_query(self, library):
        with pytest.raises(QueryLibraryError, match="empty"):
            library.save("Nothing", "   ")
        assert not library.root.exists()

    @pytest.mark.parametrize("category", ["..", "a/b", "a\\b"])
    def test_save_rejects_path_categories(self, library, category):
        with pytest.raises(QueryLibraryError, match="Invalid category"):
            library.save("Escape", "traces", category=category)

    def test_for_profile(self, make_profile, tmp_path):
        library = QueryLibrary.for_profile(make_profile(queries_folder="kql"))
        assert library.root == tmp_path / "workspace" / "kql"


class TestSearch:
    """Test weighted, case-insensitive search."""

    def _query(self, **kwargs) -> SavedQuery:
        values = {"name": "q", "kql": "print 1", "file_path": Path("q.kql")}
        values.update(kwargs)
        return SavedQuery(**values)

    def test_field_weights(self):
        assert self._query(name="Errors by company").score(["ERRORS"]) == 10
        assert self._query(tags=["Errors"]).score(["errors"]) == 8
        assert self._query(file_path=Path("errors.kql")).score(["errors"]) == 7
        assert self._query(purpose="find errors").score(["errors"]) == 5
        assert self._query(use_case="errors triage").score(["errors"]) == 5
        assert self._query(kql="traces | where message has 'errors'").score(["errors"]) == 3

    def test_terms_accumulate(self):
        query = self._query(name="Job errors", tags=["jobs"])
        assert query.score(["job", "errors"]) == 10 + 8 + 10
        assert query.score(["", "unrelated"]) == 0

    def test_ranked_by_score(self, library):
        library.save("Page views", "pageViews | where url has 'errors'")
        library.save("Errors by company", "traces | summarize count() by company")
        library.save("Job queue", "traces | take 5", tags=["errors"])
        library.save("Unrelated", "requests | take 5")

        names = [q.name for q in library.search(["errors"])]

        assert names == ["Errors by company", "Job queue", "Page views"]
