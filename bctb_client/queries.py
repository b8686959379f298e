"""
Saved query library: ``.kql`` files under the profile's queries folder.

Each file starts with ``//`` header comments followed by the query text::

    // Query: Failed job queue entries
    // Purpose: Find job queue entries that errored
    // Use case: Morning health check
    // Created: 2024-01-15
    // Tags: jobs, errors

    traces
    | where message has "Job queue entry" and severityLevel >= 3

The first subfolder below the queries folder is the query's category.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from .errors import QueryLibraryError

if TYPE_CHECKING:
    from .profiles import ResolvedProfile

logger = logging.getLogger(__name__)

ROOT_CATEGORY = "Root"

_HEADERS = {
    "Query:": "name",
    "Purpose:": "purpose",
    "Use case:": "use_case",
    "Created:": "created",
    "Tags:": "tags",
}

# Relevance of a term found in each field
SEARCH_WEIGHTS = {
    "name": 10,
    "tags": 8,
    "file_name": 7,
    "purpose": 5,
    "use_case": 5,
    "kql": 3,
}


@dataclass
class SavedQuery:
    """A parsed ``.kql`` file."""
    name: str
    kql: str
    file_path: Path
    category: str = ROOT_CATEGORY
    purpose: str = ""
    use_case: str = ""
    created: str = ""
    tags: list[str] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return self.file_path.name

    def score(self, terms: Iterable[str]) -> int:
        """Case-insensitive relevance of ``terms`` to this query."""
        fields = {
            "name": self.name.lower(),
            "file_name": self.file_name.lower(),
            "purpose": self.purpose.lower(),
            "use_case": self.use_case.lower(),
            "kql": self.kql.lower(),
        }
        tags = [tag.lower() for tag in self.tags]
        total = 0
        for term in terms:
            term = term.lower()
            if not term:
                continue
            total += sum(SEARCH_WEIGHTS[key] for key, text in fields.items() if term in text)
            if any(term in tag for tag in tags):
                total += SEARCH_WEIGHTS["tags"]
        return total


def parse_query_text(text: str, file_path: Path, category: str = ROOT_CATEGORY) -> SavedQuery | None:
    """Split header comments from the query body. Returns None when the body is empty."""
    lines = text.splitlines()
    values: dict[str, str] = {}
    body_start = len(lines)

    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped.startswith("//"):
            body_start = index
            break
        comment = stripped[2:].strip()
        for prefix, key in _HEADERS.items():
            if comment.startswith(prefix):
                values[key] = comment[len(prefix):].strip()
                break

    kql = "\n".join(lines[body_start:]).strip()
    if not kql:
        return None

    tags = [tag.strip() for tag in values.get("tags", "").split(",") if tag.strip()]
    return SavedQuery(
        name=values.get("name") or file_path.name,
        kql=kql,
        file_path=file_path,
        category=category,
        purpose=values.get("purpose", ""),
        use_case=values.get("use_case", ""),
        created=values.get("created", ""),
        tags=tags,
    )


def query_file_name(name: str) -> str:
    """File name for a query title: letters, digits, spaces and dashes only."""
    cleaned = re.sub(r"[^a-z0-9\s-]", "", name, flags=re.IGNORECASE).strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    if not cleaned:
        raise QueryLibraryError(f"Query name {name!r} has no usable characters for a file name")
    return f"{cleaned}.kql"


class QueryLibrary:
    """
    Save, list and search ``.kql`` files below ``root``.

    The folder is created on the first ``save`` only; listing a missing folder
    returns nothing.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    @classmethod
    def for_profile(cls, profile: ResolvedProfile) -> QueryLibrary:
        return cls(Path(profile.workspace_path) / profile.queries_folder)

    def _category_of(self, path: Path) -> str:
        parts = path.relative_to(self.root).parts
        return parts[0] if len(parts) > 1 else ROOT_CATEGORY

    def list_queries(self) -> list[SavedQuery]:
        """Every parseable ``.kql`` file, in path order."""
        if not self.root.is_dir():
            return []

        queries = []
        for path in sorted(self.root.rglob("*.kql")):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable query file {path}: {e}")
                continue
            query = parse_query_text(text, path, self._category_of(path))
            if query is None:
                logger.warning(f"No query text found in {path}")
                continue
            queries.append(query)
        logger.debug(f"Loaded {len(queries)} saved queries from {self.root}")
        return queries

    def search(self, terms: Iterable[str]) -> list[SavedQuery]:
        """Queries matching any term, most relevant first."""
        terms = list(terms)
        scored = [(query.score(terms), query) for query in self.list_queries()]
        ranked = sorted((pair for pair in scored if pair[0] > 0), key=lambda pair: pair[0], reverse=True)
        return [query for _, query in ranked]

    def categories(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def save(
        self,
        name: str,
        kql: str,
        purpose: str | None = None,
        use_case: str | None = None,
        tags: Iterable[str] | None = None,
        category: str | None = None,
    ) -> Path:
        """
        Write a query with its header comments. An existing file of the same
        name is replaced.

        Returns:
            Path of the written file
        """
        if not kql.strip():
            raise QueryLibraryError("Cannot save an empty query")
        file_name = query_file_name(name)

        target_dir = self.root
        category = (category or "").strip()
        if category:
            if category in (".", "..") or re.search(r"[\\/]", category):
                raise QueryLibraryError(f"Invalid category name: {category!r}")
            target_dir = self.root / category

        if not target_dir.is_dir():
            target_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created queries folder: {target_dir}")

        lines = [f"// Query: {name}"]
        if category:
            lines.append(f"// Category: {category}")
        if purpose:
            lines.append(f"// Purpose: {purpose}")
        if use_case:
            lines.append(f"// Use case: {use_case}")
        lines.append(f"// Created: {datetime.now(timezone.utc).date().isoformat()}")
        tag_list = [tag.strip() for tag in (tags or []) if tag.strip()]
        if tag_list:
            lines.append(f"// Tags: {', '.join(tag_list)}")
        lines.append("")
        lines.append(kql.strip())

        path = target_dir / file_name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info(f"Saved query '{name}' to {path}")
        return path
