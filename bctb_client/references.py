"""
External query references: ``.kql`` files published in GitHub repositories.

A profile's ``references`` list names the repositories::

    "references": [
        {"name": "Community samples", "type": "github",
         "url": "https://github.com/owner/repo/tree/main/queries", "enabled": true}
    ]

Fetching uses the unauthenticated GitHub contents API (60 requests an hour),
so results are cached per reference URL and failures are logged and skipped.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import httpx

from .cache import QueryCache
from .config import section_mapping
from .errors import ConfigError

if TYPE_CHECKING:
    from .profiles import ResolvedProfile

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_HEADERS = {
    "Accept": "application/vnd.github.v3+json",
    "User-Agent": "bctb-client",
}
REFERENCE_CACHE_TTL_SECONDS = 3600
DEFAULT_RATE_LIMIT = 60
LOW_RATE_LIMIT_WARNING = 10

_GITHUB_URL = re.compile(r"github\.com/([^/]+)/([^/]+?)(?:\.git)?(?:/tree/[^/]+/(.+?))?/?$")


@dataclass
class ExternalReference:
    """One entry of a profile's ``references`` list."""
    name: str
    url: str
    kind: str = "github"
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> ExternalReference:
        data = section_mapping(data, "references[]")
        url = data.get("url")
        if not isinstance(url, str) or not url:
            raise ConfigError(f"Reference {data.get('name')!r} needs a 'url'")
        enabled = data.get("enabled", True)
        return cls(
            name=str(data.get("name") or url),
            url=url,
            kind=str(data.get("type") or "github"),
            enabled=enabled is True or (isinstance(enabled, str) and enabled.lower() == "true"),
        )


@dataclass
class ExternalQuery:
    """A ``.kql`` file fetched from a reference."""
    source: str
    file_name: str
    content: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "fileName": self.file_name, "content": self.content, "url": self.url}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExternalQuery:
        return cls(
            source=data["source"],
            file_name=data["fileName"],
            content=data["content"],
            url=data["url"],
        )


def parse_github_url(url: str) -> tuple[str, str, str] | None:
    """
    Split a repository URL into (owner, repo, path).

    Accepts ``https://github.com/owner/repo`` and
    ``https://github.com/owner/repo/tree/<branch>/<path>``.
    """
    match = _GITHUB_URL.search(url)
    if not match:
        return None
    return match.group(1), match.group(2), match.group(3) or ""


class ReferenceFetcher:
    """Collect ``.kql`` files from the enabled references."""

    def __init__(
        self,
        references: Iterable[ExternalReference],
        cache: QueryCache | None = None,
        timeout: float = 30.0,
        api_url: str = GITHUB_API,
    ):
        self.references = [ref for ref in references if ref.enabled]
        self.cache = cache
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.rate_limit_remaining = DEFAULT_RATE_LIMIT
        self.rate_limit_reset: float | None = None

    @classmethod
    def for_profile(cls, profile: ResolvedProfile, **kwargs: Any) -> ReferenceFetcher:
        references = [ExternalReference.from_dict(item) for item in profile.references]
        cache = QueryCache(profile.cache_dir) if profile.cache_enabled else None
        return cls(references, cache=cache, **kwargs)

    def fetch_all(self) -> list[ExternalQuery]:
        queries: list[ExternalQuery] = []
        for reference in self.references:
            if reference.kind != "github":
                logger.info(f"Skipping reference '{reference.name}': type '{reference.kind}' is not supported")
                continue
            queries.extend(self.fetch(reference))
        logger.info(f"Fetched {len(queries)} queries from {len(self.references)} external references")
        return queries

    @staticmethod
    def _cache_key(reference: ExternalReference) -> str:
        return hashlib.sha256(f"github:{reference.url}".encode("utf-8")).hexdigest()

    def fetch(self, reference: ExternalReference) -> list[ExternalQuery]:
        """Queries from one GitHub reference; an empty list when it cannot be read."""
        key = self._cache_key(reference)
        if self.cache is not None:
            entry = self.cache.get(key)
            if entry is not None:
                logger.debug(f"Using cached queries for {reference.name}")
                return [ExternalQuery.from_dict(item) for item in entry.data]

        if not self._can_request():
            logger.warning(f"GitHub rate limit exhausted, skipping {reference.name}")
            return []

        parsed = parse_github_url(reference.url)
        if parsed is None:
            logger.error(f"Invalid GitHub URL for reference '{reference.name}': {reference.url}")
            return []
        owner, repo, path = parsed

        with httpx.Client(timeout=self.timeout, headers=GITHUB_HEADERS) as client:
            queries = self._list_directory(client, owner, repo, path, reference.name)

        if self.cache is not None:
            try:
                self.cache.set(key, [q.to_dict() for q in queries], REFERENCE_CACHE_TTL_SECONDS)
            except OSError as e:
                logger.warning(f"Could not cache queries for {reference.name}: {e}")
        return queries

    def _get(self, client: httpx.Client, url: str) -> httpx.Response | None:
        try:
            response = client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch {url}: {e}")
            return None
        self._update_rate_limit(response.headers)
        if response.status_code == 403:
            logger.error("GitHub rate limit exceeded")
            return None
        if response.status_code >= 400:
            logger.error(f"Failed to fetch {url}: HTTP {response.status_code}")
            return None
        return response

    def _list_directory(
        self, client: httpx.Client, owner: str, repo: str, path: str, source: str
    ) -> list[ExternalQuery]:
        url = f"{self.api_url}/repos/{owner}/{repo}/contents/{path}".rstrip("/")
        response = self._get(client, url)
        if response is None:
            return []
        try:
            items = response.json()
        except ValueError:
            logger.error(f"GitHub returned a non-JSON listing for {url}")
            return []
        if not isinstance(items, list):
            return []

        queries: list[ExternalQuery] = []
        for item in items:
            if item.get("type") == "file" and str(item.get("name", "")).endswith(".kql"):
                download = self._get(client, item["download_url"])
                if download is not None:
                    queries.append(ExternalQuery(
                        source=source,
                        file_name=item["name"],
                        content=download.text,
                        url=item.get("html_url") or item["download_url"],
                    ))
            elif item.get("type") == "dir":
                queries.extend(self._list_directory(client, owner, repo, item["path"], source))
        return queries

    def _update_rate_limit(self, headers: Mapping[str, str]) -> None:
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        try:
            if remaining is not None:
                self.rate_limit_remaining = int(remaining)
            if reset is not None:
                self.rate_limit_reset = float(reset)
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers: {remaining!r}, {reset!r}")
            return
        if self.rate_limit_remaining < LOW_RATE_LIMIT_WARNING:
            logger.warning(f"GitHub rate limit low: {self.rate_limit_remaining} requests remaining")

    def _can_request(self) -> bool:
        if self.rate_limit_remaining > 0:
            return True
        if self.rate_limit_reset is not None and self.rate_limit_reset > time.time():
            return False
        # Reset time has passed
        self.rate_limit_remaining = DEFAULT_RATE_LIMIT
        self.rate_limit_reset = None
        return True
