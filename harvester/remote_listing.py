"""Crawl HTTP directory listings (Apache, Nginx, IIS) for target files."""

from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from urllib.parse import unquote, urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_FILES = 10_000
LISTING_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

MONTH_NAMES = frozenset(
    [
        "january",
        "february",
        "march",
        "april",
        "may",
        "june",
        "july",
        "august",
        "september",
        "october",
        "november",
        "december",
        "jan",
        "feb",
        "mar",
        "apr",
        "jun",
        "jul",
        "aug",
        "sep",
        "sept",
        "oct",
        "nov",
        "dec",
    ]
)
_YEAR = re.compile(r"^\d{4}$")
_MONTH_NUMBER = re.compile(r"^\d{1,2}$")
_DEFAULT_PORTS = {"http": 80, "https": 443}
_PARENT_LINK_TEXT = re.compile(r"parent\s+directory", re.IGNORECASE)


class ListingFetchError(Exception):
    """Raised when a directory listing page cannot be fetched."""


@dataclass(frozen=True)
class ListingStrategy:
    """One way of pulling link targets out of a parsed listing page."""

    name: str
    extract: Callable[[BeautifulSoup], list[str]]


def _hrefs(anchors: Iterable[Tag]) -> list[str]:
    return [str(anchor["href"]) for anchor in anchors]


def _apache_table(soup: BeautifulSoup) -> list[str]:
    # header cells are <th>, so the sort links never match
    return _hrefs(soup.select("tr > td a[href]"))


def _pre_autoindex(soup: BeautifulSoup) -> list[str]:
    return _hrefs(soup.select("pre a[href]"))


def _iis_body(soup: BeautifulSoup) -> list[str]:
    return _hrefs(soup.select("body > a[href]"))


def _generic_anchor(soup: BeautifulSoup) -> list[str]:
    return [
        str(anchor["href"])
        for anchor in soup.find_all("a", href=True)
        if not _PARENT_LINK_TEXT.search(anchor.get_text())
    ]


def _bare_href(soup: BeautifulSoup) -> list[str]:
    return [str(tag["href"]) for tag in soup.find_all(href=True) if tag.name != "a"]


LISTING_STRATEGIES: tuple[ListingStrategy, ...] = (
    ListingStrategy("apache_table", _apache_table),
    ListingStrategy("pre_autoindex", _pre_autoindex),
    ListingStrategy("iis_body", _iis_body),
    ListingStrategy("generic_anchor", _generic_anchor),
    ListingStrategy("bare_href", _bare_href),
)


@dataclass
class Listing:
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    strategy: str | None = None


def _is_ignorable(href: str) -> bool:
    stripped = href.strip()
    if not stripped:
        return True
    if stripped.startswith(("?", "#", "mailto:", "javascript:")):
        return True
    return stripped in ("..", "../", ".", "./")


def _is_parent_of(candidate: str, page_url: str) -> bool:
    page_path = urlsplit(page_url).path or "/"
    candidate_path = urlsplit(candidate).path or "/"
    if not candidate_path.endswith("/"):
        return False
    if not page_path.endswith("/"):
        page_path = posixpath.dirname(page_path) + "/"
    return page_path.startswith(candidate_path) and candidate_path != page_path


def normalize_directory_url(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


def parse_listing(
    html: str,
    page_url: str,
    target_extensions: Iterable[str] = (".xml",),
    strategies: Sequence[ListingStrategy] = LISTING_STRATEGIES,
) -> Listing:
    """Split a listing page into absolute file and directory URLs.

    Strategies run in order and the first one that yields a usable link
    wins. Sort links, fragments and parent links are dropped before that
    decision so a header full of sort links does not count as a match.
    """
    extensions = tuple(ext.lower() for ext in target_extensions)
    soup = BeautifulSoup(html, "html.parser")
    for strategy in strategies:
        hrefs = [href for href in strategy.extract(soup) if not _is_ignorable(href)]
        if not hrefs:
            continue

        listing = Listing(strategy=strategy.name)
        seen: set[str] = set()
        for href in hrefs:
            absolute = urljoin(page_url, href.strip())
            absolute = absolute.split("#", 1)[0]
            if "?" in absolute:
                continue
            if absolute in seen or _is_parent_of(absolute, page_url):
                continue
            seen.add(absolute)
            path = unquote(urlsplit(absolute).path)
            if path.endswith("/"):
                listing.directories.append(absolute)
            elif path.lower().endswith(extensions):
                listing.files.append(absolute)
        return listing
    return Listing()


def _origin(url: str) -> tuple[str, str, int | None]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    try:
        port = parts.port or _DEFAULT_PORTS.get(scheme)
    except ValueError:
        port = -1
    return scheme, (parts.hostname or "").lower(), port


def _normalized_path(url: str) -> str:
    raw = unquote(urlsplit(url).path) or "/"
    normalized = posixpath.normpath(raw)
    if normalized == ".":
        normalized = "/"
    if raw.endswith("/") and not normalized.endswith("/"):
        normalized += "/"
    return normalized


def is_contained(url: str, root: str) -> bool:
    """True when ``url`` has the root's origin and sits under the root path."""
    if _origin(url) != _origin(root):
        return False
    root_path = normalize_directory_url(_normalized_path(root))
    candidate = _normalized_path(url)
    return candidate.startswith(root_path) or candidate == root_path.rstrip("/")


def directory_priority(url: str) -> int:
    """Rank subdirectories: processed, years, months, then everything else."""
    name = unquote(urlsplit(url).path).rstrip("/").rsplit("/", 1)[-1].lower()
    if name == "processed":
        return 0
    if _YEAR.match(name):
        return 1
    if _MONTH_NUMBER.match(name) or name in MONTH_NAMES:
        return 2
    return 3


def prioritize_directories(urls: Iterable[str]) -> list[str]:
    return sorted(urls, key=directory_priority)


@dataclass
class CrawlResult:
    files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    visited: int = 0
    capped: bool = False


class RemoteCrawler:
    """Depth-bounded crawl of an HTTP directory tree.

    A directory that lists target files is not descended any further. The
    crawl ends once ``max_files`` targets have been collected.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_files: int = DEFAULT_MAX_FILES,
        target_extensions: Iterable[str] = (".xml",),
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.max_depth = max_depth
        self.max_files = max_files
        self.target_extensions = tuple(ext.lower() for ext in target_extensions)
        self.on_progress = on_progress

    def __enter__(self) -> RemoteCrawler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=LISTING_TIMEOUT, follow_redirects=True)
        return self._client

    def _report(self, message: str) -> None:
        logger.info(message)
        if self.on_progress is not None:
            self.on_progress(message)

    def fetch_listing(self, url: str) -> str:
        try:
            response = self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ListingFetchError(f"Failed to fetch listing {url}: {exc}") from exc
        return response.text

    def crawl(self, root: str) -> CrawlResult:
        """Collect target file URLs under ``root``.

        Raises :class:`ListingFetchError` only when the root listing itself
        cannot be fetched; failing subdirectories become warnings.
        """
        root_url = normalize_directory_url(root)
        result = CrawlResult()
        visited: set[str] = set()
        seen_files: set[str] = set()
        self._crawl(root_url, root_url, 0, result, visited, seen_files)
        result.visited = len(visited)
        self._report(
            f"Remote scan finished: {len(result.files)} file(s) "
            f"across {result.visited} listing(s)"
        )
        return result

    def _crawl(
        self,
        url: str,
        root_url: str,
        depth: int,
        result: CrawlResult,
        visited: set[str],
        seen_files: set[str],
    ) -> None:
        if result.capped:
            return
        key = normalize_directory_url(url)
        if key in visited:
            logger.debug("Skipping already visited listing %s", key)
            return
        visited.add(key)

        if depth >= self.max_depth:
            self._report(f"Maximum depth {self.max_depth} reached at {key}")
            return

        try:
            html = self.fetch_listing(key)
        except ListingFetchError as exc:
            if depth == 0:
                raise
            message = f"Skipping {key}: {exc}"
            logger.warning(message)
            result.warnings.append(message)
            return

        listing = parse_listing(html, key, self.target_extensions)
        logger.debug(
            "Listing %s parsed with %s: %d file(s), %d dir(s)",
            key,
            listing.strategy,
            len(listing.files),
            len(listing.directories),
        )

        found_here = 0
        for file_url in listing.files:
            if not is_contained(file_url, root_url):
                logger.debug("Discarding %s outside %s", file_url, root_url)
                continue
            if file_url in seen_files:
                continue
            seen_files.add(file_url)
            result.files.append(file_url)
            found_here += 1
            if len(result.files) >= self.max_files:
                result.capped = True
                self._report(
                    f"Reached the limit of {self.max_files} remote files; "
                    "stopping the scan"
                )
                return

        if found_here:
            self._report(f"Found {found_here} file(s) in {key}")
            return

        for directory in prioritize_directories(listing.directories):
            if not is_contained(directory, root_url):
                logger.debug("Discarding directory %s outside %s", directory, root_url)
                continue
            self._crawl(directory, root_url, depth + 1, result, visited, seen_files)
            if result.capped:
                return
