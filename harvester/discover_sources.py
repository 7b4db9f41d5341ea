from __future__ import annotations

import logging
import os
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from harvester.remote_listing import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_FILES,
    ListingFetchError,
    RemoteCrawler,
    is_contained,
)
from harvester.schema import SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)

DEFAULT_TARGET_EXTENSIONS: tuple[str, ...] = (".xml",)
MEDIA_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".tiff",
        ".tif",
        ".webp",
        ".heic",
        ".heif",
        ".raw",
        ".cr2",
        ".nef",
        ".arw",
    }
)


class EnumerationError(Exception):
    """Raised when the root of a collection cannot be enumerated at all."""


@dataclass
class ScanResult:
    sources: list[SourceDescriptor] = field(default_factory=list)
    media_files: list[str] = field(default_factory=list)
    media_counts_by_extension: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class SourceEnumerator:
    """Produce the ordered source list for a local tree or a remote listing."""

    def __init__(
        self,
        *,
        target_extensions: Iterable[str] = DEFAULT_TARGET_EXTENSIONS,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_remote_files: int = DEFAULT_MAX_FILES,
        client: httpx.Client | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.target_extensions = tuple(ext.lower() for ext in target_extensions)
        self.max_depth = max_depth
        self.max_remote_files = max_remote_files
        self.client = client
        self.on_progress = on_progress

    def enumerate(self, root: str, is_remote: bool) -> list[SourceDescriptor]:
        return self.scan(root, is_remote).sources

    def scan(self, root: str, is_remote: bool) -> ScanResult:
        if is_remote:
            return self._scan_remote(root)
        return self._scan_local(root)

    def _scan_local(self, root: str) -> ScanResult:
        root_path = Path(root).expanduser()
        if not root_path.is_dir():
            raise EnumerationError(f"Source directory not found: {root}")
        try:
            with os.scandir(root_path):
                pass
        except OSError as exc:
            raise EnumerationError(
                f"Cannot read source directory {root}: {exc}"
            ) from exc

        result = ScanResult()
        media_counts: Counter[str] = Counter()

        def _on_walk_error(error: OSError) -> None:
            message = f"Failed to read directory {error.filename}: {error.strerror}"
            logger.warning(message)
            result.warnings.append(message)

        logger.info("Scanning %s for source files...", root_path)
        for dirpath, dirnames, filenames in os.walk(
            root_path, onerror=_on_walk_error, followlinks=False
        ):
            dirnames.sort()
            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                extension = full_path.suffix.lower()
                if extension in self.target_extensions:
                    result.sources.append(
                        SourceDescriptor(locator=str(full_path), kind=SourceKind.LOCAL)
                    )
                elif extension in MEDIA_EXTENSIONS:
                    result.media_files.append(str(full_path))
                    media_counts[extension] += 1

        result.media_counts_by_extension = dict(sorted(media_counts.items()))
        logger.info(
            "Found %d source file(s) and %d media file(s) under %s",
            len(result.sources),
            len(result.media_files),
            root_path,
        )
        return result

    def _scan_remote(self, root: str) -> ScanResult:
        crawler = RemoteCrawler(
            self.client,
            max_depth=self.max_depth,
            max_files=self.max_remote_files,
            target_extensions=self.target_extensions,
            on_progress=self.on_progress,
        )
        with crawler:
            try:
                crawl = crawler.crawl(root)
            except ListingFetchError as exc:
                raise EnumerationError(str(exc)) from exc

        sources = [
            SourceDescriptor(locator=url, kind=SourceKind.REMOTE)
            for url in crawl.files
            if is_contained(url, root)
        ]
        return ScanResult(sources=sources, warnings=list(crawl.warnings))
