"""Records for local images that no XML file referenced."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from PIL import ExifTags, Image, UnidentifiedImageError

from harvester.extractor import path_segments
from harvester.filters import evaluate
from harvester.relocation import RelocationError, relocate_asset
from harvester.schema import (
    RECORD_FIELDS,
    ExtractedRecord,
    FilterCriteria,
    RelocationConfig,
    RelocationFailure,
)

logger = logging.getLogger(__name__)

NOXML_SUFFIX = "_noxml"
_EXIF_DATE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})")
_KEYWORD_SPLIT = re.compile(r"[;,]")


@dataclass
class OrphanResult:
    records: list[ExtractedRecord] = field(default_factory=list)
    failures: list[RelocationFailure] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    considered: int = 0
    recorded: int = 0
    filtered: int = 0
    relocated: int = 0
    destination: str | None = None


def _normalize_date(value: str | None) -> str:
    if not value:
        return ""
    trimmed = value.strip()
    return _EXIF_DATE.sub(r"\1-\2-\3", trimmed)


def _tag_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        # XP* tags are UTF-16LE with a trailing NUL.
        try:
            return value.decode("utf-16-le").rstrip("\x00").strip()
        except UnicodeDecodeError:
            return value.decode("latin-1", errors="ignore").rstrip("\x00").strip()
    if isinstance(value, (tuple, list)):
        return ", ".join(str(item).strip() for item in value if str(item).strip())
    return str(value).strip()


def read_exif_tags(image: Image.Image) -> dict[str, str]:
    """Return EXIF tags keyed by their names, including the Exif sub-IFD."""
    exif = image.getexif()
    raw: dict[int, Any] = dict(exif.items())
    try:
        raw.update(exif.get_ifd(ExifTags.IFD.Exif))
    except (KeyError, AttributeError):
        pass
    tags: dict[str, str] = {}
    for tag_id, value in raw.items():
        name = ExifTags.TAGS.get(tag_id)
        if not name:
            continue
        text = _tag_text(value)
        if text:
            tags[name] = text
    return tags


def describe_image(path: Path) -> dict[str, Any]:
    """Collect size, dimensions and EXIF text for one image file."""
    stat = path.stat()
    width: int | None = None
    height: int | None = None
    tags: dict[str, str] = {}
    try:
        with Image.open(path) as image:
            width, height = image.size
            tags = read_exif_tags(image)
    except (UnidentifiedImageError, OSError) as exc:
        logger.debug("Pillow could not read %s: %s", path, exc)

    keywords: list[str] = []
    for key in ("XPKeywords", "XPSubject"):
        for item in _KEYWORD_SPLIT.split(tags.get(key, "")):
            if item.strip() and item.strip() not in keywords:
                keywords.append(item.strip())

    created = _normalize_date(
        tags.get("DateTimeOriginal") or tags.get("DateTimeDigitized")
    )
    modified = _normalize_date(tags.get("DateTime"))
    artist = tags.get("Artist", "")
    copyright_line = tags.get("Copyright", "")
    return {
        "width": width,
        "height": height,
        "file_size": stat.st_size,
        "creation_date": created
        or datetime.fromtimestamp(stat.st_ctime, timezone.utc).isoformat(),
        "revision_date": modified
        or datetime.fromtimestamp(stat.st_mtime, timezone.utc).isoformat(),
        "headline": tags.get("XPTitle") or path.name,
        "byline": artist,
        "creditline": artist,
        "copyright": copyright_line,
        "rights_holder": copyright_line,
        "keywords": keywords,
        "comment": tags.get("ImageDescription") or tags.get("XPComment", ""),
    }


def build_orphan_record(
    path: Path, root: Path, metadata: dict[str, Any]
) -> ExtractedRecord:
    try:
        relative = path.resolve().relative_to(root.resolve())
    except ValueError:
        relative = Path(path.name)
    city, year, month = path_segments(list(relative.parts))
    keywords = "; ".join(metadata["keywords"])
    creation_date = metadata["creation_date"]
    values = {
        "city": city,
        "year": year,
        "month": month,
        "dateId": re.sub(r"[^0-9]", "", creation_date)[:8],
        "headline": metadata["headline"],
        "byline": metadata["byline"],
        "creditline": metadata["creditline"],
        "copyrightLine": metadata["copyright"],
        "slugline": path.stem,
        "keywords": keywords,
        "location": city,
        "city_meta": city,
        "subject": keywords,
        "rightsHolder": metadata["rights_holder"],
        "imageWidth": "" if metadata["width"] is None else str(metadata["width"]),
        "imageHeight": "" if metadata["height"] is None else str(metadata["height"]),
        "imageSize": str(metadata["file_size"]),
        "actualFileSize": str(metadata["file_size"]),
        "imageHref": relative.as_posix(),
        "xmlPath": "",
        "imagePath": str(path),
        "imageExists": "Yes",
        "haveXml": "No",
        "creationDate": creation_date,
        "revisionDate": metadata["revision_date"],
        "commentData": metadata["comment"],
    }
    return {name: values.get(name, "") for name in RECORD_FIELDS}


def noxml_destination(destination: str) -> str:
    trimmed = destination.rstrip("/\\")
    if trimmed.endswith(NOXML_SUFFIX):
        return trimmed
    return f"{trimmed}{NOXML_SUFFIX}"


def process_orphan_media(
    root: str,
    media_files: Iterable[str],
    matched_assets: Iterable[str],
    criteria: FilterCriteria,
    *,
    relocator: Callable[[str, str, RelocationConfig], Path] = relocate_asset,
    on_log: Callable[[str], None] | None = None,
) -> OrphanResult:
    """Describe, filter and optionally relocate images with no XML record.

    Relocated copies go to ``<destination>_noxml`` so they never mix with
    the assets relocated for XML records.
    """
    root_path = Path(root)
    matched = {os.path.normpath(path) for path in matched_assets}
    orphans = [path for path in media_files if os.path.normpath(path) not in matched]
    result = OrphanResult(considered=len(orphans))

    relocation: RelocationConfig | None = None
    if criteria.enabled and criteria.relocation.active:
        destination = noxml_destination(criteria.relocation.destination or "")
        relocation = criteria.relocation.model_copy(
            update={"destination": destination}
        )
        result.destination = relocation.destination

    message = f"Found {len(orphans)} image(s) without XML"
    logger.info(message)
    if on_log is not None:
        on_log(message)

    for file_path in orphans:
        path = Path(file_path)
        try:
            record = build_orphan_record(path, root_path, describe_image(path))
        except OSError as exc:
            error = f"Failed processing image {path.name}: {exc}"
            logger.warning(error)
            result.errors.append(error)
            continue

        if not evaluate(record, criteria):
            result.filtered += 1
            continue

        result.records.append(record)
        result.recorded += 1

        if relocation is None:
            continue
        try:
            relocator(file_path, root, relocation)
        except RelocationError as exc:
            logger.warning("Relocation failed for %s: %s", file_path, exc)
            result.failures.append(
                RelocationFailure(
                    image_href=str(record["imageHref"]),
                    image_path=file_path,
                    reason="copy_failed",
                    details=str(exc),
                )
            )
            continue
        result.relocated += 1

    return result
