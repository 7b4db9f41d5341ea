"""NewsML metadata extraction for one XML source."""

from __future__ import annotations

import logging
import posixpath
import re
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote, urlsplit, urlunsplit

import httpx

from harvester.schema import RECORD_FIELDS, ExtractedRecord

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
_YEAR_PART = re.compile(r"^\d{4}$")
_MONTH_PART = re.compile(r"^\d{2}$")


class ExtractionError(Exception):
    """Raised when a source cannot be read or is not valid NewsML."""


class Extractor(Protocol):
    def extract(self, locator: str) -> ExtractedRecord | None: ...


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _children(element: ET.Element | None, name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local_name(child.tag) == name]


def _child(element: ET.Element | None, name: str) -> ET.Element | None:
    matches = _children(element, name)
    return matches[0] if matches else None


def _path(element: ET.Element | None, *names: str) -> ET.Element | None:
    for name in names:
        element = _child(element, name)
        if element is None:
            return None
    return element


def _text(element: ET.Element | None) -> str:
    """Return element text (CDATA included) or its ``Value`` attribute."""
    if element is None:
        return ""
    text = "".join(element.itertext()).strip()
    if text:
        return text
    return (element.get("Value") or "").strip()


def _formal_name(element: ET.Element | None) -> str:
    if element is None:
        return ""
    return element.get("FormalName", "")


def _properties(element: ET.Element | None) -> Iterable[ET.Element]:
    return _children(element, "Property")


def find_main_component(component: ET.Element | None) -> ET.Element | None:
    """Depth-first search for the NewsComponent whose role is PICTURE."""
    if component is None:
        return None
    if _formal_name(_child(component, "Role")) == "PICTURE":
        return component
    for nested in _children(component, "NewsComponent"):
        found = find_main_component(nested)
        if found is not None:
            return found
    return None


def path_segments(parts: list[str]) -> tuple[str, str, str]:
    """Derive (city, year, month) from the directory names of a source path."""
    city = year = month = ""
    for index, part in enumerate(parts):
        if _YEAR_PART.match(part):
            year = part
            if index > 0:
                city = parts[index - 1]
            if index + 1 < len(parts) and _MONTH_PART.match(parts[index + 1]):
                month = parts[index + 1]
            break

    for index, part in enumerate(parts):
        if part.lower() == "images" and index + 3 < len(parts):
            city, year, month = parts[index + 1], parts[index + 2], parts[index + 3]
            break
    return city, year, month


def _picture_characteristics(
    content_item: ET.Element,
) -> tuple[str, str, str]:
    characteristics = _path(content_item, "DataContent", "Characteristics")
    if characteristics is None:
        characteristics = _child(content_item, "Characteristics")
    if characteristics is None:
        return "", "", ""

    size = _text(_child(characteristics, "SizeInBytes"))
    width = height = ""
    for prop in _properties(characteristics):
        if _formal_name(prop) == "width":
            width = prop.get("Value", "")
        elif _formal_name(prop) == "height":
            height = prop.get("Value", "")
    return width, height, size


def parse_newsml(content: bytes | str) -> dict[str, str] | None:
    """Parse a NewsML document into the metadata fields it carries.

    Returns ``None`` when the item has no PICTURE component.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ExtractionError(f"Malformed XML: {exc}") from exc

    if _local_name(root.tag) != "NewsML":
        raise ExtractionError("Invalid XML structure: NewsML not found")
    news_item = _child(root, "NewsItem")
    if news_item is None:
        raise ExtractionError("Invalid XML structure: NewsItem not found")
    identifier = _path(news_item, "Identification", "NewsIdentifier")
    if identifier is None:
        raise ExtractionError("Invalid XML structure: NewsIdentifier not found")

    fields: dict[str, str] = {
        "newsItemId": _text(_child(identifier, "NewsItemId")),
        "dateId": _text(_child(identifier, "DateId")),
        "providerId": _text(_child(identifier, "ProviderId")),
    }

    management = _child(news_item, "NewsManagement")
    fields["status"] = _formal_name(_child(management, "Status"))
    fields["urgency"] = _formal_name(_child(management, "Urgency"))
    fields["creationDate"] = _text(_child(management, "FirstCreated"))
    fields["revisionDate"] = _text(_child(management, "ThisRevisionCreated"))

    main = None
    for component in _children(news_item, "NewsComponent"):
        main = find_main_component(component)
        if main is not None:
            break
    if main is None:
        return None

    fields["commentData"] = _text(_child(main, "Comment"))

    news_lines = _child(main, "NewsLines")
    fields["headline"] = _text(_child(news_lines, "HeadLine"))
    fields["byline"] = _text(_child(news_lines, "ByLine"))
    fields["dateline"] = _text(_child(news_lines, "DateLine"))
    fields["creditline"] = _text(_child(news_lines, "CreditLine"))
    fields["slugline"] = _text(_child(news_lines, "SlugLine"))
    fields["copyrightLine"] = _text(_child(news_lines, "CopyrightLine"))
    keywords = [_text(line) for line in _children(news_lines, "KeywordLine")]
    fields["keywords"] = ", ".join(keyword for keyword in keywords if keyword)

    administrative = {
        "Edition": "edition",
        "Location": "location",
        "PageNumber": "pageNumber",
    }
    for key in administrative.values():
        fields[key] = ""
    for prop in _properties(_child(main, "AdministrativeMetadata")):
        key = administrative.get(_formal_name(prop))
        if key:
            fields[key] = prop.get("Value", "")

    descriptive = _child(main, "DescriptiveMetadata")
    fields["language"] = _formal_name(_child(descriptive, "Language"))
    fields["subject"] = _formal_name(_path(descriptive, "SubjectCode", "Subject"))
    fields["processed"] = fields["published"] = ""
    fields["country"] = fields["city_meta"] = ""
    for prop in _properties(descriptive):
        name = _formal_name(prop)
        if name == "Processed":
            fields["processed"] = prop.get("Value", "")
        elif name == "Published":
            fields["published"] = prop.get("Value", "")
        elif name == "Location":
            for nested in _properties(prop):
                if _formal_name(nested) == "Country":
                    fields["country"] = nested.get("Value", "")
                elif _formal_name(nested) == "City":
                    fields["city_meta"] = nested.get("Value", "")

    usage = _child(main, "UsageRights")
    fields["usageType"] = _text(_child(usage, "UsageType"))
    fields["rightsHolder"] = _text(_child(usage, "RightsHolder"))
    if not fields["copyrightLine"]:
        for prop in _properties(usage):
            if _formal_name(prop) in ("CopyrightNotice", "Copyright"):
                fields["copyrightLine"] = prop.get("Value", "")
                break

    fields["imageWidth"] = fields["imageHeight"] = fields["imageSize"] = ""
    fields["imageHref"] = ""
    for item in _children(main, "ContentItem"):
        if _formal_name(_child(item, "MediaType")) != "Picture":
            continue
        width, height, size = _picture_characteristics(item)
        fields["imageWidth"], fields["imageHeight"], fields["imageSize"] = (
            width,
            height,
            size,
        )
        data_content = _child(item, "DataContent")
        fields["imageHref"] = item.get("Href") or (
            data_content.get("Href", "") if data_content is not None else ""
        )

    return fields


class NewsMLExtractor:
    """Build one output record from a NewsML file, local or remote.

    The referenced picture is expected in the ``media`` directory that sits
    beside the XML's parent directory.
    """

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=FETCH_TIMEOUT, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def extract(
        self,
        locator: str,
        should_abort: Callable[[], None] | None = None,
    ) -> ExtractedRecord | None:
        remote = locator.startswith(("http://", "https://"))
        content = self._read_remote(locator) if remote else self._read_local(locator)
        if should_abort is not None:
            should_abort()

        fields = parse_newsml(content)
        if fields is None:
            logger.debug("No picture component in %s", locator)
            return None

        if remote:
            segments = urlsplit(locator).path.split("/")
            parts = [unquote(part) for part in segments if part]
        else:
            parts = list(Path(locator).parts)
        city, year, month = path_segments(parts)
        fields.update({"city": city, "year": year, "month": month})

        image_path = ""
        image_exists = False
        actual_size = ""
        href = fields["imageHref"]
        if href:
            if remote:
                image_path = self._remote_media_url(locator, href)
                if should_abort is not None:
                    should_abort()
                image_exists, actual_size = self._head_remote_image(image_path)
            else:
                media_path = Path(locator).parent.parent / "media" / href
                image_path = str(media_path)
                if media_path.is_file():
                    image_exists = True
                    actual_size = str(media_path.stat().st_size)

        fields.update(
            {
                "xmlPath": locator,
                "imagePath": image_path,
                "imageExists": "Yes" if image_exists else "No",
                "actualFileSize": actual_size,
                "haveXml": "Yes",
            }
        )
        return {name: fields.get(name, "") for name in RECORD_FIELDS}

    def _read_local(self, locator: str) -> bytes:
        try:
            return Path(locator).read_bytes()
        except OSError as exc:
            raise ExtractionError(f"Cannot read {locator}: {exc}") from exc

    def _read_remote(self, locator: str) -> bytes:
        try:
            response = self.client.get(locator)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExtractionError(f"Cannot fetch {locator}: {exc}") from exc
        return response.content

    @staticmethod
    def _remote_media_url(locator: str, href: str) -> str:
        parts = urlsplit(locator)
        base = posixpath.dirname(posixpath.dirname(parts.path))
        media_path = posixpath.join(base, "media", quote(href))
        return urlunsplit((parts.scheme, parts.netloc, media_path, "", ""))

    def _head_remote_image(self, url: str) -> tuple[bool, str]:
        try:
            response = self.client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("HEAD %s failed: %s", url, exc)
            return False, ""
        if response.status_code >= 400:
            return False, ""
        return True, response.headers.get("content-length", "")
