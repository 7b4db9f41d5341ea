"""Copy filtered assets into a destination tree without overwriting."""

from __future__ import annotations

import logging
import os
import shutil
from contextlib import suppress
from pathlib import Path, PurePosixPath
from typing import BinaryIO
from urllib.parse import unquote, urlsplit

import httpx

from harvester.schema import FolderStructure, RelocationConfig

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = httpx.Timeout(60.0, connect=10.0)
MAX_COLLISION_ATTEMPTS = 10_000


class RelocationError(Exception):
    """Raised when an asset cannot be copied to its destination."""


def is_remote_locator(locator: str) -> bool:
    return locator.startswith(("http://", "https://"))


def _relative_parent(asset: str, source_root: str) -> PurePosixPath:
    """Return the asset's directory relative to the source root, if under it."""
    if is_remote_locator(asset):
        asset_path = PurePosixPath(unquote(urlsplit(asset).path))
        root_path = PurePosixPath(unquote(urlsplit(source_root).path or "/"))
        try:
            return asset_path.parent.relative_to(root_path)
        except ValueError:
            return PurePosixPath()

    try:
        relative = Path(asset).resolve().parent.relative_to(Path(source_root).resolve())
    except ValueError:
        return PurePosixPath()
    return PurePosixPath(relative.as_posix())


def asset_filename(asset: str) -> str:
    if is_remote_locator(asset):
        return PurePosixPath(unquote(urlsplit(asset).path)).name
    return Path(asset).name


def destination_directory(
    asset: str, source_root: str, relocation: RelocationConfig
) -> Path:
    base = Path(relocation.destination or "").expanduser()
    if relocation.structure is FolderStructure.FLAT:
        return base
    relative = _relative_parent(asset, source_root)
    if str(relative) in ("", "."):
        return base
    return base.joinpath(*relative.parts)


def reserve_destination(directory: Path, filename: str) -> tuple[Path, BinaryIO]:
    """Create a new file named ``filename`` or ``stem_N`` with exclusive create.

    The open handle is returned so the caller owns the reserved name; two
    workers relocating assets with the same name never share a target.
    """
    directory.mkdir(parents=True, exist_ok=True)
    stem, suffix = os.path.splitext(filename)
    candidate = directory / filename
    for counter in range(1, MAX_COLLISION_ATTEMPTS + 1):
        try:
            return candidate, candidate.open("xb")
        except FileExistsError:
            candidate = directory / f"{stem}_{counter}{suffix}"
    raise RelocationError(
        f"Could not find a free name for {filename} in {directory}"
    )


def _download(url: str, handle: BinaryIO, client: httpx.Client | None) -> None:
    owns_client = client is None
    http = client or httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        with http.stream("GET", url) as response:
            response.raise_for_status()
            for block in response.iter_bytes():
                handle.write(block)
    finally:
        if owns_client:
            http.close()


def relocate_asset(
    asset: str,
    source_root: str,
    relocation: RelocationConfig,
    client: httpx.Client | None = None,
) -> Path:
    """Copy ``asset`` under the relocation destination and return the new path.

    Local assets are copied (the source is never removed); remote assets are
    streamed. Any failure raises :class:`RelocationError` and leaves no
    partial file behind.
    """
    if not relocation.active:
        raise RelocationError("Relocation is not configured with a destination")
    if not asset:
        raise RelocationError("No asset path to relocate")

    remote = is_remote_locator(asset)
    if not remote and not Path(asset).is_file():
        raise RelocationError(f"Source asset not found: {asset}")

    filename = asset_filename(asset)
    if not filename:
        raise RelocationError(f"Cannot derive a file name from {asset}")

    try:
        directory = destination_directory(asset, source_root, relocation)
        target, handle = reserve_destination(directory, filename)
    except OSError as exc:
        raise RelocationError(f"Cannot prepare destination for {asset}: {exc}") from exc

    try:
        with handle:
            if remote:
                _download(asset, handle, client)
            else:
                with open(asset, "rb") as source:
                    shutil.copyfileobj(source, handle)
        if not remote:
            shutil.copystat(asset, target)
    except (OSError, httpx.HTTPError) as exc:
        with suppress(OSError):
            target.unlink()
        raise RelocationError(f"Failed to copy {asset} to {target}: {exc}") from exc

    logger.debug("Relocated %s -> %s", asset, target)
    return target
