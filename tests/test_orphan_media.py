from pathlib import Path

import pytest
from PIL import Image

from harvester.orphan_media import (
    build_orphan_record,
    describe_image,
    noxml_destination,
    process_orphan_media,
)
from harvester.relocation import RelocationError
from harvester.schema import FilterCriteria, RECORD_FIELDS

ARTIST = 0x013B
COPYRIGHT = 0x8298
DATETIME = 0x0132


def _image(path: Path, size=(64, 48), artist="Jane Doe") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    exif = Image.Exif()
    exif[ARTIST] = artist
    exif[COPYRIGHT] = "Example News"
    exif[DATETIME] = "2021:05:01 10:00:00"
    Image.new("RGB", size, color="red").save(path, exif=exif)
    return path


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "archive"
    media = root / "Paris" / "2021" / "05" / "media"
    _image(media / "matched.jpg")
    _image(media / "orphan.jpg")
    _image(media / "tiny.jpg", size=(20, 20))
    return root


def test_describe_image_reads_exif(media_root):
    path = media_root / "Paris" / "2021" / "05" / "media" / "orphan.jpg"

    metadata = describe_image(path)

    assert (metadata["width"], metadata["height"]) == (64, 48)
    assert metadata["byline"] == "Jane Doe"
    assert metadata["copyright"] == "Example News"
    assert metadata["revision_date"] == "2021-05-01 10:00:00"
    assert metadata["file_size"] == path.stat().st_size


def test_unreadable_image_still_described(tmp_path):
    path = tmp_path / "broken.jpg"
    path.write_bytes(b"not an image")

    metadata = describe_image(path)

    assert metadata["width"] is None
    assert metadata["headline"] == "broken.jpg"


def test_orphan_record_layout(media_root):
    path = media_root / "Paris" / "2021" / "05" / "media" / "orphan.jpg"

    record = build_orphan_record(path, media_root, describe_image(path))

    assert list(record) == list(RECORD_FIELDS)
    assert record["haveXml"] == "No"
    assert record["imageExists"] == "Yes"
    assert record["xmlPath"] == ""
    assert record["imageHref"] == "Paris/2021/05/media/orphan.jpg"
    assert (record["city"], record["year"], record["month"]) == (
        "Paris",
        "2021",
        "05",
    )
    assert record["imageWidth"] == "64"
    assert record["creditline"] == "Jane Doe"


def test_noxml_destination():
    assert noxml_destination("/out/") == "/out_noxml"
    assert noxml_destination("/out_noxml") == "/out_noxml"


def test_process_orphans_filters_and_relocates(media_root, tmp_path):
    media = media_root / "Paris" / "2021" / "05" / "media"
    relocated = []

    def relocator(asset, source_root, relocation):
        relocated.append((Path(asset).name, relocation.destination))
        return Path(relocation.destination) / Path(asset).name

    criteria = FilterCriteria(
        enabled=True,
        min_width=50,
        relocation={"enabled": True, "destination": str(tmp_path / "out")},
    )
    messages = []

    result = process_orphan_media(
        str(media_root),
        [str(media / name) for name in ("matched.jpg", "orphan.jpg", "tiny.jpg")],
        [str(media / "matched.jpg")],
        criteria,
        relocator=relocator,
        on_log=messages.append,
    )

    assert result.considered == 2
    assert result.recorded == 1
    assert result.filtered == 1
    assert result.relocated == 1
    assert relocated == [("orphan.jpg", f"{tmp_path / 'out'}_noxml")]
    assert result.records[0]["imageHref"].endswith("orphan.jpg")
    assert messages == ["Found 2 image(s) without XML"]


def test_process_orphans_records_relocation_failures(media_root, tmp_path):
    media = media_root / "Paris" / "2021" / "05" / "media"

    def relocator(asset, source_root, relocation):
        raise RelocationError("permission denied")

    criteria = FilterCriteria(
        enabled=True, relocation={"enabled": True, "destination": str(tmp_path)}
    )

    result = process_orphan_media(
        str(media_root),
        [str(media / "orphan.jpg")],
        [],
        criteria,
        relocator=relocator,
    )

    assert result.recorded == 1
    assert result.relocated == 0
    assert result.failures[0].details == "permission denied"


def test_process_orphans_without_relocation(media_root):
    media = media_root / "Paris" / "2021" / "05" / "media"

    result = process_orphan_media(
        str(media_root),
        [str(media / "orphan.jpg"), str(media / "tiny.jpg")],
        [],
        FilterCriteria(),
    )

    assert result.recorded == 2
    assert result.destination is None
