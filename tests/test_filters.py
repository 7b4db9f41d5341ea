import pytest

from harvester import filters
from harvester.schema import FilterCriteria, TextPredicate


def _record(**overrides):
    record = {
        "imageHref": "photo.jpg",
        "imageWidth": "1200",
        "imageHeight": "800",
        "imageSize": "2,048,000",
        "actualFileSize": "",
        "creditline": "Staff Photographer",
        "copyrightLine": "Example News",
    }
    record.update(overrides)
    return record


def test_disabled_criteria_pass_everything():
    criteria = FilterCriteria(enabled=False, min_width=99999)
    assert filters.evaluate(_record(), criteria)


def test_credit_not_like_stock_excludes_case_insensitively():
    criteria = FilterCriteria(
        enabled=True,
        text_predicates={"creditline": {"operator": "notLike", "value": "stock"}},
    )
    records = [
        _record(creditline="Getty STOCK images"),
        _record(creditline="iStockphoto"),
        _record(creditline="Staff Photographer"),
        _record(creditline=""),
    ]

    passing = filters.apply_filters(records, criteria)

    assert [record["creditline"] for record in passing] == ["Staff Photographer", ""]


def test_min_width_is_monotonic():
    records = [_record(imageWidth=str(width)) for width in (0, 300, 640, 1200, 4000)]
    loose = FilterCriteria(enabled=True, min_width=500)
    strict = FilterCriteria(enabled=True, min_width=1500)

    loose_ids = {id(record) for record in filters.apply_filters(records, loose)}
    strict_ids = {id(record) for record in filters.apply_filters(records, strict)}

    assert strict_ids < loose_ids


@pytest.mark.parametrize(
    "href, allowed, expected",
    [
        ("photo.tif", ["tiff"], True),
        ("photo.TIFF", ["tif"], True),
        ("photo.jpg", ["png"], False),
        ("photo", ["jpg"], False),
        ("photo.png", [], True),
        ("", ["jpg"], True),
    ],
)
def test_file_type_allow_list(href, allowed, expected):
    assert filters.file_type_allowed(href, allowed) is expected


def test_file_size_prefers_measured_size():
    assert filters.record_file_size(_record(actualFileSize="5000")) == 5000
    assert filters.record_file_size(_record(actualFileSize="")) == 2048000
    assert filters.record_file_size(_record(imageSize="n/a")) == 0


def test_size_bounds():
    criteria = FilterCriteria(enabled=True, min_file_size=1000, max_file_size=3000)

    assert filters.evaluate(_record(actualFileSize="2000"), criteria)
    decision = filters.evaluate(_record(actualFileSize="500"), criteria)
    assert not decision
    assert "below" in decision.reason
    assert not filters.evaluate(_record(actualFileSize="4000"), criteria)


def test_unparsable_dimensions_read_as_zero():
    criteria = FilterCriteria(enabled=True, min_height=1)
    assert filters.parse_int("800px") == 800
    assert not filters.evaluate(_record(imageHeight="unknown"), criteria)


@pytest.mark.parametrize(
    "operator, value, field_value, expected",
    [
        ("equals", "Example", " example ", True),
        ("notEquals", "Example", "Other", True),
        ("like", "news", "Example News", True),
        ("startsWith", "exa", "Example", True),
        ("endsWith", "ple", "Example", True),
        ("endsWith", "ple", "Examples", False),
        ("isBlank", "", "   ", True),
        ("notBlank", "", "", False),
    ],
)
def test_text_operators(operator, value, field_value, expected):
    predicate = TextPredicate(operator=operator, value=value)
    assert filters.apply_text_predicate(field_value, predicate) is expected


def test_blank_operator_is_ignored():
    criteria = FilterCriteria(
        enabled=True,
        text_predicates={"creditline": {"operator": "", "value": "anything"}},
    )
    assert filters.evaluate(_record(), criteria)
