from pathlib import Path

import pytest

from harvester import config_utils
from harvester.config_utils import ConfigError, build_processing_config
from harvester.schema import FolderStructure, TextOperator


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    config = build_processing_config("/data/archive")

    assert config.root == "/data/archive"
    assert config.chunk_size == 100
    assert config.num_workers == 4
    assert config.output_file == "image_metadata.csv"
    assert config.filters.enabled is False
    assert not config.is_remote


def test_yaml_sections_are_merged(tmp_path):
    config_path = _write(
        tmp_path / "config.yaml",
        """
processing:
  chunk_size: 25
  num_workers: 2
filters:
  enabled: true
  minWidth: 800
  creditLine:
    operator: notLike
    value: stock
""",
    )

    config = build_processing_config("/data", path=config_path)

    assert config.chunk_size == 25
    assert config.num_workers == 2
    assert config.filters.enabled is True
    assert config.filters.min_width == 800
    predicate = config.filters.text_predicates["creditline"]
    assert predicate.operator is TextOperator.NOT_LIKE


def test_none_overrides_keep_file_values(tmp_path):
    config_path = _write(tmp_path / "config.yaml", "processing:\n  chunk_size: 7\n")

    config = build_processing_config(
        "/data",
        {"chunk_size": None, "num_workers": 9, "filters": None},
        config_path,
    )

    assert config.chunk_size == 7
    assert config.num_workers == 9


def test_filter_overrides_update_file_filters(tmp_path):
    config_path = _write(
        tmp_path / "config.yaml",
        "filters:\n  enabled: true\n  min_width: 100\n  min_height: 50\n",
    )

    config = build_processing_config(
        "/data",
        {
            "filters": {
                "min_width": 400,
                "relocation": {
                    "enabled": True,
                    "destination": "/out",
                    "structure": "single",
                },
            }
        },
        config_path,
    )

    assert config.filters.min_width == 400
    assert config.filters.min_height == 50
    assert config.filters.relocation.active
    assert config.filters.relocation.structure is FolderStructure.FLAT


def test_invalid_values_raise_config_error(tmp_path):
    config_path = _write(tmp_path / "config.yaml", "processing:\n  chunk_size: 0\n")

    with pytest.raises(ConfigError):
        build_processing_config("/data", path=config_path)


def test_explicit_missing_file_raises(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        build_processing_config("/data", path=tmp_path / "missing.yaml")


def test_non_mapping_yaml_raises(tmp_path):
    config_path = _write(tmp_path / "config.yaml", "- just\n- a list\n")

    with pytest.raises(ConfigError):
        build_processing_config("/data", path=config_path)


def test_malformed_yaml_raises(tmp_path):
    config_path = _write(tmp_path / "config.yaml", "processing: [unclosed\n")

    with pytest.raises(ConfigError, match="not valid YAML"):
        build_processing_config("/data", path=config_path)


def test_resolve_state_dir(monkeypatch, tmp_path):
    monkeypatch.delenv(config_utils.STATE_DIR_ENV, raising=False)
    assert config_utils.resolve_state_dir() == Path("data")

    monkeypatch.setenv(config_utils.STATE_DIR_ENV, str(tmp_path / "state"))
    assert config_utils.resolve_state_dir() == tmp_path / "state"

    assert config_utils.resolve_state_dir(tmp_path / "explicit") == (
        tmp_path / "explicit"
    )
