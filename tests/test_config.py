from pathlib import Path

import pytest

from plantakeoff.config import PipelineConfig, TilingConfig, load_config
from plantakeoff.core.errors import InvalidConfiguration
from plantakeoff.core.rules import default_rules
from plantakeoff.core.types import MeasurementKind

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


def test_defaults_are_valid():
    config = PipelineConfig()

    config.validate()
    assert config.bucket_size == pytest.approx(67.2)
    assert config.build_rules() == default_rules()
    assert config.measurement.method_kinds()["wall"] == MeasurementKind.LENGTH


@pytest.mark.parametrize("filename", ["pipeline.yaml", "pipeline.json"])
def test_save_and_load(tmp_path, filename):
    config = PipelineConfig()
    config.tiling.tile_size = 512
    config.dispatch.max_concurrent_tiles = 4
    config.calibration.reference_sizes_mm = {"door": 900.0}

    path = str(tmp_path / filename)
    config.save(path)
    loaded = PipelineConfig.load(path)

    assert loaded == config


def test_partial_dict_keeps_defaults():
    config = PipelineConfig.from_dict({"tiling": {"overlap": 96}, "default_dpi": 600})

    assert config.tiling == TilingConfig(tile_size=672, overlap=96)
    assert config.default_dpi == 600
    assert config.merge.iou_threshold == 0.3


def test_unknown_key_is_rejected():
    with pytest.raises(InvalidConfiguration):
        PipelineConfig.from_dict({"tiling": {"tile_sise": 512}})
    with pytest.raises(InvalidConfiguration):
        PipelineConfig.from_dict({"tiles": {}})


@pytest.mark.parametrize("section,key,value", [
    ("tiling", "overlap", 0),
    ("tiling", "overlap", 700),
    ("tiling", "tile_size", -1),
    ("dispatch", "max_concurrent_tiles", 0),
    ("merge", "iou_threshold", 1.5),
    ("validation", "max_extent_fraction", 0),
])
def test_invalid_values(section, key, value):
    config = PipelineConfig.from_dict({section: {key: value}})

    with pytest.raises(InvalidConfiguration):
        config.validate()


def test_invalid_measurement_method():
    config = PipelineConfig.from_dict({"measurement": {"methods": {"wall": "perimeter"}}})

    with pytest.raises(InvalidConfiguration):
        config.validate()


def test_invalid_rule():
    config = PipelineConfig.from_dict({"rules": [{"name": "no_types", "threshold_mm": 1000}]})

    with pytest.raises(InvalidConfiguration):
        config.validate()


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(str(tmp_path / "absent.yaml")) == PipelineConfig()


def test_repository_config_matches_defaults():
    config = load_config(str(REPO_CONFIG))
    defaults = PipelineConfig()

    assert config.tiling == defaults.tiling
    assert config.dispatch == defaults.dispatch
    assert config.merge == defaults.merge
    assert config.calibration == defaults.calibration
    assert config.validation == defaults.validation
    assert config.measurement == defaults.measurement
    assert config.inference == defaults.inference
    assert config.build_rules() == defaults.build_rules()
    assert config.default_dpi == defaults.default_dpi


def test_request_timeout_cannot_outlive_tile_timeout():
    config = PipelineConfig.from_dict({"dispatch": {"tile_timeout": 60.0}, "inference": {"request_timeout": 180.0}})

    with pytest.raises(InvalidConfiguration):
        config.validate()


def test_http_timeout_is_bounded_by_tile_timeout():
    config = PipelineConfig()
    assert config.http_timeout == config.inference.request_timeout
    assert config.http_timeout <= config.dispatch.tile_timeout

    config.dispatch.tile_timeout = 30.0
    assert config.http_timeout == 30.0

    config.dispatch.tile_timeout = None
    config.validate()
    assert config.http_timeout == config.inference.request_timeout
