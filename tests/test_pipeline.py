import asyncio

import pytest

from plantakeoff.config import CalibrationConfig, PipelineConfig, TilingConfig
from plantakeoff.core.errors import InvalidConfiguration
from plantakeoff.core.pipeline import PlanAnalysisPipeline
from plantakeoff.core.scale_calibrator import scale_to_pixels_per_mm
from plantakeoff.core.types import Severity
from plantakeoff.inference.ollama import parse_elements

from .conftest import ScriptedVisionClient, world_responder

PLAN_ELEMENTS = [
    # straddles the seam between tiles 0 and 1
    ("door", (560, 100, 666, 130), 0.8),
    # inside tile 2 only
    ("wall", (1300, 200, 1800, 215), 0.9),
]

# stitching artifact reported by tile 0 only
OVERSIZED_ROOM = {0: [{"type": "room", "bbox": [0, 0, 3200, 300], "confidence": 0.6}]}


@pytest.fixture
def config():
    return PipelineConfig(calibration=CalibrationConfig(reference_sizes_mm={}))


@pytest.fixture
def client():
    return ScriptedVisionClient(world_responder(PLAN_ELEMENTS, extras=OVERSIZED_ROOM, failing=[5]))


async def test_full_analysis(config, client, a4_image):
    result = await PlanAnalysisPipeline(config, client).analyze(a4_image, texts=["Grundriss EG M 1:100"])

    assert len(result.grid) == 30
    assert result.dispatch.failed_tiles == [5]
    assert result.raw_detection_count == 4
    assert result.merged_count == 3

    assert result.calibration.pixels_per_mm == pytest.approx(scale_to_pixels_per_mm(100, 300))
    assert result.calibration.confidence == pytest.approx(0.9)

    assert [d.reason for d in result.discarded] == ["oversized_element"]
    assert sorted(e.element_type for e in result.elements) == ["door", "wall"]

    door = next(e for e in result.elements if e.element_type == "door")
    assert door.corroboration_count == 2
    assert door.source_tiles == [0, 1]
    assert door.confidence > 0.8
    assert door.is_critical
    assert [v.severity for v in result.violations] == [Severity.CRITICAL]
    assert result.critical_elements == [door]

    assert result.measurement.counts == {"door": 1}
    assert [m.element_type for m in result.measurement.measurements] == ["wall"]
    wall = result.measurement.measurements[0]
    assert wall.element_type == "wall"
    assert wall.value == pytest.approx(500 / scale_to_pixels_per_mm(100, 300) / 1000)
    assert wall.accuracy == pytest.approx(0.81)


async def test_summary_is_consistent(config, client, a4_image):
    result = await PlanAnalysisPipeline(config, client).analyze(a4_image, texts=["M 1:100"])

    summary = result.summary()

    assert summary["total_tiles"] == 30
    assert summary["failed_tiles"] == 1
    assert summary["skipped_tiles"] == 0
    assert summary["tiles_processed"] == 29
    assert summary["raw_detections"] == 4
    assert summary["merged_elements"] == 3
    assert summary["duplicates_merged"] == 1
    assert summary["valid_elements"] == 2
    assert summary["discarded_elements"] == 1
    assert summary["violations"] == 1
    assert summary["critical_violations"] == 1
    assert summary["counts"] == {"door": 1}
    assert summary["measurements"] == 1
    assert summary["measurement_failures"] == 0


async def test_without_scale_text_falls_back(config, client, a4_image):
    result = await PlanAnalysisPipeline(config, client).analyze(a4_image)

    assert result.calibration.fallback
    assert result.calibration.confidence == 0.2
    assert result.measurement.measurements[0].accuracy == pytest.approx(0.9 * 0.2)


async def test_cancel_before_start_skips_every_tile(config, client, a4_image):
    cancel = asyncio.Event()
    cancel.set()

    result = await PlanAnalysisPipeline(config, client).analyze(a4_image, cancel_event=cancel)

    assert client.calls == []
    assert result.dispatch.skipped_tiles == list(range(30))
    assert result.elements == []
    assert result.summary()["skipped_tiles"] == 30


async def test_non_finite_box_fails_only_its_tile(config, a4_image):
    answer = '{"elements": [{"type": "door", "bbox": [NaN, 10, 90, 20], "confidence": 0.8}]}'
    world = world_responder(PLAN_ELEMENTS)

    def respond(tile):
        if tile.tile_id == 0:
            return parse_elements(answer, tile.tile_id)
        return world(tile)

    result = await PlanAnalysisPipeline(config, ScriptedVisionClient(respond)).analyze(a4_image, texts=["M 1:100"])

    assert [(e.tile_id, e.error_type) for e in result.dispatch.errors] == [(0, "malformed_response")]
    assert sorted(e.element_type for e in result.elements) == ["door", "wall"]


def test_analyze_sync(config, client, a4_image):
    result = PlanAnalysisPipeline(config, client).analyze_sync(a4_image, texts=["M 1:100"])

    assert result.merged_count == 3


def test_invalid_configuration_aborts_before_dispatch(client):
    config = PipelineConfig(tiling=TilingConfig(tile_size=672, overlap=672))

    with pytest.raises(InvalidConfiguration):
        PlanAnalysisPipeline(config, client)

    assert client.calls == []
