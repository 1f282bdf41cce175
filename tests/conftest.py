"""
Shared fixtures for the tiled analysis tests.
"""

import asyncio
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from plantakeoff.core.scale_calibrator import ScaleCalibration
from plantakeoff.core.tile_grid import TileGridPlanner
from plantakeoff.core.types import BoundingBox, GlobalDetection, MergedElement, PlanImage, Tile
from plantakeoff.inference.base import VisionInferenceClient


class ScriptedVisionClient(VisionInferenceClient):
    """Vision client whose answers come from a responder callable."""

    def __init__(self, responder: Callable[[Tile], object], delay: float = 0.0):
        self.responder = responder
        self.delay = delay
        self.calls: List[int] = []
        self.events: List[Tuple[str, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def infer(self, tile_image, directive, tile):
        self.calls.append(tile.tile_id)
        self.events.append(("start", tile.tile_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            result = self.responder(tile)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        finally:
            self.in_flight -= 1
            self.events.append(("end", tile.tile_id))


def world_responder(elements: Sequence[Tuple[str, Tuple[float, float, float, float], float]],
                    extras: Optional[Dict[int, List[dict]]] = None,
                    failing: Iterable[int] = ()) -> Callable[[Tile], List[dict]]:
    """
    Simulates a vision model looking at a plan whose true elements are known.

    Each element is (type, (x1, y1, x2, y2) in image coordinates, confidence);
    a tile reports the part of every element it can see, in tile coordinates.
    """
    extras = extras or {}
    failing = set(failing)

    def respond(tile: Tile) -> List[dict]:
        if tile.tile_id in failing:
            raise ConnectionError("connection reset by inference service")

        detections = []
        for element_type, (x1, y1, x2, y2), confidence in elements:
            cx1, cy1 = max(x1, tile.x), max(y1, tile.y)
            cx2, cy2 = min(x2, tile.x + tile.width), min(y2, tile.y + tile.height)
            if cx2 <= cx1 or cy2 <= cy1:
                continue
            detections.append({
                "type": element_type,
                "bbox": [cx1 - tile.x, cy1 - tile.y, cx2 - cx1, cy2 - cy1],
                "confidence": confidence,
                "properties": {},
            })
        return detections + list(extras.get(tile.tile_id, []))

    return respond


def make_element(element_type: str, bbox: Tuple[float, float, float, float], confidence: float = 0.9,
                 properties: Optional[dict] = None, element_id: Optional[str] = None) -> MergedElement:
    box = BoundingBox(*bbox)
    detection = GlobalDetection(element_type, box, confidence, [0], dict(properties or {}))
    return MergedElement(
        element_id=element_id or f"{element_type}-test",
        element_type=element_type,
        bbox=box,
        confidence=confidence,
        corroboration_count=1,
        source_tiles=[0],
        members=[detection],
        properties=dict(properties or {}),
    )


def make_calibration(pixels_per_mm: float = 0.1, confidence: float = 0.9) -> ScaleCalibration:
    return ScaleCalibration(pixels_per_mm=pixels_per_mm, confidence=confidence, methods=["test"])


@pytest.fixture
def a4_image() -> PlanImage:
    """A4 sheet at 300 dpi, no pixel buffer."""
    return PlanImage(width=3508, height=2480, dpi=300.0)


@pytest.fixture
def a4_grid(a4_image):
    return TileGridPlanner(tile_size=672, overlap=64).plan(a4_image.width, a4_image.height)


@pytest.fixture
def calibration() -> ScaleCalibration:
    return make_calibration()
