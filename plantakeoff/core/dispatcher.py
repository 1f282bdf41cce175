"""
Tile inference dispatch: scatter/gather of per-tile vision requests in
bounded batches. A failing tile contributes no detections and an error
record; it never aborts the batch or the run.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..inference.base import VisionInferenceClient
from ..inference.prompts import build_tile_directive
from .errors import InvalidConfiguration, TileInferenceFailure
from .tile_grid import TileGrid
from .types import BoundingBox, PlanImage, RawDetection, Tile


@dataclass
class DispatchResult:
    """Per-tile detections plus the audit trail of failed and skipped tiles."""
    detections: Dict[int, List[RawDetection]]
    errors: List[TileInferenceFailure] = field(default_factory=list)
    skipped_tiles: List[int] = field(default_factory=list)
    batches: int = 0
    processing_time: float = 0.0

    @property
    def total_detections(self) -> int:
        return sum(len(d) for d in self.detections.values())

    @property
    def failed_tiles(self) -> List[int]:
        return [e.tile_id for e in self.errors]

    @property
    def cancelled(self) -> bool:
        return bool(self.skipped_tiles)


def parse_bbox(raw: Any) -> BoundingBox:
    """Accepts [x, y, w, h] or a dict with x1/y1/x2/y2 or x/y/width/height."""
    if isinstance(raw, (list, tuple)) and len(raw) == 4:
        x, y, w, h = (float(v) for v in raw)
        box = BoundingBox.from_xywh(x, y, w, h)
    elif isinstance(raw, dict) and {"x1", "y1", "x2", "y2"} <= raw.keys():
        box = BoundingBox(float(raw["x1"]), float(raw["y1"]), float(raw["x2"]), float(raw["y2"]))
    elif isinstance(raw, dict) and {"x", "y", "width", "height"} <= raw.keys():
        box = BoundingBox.from_xywh(float(raw["x"]), float(raw["y"]), float(raw["width"]), float(raw["height"]))
    else:
        raise ValueError(f"unrecognized bbox {raw!r}")

    if not all(math.isfinite(v) for v in (box.x1, box.y1, box.x2, box.y2)):
        raise ValueError(f"non-finite bbox coordinate {raw!r}")
    if box.width < 0 or box.height < 0:
        raise ValueError(f"negative bbox extent {raw!r}")
    return box


def parse_detection(item: Any, tile_id: int) -> RawDetection:
    """Convert one response item into a RawDetection, raising ValueError if malformed."""
    if not isinstance(item, dict):
        raise ValueError(f"detection is not an object: {item!r}")

    element_type = item.get("type") or item.get("element_type")
    if not isinstance(element_type, str) or not element_type.strip():
        raise ValueError(f"detection without type: {item!r}")

    confidence = float(item.get("confidence", 0.0))
    if not math.isfinite(confidence):
        raise ValueError(f"non-finite confidence: {confidence}")
    if 1.0 < confidence <= 100.0:
        confidence /= 100.0
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence out of range: {confidence}")

    properties = item.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValueError(f"properties is not an object: {properties!r}")

    return RawDetection(
        element_type=element_type.strip().lower(),
        bbox=parse_bbox(item.get("bbox")),
        confidence=confidence,
        tile_id=tile_id,
        properties=dict(properties),
    )


class TileInferenceDispatcher:
    """Sends tiles to the vision client in concurrent batches."""

    def __init__(self, client: VisionInferenceClient, max_concurrent_tiles: int = 8,
                 tile_timeout: Optional[float] = 120.0,
                 directive_builder: Callable[[Tile, PlanImage], str] = build_tile_directive):
        if max_concurrent_tiles <= 0:
            raise InvalidConfiguration(f"max_concurrent_tiles must be positive, got {max_concurrent_tiles}")
        if tile_timeout is not None and tile_timeout <= 0:
            raise InvalidConfiguration(f"tile_timeout must be positive, got {tile_timeout}")

        self.client = client
        self.max_concurrent_tiles = max_concurrent_tiles
        self.tile_timeout = tile_timeout
        self.directive_builder = directive_builder

    async def dispatch(self, grid: TileGrid, image: PlanImage,
                       cancel_event: Optional[asyncio.Event] = None) -> DispatchResult:
        """
        Run inference on every tile of the grid.

        Args:
            grid: Planned tile grid
            image: Source image the tiles are cropped from
            cancel_event: When set, no further batch is started; the running batch drains

        Returns:
            DispatchResult keyed by tile id
        """
        start_time = time.time()
        result = DispatchResult(detections={tile.tile_id: [] for tile in grid.tiles})

        tiles = list(grid.tiles)
        batch_size = self.max_concurrent_tiles
        total_batches = (len(tiles) + batch_size - 1) // batch_size

        for start in range(0, len(tiles), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                result.skipped_tiles = [tile.tile_id for tile in tiles[start:]]
                logger.warning(f"Dispatch cancelled, {len(result.skipped_tiles)} tiles not dispatched")
                break

            batch = tiles[start:start + batch_size]
            batch_number = start // batch_size + 1
            logger.info(f"Processing batch {batch_number}/{total_batches} ({len(batch)} tiles)")

            outcomes = await asyncio.gather(*(self._run_tile(tile, image) for tile in batch))

            for tile, outcome in zip(batch, outcomes):
                if isinstance(outcome, TileInferenceFailure):
                    result.errors.append(outcome)
                else:
                    result.detections[tile.tile_id] = outcome

            result.batches += 1

        result.processing_time = time.time() - start_time
        logger.info(
            f"Dispatched {len(tiles) - len(result.skipped_tiles)}/{len(tiles)} tiles in {result.batches} batches: "
            f"{result.total_detections} detections, {len(result.errors)} failed tiles "
            f"({result.processing_time:.1f}s)"
        )
        return result

    async def _run_tile(self, tile: Tile, image: PlanImage):
        """Returns the tile's detections or a TileInferenceFailure; never raises."""
        try:
            directive = self.directive_builder(tile, image)
            call = self.client.infer(image.crop(tile), directive, tile)
            if self.tile_timeout is not None:
                response = await asyncio.wait_for(call, timeout=self.tile_timeout)
            else:
                response = await call
        except asyncio.TimeoutError:
            failure = TileInferenceFailure(tile.tile_id, f"no response within {self.tile_timeout}s", "timeout")
            logger.warning(str(failure))
            return failure
        except TileInferenceFailure as failure:
            logger.warning(str(failure))
            return failure
        except Exception as e:
            failure = TileInferenceFailure(tile.tile_id, str(e), type(e).__name__)
            logger.warning(str(failure))
            return failure

        try:
            if not isinstance(response, list):
                raise ValueError(f"expected a list of detections, got {type(response).__name__}")
            detections = [parse_detection(item, tile.tile_id) for item in response]
        except (TypeError, ValueError) as e:
            failure = TileInferenceFailure(tile.tile_id, str(e), "malformed_response")
            logger.warning(str(failure))
            return failure

        logger.debug(f"Tile {tile.tile_id} ({tile.x},{tile.y}): {len(detections)} detections")
        return detections
