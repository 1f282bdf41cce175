"""
Maps tile-local detections into the image's global coordinate space.
"""

from typing import Dict, Iterable, List

from .tile_grid import TileGrid
from .types import GlobalDetection, PlanImage, RawDetection


class CoordinateGlobalizer:
    """Stateless translation of tile-local boxes by their tile's origin, clamped to the image."""

    def __init__(self, grid: TileGrid, image: PlanImage):
        self.grid = grid
        self.image = image

    def globalize_one(self, detection: RawDetection) -> GlobalDetection:
        tile = self.grid.get(detection.tile_id)
        bbox = detection.bbox.translate(tile.x, tile.y).clamp(self.image.width, self.image.height)

        return GlobalDetection(
            element_type=detection.element_type,
            bbox=bbox,
            confidence=detection.confidence,
            source_tiles=[detection.tile_id],
            properties=dict(detection.properties),
        )

    def globalize(self, detections: Iterable[RawDetection]) -> List[GlobalDetection]:
        return [self.globalize_one(d) for d in detections]

    def globalize_all(self, detections_by_tile: Dict[int, List[RawDetection]]) -> List[GlobalDetection]:
        """Flatten per-tile results in tile id order."""
        globalized = []
        for tile_id in sorted(detections_by_tile):
            globalized.extend(self.globalize(detections_by_tile[tile_id]))
        return globalized
