"""
Tile grid planning for plans larger than the vision model's input resolution.
Splits the image into overlapping tiles that together cover every pixel.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List

from loguru import logger

from .errors import InvalidConfiguration
from .types import Tile


@dataclass
class TileGrid:
    """Ordered tiles for one image plus the parameters that produced them."""
    image_width: int
    image_height: int
    tile_size: int
    overlap: int
    tiles: List[Tile]
    tiles_x: int
    tiles_y: int
    _by_id: Dict[int, Tile] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._by_id = {tile.tile_id: tile for tile in self.tiles}

    @property
    def step(self) -> int:
        return self.tile_size - self.overlap

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self):
        return iter(self.tiles)

    def get(self, tile_id: int) -> Tile:
        tile = self._by_id.get(tile_id)
        if tile is None:
            raise KeyError(f"Unknown tile id: {tile_id}")
        return tile

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_width": self.image_width,
            "image_height": self.image_height,
            "tile_size": self.tile_size,
            "overlap": self.overlap,
            "step": self.step,
            "tiles_x": self.tiles_x,
            "tiles_y": self.tiles_y,
            "tiles": [tile.to_dict() for tile in self.tiles],
        }


class TileGridPlanner:
    """Computes a deterministic, row-major grid of overlapping tiles."""

    def __init__(self, tile_size: int = 672, overlap: int = 64):
        if tile_size <= 0:
            raise InvalidConfiguration(f"tile_size must be positive, got {tile_size}")
        if overlap <= 0 or overlap >= tile_size:
            raise InvalidConfiguration(
                f"overlap must satisfy 0 < overlap < tile_size, got overlap={overlap}, tile_size={tile_size}"
            )
        self.tile_size = tile_size
        self.overlap = overlap

    @property
    def step(self) -> int:
        return self.tile_size - self.overlap

    def plan(self, width: int, height: int) -> TileGrid:
        """
        Plan the tile grid for an image.

        Args:
            width: Image width in pixels
            height: Image height in pixels

        Returns:
            TileGrid with tiles ordered row-major by origin
        """
        if width <= 0 or height <= 0:
            raise InvalidConfiguration(f"Image dimensions must be positive, got {width}x{height}")

        xs = self._axis_origins(width)
        ys = self._axis_origins(height)

        tiles = []
        tile_id = 0
        for y in ys:
            for x in xs:
                tiles.append(Tile(
                    tile_id=tile_id,
                    x=x,
                    y=y,
                    width=min(self.tile_size, width - x),
                    height=min(self.tile_size, height - y),
                ))
                tile_id += 1

        tiles = self._link_overlaps(tiles)

        grid = TileGrid(
            image_width=width,
            image_height=height,
            tile_size=self.tile_size,
            overlap=self.overlap,
            tiles=tiles,
            tiles_x=len(xs),
            tiles_y=len(ys),
        )

        logger.info(
            f"Tile grid for {width}x{height}: {grid.tiles_x}x{grid.tiles_y} = {len(tiles)} tiles "
            f"(size {self.tile_size}, overlap {self.overlap}, step {self.step})"
        )
        return grid

    def _axis_origins(self, length: int) -> List[int]:
        """Origins along one axis; the last one sits flush against the far edge."""
        count = math.ceil(length / self.step)
        origins = [i * self.step for i in range(count)]

        last = origins[-1]
        if last + self.tile_size > length:
            origins[-1] = max(0, length - self.tile_size)

        return sorted(set(origins))

    @staticmethod
    def _link_overlaps(tiles: List[Tile]) -> List[Tile]:
        linked = []
        for tile in tiles:
            overlaps = tuple(
                other.tile_id for other in tiles
                if other.tile_id != tile.tile_id and tile.bbox.intersection(other.bbox) > 0
            )
            linked.append(Tile(
                tile_id=tile.tile_id,
                x=tile.x,
                y=tile.y,
                width=tile.width,
                height=tile.height,
                overlaps=overlaps,
            ))
        return linked
