"""
Draws merged elements and violations on the plan for visual review.
"""

from typing import Optional, Sequence

import cv2
import numpy as np

from ..core.tile_grid import TileGrid
from ..core.types import MergedElement

COLORS = {
    "wall": (90, 90, 90),
    "door": (0, 160, 0),
    "window": (0, 120, 255),
    "corridor": (200, 0, 200),
    "room": (0, 200, 200),
    "dimension": (255, 160, 0),
    "unknown": (128, 128, 128),
}
VIOLATION_COLOR = (255, 0, 0)
TILE_COLOR = (180, 180, 255)


def draw_overlay(image: np.ndarray, elements: Sequence[MergedElement],
                 grid: Optional[TileGrid] = None) -> np.ndarray:
    """
    Visualize elements on the plan image.

    Args:
        image: RGB plan pixels
        elements: Elements to draw
        grid: Optional tile grid drawn underneath

    Returns:
        Copy of the image with boxes and labels drawn
    """
    vis_image = image.copy()
    if vis_image.ndim == 2:
        vis_image = cv2.cvtColor(vis_image, cv2.COLOR_GRAY2RGB)

    if grid is not None:
        for tile in grid.tiles:
            cv2.rectangle(vis_image, (tile.x, tile.y),
                          (tile.x + tile.width - 1, tile.y + tile.height - 1), TILE_COLOR, 1)

    for element in elements:
        box = element.bbox
        color = VIOLATION_COLOR if element.violations else COLORS.get(element.element_type, COLORS["unknown"])
        top_left = (int(round(box.x1)), int(round(box.y1)))
        bottom_right = (int(round(box.x2)), int(round(box.y2)))

        cv2.rectangle(vis_image, top_left, bottom_right, color, 3 if element.violations else 2)

        label = f"{element.element_type} ({element.confidence:.2f}, x{element.corroboration_count})"
        if element.violations:
            label += " " + ",".join(v.kind for v in element.violations)
        cv2.putText(vis_image, label, (top_left[0], max(top_left[1] - 8, 12)),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1)

    return vis_image


def save_overlay(path: str, image: np.ndarray, elements: Sequence[MergedElement],
                 grid: Optional[TileGrid] = None):
    overlay = draw_overlay(image, elements, grid)
    cv2.imwrite(path, cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
