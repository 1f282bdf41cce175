"""
Contract for the external vision service that analyzes single tiles.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import numpy as np

from ..core.types import Tile


class VisionInferenceClient(ABC):
    """A vision model that looks at one tile at a time."""

    @abstractmethod
    async def infer(self, tile_image: Optional[np.ndarray], directive: str, tile: Tile) -> List[Dict[str, Any]]:
        """
        Analyze one tile.

        Args:
            tile_image: Tile pixels (may be None when the image carries no pixel buffer)
            directive: Textual analysis instruction for this tile
            tile: Tile descriptor, for context only

        Returns:
            List of detections, each a dict with "type", "bbox" (tile-local),
            "confidence" and optional "properties"
        """

    async def close(self):
        """Release connections held by the client."""
