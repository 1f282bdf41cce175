"""
Analysis directives sent to the vision model with each tile.
"""

from ..core.types import PlanImage, Tile

ELEMENT_TYPES = ("wall", "door", "window", "corridor", "room", "column", "slab", "stair", "dimension", "text")


def build_tile_directive(tile: Tile, image: PlanImage) -> str:
    """Build the instruction for one tile of a building plan."""
    return f"""You are analyzing one high-resolution section of a building plan.

Context:
- Tile {tile.tile_id} at position ({tile.x}, {tile.y}) of a {image.width}x{image.height} pixel plan scanned at {image.dpi:g} dpi
- The tile is {tile.width}x{tile.height} pixels; neighbouring tiles overlap it, so elements cut at the border are expected

Tasks:
1. Identify every building element visible in this tile ({", ".join(ELEMENT_TYPES)})
2. Report each element's bounding box in TILE pixel coordinates as [x, y, width, height]
3. Transcribe dimension annotations and scale notes (e.g. "M 1:100") into the "text" property
4. Report materials where they are recognizable

Respond with JSON only:
{{
  "elements": [
    {{
      "type": "door",
      "bbox": [x, y, width, height],
      "confidence": 0.9,
      "properties": {{"material": "wood", "text": "885"}}
    }}
  ]
}}"""
