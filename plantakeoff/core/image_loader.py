"""
Loads rasterized plan sheets into PlanImage values.
"""

from pathlib import Path
from typing import Optional

import numpy as np
from loguru import logger
from PIL import Image

from .types import PlanImage

# Scanned A0 sheets at 300 dpi exceed Pillow's decompression bomb guard
Image.MAX_IMAGE_PIXELS = None


def load_plan_image(image_path: str, dpi: Optional[float] = None, default_dpi: float = 300.0) -> PlanImage:
    """
    Load a plan raster (PNG, TIFF, JPEG) with its pixel buffer.

    Args:
        image_path: Path to the raster file
        dpi: Resolution override; otherwise read from file metadata
        default_dpi: Used when neither override nor metadata is available

    Returns:
        PlanImage with RGB pixels
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Plan image not found: {path}")

    with Image.open(path) as image:
        resolution = dpi or _metadata_dpi(image) or default_dpi
        pixels = np.array(image.convert("RGB"))

    height, width = pixels.shape[:2]
    logger.info(f"Loaded plan {path.name}: {width}x{height} at {resolution:g} dpi "
                f"({width * height / 1e6:.1f}M pixels)")

    return PlanImage(width=width, height=height, dpi=float(resolution), pixels=pixels, source=str(path))


def _metadata_dpi(image: Image.Image) -> Optional[float]:
    info_dpi = image.info.get("dpi")
    if not info_dpi:
        return None
    try:
        value = float(info_dpi[0])
    except (TypeError, ValueError, IndexError):
        return None
    return value if value > 1 else None
