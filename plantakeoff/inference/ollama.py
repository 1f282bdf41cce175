"""
Ollama-hosted vision model (llava) as the tile inference service.
"""

import asyncio
import base64
import json
from io import BytesIO
from typing import Any, Dict, List, Optional

import numpy as np
import requests
from loguru import logger
from PIL import Image

from ..core.errors import TileInferenceFailure
from ..core.types import Tile
from .base import VisionInferenceClient


def encode_tile_png(tile_image: np.ndarray) -> str:
    """Base64 PNG of the tile pixels."""
    buffer = BytesIO()
    Image.fromarray(tile_image).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def parse_elements(text: str, tile_id: int) -> List[Dict[str, Any]]:
    """Extract the element list from the model's JSON answer."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise TileInferenceFailure(tile_id, f"response is not JSON: {e}", "malformed_response") from e

    if isinstance(payload, dict) and "tile_analysis" in payload:
        payload = payload["tile_analysis"]

    if isinstance(payload, dict):
        elements = payload.get("elements")
    else:
        elements = payload

    if not isinstance(elements, list):
        raise TileInferenceFailure(tile_id, "response has no element list", "malformed_response")
    return elements


class OllamaVisionClient(VisionInferenceClient):
    """Calls Ollama's /api/generate with the tile image attached."""

    def __init__(self, host: str = "http://localhost:11434", model: str = "llava:34b",
                 request_timeout: float = 110.0, temperature: float = 0.1,
                 session: Optional[requests.Session] = None):
        self.host = host.rstrip("/")
        self.model = model
        self.request_timeout = request_timeout
        self.temperature = temperature
        self.session = session or requests.Session()
        logger.info(f"Ollama vision client: {self.model} at {self.host}")

    async def infer(self, tile_image: Optional[np.ndarray], directive: str, tile: Tile) -> List[Dict[str, Any]]:
        if tile_image is None:
            raise TileInferenceFailure(tile.tile_id, "image has no pixel data", "missing_pixels")
        payload = {
            "model": self.model,
            "prompt": directive,
            "images": [encode_tile_png(tile_image)],
            "format": "json",
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        text = await asyncio.to_thread(self._generate, payload)
        return parse_elements(text, tile.tile_id)

    def _generate(self, payload: Dict[str, Any]) -> str:
        response = self.session.post(f"{self.host}/api/generate", json=payload, timeout=self.request_timeout)
        response.raise_for_status()
        return response.json().get("response", "")

    async def close(self):
        self.session.close()
