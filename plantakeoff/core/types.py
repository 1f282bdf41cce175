"""
Core data structures shared by the tiled analysis pipeline:
plan images, tiles, bounding boxes, detections, merged elements and measurements.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box, (x1, y1) = top-left, (x2, y2) = bottom-right."""
    x1: float
    y1: float
    x2: float
    y2: float

    @classmethod
    def from_xywh(cls, x: float, y: float, w: float, h: float) -> 'BoundingBox':
        return cls(x1=x, y1=y, x2=x + w, y2=y + h)

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2)

    def translate(self, dx: float, dy: float) -> 'BoundingBox':
        return BoundingBox(self.x1 + dx, self.y1 + dy, self.x2 + dx, self.y2 + dy)

    def clamp(self, width: float, height: float) -> 'BoundingBox':
        """Clip the box to [0, width] x [0, height]."""
        return BoundingBox(
            x1=min(max(self.x1, 0.0), width),
            y1=min(max(self.y1, 0.0), height),
            x2=min(max(self.x2, 0.0), width),
            y2=min(max(self.y2, 0.0), height),
        )

    def intersection(self, other: 'BoundingBox') -> float:
        x1 = max(self.x1, other.x1)
        y1 = max(self.y1, other.y1)
        x2 = min(self.x2, other.x2)
        y2 = min(self.y2, other.y2)

        if x2 <= x1 or y2 <= y1:
            return 0.0
        return (x2 - x1) * (y2 - y1)

    def iou(self, other: 'BoundingBox') -> float:
        """Intersection over union."""
        intersection = self.intersection(other)
        union = self.area + other.area - intersection
        return intersection / union if union > 0 else 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass(frozen=True)
class PlanImage:
    """
    Immutable source raster of one plan sheet.

    `pixels` is optional so that grids and merges can be computed from
    dimensions alone; tiles are cropped from it only when dispatching.
    """
    width: int
    height: int
    dpi: float = 300.0
    pixels: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    source: Optional[str] = None

    def crop(self, tile: 'Tile') -> Optional[np.ndarray]:
        if self.pixels is None:
            return None
        return self.pixels[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width]

    @property
    def total_pixels(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class Tile:
    """A tile descriptor: position and size in image coordinates, no pixel data."""
    tile_id: int
    x: int
    y: int
    width: int
    height: int
    overlaps: Tuple[int, ...] = ()

    @property
    def bbox(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "overlaps": list(self.overlaps),
        }


@dataclass
class RawDetection:
    """One detection reported by the vision model, in tile-local coordinates."""
    element_type: str
    bbox: BoundingBox
    confidence: float
    tile_id: int
    properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GlobalDetection:
    """A detection in image coordinates, with the tiles it came from."""
    element_type: str
    bbox: BoundingBox
    confidence: float
    source_tiles: List[int]
    properties: Dict[str, Any] = field(default_factory=dict)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ViolationFlag:
    """A domain rule that fired on an element."""
    kind: str
    severity: Severity
    value_mm: float
    threshold_mm: float
    rule: str
    standard: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity.value,
            "value_mm": round(self.value_mm, 1),
            "threshold_mm": self.threshold_mm,
            "rule": self.rule,
            "standard": self.standard,
        }


@dataclass
class MergedElement:
    """
    One physical element after deduplication across tiles.

    Only the rule engine (violations) and the consistency validator (status)
    mutate it after the merger creates it.
    """
    element_id: str
    element_type: str
    bbox: BoundingBox
    confidence: float
    corroboration_count: int
    source_tiles: List[int]
    members: List[GlobalDetection] = field(default_factory=list, repr=False)
    properties: Dict[str, Any] = field(default_factory=dict)
    violations: List[ViolationFlag] = field(default_factory=list)
    status: ValidationStatus = ValidationStatus.PENDING

    def as_detection(self) -> GlobalDetection:
        """Degenerate single-member detection, used to re-feed the merger."""
        return GlobalDetection(
            element_type=self.element_type,
            bbox=self.bbox,
            confidence=self.confidence,
            source_tiles=list(self.source_tiles),
            properties=dict(self.properties),
        )

    @property
    def is_critical(self) -> bool:
        return any(v.severity == Severity.CRITICAL for v in self.violations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "element_type": self.element_type,
            "bbox": self.bbox.to_dict(),
            "confidence": self.confidence,
            "corroboration_count": self.corroboration_count,
            "source_tiles": list(self.source_tiles),
            "properties": self.properties,
            "violations": [v.to_dict() for v in self.violations],
            "status": self.status.value,
        }


class MeasurementKind(str, Enum):
    LENGTH = "length"
    AREA = "area"
    VOLUME = "volume"
    COUNT = "count"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Measurement:
    """A real-world quantity derived from one merged element."""
    element_id: str
    element_type: str
    kind: MeasurementKind
    value: float
    unit: str
    accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "element_type": self.element_type,
            "kind": self.kind.value,
            "value": self.value,
            "unit": self.unit,
            "accuracy": self.accuracy,
        }
