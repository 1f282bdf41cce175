"""
Pydantic models for the analysis report handed to document generation.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.types import MeasurementKind, Severity, ValidationStatus


class BoundingBox(BaseModel):
    """Bounding box in image pixel coordinates."""
    x1: float = Field(..., description="Left coordinate")
    y1: float = Field(..., description="Top coordinate")
    x2: float = Field(..., description="Right coordinate")
    y2: float = Field(..., description="Bottom coordinate")


class Violation(BaseModel):
    """Rule violation attached to an element."""
    kind: str = Field(..., description="Violation kind, e.g. narrow_door")
    severity: Severity = Field(..., description="Violation severity")
    value_mm: float = Field(..., description="Measured value in millimetres")
    threshold_mm: float = Field(..., description="Rule threshold in millimetres")
    rule: str = Field(..., description="Rule name")
    standard: Optional[str] = Field(None, description="Referenced standard")


class Element(BaseModel):
    """Merged and validated building element."""
    element_id: str = Field(..., description="Element identifier")
    element_type: str = Field(..., description="Element type tag")
    bbox: BoundingBox = Field(..., description="Merged bounding box")
    confidence: float = Field(..., description="Aggregated confidence")
    corroboration_count: int = Field(..., description="Number of independent tile detections")
    source_tiles: List[int] = Field(default_factory=list, description="Contributing tile ids")
    properties: Dict[str, Any] = Field(default_factory=dict, description="Element properties")
    violations: List[Violation] = Field(default_factory=list, description="Rule violations")
    status: ValidationStatus = Field(..., description="Validation status")


class Measurement(BaseModel):
    """Real-world quantity of one element."""
    element_id: str = Field(..., description="Measured element")
    element_type: str = Field(..., description="Element type tag")
    kind: MeasurementKind = Field(..., description="Calculation method")
    value: float = Field(..., description="Measured value")
    unit: str = Field(..., description="Unit of the value")
    accuracy: float = Field(..., description="Detection confidence times calibration confidence")


class Calibration(BaseModel):
    """Plan scale used for all measurements."""
    pixels_per_mm: float = Field(..., description="Pixels per real millimetre")
    confidence: float = Field(..., description="Calibration confidence")
    methods: List[str] = Field(default_factory=list, description="Contributing methods")
    fallback: bool = Field(False, description="Whether the default scale was used")
    warnings: List[str] = Field(default_factory=list, description="Ambiguity warnings")


class TileError(BaseModel):
    """A tile whose inference failed."""
    tile_id: int = Field(..., description="Tile identifier")
    error_type: str = Field(..., description="Failure category")
    reason: str = Field(..., description="Failure detail")


class DiscardedElement(BaseModel):
    """An element removed by the consistency check."""
    element_id: str = Field(..., description="Element identifier")
    element_type: str = Field(..., description="Element type tag")
    reason: str = Field(..., description="Rejection reason")
    detail: Optional[str] = Field(None, description="Rejection detail")
    bbox: BoundingBox = Field(..., description="Bounding box at rejection")


class MeasurementFailure(BaseModel):
    """An element that could not be measured."""
    element_id: str = Field(..., description="Element identifier")
    element_type: str = Field(..., description="Element type tag")
    reason: str = Field(..., description="Failure reason")


class AnalysisReport(BaseModel):
    """Result of one tiled plan analysis."""
    source: Optional[str] = Field(None, description="Analyzed plan file")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Report timestamp (UTC)")
    summary: Dict[str, Any] = Field(default_factory=dict, description="Processing metrics")
    calibration: Calibration = Field(..., description="Scale calibration")
    elements: List[Element] = Field(default_factory=list, description="Valid elements")
    measurements: List[Measurement] = Field(default_factory=list, description="Element measurements")
    counts: Dict[str, int] = Field(default_factory=dict, description="Counted elements per type")
    totals: Dict[str, Dict[str, float]] = Field(default_factory=dict, description="Summed quantities per type")
    tile_errors: List[TileError] = Field(default_factory=list, description="Failed tiles")
    skipped_tiles: List[int] = Field(default_factory=list, description="Tiles not dispatched after cancellation")
    discarded: List[DiscardedElement] = Field(default_factory=list, description="Consistency discard log")
    measurement_failures: List[MeasurementFailure] = Field(default_factory=list, description="Unmeasured elements")
