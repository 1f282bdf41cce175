"""
Error taxonomy for the plan analysis pipeline.

Only InvalidConfiguration aborts a run. The other errors are contained to one
tile, one calibration candidate set or one element and are kept as records in
the analysis audit trail.
"""

from typing import Any, Dict, Optional


class PlanAnalysisError(Exception):
    """Base class for all pipeline errors."""


class InvalidConfiguration(PlanAnalysisError):
    """Malformed tiling or threshold parameters."""


class TileInferenceFailure(PlanAnalysisError):
    """A single tile's inference call failed."""

    def __init__(self, tile_id: int, reason: str, error_type: str = "error"):
        super().__init__(f"Tile {tile_id} inference failed ({error_type}): {reason}")
        self.tile_id = tile_id
        self.reason = reason
        self.error_type = error_type

    def to_dict(self) -> Dict[str, Any]:
        return {"tile_id": self.tile_id, "error_type": self.error_type, "reason": self.reason}


class CalibrationAmbiguous(PlanAnalysisError):
    """Scale candidates disagree beyond the configured tolerance."""

    def __init__(self, chosen: float, conflicting: list):
        values = ", ".join(f"{c.method}={c.pixels_per_mm:.4f}" for c in conflicting)
        super().__init__(f"Scale candidates disagree with chosen {chosen:.4f} px/mm: {values}")
        self.chosen = chosen
        self.conflicting = list(conflicting)


class ConsistencyRejected(PlanAnalysisError):
    """A merged element failed the plausibility checks."""

    def __init__(self, element, reason: str, detail: Optional[str] = None):
        super().__init__(f"{element.element_id} rejected: {reason}" + (f" ({detail})" if detail else ""))
        self.element = element
        self.reason = reason
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element.element_id,
            "element_type": self.element.element_type,
            "reason": self.reason,
            "detail": self.detail,
            "bbox": self.element.bbox.to_dict(),
        }


class ElementMeasurementFailure(PlanAnalysisError):
    """An element's calculation method could not be applied."""

    def __init__(self, element, reason: str):
        super().__init__(f"Cannot measure {element.element_id}: {reason}")
        self.element = element
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element_id": self.element.element_id,
            "element_type": self.element.element_type,
            "reason": self.reason,
        }
