"""
Converts validated, calibrated elements into real-world quantities.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .errors import ElementMeasurementFailure
from .scale_calibrator import ScaleCalibration
from .types import Measurement, MeasurementKind, MergedElement

DEPTH_PROPERTY_KEYS = ("depth_mm", "height_mm", "thickness_mm")

UNITS = {
    MeasurementKind.LENGTH: "m",
    MeasurementKind.AREA: "m2",
    MeasurementKind.VOLUME: "m3",
}

DEFAULT_METHODS = {
    "wall": MeasurementKind.LENGTH,
    "corridor": MeasurementKind.AREA,
    "room": MeasurementKind.AREA,
    "slab": MeasurementKind.VOLUME,
    "door": MeasurementKind.COUNT,
    "window": MeasurementKind.COUNT,
    "column": MeasurementKind.COUNT,
    "stair": MeasurementKind.COUNT,
    "dimension": MeasurementKind.IGNORE,
    "text": MeasurementKind.IGNORE,
}


@dataclass
class MeasurementResult:
    measurements: List[Measurement] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    failures: List[ElementMeasurementFailure] = field(default_factory=list)

    def totals(self) -> Dict[str, Dict[str, float]]:
        """Summed values per element type and unit."""
        totals: Dict[str, Dict[str, float]] = {}
        for m in self.measurements:
            per_type = totals.setdefault(m.element_type, {})
            per_type[m.unit] = per_type.get(m.unit, 0.0) + m.value
        return totals


class MeasurementCalculator:
    """Applies each element type's calculation method using the plan calibration."""

    def __init__(self, methods: Optional[Dict[str, MeasurementKind]] = None,
                 default_depth_mm: Optional[Dict[str, float]] = None):
        self.methods = dict(methods) if methods is not None else dict(DEFAULT_METHODS)
        self.default_depth_mm = dict(default_depth_mm or {})

    def calculate(self, elements: Sequence[MergedElement], calibration: ScaleCalibration) -> MeasurementResult:
        result = MeasurementResult()
        tally: Counter = Counter()

        for element in elements:
            kind = self.methods.get(element.element_type)
            try:
                if kind is None:
                    raise ElementMeasurementFailure(element, f"no calculation method for type '{element.element_type}'")
                if kind == MeasurementKind.IGNORE:
                    continue
                if kind == MeasurementKind.COUNT:
                    tally[element.element_type] += 1
                    continue
                result.measurements.append(self.measure(element, kind, calibration))
            except ElementMeasurementFailure as failure:
                logger.warning(str(failure))
                result.failures.append(failure)

        result.counts = dict(sorted(tally.items()))
        logger.info(
            f"Measured {len(result.measurements)} elements, counted {sum(tally.values())}, "
            f"{len(result.failures)} failures"
        )
        return result

    def measure(self, element: MergedElement, kind: MeasurementKind, calibration: ScaleCalibration) -> Measurement:
        box = element.bbox
        if box.width <= 0 or box.height <= 0:
            raise ElementMeasurementFailure(element, "missing geometry")

        if kind == MeasurementKind.LENGTH:
            value = calibration.px_to_mm(max(box.width, box.height)) / 1000.0
        elif kind == MeasurementKind.AREA:
            value = calibration.px2_to_mm2(box.area) / 1e6
        elif kind == MeasurementKind.VOLUME:
            depth_mm = self._depth_mm(element)
            if depth_mm is None:
                raise ElementMeasurementFailure(element, "no depth, height or thickness for volume")
            value = calibration.px2_to_mm2(box.area) * depth_mm / 1e9
        else:
            raise ElementMeasurementFailure(element, f"unsupported measurement kind '{kind}'")

        return Measurement(
            element_id=element.element_id,
            element_type=element.element_type,
            kind=kind,
            value=value,
            unit=UNITS[kind],
            accuracy=element.confidence * calibration.confidence,
        )

    def _depth_mm(self, element: MergedElement) -> Optional[float]:
        for key in DEPTH_PROPERTY_KEYS:
            value = element.properties.get(key)
            if isinstance(value, (int, float)) and value > 0:
                return float(value)
        return self.default_depth_mm.get(element.element_type)
