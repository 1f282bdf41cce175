"""
Domain measurement rules applied to merged elements, e.g. minimum clear
widths of escape-route doors and corridors.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .errors import InvalidConfiguration
from .scale_calibrator import ScaleCalibration
from .types import BoundingBox, MergedElement, Severity, ViolationFlag

DIMENSIONS: Dict[str, Callable[[BoundingBox], float]] = {
    "width": lambda box: box.width,
    "height": lambda box: box.height,
    "min_side": lambda box: min(box.width, box.height),
    "max_side": lambda box: max(box.width, box.height),
}


@dataclass(frozen=True)
class DimensionRule:
    """A threshold on one real-world dimension of certain element types."""
    name: str
    element_types: Sequence[str]
    dimension: str
    threshold_mm: float
    severity: Severity
    kind: str
    comparison: str = "min"  # min: value must be >= threshold, max: value must be <= threshold
    standard: Optional[str] = None

    def __post_init__(self):
        if self.dimension not in DIMENSIONS:
            raise InvalidConfiguration(f"Rule {self.name}: unknown dimension '{self.dimension}'")
        if self.comparison not in ("min", "max"):
            raise InvalidConfiguration(f"Rule {self.name}: comparison must be 'min' or 'max'")
        if self.threshold_mm <= 0:
            raise InvalidConfiguration(f"Rule {self.name}: threshold must be positive")

    def applies_to(self, element_type: str) -> bool:
        return element_type in self.element_types

    def evaluate(self, element_type: str, value_mm: float) -> Optional[ViolationFlag]:
        """Pure check of one measured value; returns a flag when the rule is violated."""
        if not self.applies_to(element_type):
            return None

        if self.comparison == "min":
            violated = value_mm < self.threshold_mm
        else:
            violated = value_mm > self.threshold_mm

        if not violated:
            return None

        return ViolationFlag(
            kind=self.kind,
            severity=self.severity,
            value_mm=value_mm,
            threshold_mm=self.threshold_mm,
            rule=self.name,
            standard=self.standard,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DimensionRule':
        return cls(
            name=data["name"],
            element_types=tuple(data["element_types"]),
            dimension=data.get("dimension", "width"),
            threshold_mm=float(data["threshold_mm"]),
            severity=Severity(data.get("severity", "high")),
            kind=data.get("kind", data["name"]),
            comparison=data.get("comparison", "min"),
            standard=data.get("standard"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "element_types": list(self.element_types),
            "dimension": self.dimension,
            "threshold_mm": self.threshold_mm,
            "severity": self.severity.value,
            "kind": self.kind,
            "comparison": self.comparison,
            "standard": self.standard,
        }


def default_rules() -> List[DimensionRule]:
    return [
        DimensionRule(
            name="escape_route_door_width",
            element_types=("door",),
            dimension="width",
            threshold_mm=1200.0,
            severity=Severity.CRITICAL,
            kind="narrow_door",
            standard="DIN EN 1125",
        ),
        DimensionRule(
            name="escape_route_corridor_width",
            element_types=("corridor",),
            dimension="min_side",
            threshold_mm=1200.0,
            severity=Severity.HIGH,
            kind="narrow_corridor",
            standard="ASR A2.3",
        ),
    ]


class ViolationRuleEngine:
    """Appends violation flags to elements; never touches geometry."""

    def __init__(self, rules: Optional[Iterable[DimensionRule]] = None):
        self.rules = list(rules) if rules is not None else default_rules()

    def apply(self, elements: Sequence[MergedElement], calibration: ScaleCalibration) -> List[ViolationFlag]:
        """
        Evaluate every rule against every element.

        Returns:
            All flags raised in this pass
        """
        raised = []
        for element in elements:
            for rule in self.rules:
                if not rule.applies_to(element.element_type):
                    continue

                value_mm = calibration.px_to_mm(DIMENSIONS[rule.dimension](element.bbox))
                flag = rule.evaluate(element.element_type, value_mm)
                if flag is None:
                    continue

                element.violations.append(flag)
                raised.append(flag)
                logger.debug(
                    f"{element.element_id}: {flag.kind} ({flag.severity.value}) "
                    f"{value_mm:.0f}mm vs {rule.comparison} {rule.threshold_mm:.0f}mm"
                )

        critical = sum(1 for f in raised if f.severity == Severity.CRITICAL)
        logger.info(f"Rule engine: {len(raised)} violations ({critical} critical) on {len(elements)} elements")
        return raised
