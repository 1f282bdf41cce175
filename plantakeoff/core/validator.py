"""
Global consistency check after merging: drops geometrically implausible
elements (stitching artifacts and noise) and keeps a record of each.
"""

from dataclasses import dataclass, field
from typing import List, Sequence

from loguru import logger

from .errors import ConsistencyRejected, InvalidConfiguration
from .types import MergedElement, PlanImage, ValidationStatus


@dataclass
class ValidationResult:
    valid: List[MergedElement]
    discarded: List[ConsistencyRejected] = field(default_factory=list)


class ConsistencyValidator:
    """Rejects oversized and undersized merged elements."""

    def __init__(self, max_extent_fraction: float = 0.8, min_size_px: float = 5.0):
        if not 0.0 < max_extent_fraction <= 1.0:
            raise InvalidConfiguration(f"max_extent_fraction must be in (0, 1], got {max_extent_fraction}")
        if min_size_px < 0:
            raise InvalidConfiguration(f"min_size_px must be >= 0, got {min_size_px}")
        self.max_extent_fraction = max_extent_fraction
        self.min_size_px = min_size_px

    def check(self, element: MergedElement, image: PlanImage):
        """Returns a ConsistencyRejected record, or None when the element is plausible."""
        box = element.bbox
        max_width = image.width * self.max_extent_fraction
        max_height = image.height * self.max_extent_fraction

        if box.width > max_width or box.height > max_height:
            return ConsistencyRejected(
                element, "oversized_element",
                f"{box.width:.0f}x{box.height:.0f}px exceeds {self.max_extent_fraction:.0%} of "
                f"{image.width}x{image.height} plan, likely a stitching error",
            )

        if box.width < self.min_size_px or box.height < self.min_size_px:
            return ConsistencyRejected(
                element, "undersized_element",
                f"{box.width:.1f}x{box.height:.1f}px below {self.min_size_px:g}px, likely noise",
            )

        return None

    def validate(self, elements: Sequence[MergedElement], image: PlanImage) -> ValidationResult:
        result = ValidationResult(valid=[])

        for element in elements:
            rejection = self.check(element, image)
            if rejection is None:
                element.status = ValidationStatus.VALID
                result.valid.append(element)
            else:
                element.status = ValidationStatus.REJECTED
                result.discarded.append(rejection)
                logger.warning(f"Discarded {rejection}")

        logger.info(f"Consistency validation: {len(result.valid)}/{len(elements)} elements valid, "
                    f"{len(result.discarded)} discarded")
        return result
