"""
Scale calibration: derives the pixel-to-millimetre conversion of a plan sheet
from independent signals (drawing scale text, dimension annotations, reference
objects of known size) and consolidates them into one calibration.
"""

import re
import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .errors import CalibrationAmbiguous, InvalidConfiguration
from .types import MergedElement, PlanImage

MM_PER_INCH = 25.4

TEXT_PROPERTY_KEYS = ("text", "annotation", "label", "scale")


@dataclass(frozen=True)
class ScaleCandidate:
    """One method's estimate of the plan scale."""
    pixels_per_mm: float
    confidence: float
    method: str
    evidence: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pixels_per_mm": self.pixels_per_mm,
            "confidence": self.confidence,
            "method": self.method,
            "evidence": self.evidence,
        }


@dataclass(frozen=True)
class ScaleCalibration:
    """Consolidated calibration for one image. Read-only after creation."""
    pixels_per_mm: float
    confidence: float
    methods: List[str]
    candidates: List[ScaleCandidate] = field(default_factory=list)
    fallback: bool = False
    warnings: List[CalibrationAmbiguous] = field(default_factory=list)

    @property
    def mm_per_pixel(self) -> float:
        return 1.0 / self.pixels_per_mm

    @property
    def ambiguous(self) -> bool:
        return bool(self.warnings)

    def px_to_mm(self, pixels: float) -> float:
        return pixels / self.pixels_per_mm

    def px2_to_mm2(self, pixels: float) -> float:
        return pixels / (self.pixels_per_mm ** 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pixels_per_mm": self.pixels_per_mm,
            "mm_per_pixel": self.mm_per_pixel,
            "confidence": self.confidence,
            "methods": list(self.methods),
            "candidates": [c.to_dict() for c in self.candidates],
            "fallback": self.fallback,
            "warnings": [str(w) for w in self.warnings],
        }


@dataclass
class CalibrationContext:
    """Everything a calibration method may look at."""
    image: PlanImage
    elements: Sequence[MergedElement] = ()
    texts: Sequence[str] = ()

    def all_texts(self) -> List[str]:
        texts = [t for t in self.texts if t]
        for element in self.elements:
            for key in TEXT_PROPERTY_KEYS:
                value = element.properties.get(key)
                if isinstance(value, str) and value.strip():
                    texts.append(value)
        return texts


def scale_to_pixels_per_mm(denominator: float, dpi: float) -> float:
    """Pixels per real-world millimetre for a 1:denominator drawing scanned at dpi."""
    return dpi / MM_PER_INCH / denominator


class DrawingScaleTextMethod:
    """Reads a printed drawing scale such as "M 1:100" or "SCALE 1:50"."""

    name = "drawing_scale"

    def __init__(self, keyword_confidence: float = 0.9, bare_confidence: float = 0.75):
        self.keyword_confidence = keyword_confidence
        self.bare_confidence = bare_confidence
        self._compile_patterns()

    def _compile_patterns(self):
        self.patterns = {
            'keyword': re.compile(
                r'(?:MASSSTAB|MAßSTAB|MASTAB|SCALE|MST\.?|\bM)\s*:?\s*1\s*:\s*(\d{1,4})\b',
                re.IGNORECASE,
            ),
            'bare': re.compile(r'(?<![\d.,:])1\s*:\s*(\d{1,4})\b'),
        }

    def detect(self, context: CalibrationContext) -> Optional[ScaleCandidate]:
        keyword_hits = Counter()
        bare_hits = Counter()

        for text in context.all_texts():
            for match in self.patterns['keyword'].finditer(text):
                keyword_hits[int(match.group(1))] += 1
            for match in self.patterns['bare'].finditer(text):
                bare_hits[int(match.group(1))] += 1

        hits, confidence = (keyword_hits, self.keyword_confidence) if keyword_hits else (bare_hits, self.bare_confidence)
        hits = Counter({d: n for d, n in hits.items() if d > 0})
        if not hits:
            return None

        denominator, _ = hits.most_common(1)[0]
        if len(hits) > 1:
            # Several scales on one sheet, usually details next to the main view
            confidence -= 0.15

        return ScaleCandidate(
            pixels_per_mm=scale_to_pixels_per_mm(denominator, context.image.dpi),
            confidence=confidence,
            method=self.name,
            evidence=f"1:{denominator}",
        )


class DimensionAnnotationMethod:
    """Compares dimension annotations' printed values with their pixel length."""

    name = "dimension_annotations"

    def __init__(self, element_types: Iterable[str] = ("dimension",), base_confidence: float = 0.6,
                 agreement_tolerance: float = 0.05):
        self.element_types = set(element_types)
        self.base_confidence = base_confidence
        self.agreement_tolerance = agreement_tolerance
        self.value_pattern = re.compile(r'(\d+(?:[.,]\d+)?)\s*(mm|cm|m)?\b', re.IGNORECASE)

    def parse_length_mm(self, element: MergedElement) -> Optional[float]:
        value = element.properties.get("value_mm")
        if isinstance(value, (int, float)) and value > 0:
            return float(value)

        text = element.properties.get("text")
        if not isinstance(text, str):
            return None

        match = self.value_pattern.search(text)
        if not match:
            return None

        number_text, unit = match.group(1), (match.group(2) or "").lower()
        number = float(number_text.replace(",", "."))
        if unit == "mm":
            length = number
        elif unit == "cm":
            length = number * 10
        elif unit == "m":
            length = number * 1000
        elif "," in number_text or "." in number_text:
            # Decimal without unit is metres on architectural plans
            length = number * 1000
        else:
            length = number

        return length if length > 0 else None

    def detect(self, context: CalibrationContext) -> Optional[ScaleCandidate]:
        ratios = []
        for element in context.elements:
            if element.element_type not in self.element_types:
                continue
            length_mm = self.parse_length_mm(element)
            pixel_length = max(element.bbox.width, element.bbox.height)
            if length_mm and pixel_length > 0:
                ratios.append(pixel_length / length_mm)

        if not ratios:
            return None

        median = statistics.median(ratios)
        agreeing = sum(1 for r in ratios if abs(r - median) <= self.agreement_tolerance * median)
        agreement = agreeing / len(ratios)
        confidence = min(0.95, self.base_confidence + 0.05 * min(len(ratios) - 1, 6)) * agreement

        return ScaleCandidate(
            pixels_per_mm=median,
            confidence=confidence,
            method=self.name,
            evidence=f"{len(ratios)} annotations, {agreeing} agreeing",
        )


class ReferenceObjectMethod:
    """Uses elements of a standard real-world size as a ruler."""

    name = "reference_objects"

    def __init__(self, reference_sizes_mm: Optional[Dict[str, float]] = None, base_confidence: float = 0.5):
        self.reference_sizes_mm = reference_sizes_mm if reference_sizes_mm is not None else {"door": 885.0}
        self.base_confidence = base_confidence

    def detect(self, context: CalibrationContext) -> Optional[ScaleCandidate]:
        ratios = []
        for element in context.elements:
            reference = self.reference_sizes_mm.get(element.element_type)
            pixel_size = max(element.bbox.width, element.bbox.height)
            if reference and pixel_size > 0:
                ratios.append(pixel_size / reference)

        if not ratios:
            return None

        return ScaleCandidate(
            pixels_per_mm=statistics.median(ratios),
            confidence=min(0.7, self.base_confidence + 0.05 * min(len(ratios) - 1, 4)),
            method=self.name,
            evidence=f"{len(ratios)} reference objects",
        )


def default_methods() -> list:
    return [DimensionAnnotationMethod(), ReferenceObjectMethod(), DrawingScaleTextMethod()]


class ScaleCalibrator:
    """Runs the calibration methods and consolidates their candidates."""

    def __init__(self, methods: Optional[list] = None, tolerance: float = 0.05, min_confidence: float = 0.5,
                 fallback_scale: float = 100.0, fallback_confidence: float = 0.2,
                 disagreement_penalty: float = 0.7):
        if tolerance < 0:
            raise InvalidConfiguration(f"Calibration tolerance must be >= 0, got {tolerance}")
        if fallback_scale <= 0:
            raise InvalidConfiguration(f"Fallback scale must be positive, got {fallback_scale}")

        self.methods = methods if methods is not None else default_methods()
        self.tolerance = tolerance
        self.min_confidence = min_confidence
        self.fallback_scale = fallback_scale
        self.fallback_confidence = fallback_confidence
        self.disagreement_penalty = disagreement_penalty

    def calibrate(self, context: CalibrationContext) -> ScaleCalibration:
        candidates = self.collect_candidates(context)
        calibration = self.consolidate(candidates, context.image)

        logger.info(
            f"Scale calibration: {calibration.pixels_per_mm:.4f} px/mm "
            f"(confidence {calibration.confidence:.2f}, methods {calibration.methods or ['fallback']})"
        )
        return calibration

    def collect_candidates(self, context: CalibrationContext) -> List[ScaleCandidate]:
        candidates = []
        for method in self.methods:
            name = getattr(method, "name", type(method).__name__)
            try:
                candidate = method.detect(context)
            except Exception as e:
                logger.warning(f"Calibration method {name} failed: {e}")
                continue

            if candidate is None:
                logger.debug(f"Calibration method {name} found no scale")
                continue
            if candidate.pixels_per_mm <= 0:
                logger.warning(f"Calibration method {name} returned invalid scale {candidate.pixels_per_mm}")
                continue

            logger.debug(f"Calibration candidate from {name}: {candidate.pixels_per_mm:.4f} px/mm "
                         f"(confidence {candidate.confidence:.2f})")
            candidates.append(candidate)

        return candidates

    def consolidate(self, candidates: List[ScaleCandidate], image: PlanImage) -> ScaleCalibration:
        accepted = [c for c in candidates if c.confidence >= self.min_confidence]

        if not accepted:
            logger.warning(
                f"No scale candidate above confidence {self.min_confidence}, "
                f"falling back to 1:{self.fallback_scale:g} at {image.dpi:g} dpi"
            )
            return ScaleCalibration(
                pixels_per_mm=scale_to_pixels_per_mm(self.fallback_scale, image.dpi),
                confidence=self.fallback_confidence,
                methods=[],
                candidates=list(candidates),
                fallback=True,
            )

        ranked = sorted(accepted, key=lambda c: c.confidence, reverse=True)
        best = ranked[0]

        agreeing = [c for c in ranked if self._agrees(c, best)]
        conflicting = [c for c in ranked if not self._agrees(c, best)]

        confidence = min(1.0, sum(c.confidence for c in agreeing))
        warnings = []
        if conflicting:
            warning = CalibrationAmbiguous(best.pixels_per_mm, conflicting)
            logger.warning(str(warning))
            warnings.append(warning)
            confidence *= self.disagreement_penalty

        return ScaleCalibration(
            pixels_per_mm=best.pixels_per_mm,
            confidence=confidence,
            methods=[c.method for c in agreeing],
            candidates=list(candidates),
            warnings=warnings,
        )

    def _agrees(self, candidate: ScaleCandidate, reference: ScaleCandidate) -> bool:
        deviation = abs(candidate.pixels_per_mm - reference.pixels_per_mm) / reference.pixels_per_mm
        return deviation <= self.tolerance
