"""
Tiled plan analysis pipeline.

Runs a plan image through tiling, bounded-concurrency tile inference,
globalization, merging, violation rules, consistency validation and
calibrated measurement. Only the tile inference stage suspends; every other
stage is a synchronous transform over the fully gathered detections.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from ..config import PipelineConfig
from ..inference.base import VisionInferenceClient
from .dispatcher import DispatchResult, TileInferenceDispatcher
from .errors import ConsistencyRejected
from .globalizer import CoordinateGlobalizer
from .measurement import MeasurementCalculator, MeasurementResult
from .merger import DetectionMerger
from .rules import ViolationRuleEngine
from .scale_calibrator import (CalibrationContext, DimensionAnnotationMethod, DrawingScaleTextMethod,
                               ReferenceObjectMethod, ScaleCalibration, ScaleCalibrator)
from .tile_grid import TileGrid, TileGridPlanner
from .types import MergedElement, PlanImage, Severity, ViolationFlag
from .validator import ConsistencyValidator


@dataclass
class AnalysisResult:
    """Everything one run produced, including the audit trail of what was skipped."""
    image: PlanImage
    grid: TileGrid
    dispatch: DispatchResult
    global_detection_count: int
    merged_count: int
    elements: List[MergedElement]
    discarded: List[ConsistencyRejected]
    violations: List[ViolationFlag]
    calibration: ScaleCalibration
    measurement: MeasurementResult
    processing_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def raw_detection_count(self) -> int:
        return self.dispatch.total_detections

    @property
    def critical_elements(self) -> List[MergedElement]:
        return [e for e in self.elements if e.is_critical]

    @property
    def average_confidence(self) -> float:
        if not self.elements:
            return 0.0
        return sum(e.confidence for e in self.elements) / len(self.elements)

    def summary(self) -> Dict[str, Any]:
        return {
            "resolution": f"{self.image.width}x{self.image.height}",
            "total_tiles": len(self.grid),
            "tiles_processed": len(self.grid) - len(self.dispatch.skipped_tiles) - len(self.dispatch.errors),
            "failed_tiles": len(self.dispatch.errors),
            "skipped_tiles": len(self.dispatch.skipped_tiles),
            "raw_detections": self.raw_detection_count,
            "merged_elements": self.merged_count,
            "duplicates_merged": self.global_detection_count - self.merged_count,
            "valid_elements": len(self.elements),
            "discarded_elements": len(self.discarded),
            "violations": len(self.violations),
            "critical_violations": sum(1 for v in self.violations if v.severity == Severity.CRITICAL),
            "average_confidence": self.average_confidence,
            "scale_pixels_per_mm": self.calibration.pixels_per_mm,
            "scale_confidence": self.calibration.confidence,
            "measurements": len(self.measurement.measurements),
            "counts": dict(self.measurement.counts),
            "measurement_failures": len(self.measurement.failures),
            "processing_time": self.processing_time,
        }


class PlanAnalysisPipeline:
    """Wires the pipeline components from one PipelineConfig."""

    def __init__(self, config: PipelineConfig, client: VisionInferenceClient,
                 calibrator: Optional[ScaleCalibrator] = None):
        config.validate()
        self.config = config
        self.client = client

        self.planner = TileGridPlanner(config.tiling.tile_size, config.tiling.overlap)
        self.dispatcher = TileInferenceDispatcher(
            client,
            max_concurrent_tiles=config.dispatch.max_concurrent_tiles,
            tile_timeout=config.dispatch.tile_timeout,
        )
        self.merger = DetectionMerger(
            iou_threshold=config.merge.iou_threshold,
            bucket_size=config.bucket_size,
            corroboration_bonus=config.merge.corroboration_bonus,
        )
        self.calibrator = calibrator or ScaleCalibrator(
            methods=[
                DimensionAnnotationMethod(),
                ReferenceObjectMethod(config.calibration.reference_sizes_mm),
                DrawingScaleTextMethod(),
            ],
            tolerance=config.calibration.tolerance,
            min_confidence=config.calibration.min_confidence,
            fallback_scale=config.calibration.fallback_scale,
            fallback_confidence=config.calibration.fallback_confidence,
            disagreement_penalty=config.calibration.disagreement_penalty,
        )
        self.rule_engine = ViolationRuleEngine(config.build_rules())
        self.validator = ConsistencyValidator(
            max_extent_fraction=config.validation.max_extent_fraction,
            min_size_px=config.validation.min_size_px,
        )
        self.calculator = MeasurementCalculator(
            methods=config.measurement.method_kinds(),
            default_depth_mm=config.measurement.default_depth_mm,
        )

    async def analyze(self, image: PlanImage, texts: Sequence[str] = (),
                      cancel_event: Optional[asyncio.Event] = None) -> AnalysisResult:
        """
        Analyze one plan image.

        Args:
            image: Source plan raster
            texts: Extra sheet text (title block, legend) for scale calibration
            cancel_event: Stops further tile batches when set

        Returns:
            AnalysisResult with measurements and audit logs
        """
        start_time = time.time()
        logger.info(f"Starting tiled analysis of {image.source or 'image'} ({image.width}x{image.height})")

        grid = self.planner.plan(image.width, image.height)

        dispatch = await self.dispatcher.dispatch(grid, image, cancel_event=cancel_event)

        globalizer = CoordinateGlobalizer(grid, image)
        detections = globalizer.globalize_all(dispatch.detections)

        merged = self.merger.merge(detections)

        calibration = self.calibrator.calibrate(
            CalibrationContext(image=image, elements=merged, texts=list(texts))
        )

        violations = self.rule_engine.apply(merged, calibration)

        validation = self.validator.validate(merged, image)

        measurement = self.calculator.calculate(validation.valid, calibration)

        result = AnalysisResult(
            image=image,
            grid=grid,
            dispatch=dispatch,
            global_detection_count=len(detections),
            merged_count=len(merged),
            elements=validation.valid,
            discarded=validation.discarded,
            violations=[v for e in validation.valid for v in e.violations],
            calibration=calibration,
            measurement=measurement,
            processing_time=time.time() - start_time,
            metadata={"all_violations": len(violations)},
        )

        logger.info(
            f"Tiled analysis complete in {result.processing_time:.1f}s: "
            f"{len(grid)} tiles, {result.raw_detection_count} detections, "
            f"{len(result.elements)} elements, {len(result.critical_elements)} critical"
        )
        return result

    def analyze_sync(self, image: PlanImage, texts: Sequence[str] = ()) -> AnalysisResult:
        """Blocking wrapper for callers without an event loop."""
        return asyncio.run(self.analyze(image, texts=texts))
