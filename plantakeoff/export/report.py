"""
Builds and writes the analysis report.
"""

from pathlib import Path

from loguru import logger

from ..core.pipeline import AnalysisResult
from .models import AnalysisReport


def build_report(result: AnalysisResult) -> AnalysisReport:
    calibration = result.calibration
    return AnalysisReport(
        source=result.image.source,
        summary=result.summary(),
        calibration={
            "pixels_per_mm": calibration.pixels_per_mm,
            "confidence": calibration.confidence,
            "methods": calibration.methods,
            "fallback": calibration.fallback,
            "warnings": [str(w) for w in calibration.warnings],
        },
        elements=[element.to_dict() for element in result.elements],
        measurements=[m.to_dict() for m in result.measurement.measurements],
        counts=result.measurement.counts,
        totals=result.measurement.totals(),
        tile_errors=[e.to_dict() for e in result.dispatch.errors],
        skipped_tiles=result.dispatch.skipped_tiles,
        discarded=[d.to_dict() for d in result.discarded],
        measurement_failures=[f.to_dict() for f in result.measurement.failures],
    )


def write_report(result: AnalysisResult, output_path: str) -> Path:
    """Write the report as JSON."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    report = build_report(result)
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")

    logger.info(f"Analysis report written to {path}")
    return path
