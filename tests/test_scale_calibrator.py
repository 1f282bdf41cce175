import pytest

from plantakeoff.core.errors import CalibrationAmbiguous, InvalidConfiguration
from plantakeoff.core.scale_calibrator import (
    CalibrationContext,
    DimensionAnnotationMethod,
    DrawingScaleTextMethod,
    ReferenceObjectMethod,
    ScaleCalibrator,
    ScaleCandidate,
    scale_to_pixels_per_mm,
)
from plantakeoff.core.types import PlanImage

from .conftest import make_element


@pytest.fixture
def image():
    return PlanImage(width=3508, height=2480, dpi=300.0)


def test_fallback_without_candidates(image):
    calibration = ScaleCalibrator().calibrate(CalibrationContext(image))

    assert calibration.fallback
    assert calibration.pixels_per_mm == pytest.approx(300 / 25.4 / 100)
    assert calibration.confidence == 0.2
    assert calibration.methods == []


def test_weak_candidates_are_ignored(image):
    calibrator = ScaleCalibrator(methods=[])
    candidates = [ScaleCandidate(0.1, 0.3, "weak")]

    calibration = calibrator.consolidate(candidates, image)

    assert calibration.fallback
    assert calibration.candidates == candidates


def test_agreeing_candidates_add_up_to_full_confidence(image):
    candidates = [
        ScaleCandidate(0.100, 0.6, "dimension_annotations"),
        ScaleCandidate(0.102, 0.7, "drawing_scale"),
    ]

    calibration = ScaleCalibrator().consolidate(candidates, image)

    assert calibration.pixels_per_mm == 0.102
    assert calibration.confidence == 1.0
    assert calibration.methods == ["drawing_scale", "dimension_annotations"]
    assert not calibration.ambiguous


def test_disagreeing_candidates_are_penalized(image):
    candidates = [
        ScaleCandidate(0.1, 0.8, "drawing_scale"),
        ScaleCandidate(0.2, 0.6, "reference_objects"),
    ]

    calibration = ScaleCalibrator().consolidate(candidates, image)

    assert calibration.pixels_per_mm == 0.1
    assert calibration.confidence == pytest.approx(0.56)
    assert calibration.ambiguous
    warning = calibration.warnings[0]
    assert isinstance(warning, CalibrationAmbiguous)
    assert [c.method for c in warning.conflicting] == ["reference_objects"]


def test_keyword_scale_text(image):
    candidate = DrawingScaleTextMethod().detect(CalibrationContext(image, texts=["Grundriss EG  M 1:50"]))

    assert candidate.pixels_per_mm == pytest.approx(0.23622, rel=1e-4)
    assert candidate.confidence == 0.9
    assert candidate.evidence == "1:50"


def test_bare_scale_text(image):
    candidate = DrawingScaleTextMethod().detect(CalibrationContext(image, texts=["1:100"]))

    assert candidate.pixels_per_mm == pytest.approx(scale_to_pixels_per_mm(100, 300))
    assert candidate.confidence == 0.75


def test_scale_text_from_element_properties(image):
    label = make_element("text", (100, 100, 300, 130), properties={"text": "Maßstab 1:200"})

    candidate = DrawingScaleTextMethod().detect(CalibrationContext(image, elements=[label]))

    assert candidate.evidence == "1:200"


def test_several_scales_lower_confidence(image):
    texts = ["M 1:100", "Detail M 1:20", "M 1:100"]

    candidate = DrawingScaleTextMethod().detect(CalibrationContext(image, texts=texts))

    assert candidate.evidence == "1:100"
    assert candidate.confidence == pytest.approx(0.75)


def test_no_scale_text(image):
    assert DrawingScaleTextMethod().detect(CalibrationContext(image, texts=["Wohnzimmer 24,5 m2"])) is None


def test_dimension_annotations(image):
    dimensions = [
        make_element("dimension", (100, 100, 465, 110), properties={"text": "3650"}),
        make_element("dimension", (100, 300, 465, 310), properties={"text": "3,65 m"}),
        make_element("dimension", (600, 100, 610, 465), properties={"text": "365 cm"}),
    ]

    candidate = DimensionAnnotationMethod().detect(CalibrationContext(image, elements=dimensions))

    assert candidate.pixels_per_mm == pytest.approx(0.1)
    assert candidate.confidence == pytest.approx(0.7)


def test_dimension_value_mm_property(image):
    method = DimensionAnnotationMethod()

    assert method.parse_length_mm(make_element("dimension", (0, 0, 10, 1), properties={"value_mm": 1200})) == 1200.0
    assert method.parse_length_mm(make_element("dimension", (0, 0, 10, 1), properties={"text": "2.40"})) == 2400.0
    assert method.parse_length_mm(make_element("dimension", (0, 0, 10, 1), properties={"text": "n.m."})) is None


def test_outlier_annotation_lowers_confidence(image):
    dimensions = [
        make_element("dimension", (0, 0, 100, 5), properties={"value_mm": 1000}),
        make_element("dimension", (0, 50, 200, 55), properties={"value_mm": 1000}),
        make_element("dimension", (0, 100, 300, 105), properties={"value_mm": 3000}),
    ]

    candidate = DimensionAnnotationMethod().detect(CalibrationContext(image, elements=dimensions))

    assert candidate.pixels_per_mm == pytest.approx(0.1)
    assert candidate.confidence == pytest.approx(0.7 * 2 / 3)


def test_reference_door(image):
    door = make_element("door", (1000, 500, 1088.5, 520))

    candidate = ReferenceObjectMethod().detect(CalibrationContext(image, elements=[door]))

    assert candidate.pixels_per_mm == pytest.approx(0.1)
    assert candidate.confidence == 0.5


def test_failing_method_is_skipped(image):
    class BrokenMethod:
        name = "broken"

        def detect(self, context):
            raise RuntimeError("ocr backend unavailable")

    calibrator = ScaleCalibrator(methods=[BrokenMethod(), DrawingScaleTextMethod()])

    calibration = calibrator.calibrate(CalibrationContext(image, texts=["M 1:100"]))

    assert calibration.methods == ["drawing_scale"]
    assert calibration.confidence == 0.9
    assert not calibration.fallback


def test_unit_conversions():
    calibration = ScaleCalibrator().consolidate([ScaleCandidate(0.1, 0.9, "test")], PlanImage(100, 100))

    assert calibration.mm_per_pixel == pytest.approx(10.0)
    assert calibration.px_to_mm(90) == pytest.approx(900.0)
    assert calibration.px2_to_mm2(100) == pytest.approx(10000.0)


def test_invalid_calibrator_parameters():
    with pytest.raises(InvalidConfiguration):
        ScaleCalibrator(tolerance=-0.1)
    with pytest.raises(InvalidConfiguration):
        ScaleCalibrator(fallback_scale=0)
