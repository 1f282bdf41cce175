"""
Core tiled analysis pipeline: tile planning, dispatch, merging, rules,
validation, calibration and measurement.
"""
