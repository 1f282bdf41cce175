"""
PlanTakeoff - Tiled analysis of scanned construction plans

Splits oversized plan rasters into overlapping tiles for a fixed-resolution
vision model, merges detections across tile seams, checks escape-route rules
and turns the result into calibrated quantities.
"""

__version__ = "0.1.0"
__author__ = "PlanTakeoff Team"
