"""Epipolar curve geometry and rasterization."""

from .curves import EpipolarCurves, Polynomial2, fit_parabola
from .geometry import EpipolarGeometry
from .rasterizer import CurveRasterizer

__all__ = [
    "CurveRasterizer",
    "EpipolarCurves",
    "EpipolarGeometry",
    "Polynomial2",
    "fit_parabola",
]
