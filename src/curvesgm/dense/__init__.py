"""Dense stereo matching: cost volume, semi-global aggregation, depth."""

from .aggregation import (
    ScanDirection,
    aggregate_costs,
    aggregate_direction,
    dynamic_step,
    select_disparity,
)
from .cost import INVALID_COST, block_cost, build_cost_volume, curve_cost, profile_weights
from .stereo import EnhancedStereo

__all__ = [
    "INVALID_COST",
    "ScanDirection",
    "dynamic_step",
    "aggregate_direction",
    "aggregate_costs",
    "select_disparity",
    "profile_weights",
    "block_cost",
    "curve_cost",
    "build_cost_volume",
    "EnhancedStereo",
]
