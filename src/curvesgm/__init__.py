"""Dense stereo matching for wide-angle cameras along curved epipolar lines."""

from .config import CameraConfig, PoseConfig, RigConfig, StereoConfig
from .dense import EnhancedStereo
from .depth_map import (
    DEFAULT_SIGMA,
    MIN_DEPTH,
    OUT_OF_RANGE,
    DepthMap,
    ReconstructionFlags,
    ReconstructionPack,
    load_depth_map,
    save_depth_map,
    save_point_cloud,
    wrap_depth,
)
from .epipolar import CurveRasterizer, EpipolarGeometry, Polynomial2
from .geometry import Pose
from .grid import ScaleGrid
from .projection import EnhancedUnifiedProjectionModel, ProjectionModel
from .triangulation import triangulate_distance

__version__ = "0.1.0"

__all__ = [
    "StereoConfig",
    "CameraConfig",
    "PoseConfig",
    "RigConfig",
    "ProjectionModel",
    "EnhancedUnifiedProjectionModel",
    "Pose",
    "ScaleGrid",
    "Polynomial2",
    "CurveRasterizer",
    "EpipolarGeometry",
    "triangulate_distance",
    "EnhancedStereo",
    "DepthMap",
    "ReconstructionFlags",
    "ReconstructionPack",
    "wrap_depth",
    "save_depth_map",
    "load_depth_map",
    "save_point_cloud",
    "MIN_DEPTH",
    "OUT_OF_RANGE",
    "DEFAULT_SIGMA",
]
