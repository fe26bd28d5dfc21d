"""Projection models for non-pinhole stereo geometry."""

from .eucm import EnhancedUnifiedProjectionModel
from .protocol import ProjectionModel

__all__ = ["EnhancedUnifiedProjectionModel", "ProjectionModel"]
