"""Protocol definition for projection models."""

from typing import Protocol, runtime_checkable

import torch


@runtime_checkable
class ProjectionModel(Protocol):
    """Protocol for central camera projection models.

    Defines the interface for mapping between 3D points in the camera frame
    and 2D pixel coordinates. Implementations handle different lens models
    (enhanced unified, pinhole, etc.) while the stereo engine stays agnostic
    of the lens.

    Both methods are batched (N points/pixels in, N results out) and
    device-agnostic (output tensors are on the same device as input tensors).
    Failures are reported through the validity mask, never raised.

    Attributes:
        width: Image width in pixels.
        height: Image height in pixels.
    """

    width: int
    height: int

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project 3D camera-frame points to 2D pixel coordinates.

        Args:
            points: 3D points in the camera frame, shape (N, 3).

        Returns:
            pixels: 2D pixel coordinates (u, v), shape (N, 2).
            valid: Boolean validity mask, shape (N,). False for points that
                cannot be projected (outside the model's field of view,
                at the projection center, etc.). Invalid entries in pixels
                are undefined.
        """
        ...

    def cast_ray(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Back-project pixel coordinates to rays through the camera center.

        Args:
            pixels: 2D pixel coordinates (u, v), shape (N, 2).

        Returns:
            directions: Unit ray direction vectors in the camera frame,
                shape (N, 3). A 3D point at distance d along the ray is
                d * direction.
            valid: Boolean validity mask, shape (N,). False where the
                back-projection is undefined. Invalid directions are
                undefined.
        """
        ...
