"""Enhanced unified camera model (EUCM) for wide-angle and fisheye lenses."""

from collections.abc import Sequence

import torch


class EnhancedUnifiedProjectionModel:
    """Enhanced unified projection model.

    Implements the ProjectionModel protocol for central cameras whose lens is
    described by the enhanced unified model: a point is first projected onto
    an ellipsoid (shape parameter beta), then onto the normalized plane
    through a center shifted by alpha, then through the pinhole intrinsics.
    alpha = 0 reduces to a pinhole camera.

    Args:
        width: Image width in pixels.
        height: Image height in pixels.
        alpha: Projection center shift, in [0, 1).
        beta: Ellipsoid shape parameter, positive.
        fu: Horizontal focal length in pixels.
        fv: Vertical focal length in pixels.
        u0: Principal point column.
        v0: Principal point row.
        dtype: Floating point type of the returned tensors.
    """

    def __init__(
        self,
        width: int,
        height: int,
        alpha: float,
        beta: float,
        fu: float,
        fv: float,
        u0: float,
        v0: float,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        if not 0.0 <= alpha < 1.0:
            raise ValueError(f"alpha must be in [0, 1), got {alpha}")
        if beta <= 0.0:
            raise ValueError(f"beta must be positive, got {beta}")

        self.width = width
        self.height = height
        self.alpha = alpha
        self.beta = beta
        self.fu = fu
        self.fv = fv
        self.u0 = u0
        self.v0 = v0
        self.dtype = dtype

        # Projection is defined for z > -w * rho
        if alpha <= 0.5:
            self.w = alpha / (1.0 - alpha)
        else:
            self.w = (1.0 - alpha) / alpha

        # Back-projection is defined for r2 < r2_max (only bounded for alpha > 0.5)
        if alpha > 0.5:
            self.r2_max = 1.0 / (beta * (2.0 * alpha - 1.0))
        else:
            self.r2_max = float("inf")

    @classmethod
    def from_params(
        cls,
        width: int,
        height: int,
        params: Sequence[float],
        dtype: torch.dtype = torch.float64,
    ) -> "EnhancedUnifiedProjectionModel":
        """Build a model from an [alpha, beta, fu, fv, u0, v0] parameter vector.

        Args:
            width: Image width in pixels.
            height: Image height in pixels.
            params: Intrinsic parameters in rig-file order.
            dtype: Floating point type of the returned tensors.

        Returns:
            The projection model.

        Raises:
            ValueError: If params does not hold exactly six values.
        """
        if len(params) != 6:
            raise ValueError(
                f"Expected 6 intrinsic parameters [alpha, beta, fu, fv, u0, v0], "
                f"got {len(params)}"
            )
        alpha, beta, fu, fv, u0, v0 = (float(p) for p in params)
        return cls(width, height, alpha, beta, fu, fv, u0, v0, dtype=dtype)

    @property
    def params(self) -> list[float]:
        """Intrinsic parameters as [alpha, beta, fu, fv, u0, v0]."""
        return [self.alpha, self.beta, self.fu, self.fv, self.u0, self.v0]

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project 3D camera-frame points to 2D pixel coordinates.

        Args:
            points: 3D points in the camera frame, shape (N, 3).

        Returns:
            pixels: 2D pixel coordinates (u, v), shape (N, 2).
            valid: Boolean validity mask, shape (N,).
        """
        points = points.to(self.dtype)
        x, y, z = points[:, 0], points[:, 1], points[:, 2]

        rho = torch.sqrt(self.beta * (x * x + y * y) + z * z)
        denom = self.alpha * rho + (1.0 - self.alpha) * z

        valid = (z > -self.w * rho) & (denom > 1e-12)
        safe_denom = torch.where(valid, denom, torch.ones_like(denom))

        u = self.fu * x / safe_denom + self.u0
        v = self.fv * y / safe_denom + self.v0
        return torch.stack([u, v], dim=-1), valid

    def cast_ray(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Back-project pixel coordinates to unit rays in the camera frame.

        Args:
            pixels: 2D pixel coordinates (u, v), shape (N, 2).

        Returns:
            directions: Unit ray directions, shape (N, 3).
            valid: Boolean validity mask, shape (N,).
        """
        pixels = pixels.to(self.dtype)
        mx = (pixels[:, 0] - self.u0) / self.fu
        my = (pixels[:, 1] - self.v0) / self.fv
        r2 = mx * mx + my * my

        valid = r2 < self.r2_max
        gamma = 1.0 - self.alpha
        radicand = 1.0 - (self.alpha - gamma) * self.beta * r2
        radicand = torch.where(valid, radicand, torch.ones_like(radicand))
        mz = (1.0 - self.alpha**2 * self.beta * r2) / (
            self.alpha * torch.sqrt(radicand.clamp(min=0.0)) + gamma
        )

        directions = torch.stack([mx, my, mz], dim=-1)
        directions = directions / torch.linalg.norm(directions, dim=-1, keepdim=True)
        return directions, valid
