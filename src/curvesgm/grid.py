"""Mapping between full-resolution image coordinates and the disparity grid."""

import math
from dataclasses import dataclass

import torch

from .config import StereoConfig


@dataclass(frozen=True)
class ScaleGrid:
    """Coarse grid over the region of interest.

    Grid cell (x, y) is centered on image pixel (x * scale + u0, y * scale + v0).
    (u, v) always denotes an image point and (x, y) a grid cell.

    Attributes:
        u0: Image column of grid cell x = 0.
        v0: Image row of grid cell y = 0.
        scale: Image pixels per grid cell.
        x_max: Number of grid columns.
        y_max: Number of grid rows.
    """

    u0: int
    v0: int
    scale: int
    x_max: int
    y_max: int

    @classmethod
    def from_config(cls, config: StereoConfig) -> "ScaleGrid":
        """Compute the grid extents of a matcher configuration.

        The grid starts one block inside the margins so that every cell's
        block lies in the image.

        Args:
            config: Matcher configuration with the image size set.

        Returns:
            The grid.

        Raises:
            ValueError: If the image size is unset or the region of interest
                is empty.
        """
        if config.image_width <= 0 or config.image_height <= 0:
            raise ValueError(
                f"image size must be positive, got "
                f"{config.image_width}x{config.image_height}"
            )

        scale = config.scale
        u0 = config.u_margin + scale
        v0 = config.v_margin + scale

        if config.width > 0:
            u_max = u0 + config.width
        else:
            u_max = config.image_width - config.u_margin - scale
        if config.height > 0:
            v_max = v0 + config.height
        else:
            v_max = config.image_height - config.v_margin - scale

        if u_max < u0 or v_max < v0:
            raise ValueError(
                f"empty region of interest: u in [{u0}, {u_max}], v in [{v0}, {v_max}]"
            )

        x_max = _round_half_away((u_max - u0) / scale) + 1
        y_max = _round_half_away((v_max - v0) / scale) + 1
        return cls(u0=u0, v0=v0, scale=scale, x_max=x_max, y_max=y_max)

    @property
    def half_block_size(self) -> int:
        return self.scale // 2

    @property
    def size(self) -> int:
        """Number of grid cells."""
        return self.x_max * self.y_max

    # image -> grid

    def x(self, u: float) -> int:
        return _round_half_away((u - self.u0) / self.scale)

    def y(self, v: float) -> int:
        return _round_half_away((v - self.v0) / self.scale)

    # grid -> image

    def u(self, x: int) -> int:
        return x * self.scale + self.u0

    def v(self, y: int) -> int:
        return y * self.scale + self.v0

    def to_grid(self, pixels: torch.Tensor) -> torch.Tensor:
        """Nearest grid cells of image points.

        Args:
            pixels: Image points (u, v), shape (N, 2).

        Returns:
            Grid cells (x, y), shape (N, 2), int64. May lie outside the grid.
        """
        offset = torch.tensor([self.u0, self.v0], dtype=pixels.dtype, device=pixels.device)
        scaled = (pixels - offset) / self.scale
        return (torch.sign(scaled) * torch.floor(scaled.abs() + 0.5)).long()

    def to_image(self, cells: torch.Tensor) -> torch.Tensor:
        """Image points at the center of grid cells.

        Args:
            cells: Grid cells (x, y), shape (N, 2), integer.

        Returns:
            Image points (u, v), shape (N, 2), int64.
        """
        offset = torch.tensor([self.u0, self.v0], dtype=torch.long, device=cells.device)
        return cells.long() * self.scale + offset

    def pixel_grid(
        self,
        dtype: torch.dtype = torch.float64,
        device: str | torch.device = "cpu",
    ) -> torch.Tensor:
        """Image points of all grid cells in row-major order.

        Args:
            dtype: Output dtype.
            device: Device for the output tensor.

        Returns:
            Image points (u, v), shape (y_max * x_max, 2). Cell (x, y) is
            at row y * x_max + x.
        """
        y, x = torch.meshgrid(
            torch.arange(self.y_max, device=device),
            torch.arange(self.x_max, device=device),
            indexing="ij",
        )
        u = x.reshape(-1) * self.scale + self.u0
        v = y.reshape(-1) * self.scale + self.v0
        return torch.stack([u, v], dim=-1).to(dtype)


def _round_half_away(value: float) -> int:
    # Halves round away from zero, so u0 - scale / 2 maps to cell -1
    return int(math.copysign(math.floor(abs(value) + 0.5), value))
