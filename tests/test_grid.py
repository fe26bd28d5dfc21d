"""Tests for the image/grid coordinate mapping."""

import pytest
import torch

from curvesgm.config import StereoConfig
from curvesgm.grid import ScaleGrid


class TestFromConfig:
    """Tests for ScaleGrid.from_config()."""

    def test_full_image(self, stereo_config):
        """Without an explicit ROI the grid spans the image minus one block."""
        grid = ScaleGrid.from_config(stereo_config)
        assert (grid.u0, grid.v0, grid.scale) == (3, 3, 3)
        assert (grid.x_max, grid.y_max) == (42, 31)
        assert grid.size == 42 * 31

    def test_blocks_inside_image(self, stereo_config):
        """Every cell's block lies inside the image."""
        grid = ScaleGrid.from_config(stereo_config)
        half = grid.half_block_size
        assert grid.u(0) - half >= 0
        assert grid.v(0) - half >= 0
        assert grid.u(grid.x_max - 1) + grid.scale - half <= stereo_config.image_width
        assert grid.v(grid.y_max - 1) + grid.scale - half <= stereo_config.image_height

    def test_explicit_roi(self):
        """Margins shift the origin and width/height bound the extent."""
        config = StereoConfig(
            image_width=200, image_height=100, u_margin=10, v_margin=5, width=30, height=12
        )
        grid = ScaleGrid.from_config(config)
        assert (grid.u0, grid.v0) == (13, 8)
        assert (grid.x_max, grid.y_max) == (11, 5)

    def test_unset_image_size(self):
        """A config without image size cannot define a grid."""
        with pytest.raises(ValueError, match="image size"):
            ScaleGrid.from_config(StereoConfig())

    def test_empty_roi(self):
        """Margins larger than the image leave nothing to match."""
        config = StereoConfig(image_width=20, image_height=20, u_margin=30)
        with pytest.raises(ValueError, match="empty region of interest"):
            ScaleGrid.from_config(config)


class TestMapping:
    """Tests for the coordinate conversions."""

    @pytest.mark.parametrize("scale", [1, 2, 3, 4, 5])
    def test_round_trip(self, scale):
        """x(u(x)) == x and y(v(y)) == y for every cell."""
        config = StereoConfig(image_width=97, image_height=61, scale=scale, u_margin=4, v_margin=2)
        grid = ScaleGrid.from_config(config)
        assert all(grid.x(grid.u(x)) == x for x in range(grid.x_max))
        assert all(grid.y(grid.v(y)) == y for y in range(grid.y_max))

    def test_nearest_cell_of_subgrid_point(self):
        """Image points round to the nearest cell center."""
        grid = ScaleGrid(u0=3, v0=3, scale=3, x_max=10, y_max=10)
        assert grid.x(4.4) == 0
        assert grid.x(4.6) == 1
        assert grid.y(9.0) == 2

    def test_tensor_conversions(self, device):
        """to_grid inverts to_image."""
        grid = ScaleGrid(u0=3, v0=5, scale=4, x_max=8, y_max=6)
        cells = torch.tensor([[0, 0], [7, 5], [3, 2]], device=device)
        pixels = grid.to_image(cells)
        torch.testing.assert_close(pixels, torch.tensor([[3, 5], [31, 25], [15, 13]], device=device))
        torch.testing.assert_close(grid.to_grid(pixels.double()), cells)

    def test_pixel_grid_row_major(self, device):
        """Cell (x, y) sits at row y * x_max + x of the pixel grid."""
        grid = ScaleGrid(u0=3, v0=5, scale=4, x_max=8, y_max=6)
        pixels = grid.pixel_grid(device=device)
        assert pixels.shape == (48, 2)
        assert pixels.dtype == torch.float64
        assert pixels[2 * 8 + 5].tolist() == [grid.u(5), grid.v(2)]

    def test_halves_round_away_from_zero(self, device):
        """A point half a cell before the origin belongs to cell -1."""
        grid = ScaleGrid(u0=4, v0=4, scale=2, x_max=5, y_max=5)
        assert grid.x(3.0) == -1
        assert grid.y(3.0) == -1
        assert grid.x(5.0) == 1

        pixels = torch.tensor([[3.0, 5.0], [4.9, 3.1]], dtype=torch.float64, device=device)
        assert grid.to_grid(pixels).tolist() == [[-1, 1], [0, 0]]
