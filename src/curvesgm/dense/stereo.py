"""Semi-global stereo matching along curved epipolar lines."""

import logging

import numpy as np
import torch

from ..config import StereoConfig
from ..depth_map import MIN_DEPTH, DepthMap
from ..epipolar.geometry import EpipolarGeometry
from ..epipolar.rasterizer import CurveRasterizer
from ..geometry import Pose
from ..grid import ScaleGrid
from ..projection.protocol import ProjectionModel
from ..triangulation import triangulate_distance
from .aggregation import ScanDirection, aggregate_costs, select_disparity
from .cost import INVALID_COST, build_cost_volume

logger = logging.getLogger(__name__)


class EnhancedStereo:
    """Dense stereo engine for a calibrated pair of generalized cameras.

    Owns the epipolar caches and the cost and tableau buffers. Buffers are
    rewritten by every call; one instance must not be used from several
    threads at once.

    Args:
        pose: Pose of camera 2 in camera 1's frame.
        camera1: Projection model of the reference camera.
        camera2: Projection model of the second camera.
        config: Matcher configuration with the image size set.

    Raises:
        ValueError: If the configuration does not define a usable grid.
    """

    def __init__(
        self,
        pose: Pose,
        camera1: ProjectionModel,
        camera2: ProjectionModel,
        config: StereoConfig,
    ) -> None:
        self.config = config
        self.camera1 = camera1
        self.camera2 = camera2
        self.grid = ScaleGrid.from_config(config)
        self.device = torch.device(config.device)
        self._summary_level = logging.INFO if config.verbosity > 0 else logging.DEBUG

        shape = (self.grid.y_max, self.grid.x_max, config.disparity_max)
        self.cost_volume = torch.full(
            shape, INVALID_COST, dtype=torch.uint8, device=self.device
        )
        self.tableaus = [
            torch.zeros(shape, dtype=torch.int32, device=self.device)
            for _ in ScanDirection
        ]
        self.aggregated = torch.zeros(shape, dtype=torch.int32, device=self.device)

        selection = (self.grid.y_max, self.grid.x_max, config.hypotheses)
        self.disparity = torch.zeros(selection, dtype=torch.int64, device=self.device)
        self.disparity_valid = torch.zeros(selection, dtype=torch.bool, device=self.device)
        self.matching_cost = torch.full(
            selection, INVALID_COST, dtype=torch.uint8, device=self.device
        )

        self.geometry = EpipolarGeometry(
            camera1, camera2, self.grid, pose, device=self.device
        )
        logger.log(
            self._summary_level,
            "Stereo engine: grid %dx%d (scale %d), %d disparity steps, %d/%d usable cells",
            self.grid.x_max,
            self.grid.y_max,
            self.grid.scale,
            config.disparity_max,
            int(self.geometry.mask.sum()),
            self.grid.size,
        )

    @property
    def pose(self) -> Pose:
        return self.geometry.pose

    def set_transformation(self, pose: Pose) -> None:
        """Change the relative pose; every pose-dependent cache is recomputed."""
        self.geometry.set_transformation(pose)

    def _check_image(self, image: torch.Tensor | np.ndarray, name: str) -> torch.Tensor:
        image = torch.as_tensor(image)
        expected = (self.config.image_height, self.config.image_width)
        if image.dim() != 2 or tuple(image.shape) != expected:
            raise ValueError(
                f"{name} must be a grayscale image of shape {expected}, "
                f"got {tuple(image.shape)}"
            )
        if image.dtype != torch.uint8:
            raise ValueError(f"{name} must be uint8, got {image.dtype}")
        return image.to(self.device)

    # matching

    def compute_cost(
        self,
        image1: torch.Tensor | np.ndarray,
        image2: torch.Tensor | np.ndarray,
    ) -> torch.Tensor:
        """Fill the cost volume of an image pair.

        Args:
            image1: Reference image, shape (H, W), uint8.
            image2: Second image, shape (H, W), uint8.

        Returns:
            Cost volume, shape (y_max, x_max, disparity_max), uint8.

        Raises:
            ValueError: If an image does not match the configured size.
        """
        image1 = self._check_image(image1, "image1")
        image2 = self._check_image(image2, "image2")
        return build_cost_volume(
            image1,
            image2,
            self.geometry,
            self.config.disparity_max,
            self.config.cost_mode,
            out=self.cost_volume,
        )

    def compute_dynamic_programming(self) -> torch.Tensor:
        """Aggregate the cost volume along the four scan directions.

        Returns:
            Aggregated cost, shape (y_max, x_max, disparity_max), int32.
        """
        self.aggregated = aggregate_costs(
            self.cost_volume,
            self.config.lambda_step,
            self.config.lambda_jump,
            tableaus=self.tableaus,
            out=self.aggregated,
        )
        return self.aggregated

    def reconstruct_disparity(self) -> torch.Tensor:
        """Select the disparity hypotheses from the aggregated cost.

        Returns:
            Disparity image of the first hypothesis, shape (y_max, x_max),
            uint8. 0 where no disparity was accepted.
        """
        self.disparity, self.disparity_valid, self.matching_cost = select_disparity(
            self.aggregated,
            self.cost_volume,
            self.config.max_bias,
            self.config.hypotheses,
        )
        return self.disparity[..., 0].to(torch.uint8)

    def compute_stereo(
        self,
        image1: torch.Tensor | np.ndarray,
        image2: torch.Tensor | np.ndarray,
    ) -> torch.Tensor:
        """Disparity image of an image pair.

        Args:
            image1: Reference image, shape (H, W), uint8.
            image2: Second image, shape (H, W), uint8.

        Returns:
            Disparity steps of the first hypothesis, shape (y_max, x_max), uint8.
        """
        self.compute_cost(image1, image2)
        self.compute_dynamic_programming()
        disparity = self.reconstruct_disparity()
        logger.log(
            self._summary_level,
            "Disparity: %d/%d cells accepted",
            int(self.disparity_valid[..., 0].sum()),
            self.grid.size,
        )
        return disparity

    # geometry

    def triangulate(
        self,
        pixels1: torch.Tensor,
        pixels2: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Distance along the rays of image-1 pixels to their intersection.

        Args:
            pixels1: Pixels of image 1, shape (N, 2).
            pixels2: Corresponding pixels of image 2, shape (N, 2).

        Returns:
            distance: Distance from camera 1's center, shape (N,). 0 where invalid.
            valid: Boolean mask, shape (N,).
        """
        rays1, valid1 = self.camera1.cast_ray(pixels1.to(self.device))
        return self._triangulate_rays(rays1, valid1, pixels2)

    def _triangulate_rays(
        self,
        rays1: torch.Tensor,
        valid1: torch.Tensor,
        pixels2: torch.Tensor,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        rays2, valid2 = self.camera2.cast_ray(pixels2.to(self.device, torch.float64))
        distance, valid = triangulate_distance(
            rays1.to(torch.float64),
            self.pose.translation,
            self.pose.rotate(rays2.to(torch.float64)),
        )
        valid = valid & valid1 & valid2
        return torch.where(valid, distance, torch.zeros_like(distance)), valid

    def compute_distance(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Depth and uncertainty of the selected disparities.

        The depth of step d comes from triangulating the cell ray with the
        ray through the step's pixel. Sigma is half the mean depth gap to
        steps d - 1 and d + 1; step 0 (infinite depth) never counts as a
        neighbor. Depths beyond max_distance are discarded.

        Returns:
            distance: Depth per hypothesis, shape (hypotheses, y_max, x_max).
                0 where there is no estimate.
            sigma: Uncertainty, same shape. 0 where there is no estimate.
        """
        K = self.config.hypotheses
        D = self.config.disparity_max
        distance = torch.zeros(self.grid.size, K, dtype=torch.float64, device=self.device)
        sigma = torch.zeros_like(distance)

        disparity = self.disparity.reshape(-1, K)
        accepted = self.disparity_valid.reshape(-1, K) & (disparity > 0)
        cells = torch.nonzero(accepted.any(dim=-1)).squeeze(-1)

        if cells.numel() > 0:
            positions = self.geometry.rasterizer(cells).collect(0, D)  # (M, D + 1, 2)
            rows = torch.arange(cells.numel(), device=self.device)
            rays1 = self.geometry.reconst[cells]
            valid1 = self.geometry.reconst_valid[cells]

            def at_step(steps: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
                pixels2 = positions[rows, steps.clamp(0, D)]
                return self._triangulate_rays(rays1, valid1, pixels2)

            for h in range(K):
                d = disparity[cells, h]
                depth, ok = at_step(d)
                lower, lower_ok = at_step(d - 1)
                upper, upper_ok = at_step(d + 1)
                lower_ok = lower_ok & (d - 1 >= 1)

                gap = torch.where(lower_ok, (lower - depth).abs(), torch.zeros_like(depth))
                gap = gap + torch.where(upper_ok, (upper - depth).abs(), torch.zeros_like(depth))
                count = lower_ok.to(torch.int64) + upper_ok.to(torch.int64)

                ok = (
                    ok
                    & accepted[cells, h]
                    & (count > 0)
                    & (depth >= MIN_DEPTH)
                    & (depth <= self.config.max_distance)
                )
                spread = 0.5 * gap / count.clamp(min=1)
                distance[cells, h] = torch.where(ok, depth, torch.zeros_like(depth))
                sigma[cells, h] = torch.where(ok, spread, torch.zeros_like(spread))

        shape = (K, self.grid.y_max, self.grid.x_max)
        return distance.T.reshape(shape), sigma.T.reshape(shape)

    def compute_depth(
        self,
        image1: torch.Tensor | np.ndarray,
        image2: torch.Tensor | np.ndarray,
    ) -> DepthMap:
        """Depth map of an image pair.

        Args:
            image1: Reference image, shape (H, W), uint8.
            image2: Second image, shape (H, W), uint8.

        Returns:
            Depth map on the engine's grid, with camera 1 as its camera.
            Costs hold the raw matching cost of each accepted hypothesis.
        """
        self.compute_stereo(image1, image2)
        distance, sigma = self.compute_distance()

        depth_map = DepthMap(
            self.camera1, self.grid, self.config.hypotheses, device=self.device
        )
        depth_map.depths.copy_(distance)
        depth_map.sigmas.copy_(sigma)
        depth_map.costs.copy_(self.matching_cost.permute(2, 0, 1).to(torch.float64))

        logger.log(
            self._summary_level,
            "Depth map: %d/%d cells with an estimate",
            int(depth_map.valid_mask()[0].sum()),
            self.grid.size,
        )
        return depth_map

    # diagnostics

    def get_curve_rasterizer(self, indices: torch.Tensor | None = None) -> CurveRasterizer:
        """Rasterizer over the image-2 correspondence paths of flat cell indices."""
        return self.geometry.rasterizer(indices)

    def trace_epipolar_curve(
        self,
        x: int,
        y: int,
        out: list[tuple[int, int]] | None = None,
        camera_index: int = 2,
    ) -> list[tuple[int, int]]:
        """Pixels of the epipolar curve of one grid cell.

        In image 2 the curve runs from step 0 (infinite depth) over the
        disparity range; in image 1 it runs half the range to either side of
        the cell pixel. Tracing stops at the image boundary.

        Args:
            x: Grid column.
            y: Grid row.
            out: List to append the pixels to; a new list when None.
            camera_index: Image to trace in, 1 or 2.

        Returns:
            The list of (u, v) pixels.

        Raises:
            ValueError: If the cell is outside the grid or camera_index is
                not 1 or 2.
        """
        if not (0 <= x < self.grid.x_max and 0 <= y < self.grid.y_max):
            raise ValueError(f"cell ({x}, {y}) is outside the grid")
        if camera_index not in (1, 2):
            raise ValueError(f"camera_index must be 1 or 2, got {camera_index}")
        if out is None:
            out = []

        index = torch.tensor([y * self.grid.x_max + x], device=self.device)
        rasterizer = self.geometry.rasterizer(index, camera_index=camera_index)
        camera = self.camera2 if camera_index == 2 else self.camera1
        D = self.config.disparity_max

        if camera_index == 2:
            traced = list(rasterizer.trace(D, camera.width, camera.height))
        else:
            backward = list(rasterizer.trace(-(D // 2), camera.width, camera.height))
            rasterizer.reset()
            forward = list(rasterizer.trace(D // 2, camera.width, camera.height))
            traced = backward[::-1] + forward[1:]

        out.extend((int(p[0, 0]), int(p[0, 1])) for p in traced)
        return out
