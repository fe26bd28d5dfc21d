"""Multi-hypothesis depth maps on the disparity grid."""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import open3d as o3d
import torch

from .geometry import Pose
from .grid import ScaleGrid
from .projection.protocol import ProjectionModel

logger = logging.getLogger(__name__)

# Smallest depth counted as an estimate
MIN_DEPTH = 0.1

# Value of depth, sigma and cost lookups outside the grid; doubles as "no estimate"
OUT_OF_RANGE = 0.0

# Sigma of entries left without a correspondence by wrap_depth
DEFAULT_SIGMA = 1.0

# Rays more grazing than this (cosine with the plane normal) miss the plane
MIN_INCIDENCE = 1e-3


@dataclass(frozen=True)
class ReconstructionFlags:
    """Options of DepthMap.reconstruct. Every combination is valid.

    Attributes:
        with_sigma: Fill ``values`` with sigma instead of zeros.
        minmax_distance_with_empty: Also emit the points at depth -/+ 2 sigma
            (``near_cloud``/``far_cloud``), aligned with ``cloud``.
        query_points: Iterate caller-supplied image points instead of all
            cells; each point yields the estimates of its nearest cell,
            back-projected from that cell's center.
        all_hypotheses: Iterate every hypothesis instead of the first one.
    """

    with_sigma: bool = False
    minmax_distance_with_empty: bool = False
    query_points: bool = False
    all_hypotheses: bool = False


@dataclass
class ReconstructionPack:
    """Point cloud reconstructed from a depth map.

    All tensors are aligned: entry i of every field describes the same depth
    estimate. Entries whose back-projection failed hold null vectors and
    ``valid[i] = False``.

    Attributes:
        image_points: Image points that were back-projected, shape (M, 2).
        cloud: 3D points in the camera frame, shape (M, 3).
        valid: Back-projection success, shape (M,).
        indices: Flat depth-map indices (h * size + y * x_max + x), shape (M,).
        hypotheses: Hypothesis index of each entry, shape (M,).
        costs: Matching cost of each entry, shape (M,).
        values: Sigma of each entry, or zeros without ``with_sigma``, shape (M,).
        near_cloud: Points at depth - 2 sigma (at least MIN_DEPTH), shape (M, 3).
        far_cloud: Points at depth + 2 sigma, shape (M, 3).
    """

    image_points: torch.Tensor
    cloud: torch.Tensor
    valid: torch.Tensor
    indices: torch.Tensor
    hypotheses: torch.Tensor
    costs: torch.Tensor
    values: torch.Tensor
    near_cloud: torch.Tensor | None = None
    far_cloud: torch.Tensor | None = None

    def __len__(self) -> int:
        return self.cloud.shape[0]

    @property
    def points(self) -> torch.Tensor:
        """Successfully reconstructed points, shape (K, 3)."""
        return self.cloud[self.valid]


class DepthMap:
    """Depth, sigma and cost per grid cell and hypothesis.

    Storage tensors have shape (hypotheses, y_max, x_max). A depth below
    MIN_DEPTH means the cell holds no estimate. Lookups outside the grid
    return OUT_OF_RANGE.

    Args:
        camera: Projection model of the camera the depths refer to.
        grid: Disparity grid of the map.
        hypotheses: Number of hypotheses per cell.
        device: Device of the storage tensors.
    """

    def __init__(
        self,
        camera: ProjectionModel,
        grid: ScaleGrid,
        hypotheses: int = 1,
        device: str | torch.device = "cpu",
    ) -> None:
        if hypotheses <= 0:
            raise ValueError(f"hypotheses must be positive, got {hypotheses}")
        self.camera = camera
        self.grid = grid
        self.hypotheses = hypotheses
        self.device = torch.device(device)

        shape = (hypotheses, grid.y_max, grid.x_max)
        self.depths = torch.zeros(shape, dtype=torch.float64, device=self.device)
        self.sigmas = torch.zeros(shape, dtype=torch.float64, device=self.device)
        self.costs = torch.zeros(shape, dtype=torch.float64, device=self.device)

    @property
    def size(self) -> int:
        """Number of cells per hypothesis."""
        return self.grid.size

    def __repr__(self) -> str:
        return (
            f"DepthMap({self.grid.x_max}x{self.grid.y_max}, "
            f"hypotheses={self.hypotheses}, valid={int(self.valid_mask().sum())})"
        )

    # element access

    def _locate(self, x: int, y: int | None, h: int) -> tuple[int, int, int] | None:
        if y is None:
            # Flat index h * size + y * x_max + x
            if not 0 <= x < self.hypotheses * self.size:
                return None
            h, cell = divmod(x, self.size)
            y, x = divmod(cell, self.grid.x_max)
        if 0 <= x < self.grid.x_max and 0 <= y < self.grid.y_max and 0 <= h < self.hypotheses:
            return h, y, x
        return None

    def _read(self, storage: torch.Tensor, x: int, y: int | None, h: int) -> float:
        location = self._locate(x, y, h)
        if location is None:
            return OUT_OF_RANGE
        return float(storage[location])

    def at(self, x: int, y: int | None = None, h: int = 0) -> float:
        """Depth of cell (x, y) in hypothesis h, or of flat index x when y is None."""
        return self._read(self.depths, x, y, h)

    def sigma(self, x: int, y: int | None = None, h: int = 0) -> float:
        """Sigma of cell (x, y) in hypothesis h, or of flat index x when y is None."""
        return self._read(self.sigmas, x, y, h)

    def cost(self, x: int, y: int | None = None, h: int = 0) -> float:
        """Matching cost of cell (x, y) in hypothesis h, or of flat index x."""
        return self._read(self.costs, x, y, h)

    def is_valid(self, x: int, y: int | None = None, h: int = 0) -> bool:
        return self.at(x, y, h) >= MIN_DEPTH

    def valid_mask(self) -> torch.Tensor:
        """Cells holding an estimate, shape (hypotheses, y_max, x_max)."""
        return self.depths >= MIN_DEPTH

    # nearest-neighbor lookup at image points

    def nearest_cells(self, pixels: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Nearest grid cells of image points.

        Args:
            pixels: Image points (u, v), shape (N, 2).

        Returns:
            cells: Flat cell indices y * x_max + x, shape (N,). 0 where outside.
            inside: Whether the nearest cell lies in the grid, shape (N,).
        """
        xy = self.grid.to_grid(pixels.to(torch.float64))
        x, y = xy[:, 0], xy[:, 1]
        inside = (x >= 0) & (x < self.grid.x_max) & (y >= 0) & (y < self.grid.y_max)
        cells = torch.where(inside, y * self.grid.x_max + x, torch.zeros_like(x))
        return cells, inside

    def _nearest(self, storage: torch.Tensor, u: float, v: float, h: int) -> float:
        return self._read(storage, self.grid.x(u), self.grid.y(v), h)

    def nearest(self, u: float, v: float, h: int = 0) -> float:
        """Depth of the cell nearest to image point (u, v)."""
        return self._nearest(self.depths, u, v, h)

    def nearest_sigma(self, u: float, v: float, h: int = 0) -> float:
        """Sigma of the cell nearest to image point (u, v)."""
        return self._nearest(self.sigmas, u, v, h)

    def nearest_cost(self, u: float, v: float, h: int = 0) -> float:
        """Matching cost of the cell nearest to image point (u, v)."""
        return self._nearest(self.costs, u, v, h)

    # conversions

    def image_points(self, indices: torch.Tensor) -> torch.Tensor:
        """Image points at the centers of flat-indexed cells.

        Args:
            indices: Flat indices, shape (N,). The hypothesis part is ignored.

        Returns:
            Image points (u, v), shape (N, 2), float64.
        """
        cell = indices.long() % self.size
        cells = torch.stack([cell % self.grid.x_max, cell // self.grid.x_max], dim=-1)
        return self.grid.to_image(cells).to(torch.float64)

    def to_mat(self) -> torch.Tensor:
        """Depth of the first hypothesis, shape (y_max, x_max)."""
        return self.depths[0]

    def sigma_to_mat(self) -> torch.Tensor:
        """Sigma of the first hypothesis, shape (y_max, x_max)."""
        return self.sigmas[0]

    def project(self, points: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Project camera-frame points with the map's camera."""
        return self.camera.project(points.to(self.device))

    def apply_mask(self, mask: torch.Tensor) -> None:
        """Clear every cell whose pixel is zero in a full-resolution mask.

        Args:
            mask: Image mask, shape (H, W), nonzero = keep. Cells whose pixel
                falls outside the mask are cleared too.
        """
        mask = mask.to(self.device)
        H, W = mask.shape
        pixels = self.grid.pixel_grid(device=self.device).long()
        u, v = pixels[:, 0], pixels[:, 1]
        inside = (u >= 0) & (u < W) & (v >= 0) & (v < H)
        keep = inside & (mask[v.clamp(0, H - 1), u.clamp(0, W - 1)] != 0)
        keep = keep.reshape(self.grid.y_max, self.grid.x_max)

        self.depths[:, ~keep] = 0.0
        logger.debug("Mask cleared %d of %d cells", int((~keep).sum()), keep.numel())

    # reconstruction

    def reconstruct(
        self,
        flags: ReconstructionFlags = ReconstructionFlags(),
        query_points: torch.Tensor | None = None,
    ) -> ReconstructionPack:
        """Back-project depth estimates to a 3D point cloud.

        Args:
            flags: Reconstruction options.
            query_points: Image points (u, v), shape (Q, 2). Required when
                ``flags.query_points`` is set, ignored otherwise.

        Returns:
            One entry per valid estimate, in hypothesis-major then cell order.
            In query mode the order is query-major with hypotheses inner, and
            each entry is back-projected from its cell center.

        Raises:
            ValueError: If query mode is requested without query points.
        """
        planes = range(self.hypotheses) if flags.all_hypotheses else range(1)
        depth = self.depths.reshape(self.hypotheses, -1)
        sigma = self.sigmas.reshape(self.hypotheses, -1)
        cost = self.costs.reshape(self.hypotheses, -1)

        if flags.query_points:
            if query_points is None:
                raise ValueError("query_points flag set but no query points given")
            cells, inside = self.nearest_cells(query_points.to(self.device, torch.float64))
            plane = torch.tensor(list(planes), device=self.device)
            # (Q, P) grid of flat indices; row-major selection keeps queries outermost
            candidates = plane * self.size + cells.unsqueeze(-1)
            keep = inside.unsqueeze(-1) & (depth[plane][:, cells].T >= MIN_DEPTH)
            flat = candidates[keep]
        else:
            flat = torch.cat(
                [h * self.size + torch.nonzero(depth[h] >= MIN_DEPTH).squeeze(-1) for h in planes]
            )
        points = self.image_points(flat)
        hypotheses = flat // self.size
        cells = flat % self.size

        distance = depth[hypotheses, cells]
        entry_sigma = sigma[hypotheses, cells]
        rays, valid = self.camera.cast_ray(points)
        rays = rays.to(torch.float64)
        rays = torch.where(valid.unsqueeze(-1), rays, torch.zeros_like(rays))

        pack = ReconstructionPack(
            image_points=points,
            cloud=rays * distance.unsqueeze(-1),
            valid=valid,
            indices=flat,
            hypotheses=hypotheses,
            costs=cost[hypotheses, cells],
            values=entry_sigma if flags.with_sigma else torch.zeros_like(entry_sigma),
        )
        if flags.minmax_distance_with_empty:
            near = (distance - 2.0 * entry_sigma).clamp(min=MIN_DEPTH)
            far = distance + 2.0 * entry_sigma
            pack.near_cloud = rays * near.unsqueeze(-1)
            pack.far_cloud = rays * far.unsqueeze(-1)
        return pack

    def reconstruct_uncertainty(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Near and far points of every valid estimate.

        Returns:
            indices: Flat indices of the estimates, shape (K,).
            near: Points at depth - 2 sigma (at least MIN_DEPTH), shape (K, 3).
            far: Points at depth + 2 sigma, shape (K, 3).
        """
        pack = self.reconstruct(
            ReconstructionFlags(minmax_distance_with_empty=True, all_hypotheses=True)
        )
        return (
            pack.indices[pack.valid],
            pack.near_cloud[pack.valid],
            pack.far_cloud[pack.valid],
        )

    # ground truth

    @classmethod
    def generate_plane(
        cls,
        camera: ProjectionModel,
        grid: ScaleGrid,
        plane_pose: Pose,
        polygon: torch.Tensor | None = None,
        device: str | torch.device = "cpu",
    ) -> "DepthMap":
        """Analytic depth map of a planar polygon.

        The plane is the z = 0 plane of the frame given by plane_pose, whose
        z axis must point away from the camera. Each cell ray is intersected
        with the plane; rays at grazing incidence or outside the polygon get
        no estimate.

        Args:
            camera: Projection model of the camera.
            grid: Disparity grid of the output map.
            plane_pose: Pose of the plane frame in the camera frame.
            polygon: Convex polygon vertices in the plane frame, shape (K, 2)
                or (K, 3) with z = 0, ordered so that every edge's half-plane
                test ``ray . (Pi x Pj) >= 0`` holds inside. None for an
                unbounded plane.
            device: Device of the output map.

        Returns:
            Depth map with sigma and cost zero.
        """
        depth_map = cls(camera, grid, device=device)
        plane_pose = plane_pose.to(depth_map.device)

        pixels = grid.pixel_grid(device=depth_map.device)
        rays, valid = camera.cast_ray(pixels)
        rays = rays.to(torch.float64)

        normal = plane_pose.rotation[:, 2]
        origin = plane_pose.translation
        incidence = rays @ normal  # (N,)
        valid = valid & (incidence >= MIN_INCIDENCE)
        safe_incidence = torch.where(valid, incidence, torch.ones_like(incidence))
        distance = (origin @ normal) / safe_incidence

        if polygon is not None:
            vertices = polygon.to(depth_map.device, torch.float64)
            if vertices.shape[1] == 2:
                vertices = torch.cat([vertices, torch.zeros_like(vertices[:, :1])], dim=1)
            corners = plane_pose.transform(vertices)  # (K, 3) camera frame
            edges = torch.linalg.cross(corners, corners.roll(-1, dims=0))  # Pi x Pj
            valid = valid & ((rays @ edges.T) >= 0).all(dim=1)

        valid = valid & (distance >= MIN_DEPTH)
        distance = torch.where(valid, distance, torch.zeros_like(distance))
        depth_map.depths[0] = distance.reshape(grid.y_max, grid.x_max)
        return depth_map


def wrap_depth(map1: DepthMap, map2: DepthMap, pose: Pose) -> DepthMap:
    """Re-express the depths of map 2 on the grid of map 1.

    Every valid estimate of map 1 is reconstructed, moved into camera 2's
    frame and projected into image 2. The depth of the nearest cell of map 2
    is back-projected there, moved back into camera 1's frame and projected
    onto the original ray of map 1. Estimates without such a round trip get
    depth 0 and sigma DEFAULT_SIGMA.

    Args:
        map1: Depth map of camera 1.
        map2: Depth map of camera 2 (its first hypothesis is read).
        pose: Pose of camera 2 in camera 1's frame.

    Returns:
        Depth map on map 1's grid holding map 2's depths (signed distances
        along map 1's rays) and sigmas, with map 1's costs.
    """
    result = DepthMap(map1.camera, map1.grid, map1.hypotheses, device=map1.device)
    result.sigmas.fill_(DEFAULT_SIGMA)
    result.costs.copy_(map1.costs)

    pack = map1.reconstruct(ReconstructionFlags(all_hypotheses=True))
    rays1 = pack.cloud / map1.depths.reshape(-1)[pack.indices].unsqueeze(-1)

    pose = pose.to(map1.device)
    pixels2, ok = map2.project(pose.inverse_transform(pack.cloud))
    cells2, inside = map2.nearest_cells(pixels2)
    depth2 = map2.depths.reshape(map2.hypotheses, -1)[0, cells2]
    sigma2 = map2.sigmas.reshape(map2.hypotheses, -1)[0, cells2]
    ok = ok & pack.valid & inside & (depth2 >= MIN_DEPTH)

    rays2, cast_ok = map2.camera.cast_ray(pixels2)
    ok = ok & cast_ok
    back = pose.transform(rays2.to(torch.float64) * depth2.unsqueeze(-1))
    distance = (back * rays1).sum(dim=-1)

    indices = pack.indices[ok]
    result.depths.view(-1)[indices] = distance[ok]
    result.sigmas.view(-1)[indices] = sigma2[ok]

    logger.debug(
        "wrap_depth matched %d of %d estimates", int(ok.sum()), len(pack)
    )
    return result


def save_depth_map(depth_map: DepthMap, path: str | Path) -> None:
    """Save a depth map to an .npz file.

    Args:
        depth_map: Depth map to save.
        path: Output file path (should end with .npz).
    """
    grid = depth_map.grid
    np.savez(
        path,
        depth=depth_map.depths.cpu().numpy(),
        sigma=depth_map.sigmas.cpu().numpy(),
        cost=depth_map.costs.cpu().numpy(),
        grid=np.array([grid.u0, grid.v0, grid.scale, grid.x_max, grid.y_max]),
    )


def load_depth_map(
    path: str | Path,
    camera: ProjectionModel,
    device: str = "cpu",
) -> DepthMap:
    """Load a depth map from an .npz file.

    Args:
        path: Path to .npz file.
        camera: Projection model the depths refer to.
        device: Device to place the loaded tensors on.

    Returns:
        The depth map.
    """
    data = np.load(path)
    u0, v0, scale, x_max, y_max = (int(value) for value in data["grid"])
    grid = ScaleGrid(u0=u0, v0=v0, scale=scale, x_max=x_max, y_max=y_max)

    depth = torch.from_numpy(data["depth"])
    depth_map = DepthMap(camera, grid, hypotheses=depth.shape[0], device=device)
    depth_map.depths.copy_(depth)
    depth_map.sigmas.copy_(torch.from_numpy(data["sigma"]))
    depth_map.costs.copy_(torch.from_numpy(data["cost"]))
    return depth_map


def save_point_cloud(pack: ReconstructionPack, path: str | Path) -> None:
    """Save the valid points of a reconstruction to a PLY file (binary).

    Args:
        pack: Reconstruction to save.
        path: Output file path (should end with .ply).
    """
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(pack.points.cpu().numpy().astype(np.float64))
    o3d.io.write_point_cloud(str(path), pcd, write_ascii=False)
