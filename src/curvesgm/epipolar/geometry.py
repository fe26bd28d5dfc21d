"""Per-pixel epipolar geometry between two generalized cameras."""

import logging
import time

import torch

from ..geometry import Pose
from ..grid import ScaleGrid
from ..projection.protocol import ProjectionModel
from .curves import EpipolarCurves, fit_parabola
from .rasterizer import CurveRasterizer

logger = logging.getLogger(__name__)

# Infinitesimal ray perturbation along the baseline (unit-ray units)
PERTURBATION = 1e-4

# Distance (pixels) of the stand-in anchor when an epipole cannot be projected
FAR_ANCHOR = 1e5

MIN_BASELINE = 1e-9


class EpipolarGeometry:
    """Epipolar curves of every grid pixel of image 1 in image 2.

    The rays of image 1 depend on camera 1 only and are computed once. Every
    other field depends on the pose and is recomputed by
    ``set_transformation`` before it returns.

    Args:
        camera1: Projection model of the reference camera.
        camera2: Projection model of the second camera.
        grid: Disparity grid over image 1.
        pose: Pose of camera 2 in camera 1's frame.
        device: Device for the cached tensors.

    Attributes:
        pixels1: Image-1 pixels of the grid cells, shape (N, 2).
        reconst: Unit rays of pixels1 in frame 1, shape (N, 3).
        reconst_valid: Back-projection success, shape (N,).
        reconst_rot: reconst expressed in frame 2, shape (N, 3).
        epipole1: Camera 2's center projected into image 1, shape (2,), or
            None when it cannot be projected either way.
        epipole2: Camera 1's center projected into image 2, shape (2,), or None.
        epipole_inverted1: epipole1 is the projection of the opposite direction.
        epipole_inverted2: epipole2 is the projection of the opposite direction.
        pinf: Projection of reconst_rot into image 2, shape (N, 2).
        epipolar_direction: Unit tangent of the image-1 epipolar curve at
            pixels1, shape (N, 2).
        pinf_direction: Unit tangent of the image-2 curve at pinf, pointing to
            nearer depths, shape (N, 2).
        curves2: Correspondence paths in image 2, starting at pinf.
        curves1: Epipolar curves in image 1 through pixels1.
        mask: Cells with a usable correspondence path, shape (N,).
    """

    def __init__(
        self,
        camera1: ProjectionModel,
        camera2: ProjectionModel,
        grid: ScaleGrid,
        pose: Pose,
        device: str | torch.device = "cpu",
    ) -> None:
        self.camera1 = camera1
        self.camera2 = camera2
        self.grid = grid
        self.device = torch.device(device)
        self.compute_reconstructed()
        self.set_transformation(pose)

    def compute_reconstructed(self) -> None:
        """Back-project every grid pixel of image 1 (pose independent)."""
        self.pixels1 = self.grid.pixel_grid(device=self.device)
        self.reconst, self.reconst_valid = self.camera1.cast_ray(self.pixels1)

    def set_transformation(self, pose: Pose) -> None:
        """Replace the pose and recompute every pose-dependent field."""
        self.pose = pose.to(self.device)
        start = time.perf_counter()

        self.compute_epipoles()
        self.compute_rotated()
        self.compute_pinf()
        self.compute_epipolar_directions()
        self.compute_curves()

        logger.debug(
            "Epipolar geometry recomputed for %s: %d/%d usable cells in %.3fs",
            self.pose,
            int(self.mask.sum()),
            self.mask.numel(),
            time.perf_counter() - start,
        )

    @property
    def baseline(self) -> float:
        return float(torch.linalg.norm(self.pose.translation))

    def compute_epipoles(self) -> None:
        """Project each camera center into the other image."""
        self.epipole1, self.epipole_inverted1 = _project_epipole(
            self.camera1, self.pose.translation
        )
        self.epipole2, self.epipole_inverted2 = _project_epipole(
            self.camera2, self.pose.inverse_translation
        )

    def compute_rotated(self) -> None:
        """Express the image-1 rays in camera 2's frame."""
        self.reconst_rot = self.pose.inverse_rotate(self.reconst)

    def compute_pinf(self) -> None:
        """Project the rotated rays as if they were at infinite depth."""
        self.pinf, self.pinf_valid = self.camera2.project(self.reconst_rot)

    def compute_epipolar_directions(self) -> None:
        """Tangents from rays perturbed infinitesimally along the baseline.

        In image 1 the ray moves towards camera 2's center; in image 2 the
        rotated ray moves towards camera 1's center, which corresponds to a
        finite, decreasing depth.
        """
        if self.baseline < MIN_BASELINE:
            n = self.reconst.shape[0]
            zeros = torch.zeros(n, 2, dtype=self.reconst.dtype, device=self.device)
            self.epipolar_direction = zeros
            self.pinf_direction = zeros.clone()
            self._direction_valid = torch.zeros(n, dtype=torch.bool, device=self.device)
            return

        t12 = self.pose.translation / torch.linalg.norm(self.pose.translation)
        t21 = self.pose.inverse_translation / torch.linalg.norm(self.pose.inverse_translation)

        self.epipolar_direction, valid1 = _perturbed_direction(
            self.camera1, self.reconst, self.pixels1, t12
        )
        self.pinf_direction, valid2 = _perturbed_direction(
            self.camera2, self.reconst_rot, self.pinf, t21
        )
        self._direction_valid = valid1 & valid2

    def compute_curves(self) -> None:
        """Fit the correspondence paths of image 2 and the curves of image 1."""
        self.curves2 = self._fit(
            self.pinf, self.epipole2, self.pinf_direction, self.epipole_inverted2
        )
        self.curves1 = self._fit(
            self.pixels1,
            self.epipole1,
            self.epipolar_direction,
            self.epipole_inverted1,
        )

        self.mask = (
            self.reconst_valid
            & self.pinf_valid
            & self._direction_valid
            & self.curves2.valid
        )
        if self.baseline < MIN_BASELINE:
            logger.warning("Zero baseline: no epipolar curve can be defined")
        elif not self.mask.any():
            logger.warning("No grid cell has a usable epipolar curve")

    def _fit(
        self,
        start: torch.Tensor,
        epipole: torch.Tensor | None,
        tangent: torch.Tensor,
        inverted: bool,
    ) -> EpipolarCurves:
        if epipole is None:
            # Epipole at infinity: anchor far along the tangent, a straight path
            end = start + FAR_ANCHOR * tangent
            inverted = False
        else:
            end = epipole.expand_as(start)
        polynomial, valid = fit_parabola(start, end, tangent)

        # The tangent already points along decreasing depth, towards the
        # epipole or away from it when inverted
        return EpipolarCurves(
            polynomial=polynomial,
            start=torch.floor(start + 0.5).long(),
            direction=tangent,
            valid=valid,
            inverted=inverted,
        )

    def rasterizer(
        self,
        indices: torch.Tensor | None = None,
        camera_index: int = 2,
    ) -> CurveRasterizer:
        """Rasterizer over the curves of selected cells.

        Args:
            indices: Flat cell indices, shape (K,). All cells when None.
            camera_index: 2 for the correspondence paths in image 2 (step 0
                at pinf), 1 for the epipolar curves in image 1 (step 0 at
                the cell pixel).

        Returns:
            The rasterizer, positioned at step 0.
        """
        curves = self.curves2 if camera_index == 2 else self.curves1
        if indices is None:
            return CurveRasterizer(curves.polynomial, curves.start, curves.direction)
        return CurveRasterizer(
            curves.polynomial[indices],
            curves.start[indices],
            curves.direction[indices],
        )


def _project_epipole(
    camera: ProjectionModel,
    center: torch.Tensor,
) -> tuple[torch.Tensor | None, bool]:
    if torch.linalg.norm(center) < MIN_BASELINE:
        return None, False
    pixels, valid = camera.project(center.unsqueeze(0))
    if bool(valid[0]):
        return pixels[0], False
    pixels, valid = camera.project(-center.unsqueeze(0))
    if bool(valid[0]):
        return pixels[0], True
    return None, False


def _perturbed_direction(
    camera: ProjectionModel,
    rays: torch.Tensor,
    pixels: torch.Tensor,
    shift: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    moved, valid = camera.project(rays + PERTURBATION * shift)
    delta = moved - pixels
    norm = torch.linalg.norm(delta, dim=-1, keepdim=True)
    valid = valid & (norm.squeeze(-1) > 1e-12)
    direction = delta / torch.where(norm > 1e-12, norm, torch.ones_like(norm))
    return direction, valid
