"""Photometric matching costs along epipolar curves."""

import logging

import torch
from torch.profiler import record_function

from ..epipolar.geometry import EpipolarGeometry

logger = logging.getLogger(__name__)

# Cost of a candidate that cannot be evaluated (out of bounds or masked cell)
INVALID_COST = 255

# Largest cost of an evaluated candidate
MAX_VALID_COST = 254

# Profile weights for curve mode, indexed by block scale
PROFILE_KERNELS = {
    2: (2, 3, 2),
    3: (2, 4, 5, 4, 2),
    4: (2, 3, 4, 5, 4, 3, 2),
    5: (2, 3, 4, 4, 5, 4, 4, 3, 2),
}


def profile_weights(scale: int) -> tuple[int, ...]:
    """Weights of the 2 * scale - 1 samples of a curve profile.

    Args:
        scale: Block scale of the disparity grid.

    Returns:
        Integer weights, centered on the middle sample. Uniform for scales
        without a dedicated kernel.
    """
    return PROFILE_KERNELS.get(scale, (1,) * (2 * scale - 1))


def _sample(
    image: torch.Tensor,
    u: torch.Tensor,
    v: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Read integer pixels of an image, flagging those outside it.

    Args:
        image: Grayscale image, shape (H, W), uint8.
        u: Pixel columns, any shape, int64.
        v: Pixel rows, same shape as u, int64.

    Returns:
        values: Intensities as int32, same shape as u. Undefined where outside.
        inside: Boolean mask, same shape as u.
    """
    H, W = image.shape
    inside = (u >= 0) & (u < W) & (v >= 0) & (v < H)
    values = image[v.clamp(0, H - 1), u.clamp(0, W - 1)].to(torch.int32)
    return values, inside


def _finalize(total: torch.Tensor, inside: torch.Tensor, norm: int) -> torch.Tensor:
    # Rounded mean, clamped below the invalid sentinel
    cost = torch.div(total + norm // 2, norm, rounding_mode="floor")
    cost = cost.clamp(max=MAX_VALID_COST)
    cost = torch.where(inside, cost, torch.full_like(cost, INVALID_COST))
    return cost.to(torch.uint8)


def block_cost(
    image1: torch.Tensor,
    image2: torch.Tensor,
    pixels1: torch.Tensor,
    candidates: torch.Tensor,
    scale: int,
) -> torch.Tensor:
    """Mean absolute difference between square blocks.

    The block of image 1 is centered at each cell pixel, the blocks of image 2
    at each candidate. A block with any sample outside its image gives
    INVALID_COST.

    Args:
        image1: Reference image, shape (H, W), uint8.
        image2: Second image, shape (H, W), uint8.
        pixels1: Integer cell pixels in image 1, shape (N, 2).
        candidates: Integer candidate pixels in image 2, shape (N, D, 2).
        scale: Block side length.

    Returns:
        Costs, shape (N, D), uint8.
    """
    N, D, _ = candidates.shape
    half = scale // 2
    total = torch.zeros(N, D, dtype=torch.int32, device=candidates.device)
    inside = torch.ones(N, D, dtype=torch.bool, device=candidates.device)

    for dv in range(-half, scale - half):
        for du in range(-half, scale - half):
            a, in1 = _sample(image1, pixels1[:, 0] + du, pixels1[:, 1] + dv)  # (N,)
            b, in2 = _sample(image2, candidates[..., 0] + du, candidates[..., 1] + dv)
            total += (a.unsqueeze(1) - b).abs()
            inside &= in1.unsqueeze(1) & in2

    return _finalize(total, inside, scale * scale)


def curve_cost(
    image1: torch.Tensor,
    image2: torch.Tensor,
    pixels1: torch.Tensor,
    direction1: torch.Tensor,
    candidates: torch.Tensor,
    scale: int,
) -> torch.Tensor:
    """Weighted absolute difference between profiles along epipolar curves.

    Sample k of the image-1 profile is the pixel nearest to
    ``pixels1 + k * direction1``; it pairs with the rasterized image-2 pixel
    at step ``d - k``, so both profiles run along the same epipolar plane.

    Args:
        image1: Reference image, shape (H, W), uint8.
        image2: Second image, shape (H, W), uint8.
        pixels1: Cell pixels in image 1, shape (N, 2).
        direction1: Unit epipolar directions at pixels1, shape (N, 2).
        candidates: Rasterized image-2 pixels at steps -(scale - 1) to
            D - 1 + (scale - 1), shape (N, D + 2 * (scale - 1), 2).
        scale: Block scale; the profile holds 2 * scale - 1 samples.

    Returns:
        Costs, shape (N, D), uint8.
    """
    radius = scale - 1
    weights = profile_weights(scale)
    N = candidates.shape[0]
    D = candidates.shape[1] - 2 * radius
    total = torch.zeros(N, D, dtype=torch.int32, device=candidates.device)
    inside = torch.ones(N, D, dtype=torch.bool, device=candidates.device)

    for weight, k in zip(weights, range(-radius, radius + 1)):
        p1 = torch.floor(pixels1 + k * direction1 + 0.5).long()
        a, in1 = _sample(image1, p1[:, 0], p1[:, 1])  # (N,)

        # Step d - k sits at column d - k + radius
        window = candidates[:, radius - k : radius - k + D]  # (N, D, 2)
        b, in2 = _sample(image2, window[..., 0], window[..., 1])

        total += weight * (a.unsqueeze(1) - b).abs()
        inside &= in1.unsqueeze(1) & in2

    return _finalize(total, inside, sum(weights))


def build_cost_volume(
    image1: torch.Tensor,
    image2: torch.Tensor,
    geometry: EpipolarGeometry,
    disparity_max: int,
    cost_mode: str = "block",
    out: torch.Tensor | None = None,
) -> torch.Tensor:
    """Fill the matching-cost volume of an image pair.

    For every usable grid cell the correspondence path in image 2 is
    rasterized from step 0 (infinite depth) on, and each step is scored
    against the cell's neighborhood in image 1.

    Args:
        image1: Reference image, shape (H, W), uint8.
        image2: Second image, shape (H, W), uint8.
        geometry: Epipolar geometry of the pair at the current pose.
        disparity_max: Number of disparity steps D.
        cost_mode: "block" or "curve".
        out: Optional buffer, shape (grid.y_max, grid.x_max, D), uint8.

    Returns:
        Cost volume, shape (grid.y_max, grid.x_max, D), uint8. Masked cells
        and unusable candidates hold INVALID_COST.

    Raises:
        ValueError: If cost_mode is not "block" or "curve".
    """
    grid = geometry.grid
    scale = grid.scale
    shape = (grid.y_max, grid.x_max, disparity_max)
    if out is None:
        out = torch.empty(shape, dtype=torch.uint8, device=geometry.device)

    flat = out.view(-1, disparity_max)  # (N, D), row y * x_max + x
    flat.fill_(INVALID_COST)

    indices = torch.nonzero(geometry.mask).squeeze(-1)
    if indices.numel() == 0:
        return out

    with record_function("build_cost_volume"), torch.no_grad():
        image1 = image1.to(geometry.device)
        image2 = image2.to(geometry.device)
        pixels1 = geometry.pixels1[indices]
        rasterizer = geometry.rasterizer(indices)

        match cost_mode:
            case "block":
                candidates = rasterizer.collect(0, disparity_max - 1)
                costs = block_cost(image1, image2, pixels1.long(), candidates, scale)
            case "curve":
                candidates = rasterizer.collect(
                    -(scale - 1), disparity_max - 1 + (scale - 1)
                )
                costs = curve_cost(
                    image1,
                    image2,
                    pixels1,
                    geometry.epipolar_direction[indices],
                    candidates,
                    scale,
                )
            case _:
                raise ValueError(
                    f"Unknown cost mode: {cost_mode!r}. Expected 'block' or 'curve'."
                )

        flat[indices] = costs

    logger.debug(
        "Cost volume %s filled for %d cells (%s mode)",
        tuple(shape),
        indices.numel(),
        cost_mode,
    )
    return out
