"""Two-view ray triangulation."""

import torch


def triangulate_distance(
    dirs_a: torch.Tensor,
    origins_b: torch.Tensor,
    dirs_b: torch.Tensor,
    min_det: float = 1e-12,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Vectorized closest-approach triangulation of ray pairs.

    The first rays start at the origin of the common frame; the second rays
    start at origins_b. For each pair, solves for the ray parameters
    (s, r) minimizing ||s * a - (o + r * b)||^2. With unit directions the
    normal equations reduce to a 2x2 system.

    Args:
        dirs_a: Unit directions of the first rays, shape (M, 3).
        origins_b: Origins of the second rays, shape (M, 3) or (3,).
        dirs_b: Unit directions of the second rays, shape (M, 3).
        min_det: Determinant threshold below which rays count as parallel.

    Returns:
        distance: Distance along the first ray to the closest-approach point,
            shape (M,). Zero where invalid.
        valid: Boolean mask, shape (M,). False for nearly parallel rays or
            when the point lies behind either camera.
    """
    origins_b = origins_b.expand_as(dirs_b)

    # [1, -ab; ab, -1] [s; r] = [a.o; b.o]
    ab = (dirs_a * dirs_b).sum(dim=-1)
    ao = (dirs_a * origins_b).sum(dim=-1)
    bo = (dirs_b * origins_b).sum(dim=-1)

    det = ab * ab - 1.0
    valid = det.abs() > min_det
    safe_det = torch.where(valid, det, torch.ones_like(det))

    s = (ab * bo - ao) / safe_det
    r = (bo - ab * ao) / safe_det

    valid = valid & (s > 0) & (r > 0)
    distance = torch.where(valid, s, torch.zeros_like(s))
    return distance, valid
