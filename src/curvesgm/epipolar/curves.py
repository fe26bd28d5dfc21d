"""Second-degree implicit curves and their fitting to epipolar geometry."""

from dataclasses import dataclass

import torch

# Largest tangent slope (relative to the chord) a fitted parabola may take
MAX_SLOPE = 20.0

# Chords shorter than this (pixels) cannot anchor a curve
MIN_CHORD = 1.0


@dataclass
class Polynomial2:
    """Batch of implicit 2nd-degree curves in pixel coordinates.

    F(u, v) = kuu u^2 + kuv u v + kvv v^2 + ku u + kv v + k1 = 0.
    Every coefficient tensor has shape (N,).
    """

    kuu: torch.Tensor
    kuv: torch.Tensor
    kvv: torch.Tensor
    ku: torch.Tensor
    kv: torch.Tensor
    k1: torch.Tensor

    def __len__(self) -> int:
        return self.k1.shape[0]

    def __call__(self, u: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        return (
            self.kuu * u * u
            + self.kuv * u * v
            + self.kvv * v * v
            + self.ku * u
            + self.kv * v
            + self.k1
        )

    def gradient(self, u: torch.Tensor, v: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        """Partial derivatives (dF/du, dF/dv)."""
        fu = 2.0 * self.kuu * u + self.kuv * v + self.ku
        fv = self.kuv * u + 2.0 * self.kvv * v + self.kv
        return fu, fv

    def __getitem__(self, index) -> "Polynomial2":
        return Polynomial2(
            self.kuu[index],
            self.kuv[index],
            self.kvv[index],
            self.ku[index],
            self.kv[index],
            self.k1[index],
        )


@dataclass
class EpipolarCurves:
    """Correspondence search paths, one per source pixel.

    A tagged record rather than a class hierarchy: ``inverted`` flips the
    traversal so that increasing disparity always leaves the large-depth end.

    Attributes:
        polynomial: Fitted curves, N entries.
        start: Rounded start pixel (the large-depth end), shape (N, 2), int64.
        direction: Unit seed direction of traversal at the start, shape (N, 2).
        valid: Whether the curve could be fitted, shape (N,).
        inverted: Whether the anchoring epipole lies behind the camera.
    """

    polynomial: Polynomial2
    start: torch.Tensor
    direction: torch.Tensor
    valid: torch.Tensor
    inverted: bool


def fit_parabola(
    start: torch.Tensor,
    end: torch.Tensor,
    tangent: torch.Tensor,
) -> tuple[Polynomial2, torch.Tensor]:
    """Fit the parabola through two points with a given tangent at the first.

    In the frame of the chord (s along start -> end, t perpendicular) the
    curve is t = k s (s - L), with L the chord length and k chosen so the
    slope at s = 0 matches the tangent. The result is expanded into implicit
    polynomial coefficients in (u, v).

    Args:
        start: First anchor points, shape (N, 2).
        end: Second anchor points, shape (N, 2). Shape (2,) broadcasts.
        tangent: Tangent directions at start, shape (N, 2). Sign is ignored.

    Returns:
        polynomial: Implicit curves, N entries.
        valid: False where the chord is shorter than MIN_CHORD or the tangent
            is degenerate, shape (N,).
    """
    end = end.expand_as(start)
    chord = end - start
    length = torch.linalg.norm(chord, dim=-1)
    valid = length > MIN_CHORD
    safe_length = torch.where(valid, length, torch.ones_like(length))

    a_u = chord[:, 0] / safe_length
    a_v = chord[:, 1] / safe_length
    n_u, n_v = -a_v, a_u

    tau_s = tangent[:, 0] * a_u + tangent[:, 1] * a_v
    tau_t = tangent[:, 0] * n_u + tangent[:, 1] * n_v
    valid = valid & ((tau_s.abs() + tau_t.abs()) > 0)

    slope = tau_t / torch.where(tau_s.abs() > 1e-12, tau_s, torch.full_like(tau_s, 1e-12))
    slope = slope.clamp(-MAX_SLOPE, MAX_SLOPE)
    slope = torch.where(valid, slope, torch.zeros_like(slope))

    # t = k s (s - L)  =>  dt/ds(0) = -k L
    k = -slope / safe_length

    # F = t - k s^2 + k L s, with s = a.(p - start), t = n.(p - start)
    quv = -k
    cuu = quv * a_u * a_u
    cuv = 2.0 * quv * a_u * a_v
    cvv = quv * a_v * a_v
    lu = k * safe_length * a_u + n_u
    lv = k * safe_length * a_v + n_v

    pu, pv = start[:, 0], start[:, 1]
    polynomial = Polynomial2(
        kuu=cuu,
        kuv=cuv,
        kvv=cvv,
        ku=-2.0 * cuu * pu - cuv * pv + lu,
        kv=-2.0 * cvv * pv - cuv * pu + lv,
        k1=cuu * pu * pu + cuv * pu * pv + cvv * pv * pv - lu * pu - lv * pv,
    )
    return polynomial, valid
