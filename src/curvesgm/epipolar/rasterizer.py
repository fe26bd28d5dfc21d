"""Incremental rasterization of implicit 2nd-degree curves."""

from collections.abc import Iterator

import torch

from .curves import Polynomial2


class CurveRasterizer:
    """Integer-step traversal of a batch of implicit curves.

    Each step moves one pixel along the dominant axis of the local tangent,
    then one pixel (or none) along the other axis, whichever keeps the
    polynomial residual smallest. The residual and its gradient are carried
    along by finite differences, so the polynomial is evaluated only once,
    at the start pixel.

    All N curves advance together; a single curve is a batch of one.

    Args:
        polynomial: Curves to follow, N entries.
        start: Integer start pixels (u, v), shape (N, 2).
        direction: Seed direction of positive steps at the start, shape (N, 2).
    """

    def __init__(
        self,
        polynomial: Polynomial2,
        start: torch.Tensor,
        direction: torch.Tensor,
    ) -> None:
        self.polynomial = polynomial
        self.start = start.long().clone()
        self.dtype = polynomial.k1.dtype
        self.reset()

        # Orient the tangent (dF/dv, -dF/du) along the seed direction
        alignment = self._fv * direction[:, 0] - self._fu * direction[:, 1]
        self._orientation = torch.where(
            alignment >= 0,
            torch.ones_like(alignment),
            -torch.ones_like(alignment),
        )

    def __len__(self) -> int:
        return self.start.shape[0]

    def reset(self) -> None:
        """Return every curve to its start pixel."""
        self.u = self.start[:, 0].clone()
        self.v = self.start[:, 1].clone()
        self.position = 0
        uf = self.u.to(self.dtype)
        vf = self.v.to(self.dtype)
        self._f = self.polynomial(uf, vf)
        self._fu, self._fv = self.polynomial.gradient(uf, vf)

    @property
    def pixels(self) -> torch.Tensor:
        """Current pixels (u, v), shape (N, 2), int64."""
        return torch.stack([self.u, self.v], dim=-1)

    def _move_u(self, du: torch.Tensor) -> None:
        p = self.polynomial
        self._f = self._f + du * self._fu + p.kuu * du * du
        self._fu = self._fu + 2.0 * p.kuu * du
        self._fv = self._fv + p.kuv * du
        self.u = self.u + du.long()

    def _move_v(self, dv: torch.Tensor) -> None:
        p = self.polynomial
        self._f = self._f + dv * self._fv + p.kvv * dv * dv
        self._fv = self._fv + 2.0 * p.kvv * dv
        self._fu = self._fu + p.kuv * dv
        self.v = self.v + dv.long()

    def step(self, sign: int = 1) -> None:
        """Advance every curve by one pixel, forward (sign=1) or backward (-1)."""
        s = self._orientation * sign
        tu = self._fv * s
        tv = -self._fu * s
        along_u = tu.abs() >= tv.abs()
        zero = torch.zeros_like(tu)

        # Primary axis
        self._move_u(torch.where(along_u, torch.sign(tu), zero))
        self._move_v(torch.where(along_u, zero, torch.sign(tv)))

        # Secondary axis: stay, +1 or -1, by smallest residual
        p = self.polynomial
        grad = torch.where(along_u, self._fv, self._fu)
        curvature = torch.where(along_u, p.kvv, p.kuu)
        f_stay = self._f.abs()
        f_plus = (self._f + grad + curvature).abs()
        f_minus = (self._f - grad + curvature).abs()
        delta = torch.where(
            (f_plus < f_stay) & (f_plus <= f_minus),
            torch.ones_like(zero),
            torch.where(f_minus < f_stay, -torch.ones_like(zero), zero),
        )
        self._move_v(torch.where(along_u, delta, zero))
        self._move_u(torch.where(along_u, zero, delta))

        self.position += sign

    def steps(self, count: int) -> None:
        """Advance |count| steps, backward when count is negative."""
        sign = 1 if count >= 0 else -1
        for _ in range(abs(count)):
            self.step(sign)

    def trace(
        self,
        count: int,
        width: int | None = None,
        height: int | None = None,
    ) -> Iterator[torch.Tensor]:
        """Lazily yield pixels from the current position on.

        The current pixel is yielded first, then one pixel per step. Stops
        after count steps, or earlier once every curve has left the
        width x height image when a size is given.

        Args:
            count: Number of steps; negative traces backward.
            width: Image width for boundary termination.
            height: Image height for boundary termination.

        Yields:
            Pixels (u, v), shape (N, 2), int64.
        """
        sign = 1 if count >= 0 else -1
        for i in range(abs(count) + 1):
            if i > 0:
                self.step(sign)
            if width is not None and height is not None:
                inside = (self.u >= 0) & (self.u < width) & (self.v >= 0) & (self.v < height)
                if not inside.any():
                    return
            yield self.pixels

    def collect(self, first: int, last: int) -> torch.Tensor:
        """Pixels at steps first..last (inclusive) counted from the start.

        Leaves the rasterizer at its start.

        Args:
            first: First step index, may be negative.
            last: Last step index, >= first.

        Returns:
            Pixels, shape (N, last - first + 1, 2), int64.
        """
        if first > last:
            raise ValueError(f"first ({first}) must not exceed last ({last})")

        collected = []
        self.reset()
        if first < 0:
            for _ in range(-first):
                self.step(-1)
                collected.append(self.pixels)
            collected.reverse()
            self.reset()
        else:
            self.steps(first)

        if last >= 0:
            collected.append(self.pixels)
            for _ in range(max(first, 0), last):
                self.step(1)
                collected.append(self.pixels)
        self.reset()

        return torch.stack(collected[: last - first + 1], dim=1)
