"""Tests for implicit 2nd-degree curves and parabola fitting."""

import math

import torch

from curvesgm.epipolar.curves import MAX_SLOPE, Polynomial2, fit_parabola


def _distance(polynomial: Polynomial2, points: torch.Tensor) -> torch.Tensor:
    """First-order distance |F| / |grad F| of points from their curves."""
    u, v = points[:, 0], points[:, 1]
    fu, fv = polynomial.gradient(u, v)
    return polynomial(u, v).abs() / torch.sqrt(fu * fu + fv * fv)


class TestPolynomial2:
    """Tests for Polynomial2 evaluation."""

    def test_evaluate_circle(self):
        """u^2 + v^2 - 25 vanishes on the circle of radius 5."""
        one = torch.ones(1, dtype=torch.float64)
        zero = torch.zeros(1, dtype=torch.float64)
        circle = Polynomial2(one, zero, one, zero, zero, -25.0 * one)

        assert circle(torch.tensor([3.0]), torch.tensor([4.0])).item() == 0.0
        fu, fv = circle.gradient(torch.tensor([3.0]), torch.tensor([4.0]))
        assert (fu.item(), fv.item()) == (6.0, 8.0)

    def test_indexing(self):
        """Indexing selects the same entries of every coefficient."""
        coefficients = [torch.arange(4, dtype=torch.float64) + i for i in range(6)]
        polynomial = Polynomial2(*coefficients)
        subset = polynomial[torch.tensor([1, 3])]
        assert len(subset) == 2
        assert subset.k1.tolist() == [6.0, 8.0]


class TestFitParabola:
    """Tests for fit_parabola()."""

    def test_passes_through_both_anchors(self):
        """The curve contains the start and the end point."""
        start = torch.tensor([[10.0, 20.0], [50.0, 5.0], [3.5, 7.25]], dtype=torch.float64)
        end = torch.tensor([[80.0, 40.0], [-30.0, 60.0], [100.0, -50.0]], dtype=torch.float64)
        tangent = torch.tensor([[1.0, 0.0], [0.0, 1.0], [0.6, -0.8]], dtype=torch.float64)

        polynomial, valid = fit_parabola(start, end, tangent)

        assert valid.all()
        assert (_distance(polynomial, start) < 1e-9).all()
        assert (_distance(polynomial, end) < 1e-9).all()

    def test_tangent_at_start(self):
        """The gradient at the start is perpendicular to the requested tangent."""
        start = torch.tensor([[10.0, 20.0]], dtype=torch.float64)
        end = torch.tensor([[80.0, 40.0]], dtype=torch.float64)
        tangent = torch.tensor([[math.cos(0.7), math.sin(0.7)]], dtype=torch.float64)

        polynomial, _ = fit_parabola(start, end, tangent)
        fu, fv = polynomial.gradient(start[:, 0], start[:, 1])

        dot = fu * tangent[:, 0] + fv * tangent[:, 1]
        assert dot.abs().item() < 1e-9 * torch.sqrt(fu * fu + fv * fv).item()

    def test_tangent_along_chord_gives_line(self):
        """A tangent along the chord fits a straight line."""
        start = torch.tensor([[0.0, 0.0]], dtype=torch.float64)
        end = torch.tensor([[30.0, 40.0]], dtype=torch.float64)
        tangent = torch.tensor([[0.6, 0.8]], dtype=torch.float64)

        polynomial, _ = fit_parabola(start, end, tangent)

        assert polynomial.kuu.abs().item() < 1e-12
        assert polynomial.kuv.abs().item() < 1e-12
        assert polynomial.kvv.abs().item() < 1e-12

    def test_end_broadcasts(self):
        """A single end point (an epipole) is shared by all curves."""
        start = torch.tensor([[0.0, 0.0], [5.0, 5.0]], dtype=torch.float64)
        epipole = torch.tensor([100.0, 0.0], dtype=torch.float64)
        tangent = torch.tensor([[1.0, 0.1], [1.0, -0.1]], dtype=torch.float64)

        polynomial, valid = fit_parabola(start, epipole, tangent)

        assert valid.all()
        assert (_distance(polynomial, epipole.expand(2, 2)) < 1e-9).all()

    def test_short_chord_invalid(self):
        """Anchors closer than a pixel cannot define a curve."""
        start = torch.tensor([[10.0, 10.0]], dtype=torch.float64)
        end = torch.tensor([[10.5, 10.0]], dtype=torch.float64)
        tangent = torch.tensor([[1.0, 0.0]], dtype=torch.float64)

        _, valid = fit_parabola(start, end, tangent)
        assert not valid.any()

    def test_perpendicular_tangent_clamped(self):
        """A tangent perpendicular to the chord is clamped to MAX_SLOPE."""
        start = torch.tensor([[0.0, 0.0]], dtype=torch.float64)
        end = torch.tensor([[10.0, 0.0]], dtype=torch.float64)
        tangent = torch.tensor([[0.0, 1.0]], dtype=torch.float64)

        polynomial, valid = fit_parabola(start, end, tangent)
        fu, fv = polynomial.gradient(start[:, 0], start[:, 1])

        assert valid.all()
        # Tangent (fv, -fu) has slope MAX_SLOPE relative to the chord
        assert abs(abs(fu.item() / fv.item()) - MAX_SLOPE) < 1e-9
