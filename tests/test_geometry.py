"""Tests for rigid transformations."""

import math

import torch

from curvesgm.geometry import Pose, rotation_matrix_to_vector, rotation_vector_to_matrix


class TestRotationVector:
    """Tests for the axis-angle conversions."""

    def test_zero_vector_is_identity(self):
        """A zero rotation vector gives the identity matrix."""
        R = rotation_vector_to_matrix(torch.zeros(3, dtype=torch.float64))
        torch.testing.assert_close(R, torch.eye(3, dtype=torch.float64))

    def test_quarter_turn_about_z(self):
        """A quarter turn about z maps x onto y."""
        R = rotation_vector_to_matrix(torch.tensor([0.0, 0.0, math.pi / 2], dtype=torch.float64))
        x = torch.tensor([1.0, 0.0, 0.0], dtype=torch.float64)
        torch.testing.assert_close(R @ x, torch.tensor([0.0, 1.0, 0.0], dtype=torch.float64))

    def test_round_trip(self):
        """Matrix to vector inverts vector to matrix."""
        rotvec = torch.tensor([0.1, -0.3, 0.2], dtype=torch.float64)
        recovered = rotation_matrix_to_vector(rotation_vector_to_matrix(rotvec))
        torch.testing.assert_close(recovered, rotvec)

    def test_orthonormal(self):
        """Rodrigues matrices are orthonormal with determinant one."""
        R = rotation_vector_to_matrix(torch.tensor([0.4, 0.5, -0.6], dtype=torch.float64))
        torch.testing.assert_close(R @ R.T, torch.eye(3, dtype=torch.float64))
        assert abs(float(torch.linalg.det(R)) - 1.0) < 1e-12


class TestPose:
    """Tests for Pose."""

    def test_transform_inverse_transform(self, device):
        """inverse_transform undoes transform."""
        pose = Pose.from_vectors([0.1, -0.2, 0.3], [0.05, 0.1, -0.2]).to(device)
        points = torch.randn(10, 3, dtype=torch.float64, device=device)
        torch.testing.assert_close(pose.inverse_transform(pose.transform(points)), points)

    def test_camera_centers(self):
        """The translation is camera 2's center; inverse_translation is camera 1's in frame 2."""
        pose = Pose.from_vectors([0.1, 0.0, 0.0], [0.0, 0.3, 0.0])
        origin = torch.zeros(1, 3, dtype=torch.float64)
        torch.testing.assert_close(pose.transform(origin)[0], pose.translation)
        torch.testing.assert_close(pose.inverse_transform(origin)[0], pose.inverse_translation)

    def test_inverse(self):
        """Composing a pose with its inverse gives the identity."""
        pose = Pose.from_vectors([0.3, 0.1, -0.2], [0.2, -0.1, 0.4])
        identity = pose.compose(pose.inverse())
        torch.testing.assert_close(identity.rotation, torch.eye(3, dtype=torch.float64))
        torch.testing.assert_close(
            identity.translation, torch.zeros(3, dtype=torch.float64), atol=1e-12, rtol=0
        )

    def test_compose_chains_transforms(self):
        """compose applies the inner transform first."""
        a = Pose.from_vectors([1.0, 0.0, 0.0], [0.0, 0.0, 0.5])
        b = Pose.from_vectors([0.0, 2.0, 0.0], [0.3, 0.0, 0.0])
        points = torch.randn(5, 3, dtype=torch.float64)
        torch.testing.assert_close(a.compose(b).transform(points), a.transform(b.transform(points)))

    def test_rotate_ignores_translation(self):
        """Direction vectors are rotated but not translated."""
        pose = Pose.from_vectors([5.0, 5.0, 5.0])
        vectors = torch.tensor([[0.0, 0.0, 1.0]], dtype=torch.float64)
        torch.testing.assert_close(pose.rotate(vectors), vectors)
        torch.testing.assert_close(pose.inverse_rotate(vectors), vectors)

    def test_repr(self):
        """The representation shows translation and rotation vector."""
        text = repr(Pose.from_vectors([0.1, 0.0, 0.0]))
        assert "translation=[0.1, 0.0, 0.0]" in text
        assert "rotation_vector" in text
