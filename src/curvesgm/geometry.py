"""Rigid transformations between camera frames."""

from collections.abc import Sequence

import torch


def rotation_vector_to_matrix(rotvec: torch.Tensor) -> torch.Tensor:
    """Convert an axis-angle rotation vector to a rotation matrix (Rodrigues).

    Args:
        rotvec: Rotation vector, shape (3,). Direction is the axis, norm is
            the angle in radians.

    Returns:
        Rotation matrix, shape (3, 3), same dtype as rotvec.
    """
    theta = torch.linalg.norm(rotvec)
    identity = torch.eye(3, dtype=rotvec.dtype, device=rotvec.device)
    if theta < 1e-12:
        return identity

    k = rotvec / theta
    K = torch.zeros(3, 3, dtype=rotvec.dtype, device=rotvec.device)
    K[0, 1], K[0, 2] = -k[2], k[1]
    K[1, 0], K[1, 2] = k[2], -k[0]
    K[2, 0], K[2, 1] = -k[1], k[0]
    return identity + torch.sin(theta) * K + (1.0 - torch.cos(theta)) * (K @ K)


def rotation_matrix_to_vector(R: torch.Tensor) -> torch.Tensor:
    """Convert a rotation matrix to an axis-angle rotation vector.

    Args:
        R: Rotation matrix, shape (3, 3).

    Returns:
        Rotation vector, shape (3,).
    """
    cos_theta = ((torch.trace(R) - 1.0) / 2.0).clamp(-1.0, 1.0)
    theta = torch.acos(cos_theta)
    axis = torch.stack([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
    sin_theta = torch.sin(theta)
    if sin_theta.abs() < 1e-9:
        if theta < 1e-6:
            return torch.zeros(3, dtype=R.dtype, device=R.device)
        # theta close to pi: axis from the dominant diagonal entry of (R + I) / 2
        B = (R + torch.eye(3, dtype=R.dtype, device=R.device)) / 2.0
        i = int(torch.argmax(torch.diagonal(B)))
        axis = B[:, i] / torch.sqrt(B[i, i])
        return axis * theta
    return axis / (2.0 * sin_theta) * theta


class Pose:
    """Rigid transformation, pose of a frame B expressed in a frame A.

    ``transform`` maps coordinates from B into A (``R @ X + t``), and
    ``inverse_transform`` maps coordinates from A into B (``R.T @ (X - t)``).
    For a stereo pair, the pose of camera 2 in camera 1's frame gives ``t`` as
    camera 2's center seen from camera 1.

    Args:
        rotation: Rotation matrix, shape (3, 3).
        translation: Translation vector, shape (3,).
    """

    def __init__(self, rotation: torch.Tensor, translation: torch.Tensor) -> None:
        self.rotation = rotation
        self.translation = translation

    @classmethod
    def from_vectors(
        cls,
        translation: Sequence[float] | torch.Tensor,
        rotation_vector: Sequence[float] | torch.Tensor = (0.0, 0.0, 0.0),
        dtype: torch.dtype = torch.float64,
    ) -> "Pose":
        """Build a pose from a translation and an axis-angle rotation vector.

        Args:
            translation: Translation (x, y, z).
            rotation_vector: Rotation vector (rx, ry, rz), radians.
            dtype: Floating point type of the stored tensors.

        Returns:
            The pose.
        """
        t = torch.as_tensor(translation, dtype=dtype)
        rotvec = torch.as_tensor(rotation_vector, dtype=dtype)
        return cls(rotation_vector_to_matrix(rotvec), t)

    @classmethod
    def identity(cls, dtype: torch.dtype = torch.float64) -> "Pose":
        """Identity transformation."""
        return cls(torch.eye(3, dtype=dtype), torch.zeros(3, dtype=dtype))

    @property
    def rotation_vector(self) -> torch.Tensor:
        """Axis-angle form of the rotation, shape (3,)."""
        return rotation_matrix_to_vector(self.rotation)

    def to(self, device: str | torch.device) -> "Pose":
        """Return a copy of the pose on the given device."""
        return Pose(self.rotation.to(device), self.translation.to(device))

    def transform(self, points: torch.Tensor) -> torch.Tensor:
        """Map points from frame B into frame A.

        Args:
            points: Points in frame B, shape (N, 3).

        Returns:
            Points in frame A, shape (N, 3).
        """
        return points @ self.rotation.T + self.translation

    def inverse_transform(self, points: torch.Tensor) -> torch.Tensor:
        """Map points from frame A into frame B.

        Args:
            points: Points in frame A, shape (N, 3).

        Returns:
            Points in frame B, shape (N, 3).
        """
        return (points - self.translation) @ self.rotation

    def rotate(self, vectors: torch.Tensor) -> torch.Tensor:
        """Rotate direction vectors from frame B into frame A."""
        return vectors @ self.rotation.T

    def inverse_rotate(self, vectors: torch.Tensor) -> torch.Tensor:
        """Rotate direction vectors from frame A into frame B."""
        return vectors @ self.rotation

    @property
    def inverse_translation(self) -> torch.Tensor:
        """Origin of frame A expressed in frame B, shape (3,)."""
        return -(self.rotation.T @ self.translation)

    def inverse(self) -> "Pose":
        """Pose of frame A expressed in frame B."""
        return Pose(self.rotation.T.clone(), self.inverse_translation)

    def compose(self, other: "Pose") -> "Pose":
        """Chain transformations: pose of C in A given self (B in A) and other (C in B)."""
        return Pose(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def __repr__(self) -> str:
        t = [round(float(v), 6) for v in self.translation]
        r = [round(float(v), 6) for v in self.rotation_vector]
        return f"Pose(translation={t}, rotation_vector={r})"
