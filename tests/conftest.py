"""Shared pytest fixtures for curvesgm tests."""

import pytest
import torch

from curvesgm.config import StereoConfig
from curvesgm.geometry import Pose
from curvesgm.projection.eucm import EnhancedUnifiedProjectionModel

IMAGE_WIDTH = 128
IMAGE_HEIGHT = 96

# Random-grid texture on the synthetic plane (meters)
TEXTURE_SPACING = 0.05
TEXTURE_EXTENT = 3.0


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    """Parametrized device fixture for CPU and CUDA testing.

    Args:
        request: pytest fixture request object.

    Returns:
        torch.device: Device to use for testing.

    Raises:
        pytest.skip: If CUDA is requested but not available.
    """
    if request.param == "cuda" and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
    return torch.device(request.param)


@pytest.fixture
def camera():
    """Mildly wide-angle EUCM camera, 128x96 pixels, principal point centered."""
    return EnhancedUnifiedProjectionModel(
        IMAGE_WIDTH, IMAGE_HEIGHT, alpha=0.4, beta=1.0, fu=100.0, fv=100.0, u0=64.0, v0=48.0
    )


@pytest.fixture
def stereo_pose():
    """Camera 2 displaced 10 cm along camera 1's x axis."""
    return Pose.from_vectors([0.1, 0.0, 0.0])


@pytest.fixture
def stereo_config():
    """Matcher configuration for the 128x96 test images."""
    return StereoConfig(
        image_width=IMAGE_WIDTH,
        image_height=IMAGE_HEIGHT,
        disparity_max=24,
        scale=3,
        max_bias=50,
        max_distance=10.0,
    )


def _bilinear(texture: torch.Tensor, gx: torch.Tensor, gy: torch.Tensor) -> torch.Tensor:
    n = texture.shape[0]
    x0 = torch.floor(gx).clamp(0, n - 2)
    y0 = torch.floor(gy).clamp(0, n - 2)
    fx = (gx - x0).clamp(0.0, 1.0)
    fy = (gy - y0).clamp(0.0, 1.0)
    x0, y0 = x0.long(), y0.long()
    top = texture[y0, x0] * (1 - fx) + texture[y0, x0 + 1] * fx
    bottom = texture[y0 + 1, x0] * (1 - fx) + texture[y0 + 1, x0 + 1] * fx
    return top * (1 - fy) + bottom * fy


def _render_plane(camera, pose: Pose, depth: float, seed: int = 0) -> torch.Tensor:
    """Render a fronto-parallel textured plane z = depth (camera-1 frame).

    Args:
        camera: Projection model of the rendering camera.
        pose: Pose of the rendering camera in camera 1's frame.
        depth: Plane distance along camera 1's z axis.
        seed: Texture seed; equal seeds give the same plane.

    Returns:
        Grayscale image, shape (H, W), uint8.
    """
    generator = torch.Generator().manual_seed(seed)
    n = int(2 * TEXTURE_EXTENT / TEXTURE_SPACING) + 2
    texture = torch.rand(n, n, generator=generator, dtype=torch.float64) * 255.0

    v, u = torch.meshgrid(
        torch.arange(camera.height, dtype=torch.float64),
        torch.arange(camera.width, dtype=torch.float64),
        indexing="ij",
    )
    pixels = torch.stack([u.reshape(-1), v.reshape(-1)], dim=-1)
    rays, valid = camera.cast_ray(pixels)
    directions = pose.rotate(rays)
    origin = pose.translation

    valid = valid & (directions[:, 2] > 1e-6)
    safe_z = torch.where(valid, directions[:, 2], torch.ones_like(directions[:, 2]))
    lam = (depth - origin[2]) / safe_z
    points = origin + lam.unsqueeze(-1) * directions

    gx = (points[:, 0] + TEXTURE_EXTENT) / TEXTURE_SPACING
    gy = (points[:, 1] + TEXTURE_EXTENT) / TEXTURE_SPACING
    values = torch.where(valid, _bilinear(texture, gx, gy), torch.zeros_like(gx))
    return values.round().clamp(0, 255).to(torch.uint8).reshape(camera.height, camera.width)


@pytest.fixture
def render_plane():
    """Renderer of a textured fronto-parallel plane, see _render_plane."""
    return _render_plane
