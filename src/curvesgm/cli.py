"""Command-line interface for curved-epipolar stereo matching."""

import argparse
import logging
import sys
from pathlib import Path

import cv2

from curvesgm.config import RigConfig
from curvesgm.dense.stereo import EnhancedStereo
from curvesgm.depth_map import ReconstructionFlags, save_depth_map, save_point_cloud
from curvesgm.geometry import Pose
from curvesgm.projection.eucm import EnhancedUnifiedProjectionModel

logger = logging.getLogger(__name__)


def init_config(config_path: Path) -> RigConfig:
    """Write a rig configuration with default values.

    Args:
        config_path: Path where the config YAML will be saved.

    Returns:
        The default RigConfig.
    """
    config = RigConfig()
    config.to_yaml(config_path)
    print(f"[OK] Configuration saved to: {config_path}")
    print("Edit the camera intrinsics and the pose before running.")
    return config


def build_stereo(config: RigConfig) -> EnhancedStereo:
    """Instantiate the cameras, the pose and the engine of a rig.

    Args:
        config: Rig configuration.

    Returns:
        The stereo engine.
    """
    camera1 = EnhancedUnifiedProjectionModel.from_params(
        config.image_width, config.image_height, config.camera1.intrinsics
    )
    camera2 = EnhancedUnifiedProjectionModel.from_params(
        config.image_width, config.image_height, config.camera2.intrinsics
    )
    pose = Pose.from_vectors(config.pose.translation, config.pose.rotation)
    return EnhancedStereo(pose, camera1, camera2, config.stereo)


def _read_grayscale(path: Path):
    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        print(f"Error: Could not read image: {path}", file=sys.stderr)
        sys.exit(1)
    return image


def run_command(
    config_path: Path,
    image1_path: Path,
    image2_path: Path,
    output_path: Path,
    ply_path: Path | None = None,
    verbose: bool = False,
    device: str | None = None,
) -> None:
    """Compute the depth map of an image pair from a rig config.

    Args:
        config_path: Path to the rig config YAML file.
        image1_path: Reference image.
        image2_path: Second image.
        output_path: Output depth map (.npz).
        ply_path: Optional output point cloud (.ply).
        verbose: If True, set logging to DEBUG level.
        device: Optional device override (replaces config.stereo.device).
    """
    # 1. Configure logging
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Silence noisy third-party loggers
    logging.getLogger("open3d").setLevel(logging.WARNING)

    # 2. Load config
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = RigConfig.from_yaml(config_path)
    except Exception as e:
        print(f"Error: Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)

    # 3. Apply CLI overrides
    if device is not None:
        config.stereo.device = device
    if verbose:
        config.stereo.verbosity = max(config.stereo.verbosity, 1)

    # 4. Load images
    image1 = _read_grayscale(image1_path)
    image2 = _read_grayscale(image2_path)

    # 5. Match
    try:
        stereo = build_stereo(config)
        depth_map = stereo.compute_depth(image1, image2)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # 6. Save
    output_path.parent.mkdir(parents=True, exist_ok=True)
    save_depth_map(depth_map, output_path)
    logger.info("Depth map saved to %s", output_path)

    if ply_path is not None:
        pack = depth_map.reconstruct(ReconstructionFlags(all_hypotheses=True))
        ply_path.parent.mkdir(parents=True, exist_ok=True)
        save_point_cloud(pack, ply_path)
        logger.info("Point cloud (%d points) saved to %s", int(pack.valid.sum()), ply_path)


def main() -> None:
    """Main entry point for the curvesgm CLI."""
    parser = argparse.ArgumentParser(
        prog="curvesgm",
        description="Semi-global stereo matching along curved epipolar lines.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Write a default rig config",
    )
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("rig.yaml"),
        help="Path to output config YAML file (default: rig.yaml)",
    )

    # run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Compute the depth map of an image pair",
    )
    run_parser.add_argument(
        "config",
        type=Path,
        help="Path to rig config YAML file",
    )
    run_parser.add_argument(
        "image1",
        type=Path,
        help="Reference image",
    )
    run_parser.add_argument(
        "image2",
        type=Path,
        help="Second image",
    )
    run_parser.add_argument(
        "--output",
        type=Path,
        default=Path("depth.npz"),
        help="Output depth map (default: depth.npz)",
    )
    run_parser.add_argument(
        "--ply",
        type=Path,
        default=None,
        help="Optional output point cloud (.ply)",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    run_parser.add_argument(
        "--device",
        type=str,
        default=None,
        choices=["cpu", "cuda"],
        help="Override device",
    )

    args = parser.parse_args()

    # Dispatch
    if args.command == "init":
        init_config(config_path=args.config)
    elif args.command == "run":
        run_command(
            config_path=args.config,
            image1_path=args.image1,
            image2_path=args.image2,
            output_path=args.output,
            ply_path=args.ply,
            verbose=args.verbose,
            device=args.device,
        )
    else:
        parser.print_help()
        sys.exit(1)

