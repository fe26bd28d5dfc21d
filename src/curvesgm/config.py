"""Configuration management for the curved-epipolar stereo engine."""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


class StereoConfig(BaseModel):
    """Configuration for the semi-global matcher.

    Attributes:
        u_margin: Left margin of the region of interest (pixels).
        v_margin: Top margin of the region of interest (pixels).
        width: Region of interest width (pixels), -1 = up to the right margin.
        height: Region of interest height (pixels), -1 = up to the bottom margin.
        image_width: Image width in pixels.
        image_height: Image height in pixels.
        disparity_max: Number of disparity steps along each epipolar curve
            (positive, even).
        scale: Block size of the disparity grid (pixels per grid cell).
        lambda_step: Penalty for a one-step disparity change between neighbors.
        lambda_jump: Penalty for an arbitrary disparity jump between neighbors.
        max_bias: Maximum raw matching cost accepted at the winning disparity.
        max_distance: Maximum accepted depth (meters).
        verbosity: 0 = quiet, > 0 logs per-call summaries at INFO level.
        hypotheses: Number of depth hypotheses stored per grid cell.
        cost_mode: Matching cost, "block" (SxS SAD) or "curve" (profile
            along the epipolar curve).
        device: PyTorch device string.
    """

    model_config = ConfigDict(extra="allow")

    # Region of interest
    u_margin: int = 0
    v_margin: int = 0
    width: int = -1
    height: int = -1
    image_width: int = 0
    image_height: int = 0

    # Disparity search
    disparity_max: int = 48
    scale: int = 3

    # Smoothness
    lambda_step: int = 5
    lambda_jump: int = 32

    # Plausibility
    max_bias: int = 10
    max_distance: float = 100.0

    verbosity: int = 0
    hypotheses: int = 1
    cost_mode: Literal["block", "curve"] = "block"
    device: Literal["cpu", "cuda"] = "cpu"

    @field_validator("disparity_max")
    @classmethod
    def validate_disparity_max(cls, v: int) -> int:
        """Validate that disparity_max is positive and even."""
        if v <= 0 or v % 2 != 0:
            raise ValueError(f"disparity_max must be positive and even, got {v}")
        if v > 255:
            raise ValueError(
                f"disparity_max must fit an 8-bit disparity image, got {v}"
            )
        return v

    @field_validator("scale", "hypotheses")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that the value is positive."""
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("u_margin", "v_margin", "lambda_step", "lambda_jump", "max_bias")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that the value is not negative."""
        if v < 0:
            raise ValueError(f"must be non-negative, got {v}")
        return v

    @field_validator("max_distance")
    @classmethod
    def validate_max_distance(cls, v: float) -> float:
        """Validate that max_distance is positive."""
        if v <= 0:
            raise ValueError(f"max_distance must be positive, got {v}")
        return v

    @field_validator("width", "height")
    @classmethod
    def validate_roi_size(cls, v: int) -> int:
        """Validate that an explicit ROI size is positive."""
        if v == 0 or v < -1:
            raise ValueError(f"ROI size must be positive or -1 (full image), got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "StereoConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in StereoConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class CameraConfig(BaseModel):
    """Intrinsics of one enhanced unified camera.

    Attributes:
        intrinsics: [alpha, beta, fu, fv, u0, v0].
    """

    model_config = ConfigDict(extra="allow")

    intrinsics: list[float] = Field(
        default_factory=lambda: [0.5, 1.0, 250.0, 250.0, 320.0, 240.0]
    )

    @field_validator("intrinsics")
    @classmethod
    def validate_intrinsics(cls, v: list[float]) -> list[float]:
        """Validate the intrinsic parameter vector."""
        if len(v) != 6:
            raise ValueError(
                f"intrinsics must be [alpha, beta, fu, fv, u0, v0], got {len(v)} values"
            )
        if not 0.0 <= v[0] < 1.0:
            raise ValueError(f"alpha must be in [0, 1), got {v[0]}")
        if v[1] <= 0.0:
            raise ValueError(f"beta must be positive, got {v[1]}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "CameraConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in CameraConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class PoseConfig(BaseModel):
    """Pose of camera 2 in camera 1's frame.

    Attributes:
        translation: Camera 2 center in camera 1's frame (meters).
        rotation: Axis-angle rotation vector (radians).
    """

    model_config = ConfigDict(extra="allow")

    translation: list[float] = Field(default_factory=lambda: [0.1, 0.0, 0.0])
    rotation: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])

    @field_validator("translation", "rotation")
    @classmethod
    def validate_vector(cls, v: list[float]) -> list[float]:
        """Validate that the vector has three components."""
        if len(v) != 3:
            raise ValueError(f"expected 3 components, got {len(v)}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "PoseConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in PoseConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RigConfig(BaseModel):
    """Top-level configuration: a calibrated camera pair plus matcher settings.

    Attributes:
        image_width: Image width in pixels (both cameras).
        image_height: Image height in pixels (both cameras).
        camera1: Intrinsics of the reference camera.
        camera2: Intrinsics of the second camera.
        pose: Pose of camera 2 in camera 1's frame.
        stereo: Matcher configuration. Its image size is taken from the rig.
    """

    model_config = ConfigDict(extra="allow")

    image_width: int = 640
    image_height: int = 480
    camera1: CameraConfig = Field(default_factory=CameraConfig)
    camera2: CameraConfig = Field(default_factory=CameraConfig)
    pose: PoseConfig = Field(default_factory=PoseConfig)
    stereo: StereoConfig = Field(default_factory=StereoConfig)

    @model_validator(mode="after")
    def propagate_image_size(self) -> "RigConfig":
        """Copy the rig image size into the matcher config and warn about extras."""
        if self.image_width <= 0 or self.image_height <= 0:
            raise ValueError(
                f"image size must be positive, got {self.image_width}x{self.image_height}"
            )
        stereo_size = (self.stereo.image_width, self.stereo.image_height)
        rig_size = (self.image_width, self.image_height)
        if stereo_size != (0, 0) and stereo_size != rig_size:
            logger.warning(
                "stereo.image_width/image_height %dx%d overridden by rig image size %dx%d",
                *stereo_size,
                *rig_size,
            )
        self.stereo.image_width = self.image_width
        self.stereo.image_height = self.image_height

        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RigConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RigConfig":
        """Load configuration from a YAML file.

        Missing fields use their default values.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded configuration with defaults filled in.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails (with all errors collected).
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}

        cls._log_default_sections(data)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            formatted_errors = format_validation_errors(e)
            raise ValueError(
                f"Configuration validation failed:\n{formatted_errors}"
            ) from None

        return config

    @staticmethod
    def _log_default_sections(data: dict[str, Any]) -> None:
        """Log INFO messages about sections using defaults.

        Args:
            data: Configuration dictionary.
        """
        for section in ["camera1", "camera2", "pose", "stereo"]:
            if section not in data:
                logger.info("Using default: %s (all defaults)", section)

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file.

        All fields including defaults are written for explicitness.

        Args:
            path: Path to output YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors with YAML-style paths.

    Args:
        error: Pydantic ValidationError.

    Returns:
        Formatted error string with YAML paths and messages.
    """
    lines = []
    for err in error.errors():
        loc = err["loc"]
        path_parts = []
        for part in loc:
            if isinstance(part, int):
                # Array index
                path_parts[-1] = f"{path_parts[-1]}[{part}]"
            else:
                path_parts.append(str(part))

        path = ".".join(path_parts)
        msg = err["msg"]
        lines.append(f"  {path}: {msg}")

    return "\n".join(lines)
