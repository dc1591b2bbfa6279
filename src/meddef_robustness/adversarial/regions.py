"""
Anatomical region protection for adversarial perturbations.

Perturbations on medical images are attenuated over clinically critical
regions so that attacks concentrate on the periphery:
- Retinal OCT: circular protection around the image center (fovea)
- Chest X-ray: rectangular protection over the central lung fields

The mask has one attenuation factor per pixel, in (0, 1], and is
broadcast across channels by the attack engine.
"""

from dataclasses import dataclass

import numpy as np

from meddef_robustness.datasets import DatasetType, resolve_dataset
from meddef_robustness.exceptions import InvalidShapeError


@dataclass(frozen=True)
class RetinalProfile:
    """Circular protection: pixels closer than ``radius`` get ``factor``."""

    radius: float = 50.0
    factor: float = 0.3


@dataclass(frozen=True)
class ChestProfile:
    """Rectangular protection between the given fractional bounds."""

    lower: float = 0.2
    upper: float = 0.8
    factor: float = 0.5


RegionProfile = RetinalProfile | ChestProfile

DEFAULT_PROFILES: dict[DatasetType, RegionProfile] = {
    DatasetType.ROCT: RetinalProfile(),
    DatasetType.CHEST_XRAY: ChestProfile(),
}


def _spatial_shape(image_shape: tuple[int, ...]) -> tuple[int, int]:
    if len(image_shape) < 2 or len(image_shape) > 3:
        raise InvalidShapeError(
            f"Expected [height, width] or [height, width, channels], got {tuple(image_shape)}"
        )
    if any(int(dim) <= 0 for dim in image_shape):
        raise InvalidShapeError(f"All dimensions must be positive, got {tuple(image_shape)}")
    return int(image_shape[0]), int(image_shape[1])


def region_mask(
    dataset: DatasetType | str | None,
    image_shape: tuple[int, ...],
    profiles: dict[DatasetType, RegionProfile] | None = None,
) -> np.ndarray:
    """
    Build the per-pixel attenuation mask for a dataset.

    Args:
        dataset: Dataset id; unknown datasets get an all-ones mask
        image_shape: Image shape (H, W) or (H, W, C)
        profiles: Optional override of the protection profiles

    Returns:
        Float array of shape (H, W) with values in (0, 1]

    Raises:
        InvalidShapeError: If the shape is not a valid image shape
    """
    height, width = _spatial_shape(tuple(image_shape))
    profile = (profiles or DEFAULT_PROFILES).get(resolve_dataset(dataset))

    if profile is None:
        return np.ones((height, width), dtype=np.float64)

    ys, xs = np.mgrid[0:height, 0:width]

    if isinstance(profile, RetinalProfile):
        center_y, center_x = height // 2, width // 2
        distance = np.sqrt((xs - center_x) ** 2 + (ys - center_y) ** 2)
        protected = distance < profile.radius
    else:
        protected = (
            (ys > height * profile.lower)
            & (ys < height * profile.upper)
            & (xs > width * profile.lower)
            & (xs < width * profile.upper)
        )

    return np.where(protected, profile.factor, 1.0).astype(np.float64)
