"""
Attribution ("attention") maps for medical image classifiers.

The map is a gradient saliency: the absolute gradient of the selected
class score with respect to the input, averaged over channels and
normalized by its maximum. It is used to:
- steer the attention-targeted attack toward regions the model relies on
- detect attacks by comparing maps before and after perturbation
"""

import logging
from dataclasses import dataclass

import numpy as np

from meddef_robustness.adversarial.buffers import BufferScope
from meddef_robustness.exceptions import InvalidAttackConfigError, InvalidShapeError
from meddef_robustness.models import LossSpec, compute_gradient, predict_probabilities

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AttentionMap:
    """Normalized 2-D attention grid with the confidence it was taken at."""

    values: np.ndarray
    width: int
    height: int
    scale: float

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=np.float64)
        if values.ndim != 2:
            raise InvalidShapeError(f"Attention values must be 2-D, got shape {values.shape}")
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "values": self.values.tolist(),
            "width": self.width,
            "height": self.height,
            "scale": float(self.scale),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttentionMap":
        values = np.asarray(data["values"], dtype=np.float64)
        return cls(
            values=values,
            width=int(data.get("width", values.shape[1])),
            height=int(data.get("height", values.shape[0])),
            scale=float(data.get("scale", 1.0)),
        )


def normalize_by_max(values: np.ndarray) -> np.ndarray:
    """Divide by the maximum; an all-zero (or non-positive) input gives zeros."""
    peak = float(np.max(values)) if values.size else 0.0
    if peak <= 0.0:
        return np.zeros_like(values, dtype=np.float64)
    return values / peak


def extract_attention_map(
    model,
    image: np.ndarray,
    target_class: int | None = None,
) -> AttentionMap:
    """
    Extract the attention map of ``model`` on ``image``.

    Args:
        model: Classifier with predict and gradient capabilities
        image: Image array (H, W, C) with values in [0, 1]
        target_class: Class to explain (default: predicted class)

    Returns:
        AttentionMap with values in [0, 1] and scale = max probability

    Raises:
        GradientUnavailableError: If the model has no gradient capability
        InvalidShapeError: If the image is not (H, W, C)
        InvalidAttackConfigError: If target_class is not a class of the model
    """
    image = np.asarray(image, dtype=np.float64)
    if image.ndim != 3:
        raise InvalidShapeError(f"Expected image of shape (H, W, C), got {image.shape}")

    prediction = predict_probabilities(model, image)
    if target_class is None:
        target_class = int(np.argmax(prediction))
    elif not 0 <= target_class < prediction.size:
        raise InvalidAttackConfigError(
            f"Target class {target_class} out of range for a {prediction.size}-class model"
        )
    target_class = int(target_class)
    confidence = float(np.max(prediction))

    with BufferScope(model) as scope:
        gradient = scope.track(compute_gradient(model, LossSpec.class_score(target_class), image))
        saliency = scope.track(np.mean(np.abs(gradient), axis=-1))
        values = normalize_by_max(saliency)

    height, width = values.shape
    logger.debug(
        f"Extracted {height}x{width} attention map for class {target_class} "
        f"(confidence={confidence:.4f})"
    )

    return AttentionMap(values=values, width=width, height=height, scale=confidence)
