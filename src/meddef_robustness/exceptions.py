"""
Error taxonomy for MedDef robustness testing.

Attack generation and attention extraction raise these to the caller.
DetectionFailure never leaves the statistical detector: it is converted
into a neutral detection result there.
"""

from typing import Any


class MedDefError(Exception):
    """Base class for robustness testing errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ModelNotLoadedError(MedDefError):
    """No model is resident in the model context."""


class GradientUnavailableError(MedDefError):
    """The model does not expose an input-gradient capability."""


class InvalidAttackConfigError(MedDefError, ValueError):
    """Unknown attack type or invalid attack parameters."""


class AssetMismatchError(MedDefError):
    """Asset dataset differs from the dataset of the loaded model."""


class AttentionMapShapeMismatchError(MedDefError, ValueError):
    """Attention map grid does not match the image spatial shape."""


class InvalidShapeError(MedDefError, ValueError):
    """Image or mask shape is not a valid [height, width(, channels)] shape."""


class DetectionFailure(MedDefError):
    """Internal failure of a best-effort detector."""
