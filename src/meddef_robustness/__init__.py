"""
MedDef Robustness - Adversarial Robustness Testing for Medical Imaging AI

This package evaluates how medical image classifiers (retinal OCT and
chest X-ray) behave under adversarial manipulation:
- Gradient-based attacks (FGSM, PGD) with anatomical region protection
- Attention-targeted attacks driven by attribution maps
- Attribution ("attention") map extraction
- Lightweight statistical and attention-difference attack detection
- Robustness sweeps aggregated into per-attack and overall scores
"""

__version__ = "1.0.0"
__author__ = "MedDef Team"

from meddef_robustness.exceptions import (
    AssetMismatchError,
    AttentionMapShapeMismatchError,
    GradientUnavailableError,
    InvalidAttackConfigError,
    InvalidShapeError,
    MedDefError,
    ModelNotLoadedError,
)
from meddef_robustness.models import ModelContext
from meddef_robustness.service import RobustnessService

__all__ = [
    "AssetMismatchError",
    "AttentionMapShapeMismatchError",
    "GradientUnavailableError",
    "InvalidAttackConfigError",
    "InvalidShapeError",
    "MedDefError",
    "ModelContext",
    "ModelNotLoadedError",
    "RobustnessService",
]
