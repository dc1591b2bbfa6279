"""
YAML Configuration System for MedDef Robustness.

This package provides Pydantic-based YAML configuration for:
- Attack configurations (FGSM, PGD, medical attention)
- Detection thresholds
- Region protection parameters
- Robustness evaluation experiments
"""

from meddef_robustness.config.loader import (
    ConfigError,
    ConfigLoader,
    load_attack_config,
    load_detection_config,
    load_experiment_config,
    validate_config,
)
from meddef_robustness.config.schema import (
    AttackConfig,
    AttackSpec,
    DetectionConfig,
    ExperimentConfig,
    LossFunction,
    OutputConfig,
    RegionConfig,
)

__all__ = [
    # Schema - Enums
    "LossFunction",
    # Schema - Models
    "AttackConfig",
    "AttackSpec",
    "DetectionConfig",
    "ExperimentConfig",
    "OutputConfig",
    "RegionConfig",
    # Loader
    "ConfigError",
    "ConfigLoader",
    "load_attack_config",
    "load_detection_config",
    "load_experiment_config",
    "validate_config",
]
