"""
YAML Configuration Loader.

Provides utilities for loading, validating, and managing YAML configurations
with Pydantic models for type safety.

Usage:
    from meddef_robustness.config import load_experiment_config

    config = load_experiment_config("experiment.yaml")
    print(f"Sweeping {len(config.attacks)} attack configurations")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import ValidationError

from meddef_robustness.config.schema import (
    AttackConfig,
    DetectionConfig,
    ExperimentConfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


def format_validation_errors(error: ValidationError) -> str:
    """One indented ``location: message`` line per validation error."""
    lines = []
    for item in error.errors():
        loc = " -> ".join(str(x) for x in item["loc"])
        lines.append(f"  {loc}: {item['msg']}")
    return "\n".join(lines)


class ConfigLoader:
    """
    YAML Configuration Loader with validation.

    Provides methods for loading and validating configuration files
    with helpful error messages and template generation.
    """

    def __init__(self, config_dir: str | Path | None = None) -> None:
        """
        Initialize the config loader.

        Args:
            config_dir: Default directory for configuration files
        """
        self.config_dir = Path(config_dir) if config_dir else Path.cwd()

    def load_yaml(self, path: str | Path) -> dict[str, Any]:
        """
        Load raw YAML file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary with parsed YAML content

        Raises:
            ConfigError: If file not found or YAML parsing fails
        """
        file_path = self._resolve_path(path)

        if not file_path.exists():
            raise ConfigError(
                f"Configuration file not found: {file_path}",
                {"path": str(file_path)},
            )

        try:
            with open(file_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Failed to parse YAML file: {e}",
                {"path": str(file_path), "error": str(e)},
            ) from e

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML file must contain a dictionary, got {type(data).__name__}",
                {"path": str(file_path)},
            )

        logger.debug(f"Loaded YAML from {file_path}")
        return data

    def load_attack(self, path: str | Path) -> AttackConfig:
        """
        Load and validate attack configuration.

        Raises:
            ConfigError: If validation fails
        """
        data = self.load_yaml(path)
        return self._validate_model(AttackConfig, data, path)

    def load_detection(self, path: str | Path) -> DetectionConfig:
        """
        Load and validate detection thresholds.

        Raises:
            ConfigError: If validation fails
        """
        data = self.load_yaml(path)
        return self._validate_model(DetectionConfig, data, path)

    def load_experiment(self, path: str | Path) -> ExperimentConfig:
        """
        Load and validate experiment configuration.

        Relative model and asset paths are resolved against the directory
        of the experiment file.

        Raises:
            ConfigError: If validation fails
        """
        data = self.load_yaml(path)
        config = self._validate_model(ExperimentConfig, data, path)

        base_dir = self._resolve_path(path).parent
        if config.model_path and not Path(config.model_path).is_absolute():
            config.model_path = str(base_dir / config.model_path)
        config.assets = [
            p if Path(p).is_absolute() else str(base_dir / p) for p in config.assets
        ]
        return config

    def _resolve_path(self, path: str | Path) -> Path:
        """Resolve path relative to config_dir if not absolute."""
        p = Path(path)
        if p.is_absolute():
            return p
        return self.config_dir / p

    def _validate_model(
        self,
        model_class: type[T],
        data: dict[str, Any],
        path: str | Path,
    ) -> T:
        """
        Validate data against Pydantic model.

        Raises:
            ConfigError: If validation fails
        """
        try:
            return model_class.model_validate(data)
        except ValidationError as e:
            raise ConfigError(
                f"Configuration validation failed for {path}:\n{format_validation_errors(e)}",
                {"path": str(path), "errors": e.errors()},
            ) from e

    @staticmethod
    def save_yaml(config: Any, path: str | Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            config: Pydantic model or dictionary to save
            path: Output file path
        """
        file_path = Path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        if hasattr(config, "model_dump"):
            data = config.model_dump(mode="json")
        else:
            data = config

        with open(file_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved configuration to {file_path}")

    @staticmethod
    def generate_attack_template() -> str:
        """Generate attack configuration template."""
        return """# Attack Configuration Template
# MedDef Robustness - Adversarial Attack

epsilon: 0.05

# For PGD
iterations: 10
# step_size defaults to epsilon / 4
# step_size: 0.0125

# Targeted attack (omit for untargeted)
# target_class: 0

# cross_entropy | attention_weighted
loss_function: "cross_entropy"

# Medical attention attack
target_attention_reduction: 0.7

# Attenuate perturbations over the fovea / lung fields
preserve_regions: true
"""

    @staticmethod
    def generate_detection_template() -> str:
        """Generate detection configuration template."""
        return """# Detection Configuration Template
# MedDef Robustness - Attack Detection

# Statistical detector score thresholds per dataset
thresholds:
  chest_xray: 0.65
  roct: 0.70
default_threshold: 0.6

# Attention difference detector
attention_threshold: 0.30
perturbation_threshold: 0.01
"""

    @staticmethod
    def generate_experiment_template() -> str:
        """Generate experiment configuration template."""
        return """# Experiment Configuration Template
# MedDef Robustness - Robustness Evaluation

name: "chest_xray_robustness"
description: "Evaluate a chest X-ray classifier against FGSM and PGD"
version: "1.0.0"

# roct | chest_xray
dataset: "chest_xray"

# Keras model (.keras / .h5), relative to this file
model_path: "models/meddef_chest_xray.keras"

# Clean .npz assets (keys: image, label, dataset)
assets:
  - "assets/normal_001.npz"
  - "assets/pneumonia_001.npz"

# Attack sweep
attacks:
  - type: "fgsm"
    config:
      epsilon: 0.01

  - type: "fgsm"
    config:
      epsilon: 0.05

  - type: "pgd"
    config:
      epsilon: 0.05
      iterations: 10

  - type: "medical_attention"
    config:
      epsilon: 0.05
      loss_function: "attention_weighted"

# Detection thresholds
detection:
  default_threshold: 0.6
  attention_threshold: 0.30
  perturbation_threshold: 0.01

# Region protection
regions:
  retinal_radius: 50.0
  retinal_factor: 0.3
  chest_lower: 0.2
  chest_upper: 0.8
  chest_factor: 0.5

# Pause between sweep items (seconds)
item_delay: 0.1

# Output configuration
output:
  output_dir: "./results"
  save_adversarial: false
  save_report: true
  log_level: "INFO"
"""


# =============================================================================
# Convenience Functions
# =============================================================================


def load_attack_config(path: str | Path) -> AttackConfig:
    """
    Load attack configuration from YAML file.

    Raises:
        ConfigError: If loading or validation fails
    """
    loader = ConfigLoader()
    return loader.load_attack(path)


def load_detection_config(path: str | Path) -> DetectionConfig:
    """
    Load detection configuration from YAML file.

    Raises:
        ConfigError: If loading or validation fails
    """
    loader = ConfigLoader()
    return loader.load_detection(path)


def load_experiment_config(path: str | Path) -> ExperimentConfig:
    """
    Load experiment configuration from YAML file.

    Args:
        path: Path to YAML file

    Returns:
        Validated ExperimentConfig

    Raises:
        ConfigError: If loading or validation fails
    """
    loader = ConfigLoader()
    return loader.load_experiment(path)


def validate_config(data: dict[str, Any], config_type: str = "experiment") -> Any:
    """
    Validate configuration dictionary.

    Args:
        data: Configuration dictionary
        config_type: Type of configuration ("attack", "detection", "experiment")

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If validation fails
        ValueError: If config_type is invalid
    """
    config_classes = {
        "attack": AttackConfig,
        "detection": DetectionConfig,
        "experiment": ExperimentConfig,
    }

    if config_type not in config_classes:
        raise ValueError(f"Invalid config_type: {config_type}")

    model_class = config_classes[config_type]

    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Validation failed: {e}",
            {"errors": e.errors()},
        ) from e
