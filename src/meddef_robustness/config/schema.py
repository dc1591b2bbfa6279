"""
Pydantic Schema for YAML Configuration.

Provides type-safe configuration models for robustness experiments with
validation and helpful error messages.

Usage:
    from meddef_robustness.config import AttackConfig, load_experiment_config

    config = load_experiment_config("experiment.yaml")
    print(config.attacks[0].label)
"""

from __future__ import annotations

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from meddef_robustness.adversarial.attacks import AttackType
from meddef_robustness.adversarial.detection import DEFAULT_THRESHOLD, DEFAULT_THRESHOLDS
from meddef_robustness.adversarial.evaluator import attack_label
from meddef_robustness.adversarial.regions import ChestProfile, RegionProfile, RetinalProfile
from meddef_robustness.datasets import DatasetType


# =============================================================================
# Enums
# =============================================================================


class LossFunction(str, Enum):
    """Loss functions accepted by attack configurations."""

    CROSS_ENTROPY = "cross_entropy"
    ATTENTION_WEIGHTED = "attention_weighted"


# =============================================================================
# Attack Configuration
# =============================================================================


class AttackConfig(BaseModel):
    """Configuration for a single adversarial attack."""

    model_config = ConfigDict(extra="forbid")

    epsilon: float = Field(
        ...,
        description="Maximum perturbation magnitude (L-inf)",
        gt=0.0,
        le=1.0,
    )
    iterations: int = Field(
        default=10,
        description="Number of attack iterations (for iterative attacks)",
        ge=1,
        le=1000,
    )
    step_size: float | None = Field(
        default=None,
        description="Step size per iteration (epsilon / 4 if None)",
        gt=0.0,
    )
    target_class: int | None = Field(
        default=None,
        description="Target class for targeted attacks",
        ge=0,
    )
    loss_function: LossFunction = Field(
        default=LossFunction.CROSS_ENTROPY,
        description="Loss function label recorded with the attack",
    )
    target_attention_reduction: float = Field(
        default=0.7,
        description="Accepted by the medical attention attack, not used as a stopping criterion",
        ge=0.0,
        le=1.0,
    )
    preserve_regions: bool = Field(
        default=True,
        description="Attenuate perturbations over protected anatomical regions",
    )

    @model_validator(mode="after")
    def compute_step_size(self) -> "AttackConfig":
        """Auto-compute step size if not provided."""
        if self.step_size is None:
            object.__setattr__(self, "step_size", self.epsilon / 4)
        return self


class AttackSpec(BaseModel):
    """One entry of a robustness sweep: attack type plus its configuration."""

    model_config = ConfigDict(extra="forbid")

    type: AttackType = Field(..., description="Type of adversarial attack")
    config: AttackConfig = Field(..., description="Attack configuration")

    @property
    def label(self) -> str:
        """Human-readable label, e.g. 'pgd (eps=0.05)'."""
        return attack_label(self.type, self.config.epsilon)


# =============================================================================
# Detection Configuration
# =============================================================================


class DetectionConfig(BaseModel):
    """Thresholds for the statistical and attention-difference detectors."""

    model_config = ConfigDict(extra="forbid")

    thresholds: dict[DatasetType, float] = Field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS),
        description="Statistical attack score threshold per dataset; entries override the defaults",
    )
    default_threshold: float = Field(
        default=DEFAULT_THRESHOLD,
        description="Statistical threshold for datasets without an entry",
        ge=0.0,
        le=1.0,
    )
    attention_threshold: float = Field(
        default=0.30,
        description="RMS attention difference above which an input is flagged",
        ge=0.0,
    )
    perturbation_threshold: float = Field(
        default=0.01,
        description="Perturbation L2 norm above which an input is flagged",
        ge=0.0,
    )

    @field_validator("thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[DatasetType, float]) -> dict[DatasetType, float]:
        """Validate threshold ranges and merge them over the defaults."""
        for dataset, threshold in v.items():
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(f"Threshold for {dataset.value} must be in [0, 1]")
        return {**DEFAULT_THRESHOLDS, **v}


# =============================================================================
# Region Protection Configuration
# =============================================================================


class RegionConfig(BaseModel):
    """Anatomical region protection parameters."""

    model_config = ConfigDict(extra="forbid")

    retinal_radius: float = Field(default=50.0, description="Foveal protection radius (pixels)", gt=0.0)
    retinal_factor: float = Field(default=0.3, description="Attenuation inside the radius", gt=0.0, le=1.0)
    chest_lower: float = Field(default=0.2, description="Lower fractional bound", ge=0.0, lt=1.0)
    chest_upper: float = Field(default=0.8, description="Upper fractional bound", gt=0.0, le=1.0)
    chest_factor: float = Field(default=0.5, description="Attenuation inside the lung fields", gt=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "RegionConfig":
        if self.chest_lower >= self.chest_upper:
            raise ValueError("chest_lower must be smaller than chest_upper")
        return self

    def to_profiles(self) -> dict[DatasetType, RegionProfile]:
        """Region protection profiles keyed by dataset."""
        return {
            DatasetType.ROCT: RetinalProfile(self.retinal_radius, self.retinal_factor),
            DatasetType.CHEST_XRAY: ChestProfile(
                self.chest_lower, self.chest_upper, self.chest_factor
            ),
        }


# =============================================================================
# Output Configuration
# =============================================================================


class OutputConfig(BaseModel):
    """Configuration for output and logging."""

    model_config = ConfigDict(extra="forbid")

    output_dir: str = Field(
        default="./results",
        description="Directory for output files",
    )
    save_adversarial: bool = Field(
        default=False,
        description="Whether to save adversarial examples",
    )
    save_report: bool = Field(
        default=True,
        description="Whether to save the robustness report",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
    )


# =============================================================================
# Experiment Configuration
# =============================================================================


class ExperimentConfig(BaseModel):
    """Complete robustness evaluation experiment."""

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    name: str = Field(
        default="unnamed",
        description="Experiment name for identification",
        min_length=1,
        max_length=100,
    )
    description: str | None = Field(
        default=None,
        description="Optional description of the experiment",
    )
    version: str = Field(
        default="1.0.0",
        description="Configuration schema version",
        pattern=r"^\d+\.\d+\.\d+$",
    )
    dataset: DatasetType = Field(
        ...,
        description="Dataset the model was trained on",
    )
    model_path: str | None = Field(
        default=None,
        description="Path to a .keras or .h5 model file",
    )
    assets: list[str] = Field(
        default_factory=list,
        description="Paths to clean .npz test assets",
    )
    attacks: list[AttackSpec] = Field(
        ...,
        description="Attack configurations to sweep",
        min_length=1,
    )
    detection: DetectionConfig = Field(
        default_factory=DetectionConfig,
        description="Detection thresholds",
    )
    regions: RegionConfig = Field(
        default_factory=RegionConfig,
        description="Region protection parameters",
    )
    item_delay: float = Field(
        default=0.1,
        description="Pause between sweep items in seconds",
        ge=0.0,
        le=10.0,
    )
    output: OutputConfig = Field(
        default_factory=OutputConfig,
        description="Output configuration",
    )

    def get_attacks_by_type(self, attack_type: AttackType) -> list[AttackSpec]:
        """Get attack specifications of one type."""
        return [spec for spec in self.attacks if spec.type == attack_type]
