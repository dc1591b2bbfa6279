"""
Robustness testing operations on the resident model.

RobustnessService is the entry point used by the CLI and the REST API.
It is constructed with a ModelContext; there is no module-level model
state.

Usage:
    context = ModelContext()
    context.load(functools.partial(KerasModel.load, "meddef_chest_xray.keras"), "chest_xray")

    service = RobustnessService(context)
    result = service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, image, 1)
    report = asyncio.run(service.run_robustness_evaluation(asset, specs))
"""

import logging
from typing import Any

import numpy as np
from pydantic import ValidationError

from meddef_robustness.adversarial.attacks import AttackResult, AttackType, run_attack
from meddef_robustness.adversarial.attention import AttentionMap
from meddef_robustness.adversarial.attention import extract_attention_map as _extract
from meddef_robustness.adversarial.detection import (
    AttackDetectionResult,
    AttentionDiffDetector,
    StatisticalAttackDetector,
)
from meddef_robustness.adversarial.evaluator import (
    DEFAULT_ITEM_DELAY,
    BatchTestResult,
    RobustnessEvaluator,
    RobustnessReport,
)
from meddef_robustness.assets import Asset
from meddef_robustness.config.loader import format_validation_errors
from meddef_robustness.config.schema import (
    AttackConfig,
    AttackSpec,
    DetectionConfig,
    ExperimentConfig,
    RegionConfig,
)
from meddef_robustness.datasets import DATASET_SPECS, DatasetType
from meddef_robustness.exceptions import AssetMismatchError, InvalidAttackConfigError
from meddef_robustness.models import ModelContext, predict_probabilities

logger = logging.getLogger(__name__)


def parse_attack_type(attack_type: str | AttackType) -> AttackType:
    """Resolve an attack type name, raising InvalidAttackConfigError if unknown."""
    if isinstance(attack_type, AttackType):
        return attack_type
    try:
        return AttackType(str(attack_type).lower())
    except ValueError:
        raise InvalidAttackConfigError(
            f"Unknown attack type: {attack_type}",
            {"supported": [t.value for t in AttackType]},
        ) from None


def parse_attack_config(config: AttackConfig | dict[str, Any]) -> AttackConfig:
    """Validate an attack configuration, raising InvalidAttackConfigError."""
    if isinstance(config, AttackConfig):
        return config
    try:
        return AttackConfig.model_validate(config)
    except ValidationError as e:
        raise InvalidAttackConfigError(
            f"Invalid attack configuration:\n{format_validation_errors(e)}",
            {"errors": e.errors(include_url=False, include_context=False)},
        ) from e


def parse_attack_spec(spec: AttackSpec | dict[str, Any]) -> AttackSpec:
    """Validate one sweep entry ``{type, config}``."""
    if isinstance(spec, AttackSpec):
        return spec
    if not isinstance(spec, dict):
        raise InvalidAttackConfigError(f"Attack spec must be a mapping, got {type(spec).__name__}")
    return AttackSpec(
        type=parse_attack_type(spec.get("type", "")),
        config=parse_attack_config(spec.get("config", {})),
    )


class RobustnessService:
    """
    Robustness testing operations bound to a ModelContext.

    Every operation requires a resident model and raises
    ModelNotLoadedError otherwise.
    """

    def __init__(
        self,
        context: ModelContext,
        detection: DetectionConfig | None = None,
        regions: RegionConfig | None = None,
        item_delay: float = DEFAULT_ITEM_DELAY,
    ) -> None:
        self.context = context
        self.detection = detection or DetectionConfig()
        self.regions = regions or RegionConfig()
        self.item_delay = item_delay

    @classmethod
    def from_experiment(cls, context: ModelContext, config: ExperimentConfig) -> "RobustnessService":
        """Build a service using the thresholds and timing of an experiment."""
        return cls(
            context,
            detection=config.detection,
            regions=config.regions,
            item_delay=config.item_delay,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _statistical_detector(self, dataset: DatasetType) -> StatisticalAttackDetector:
        return StatisticalAttackDetector(
            dataset,
            thresholds=self.detection.thresholds,
            default_threshold=self.detection.default_threshold,
        )

    def _attention_detector(self) -> AttentionDiffDetector:
        return AttentionDiffDetector(
            attention_threshold=self.detection.attention_threshold,
            perturbation_threshold=self.detection.perturbation_threshold,
        )

    def _evaluator(self) -> RobustnessEvaluator:
        model, dataset = self.context.require()
        return RobustnessEvaluator(
            model,
            dataset,
            statistical_detector=self._statistical_detector(dataset),
            attention_detector=self._attention_detector(),
            region_profiles=self.regions.to_profiles(),
            item_delay=self.item_delay,
        )

    @staticmethod
    def _resolve_label(dataset: DatasetType, true_label: int | str) -> int:
        if isinstance(true_label, np.integer):
            true_label = int(true_label)
        try:
            return DATASET_SPECS[dataset].label_index(true_label)
        except ValueError as e:
            raise InvalidAttackConfigError(str(e)) from e

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def generate_adversarial_example(
        self,
        attack_type: str | AttackType,
        config: AttackConfig | dict[str, Any],
        image: np.ndarray,
        true_label: int | str,
        attention_map: AttentionMap | None = None,
    ) -> AttackResult:
        """
        Generate an adversarial example for ``image`` with the resident model.

        Raises:
            ModelNotLoadedError: If no model is loaded
            InvalidAttackConfigError: Unknown attack type or invalid config
            GradientUnavailableError: If the model has no gradient capability
            AttentionMapShapeMismatchError: If the map grid differs from the image
        """
        model, dataset = self.context.require()
        attack_type = parse_attack_type(attack_type)
        config = parse_attack_config(config)
        label = self._resolve_label(dataset, true_label)

        return run_attack(
            model,
            image,
            label,
            dataset,
            attack_type,
            config,
            attention_map=attention_map,
            region_profiles=self.regions.to_profiles(),
        )

    def extract_attention_map(
        self,
        image: np.ndarray,
        target_class: int | None = None,
    ) -> AttentionMap:
        """
        Extract the attention map of the resident model on ``image``.

        Raises:
            ModelNotLoadedError: If no model is loaded
            GradientUnavailableError: If the model has no gradient capability
            InvalidAttackConfigError: If target_class is not a class of the model
        """
        model, _ = self.context.require()
        return _extract(model, image, target_class)

    def detect_attack(
        self,
        image: np.ndarray | None = None,
        prediction: np.ndarray | None = None,
    ) -> AttackDetectionResult:
        """
        Screen an input with the statistical detector.

        The prediction vector is computed from ``image`` when not given.

        Raises:
            ModelNotLoadedError: If no model is loaded
        """
        model, dataset = self.context.require()
        if prediction is None:
            if image is None:
                raise ValueError("Either image or prediction is required")
            prediction = predict_probabilities(model, image)
        return self._statistical_detector(dataset).detect(prediction)

    async def run_robustness_evaluation(
        self,
        asset: Asset,
        attack_specs: list[AttackSpec | dict[str, Any]],
    ) -> RobustnessReport:
        """
        Sweep a clean asset through the given attack configurations.

        Raises:
            ModelNotLoadedError: If no model is loaded
            AssetMismatchError: If the asset is not a clean image of the model's dataset
            InvalidAttackConfigError: If a sweep entry is invalid
        """
        _, dataset = self.context.require()
        if asset.dataset != dataset:
            raise AssetMismatchError(
                f"Asset dataset ({asset.dataset.value}) doesn't match loaded model ({dataset.value})",
                {"asset": asset.dataset.value, "model": dataset.value},
            )
        if not asset.is_clean:
            raise AssetMismatchError(
                "Adversarial testing requires clean (non-attacked) images",
                {"path": asset.path},
            )

        specs = [parse_attack_spec(spec) for spec in attack_specs]
        logger.info(f"Running robustness evaluation on {asset.path or 'in-memory asset'}")
        return await self._evaluator().evaluate(asset, specs)

    async def run_batch_test(self, assets: list[Asset]) -> BatchTestResult:
        """
        Predict, explain and screen each asset in turn.

        Raises:
            ModelNotLoadedError: If no model is loaded
        """
        return await self._evaluator().evaluate_batch(assets)
