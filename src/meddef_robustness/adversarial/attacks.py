"""
Adversarial Attack Methods for Medical AI Models

Gradient-based attacks for testing the robustness of medical imaging
classifiers on a single image.

Attack Methods:
1. FGSM (Fast Gradient Sign Method) - Goodfellow et al., 2014
   - Single-step attack using gradient sign
   - Anatomical regions protected by an attenuation mask

2. PGD (Projected Gradient Descent) - Madry et al., 2017
   - Iterative FGSM with projection onto the L-inf epsilon ball
   - Runs the full iteration count (no early exit on success)

3. Medical attention attack
   - FGSM whose gradient is weighted by an attribution map, so the
     perturbation concentrates on regions the model attends to

Each variant is an independent function with the GradientAttack
signature; run_attack dispatches on AttackType. Inputs are never mutated.

References:
- https://arxiv.org/abs/1412.6572 (FGSM)
- https://arxiv.org/abs/1706.06083 (PGD)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from meddef_robustness.adversarial.attention import AttentionMap, normalize_by_max
from meddef_robustness.adversarial.buffers import BufferScope
from meddef_robustness.adversarial.regions import RegionProfile, region_mask
from meddef_robustness.datasets import DatasetType
from meddef_robustness.exceptions import (
    AttentionMapShapeMismatchError,
    InvalidAttackConfigError,
    InvalidShapeError,
)
from meddef_robustness.models import LossSpec, compute_gradient, predict_probabilities

if TYPE_CHECKING:
    from meddef_robustness.config.schema import AttackConfig

logger = logging.getLogger(__name__)


class AttackType(str, Enum):
    """Types of adversarial attacks."""

    FGSM = "fgsm"
    PGD = "pgd"
    MEDICAL_ATTENTION = "medical_attention"


@dataclass
class AttackResult:
    """Result of an adversarial attack on a single image."""

    adversarial_image: np.ndarray
    original_prediction: np.ndarray
    adversarial_prediction: np.ndarray
    perturbation_magnitude: float
    attack_success: bool
    confidence_drop_pct: float
    attack_type: AttackType
    attack_params: dict = field(default_factory=dict)
    perturbation_linf: float = 0.0
    attention_map: AttentionMap | None = None

    @property
    def original_class(self) -> int:
        return int(np.argmax(self.original_prediction))

    @property
    def adversarial_class(self) -> int:
        return int(np.argmax(self.adversarial_prediction))

    @property
    def original_confidence(self) -> float:
        return float(np.max(self.original_prediction))

    @property
    def adversarial_confidence(self) -> float:
        return float(np.max(self.adversarial_prediction))

    def to_dict(self, include_arrays: bool = False) -> dict:
        """Convert to dictionary for serialization."""
        data = {
            "attack_type": self.attack_type.value,
            "attack_params": self.attack_params,
            "original_prediction": self.original_prediction.tolist(),
            "adversarial_prediction": self.adversarial_prediction.tolist(),
            "original_class": self.original_class,
            "adversarial_class": self.adversarial_class,
            "perturbation_magnitude": float(self.perturbation_magnitude),
            "perturbation_linf": float(self.perturbation_linf),
            "attack_success": bool(self.attack_success),
            "confidence_drop_pct": float(self.confidence_drop_pct),
            "attention_map": self.attention_map.to_dict() if self.attention_map else None,
        }
        if include_arrays:
            data["adversarial_image"] = self.adversarial_image.tolist()
        return data


class GradientAttack(Protocol):
    """Common signature of the attack variants."""

    def __call__(
        self,
        model: Any,
        image: np.ndarray,
        true_label: int,
        dataset: DatasetType | str | None = None,
        **params: Any,
    ) -> AttackResult: ...


# =============================================================================
# Pure building blocks
# =============================================================================


def fgsm_step(
    image: np.ndarray,
    gradient: np.ndarray,
    epsilon: float,
    mask: np.ndarray | None = None,
    direction: float = 1.0,
) -> np.ndarray:
    """
    Single signed-gradient step, clipped to the valid pixel range.

    Args:
        image: Image (H, W, C)
        gradient: Loss gradient, same shape as image
        epsilon: Step magnitude
        mask: Optional (H, W) attenuation mask, broadcast over channels
        direction: +1 to ascend the loss, -1 to descend (targeted)

    Returns:
        New image array in [0, 1]
    """
    perturbation = direction * epsilon * np.sign(gradient)
    if mask is not None:
        perturbation = perturbation * mask[..., np.newaxis]
    return np.clip(image + perturbation, 0.0, 1.0)


def pgd_project(original: np.ndarray, adversarial: np.ndarray, epsilon: float) -> np.ndarray:
    """Project onto the L-inf epsilon ball around ``original`` and the [0, 1] box."""
    delta = np.clip(adversarial - original, -epsilon, epsilon)
    return np.clip(original + delta, 0.0, 1.0)


def confidence_drop_pct(original_prediction: np.ndarray, adversarial_prediction: np.ndarray) -> float:
    """Percentage decrease of the top probability (0 when it was already 0)."""
    original_confidence = float(np.max(original_prediction))
    if original_confidence == 0.0:
        return 0.0
    adversarial_confidence = float(np.max(adversarial_prediction))
    return (original_confidence - adversarial_confidence) / original_confidence * 100.0


def _prepare_image(image: np.ndarray) -> np.ndarray:
    image = np.asarray(image, dtype=np.float64)
    if image.ndim != 3:
        raise InvalidShapeError(f"Expected image of shape (H, W, C), got {image.shape}")
    return image


def _check_epsilon(epsilon: float) -> None:
    if epsilon < 0 or not np.isfinite(epsilon):
        raise InvalidAttackConfigError(f"epsilon must be non-negative, got {epsilon}")


def _attack_loss(
    true_label: int, target_class: int | None, num_classes: int
) -> tuple[LossSpec, float]:
    """Loss to differentiate and the step direction (targeted attacks descend)."""
    label = true_label if target_class is None else target_class
    if not 0 <= label < num_classes:
        raise InvalidAttackConfigError(
            f"Label {label} out of range for a {num_classes}-class model"
        )
    if target_class is None:
        return LossSpec.cross_entropy(true_label), 1.0
    return LossSpec.cross_entropy(target_class), -1.0


def _evaluate_attack(
    model: Any,
    image: np.ndarray,
    adversarial_image: np.ndarray,
    original_prediction: np.ndarray,
    attack_type: AttackType,
    attack_params: dict,
) -> AttackResult:
    """Predict on the adversarial image and compute attack metrics."""
    adversarial_prediction = predict_probabilities(model, adversarial_image)

    delta = adversarial_image - image
    l2 = float(np.sqrt(np.sum(delta**2)))
    linf = float(np.max(np.abs(delta))) if delta.size else 0.0

    success = int(np.argmax(original_prediction)) != int(np.argmax(adversarial_prediction))
    drop = confidence_drop_pct(original_prediction, adversarial_prediction)

    logger.info(
        f"{attack_type.value} complete: success={success}, "
        f"L2={l2:.4f}, Linf={linf:.4f}, confidence_drop={drop:.1f}%"
    )

    return AttackResult(
        adversarial_image=adversarial_image,
        original_prediction=original_prediction,
        adversarial_prediction=adversarial_prediction,
        perturbation_magnitude=l2,
        attack_success=success,
        confidence_drop_pct=drop,
        attack_type=attack_type,
        attack_params=attack_params,
        perturbation_linf=linf,
    )


def _signed_gradient_attack(
    model: Any,
    image: np.ndarray,
    true_label: int,
    dataset: DatasetType | str | None,
    epsilon: float,
    target_class: int | None,
    preserve_regions: bool,
    attention_weights: np.ndarray | None,
    attack_type: AttackType,
    attack_params: dict,
    region_profiles: dict[DatasetType, RegionProfile] | None = None,
) -> AttackResult:
    original_prediction = predict_probabilities(model, image)
    loss, direction = _attack_loss(true_label, target_class, original_prediction.size)

    with BufferScope(model) as scope:
        gradient = scope.track(compute_gradient(model, loss, image))
        if attention_weights is not None:
            gradient = scope.track(gradient * attention_weights[..., np.newaxis])
        mask = None
        if preserve_regions:
            mask = scope.track(region_mask(dataset, image.shape, region_profiles))
        adversarial_image = fgsm_step(image, gradient, epsilon, mask, direction)

    return _evaluate_attack(
        model, image, adversarial_image, original_prediction, attack_type, attack_params
    )


# =============================================================================
# Attack variants
# =============================================================================


def fgsm_attack(
    model: Any,
    image: np.ndarray,
    true_label: int,
    dataset: DatasetType | str | None = None,
    epsilon: float = 0.05,
    target_class: int | None = None,
    preserve_regions: bool = True,
    region_profiles: dict[DatasetType, RegionProfile] | None = None,
) -> AttackResult:
    """
    Fast Gradient Sign Method (FGSM) attack.

    Perturbs the image by epsilon in the direction of the sign of the
    cross-entropy gradient, attenuated over protected anatomical regions.

    Args:
        model: Classifier with predict and gradient capabilities
        image: Clean image (H, W, C) in [0, 1]
        true_label: Index of the true class
        dataset: Dataset id selecting the region protection profile
        epsilon: Maximum perturbation magnitude (L-inf)
        target_class: If set, descend toward this class instead
        preserve_regions: Apply the anatomical attenuation mask
        region_profiles: Override of the protection profiles per dataset

    Returns:
        AttackResult

    Raises:
        GradientUnavailableError: If the model has no gradient capability
    """
    _check_epsilon(epsilon)
    image = _prepare_image(image)
    logger.info(f"Running FGSM attack with epsilon={epsilon}")

    params = {
        "epsilon": epsilon,
        "dataset": str(getattr(dataset, "value", dataset)),
        "target_class": target_class,
        "preserve_regions": preserve_regions,
    }
    return _signed_gradient_attack(
        model, image, true_label, dataset, epsilon, target_class,
        preserve_regions, None, AttackType.FGSM, params, region_profiles,
    )


def pgd_attack(
    model: Any,
    image: np.ndarray,
    true_label: int,
    dataset: DatasetType | str | None = None,
    epsilon: float = 0.05,
    iterations: int = 10,
    step_size: float | None = None,
    target_class: int | None = None,
) -> AttackResult:
    """
    Projected Gradient Descent (PGD) attack.

    Applies ``iterations`` signed-gradient steps, each computed at the
    current adversarial image and projected back into the epsilon ball
    around the original image. The loop always runs to completion.

    Args:
        model: Classifier with predict and gradient capabilities
        image: Clean image (H, W, C) in [0, 1]
        true_label: Index of the true class
        dataset: Dataset id (recorded with the attack parameters)
        epsilon: Maximum perturbation (L-inf bound)
        iterations: Number of attack iterations
        step_size: Step size per iteration (default: epsilon / 4)
        target_class: If set, descend toward this class instead

    Returns:
        AttackResult

    Raises:
        GradientUnavailableError: If the model has no gradient capability
    """
    _check_epsilon(epsilon)
    if iterations < 1:
        raise InvalidAttackConfigError(f"iterations must be >= 1, got {iterations}")
    if step_size is None:
        step_size = epsilon / 4
    image = _prepare_image(image)

    logger.info(
        f"Running PGD attack with epsilon={epsilon}, "
        f"step_size={step_size}, iterations={iterations}"
    )

    original_prediction = predict_probabilities(model, image)
    loss, direction = _attack_loss(true_label, target_class, original_prediction.size)

    adversarial_image = image.copy()
    for _ in range(iterations):
        with BufferScope(model) as scope:
            gradient = scope.track(compute_gradient(model, loss, adversarial_image))
            stepped = scope.track(adversarial_image + direction * step_size * np.sign(gradient))
            scope.track(adversarial_image)
            adversarial_image = pgd_project(image, stepped, epsilon)

    params = {
        "epsilon": epsilon,
        "dataset": str(getattr(dataset, "value", dataset)),
        "iterations": iterations,
        "step_size": step_size,
        "target_class": target_class,
    }
    return _evaluate_attack(
        model, image, adversarial_image, original_prediction, AttackType.PGD, params
    )


def medical_attention_attack(
    model: Any,
    image: np.ndarray,
    true_label: int,
    dataset: DatasetType | str | None = None,
    epsilon: float = 0.05,
    attention_map: AttentionMap | None = None,
    target_attention_reduction: float = 0.7,
    target_class: int | None = None,
    preserve_regions: bool = True,
    region_profiles: dict[DatasetType, RegionProfile] | None = None,
) -> AttackResult:
    """
    Attention-targeted attack.

    Without an attention map this is FGSM. With one, the raw gradient is
    weighted by the max-normalized attention before taking its sign, so
    high-attention regions receive the perturbation.

    ``target_attention_reduction`` is accepted and recorded with the
    attack parameters; the algorithm does not consult it.

    Raises:
        AttentionMapShapeMismatchError: If the map grid differs from the image
        GradientUnavailableError: If the model has no gradient capability
    """
    _check_epsilon(epsilon)
    image = _prepare_image(image)
    logger.info(
        f"Running medical attention attack with epsilon={epsilon}, "
        f"attention_map={'yes' if attention_map is not None else 'no'}"
    )

    params = {
        "epsilon": epsilon,
        "dataset": str(getattr(dataset, "value", dataset)),
        "target_class": target_class,
        "preserve_regions": preserve_regions,
        "target_attention_reduction": target_attention_reduction,
        "attention_weighted": attention_map is not None,
    }

    weights = None
    if attention_map is not None:
        if attention_map.values.shape != image.shape[:2]:
            raise AttentionMapShapeMismatchError(
                f"Attention map shape {attention_map.values.shape} does not match "
                f"image spatial shape {image.shape[:2]}"
            )
        weights = normalize_by_max(attention_map.values)

    result = _signed_gradient_attack(
        model, image, true_label, dataset, epsilon, target_class,
        preserve_regions, weights, AttackType.MEDICAL_ATTENTION, params,
        region_profiles,
    )

    if attention_map is not None:
        result.attention_map = AttentionMap(
            values=attention_map.values,
            width=attention_map.width,
            height=attention_map.height,
            scale=attention_map.scale * (1 - result.confidence_drop_pct / 100),
        )

    return result


ATTACKS: dict[AttackType, GradientAttack] = {
    AttackType.FGSM: fgsm_attack,
    AttackType.PGD: pgd_attack,
    AttackType.MEDICAL_ATTENTION: medical_attention_attack,
}


def run_attack(
    model: Any,
    image: np.ndarray,
    true_label: int,
    dataset: DatasetType | str | None,
    attack_type: str | AttackType,
    config: "AttackConfig",
    attention_map: AttentionMap | None = None,
    region_profiles: dict[DatasetType, RegionProfile] | None = None,
) -> AttackResult:
    """
    Run the specified attack with parameters taken from ``config``.

    Args:
        model: Classifier with predict and gradient capabilities
        image: Clean image (H, W, C)
        true_label: Index of the true class
        dataset: Dataset id of the model
        attack_type: Type of attack (fgsm, pgd, medical_attention)
        config: Validated attack configuration
        attention_map: Attention map for the medical attention attack
        region_profiles: Override of the protection profiles per dataset

    Returns:
        AttackResult

    Raises:
        InvalidAttackConfigError: If the attack type is unknown
    """
    if isinstance(attack_type, str) and not isinstance(attack_type, AttackType):
        try:
            attack_type = AttackType(attack_type.lower())
        except ValueError:
            raise InvalidAttackConfigError(f"Unknown attack type: {attack_type}") from None

    if attack_type == AttackType.FGSM:
        result = fgsm_attack(
            model, image, true_label, dataset,
            epsilon=config.epsilon,
            target_class=config.target_class,
            preserve_regions=config.preserve_regions,
            region_profiles=region_profiles,
        )
    elif attack_type == AttackType.PGD:
        result = pgd_attack(
            model, image, true_label, dataset,
            epsilon=config.epsilon,
            iterations=config.iterations,
            step_size=config.step_size,
            target_class=config.target_class,
        )
    elif attack_type == AttackType.MEDICAL_ATTENTION:
        result = medical_attention_attack(
            model, image, true_label, dataset,
            epsilon=config.epsilon,
            attention_map=attention_map,
            target_attention_reduction=config.target_attention_reduction,
            target_class=config.target_class,
            preserve_regions=config.preserve_regions,
            region_profiles=region_profiles,
        )
    else:
        raise InvalidAttackConfigError(f"Unknown attack type: {attack_type}")

    result.attack_params["loss_function"] = config.loss_function.value
    return result
