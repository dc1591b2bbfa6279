"""
Adversarial Attack Detection for Medical AI Models

Two detectors with different cost profiles:

1. StatisticalAttackDetector (lightweight)
   - Uses only the prediction probability vector, no gradients
   - Entropy and uncertainty of the prediction drive an attack score
   - Suitable for memory-constrained (mobile) deployment
   - Best effort: internal failures yield a neutral "clean" result

2. AttentionDiffDetector
   - Compares attention maps before and after a perturbation
   - Flags an attack when attention shifts or the perturbation is large

Both detectors are deterministic for identical inputs.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from meddef_robustness.adversarial.attention import AttentionMap
from meddef_robustness.datasets import DatasetType, resolve_dataset
from meddef_robustness.exceptions import DetectionFailure

logger = logging.getLogger(__name__)


class DetectionMethod(str, Enum):
    """Detection methods."""

    LIGHTWEIGHT = "lightweight"
    STATISTICAL = "statistical"
    ATTENTION_DIFF = "attention_diff"


@dataclass
class AnomalyIndicators:
    """Signals contributing to an attack decision."""

    attention_dispersion: float
    prediction_uncertainty: float
    feature_magnitude: float
    gradient_consistency: float

    @classmethod
    def neutral(cls) -> "AnomalyIndicators":
        return cls(0.5, 0.5, 0.5, 0.5)

    def to_dict(self) -> dict:
        return {
            "attention_dispersion": float(self.attention_dispersion),
            "prediction_uncertainty": float(self.prediction_uncertainty),
            "feature_magnitude": float(self.feature_magnitude),
            "gradient_consistency": float(self.gradient_consistency),
        }


@dataclass
class AttackDetectionResult:
    """Result of attack detection on a single input."""

    is_attack: bool
    confidence: float
    method: DetectionMethod
    anomaly_indicators: AnomalyIndicators = field(default_factory=AnomalyIndicators.neutral)
    explanation: str = ""
    threshold: float | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "is_attack": bool(self.is_attack),
            "confidence": float(self.confidence),
            "method": self.method.value,
            "anomaly_indicators": self.anomaly_indicators.to_dict(),
            "explanation": self.explanation,
            "threshold": self.threshold,
        }


# Dataset-specific attack score thresholds
DEFAULT_THRESHOLDS: dict[DatasetType, float] = {
    DatasetType.CHEST_XRAY: 0.65,
    DatasetType.ROCT: 0.70,
}
DEFAULT_THRESHOLD = 0.6


def normalize_probabilities(prediction: np.ndarray) -> np.ndarray:
    """
    Turn a raw output vector into valid probabilities.

    Negative entries count as zero in the total; each entry is floored at
    1e-8. A non-positive total yields the uniform distribution.
    """
    values = np.asarray(prediction, dtype=np.float64).reshape(-1)
    total = float(np.sum(np.maximum(values, 0.0)))
    if total > 0:
        return np.maximum(values, 1e-8) / total
    return np.full(values.shape, 1.0 / values.size)


def normalized_entropy(probabilities: np.ndarray) -> float:
    """Shannon entropy divided by log(num_classes), capped at 1."""
    significant = probabilities[probabilities > 1e-8]
    entropy = float(-np.sum(significant * np.log(significant)))
    return min(1.0, entropy / math.log(probabilities.size))


class StatisticalAttackDetector:
    """
    Lightweight attack detector working from prediction probabilities.

    attack_score = 0.4 * prediction_uncertainty + 0.6 * attention_dispersion
    is_attack = attack_score > threshold(dataset)
    """

    UNCERTAINTY_WEIGHT = 0.4
    DISPERSION_WEIGHT = 0.6

    def __init__(
        self,
        dataset: DatasetType | str | None = None,
        thresholds: dict[DatasetType, float] | None = None,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        """
        Initialize the detector.

        Args:
            dataset: Dataset the classifier was trained on
            thresholds: Per-dataset attack score thresholds, merged over the defaults
            default_threshold: Threshold for datasets without an entry
        """
        self.dataset = resolve_dataset(dataset)
        table = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
        self.threshold = table.get(self.dataset, default_threshold)

    def score(self, prediction: np.ndarray) -> tuple[float, AnomalyIndicators]:
        """
        Compute the attack score and anomaly indicators.

        Raises:
            DetectionFailure: If the prediction cannot be scored
        """
        values = np.asarray(prediction, dtype=np.float64).reshape(-1)
        if values.size < 2:
            raise DetectionFailure(
                f"Need at least two class probabilities, got {values.size}"
            )
        if not np.all(np.isfinite(values)):
            raise DetectionFailure("Prediction contains non-finite values")

        probabilities = normalize_probabilities(values)
        max_confidence = float(np.max(probabilities))
        dispersion = normalized_entropy(probabilities)

        indicators = AnomalyIndicators(
            attention_dispersion=dispersion,
            prediction_uncertainty=min(0.99, max(0.01, 1 - max_confidence)),
            feature_magnitude=float(np.sqrt(np.sum(probabilities**2))),
            gradient_consistency=max(0.0, min(1.0, 1 - dispersion)),
        )

        attack_score = (
            self.UNCERTAINTY_WEIGHT * indicators.prediction_uncertainty
            + self.DISPERSION_WEIGHT * indicators.attention_dispersion
        )
        return min(1.0, max(0.0, attack_score)), indicators

    def detect(self, prediction: np.ndarray) -> AttackDetectionResult:
        """
        Classify an input as attacked or clean from its prediction vector.

        Never raises: on internal failure a neutral clean result with
        confidence 0.5 is returned.
        """
        try:
            attack_score, indicators = self.score(prediction)
        except Exception as e:
            logger.warning(f"Attack detection failed, assuming clean image: {e}")
            return AttackDetectionResult(
                is_attack=False,
                confidence=0.5,
                method=DetectionMethod.STATISTICAL,
                anomaly_indicators=AnomalyIndicators.neutral(),
                explanation="Attack detection failed, assuming clean image",
                threshold=self.threshold,
            )

        is_attack = attack_score > self.threshold
        uncertainty = indicators.prediction_uncertainty
        if is_attack:
            explanation = (
                f"Attack detected: High uncertainty ({uncertainty * 100:.1f}%) "
                f"and entropy ({indicators.attention_dispersion * 100:.1f}%)"
            )
        else:
            explanation = (
                f"Clean image: Low uncertainty ({uncertainty * 100:.1f}%) "
                "and stable predictions"
            )

        logger.info(
            f"Attack detection: {'ATTACK' if is_attack else 'CLEAN'} "
            f"(score: {attack_score * 100:.1f}%, threshold: {self.threshold:.2f})"
        )

        return AttackDetectionResult(
            is_attack=is_attack,
            confidence=attack_score,
            method=DetectionMethod.LIGHTWEIGHT,
            anomaly_indicators=indicators,
            explanation=explanation,
            threshold=self.threshold,
        )


def attention_difference(first: AttentionMap, second: AttentionMap) -> float:
    """Root-mean-square difference of two maps; 1.0 if their shapes differ."""
    if first.values.shape != second.values.shape:
        return 1.0
    if first.values.size == 0:
        return 0.0
    return float(np.sqrt(np.mean((first.values - second.values) ** 2)))


class AttentionDiffDetector:
    """
    Detects attacks from attention shift and perturbation magnitude.

    An input is flagged when the attention maps before and after differ by
    more than ``attention_threshold`` (RMS) or the perturbation L2 norm
    exceeds ``perturbation_threshold``.
    """

    def __init__(
        self,
        attention_threshold: float = 0.30,
        perturbation_threshold: float = 0.01,
    ):
        self.attention_threshold = attention_threshold
        self.perturbation_threshold = perturbation_threshold

    def detect(
        self,
        original_map: AttentionMap,
        adversarial_map: AttentionMap,
        perturbation_magnitude: float,
    ) -> bool:
        difference = attention_difference(original_map, adversarial_map)
        return (
            difference > self.attention_threshold
            or perturbation_magnitude > self.perturbation_threshold
        )

    def analyze(
        self,
        original_map: AttentionMap,
        adversarial_map: AttentionMap,
        perturbation_magnitude: float,
    ) -> AttackDetectionResult:
        """Detect and report the attention shift as an AttackDetectionResult."""
        difference = attention_difference(original_map, adversarial_map)
        is_attack = self.detect(original_map, adversarial_map, perturbation_magnitude)

        reasons = []
        if difference > self.attention_threshold:
            reasons.append(f"attention shift {difference:.3f} > {self.attention_threshold}")
        if perturbation_magnitude > self.perturbation_threshold:
            reasons.append(
                f"perturbation {perturbation_magnitude:.4f} > {self.perturbation_threshold}"
            )
        explanation = (
            "Attack detected: " + ", ".join(reasons)
            if is_attack
            else f"No attack: attention shift {difference:.3f} within tolerance"
        )

        consistency = max(0.0, min(1.0, 1 - difference))
        return AttackDetectionResult(
            is_attack=is_attack,
            confidence=min(1.0, max(0.0, difference)),
            method=DetectionMethod.ATTENTION_DIFF,
            anomaly_indicators=AnomalyIndicators(
                attention_dispersion=min(1.0, difference),
                prediction_uncertainty=max(0.01, min(0.99, 1 - adversarial_map.scale)),
                feature_magnitude=float(perturbation_magnitude),
                gradient_consistency=consistency,
            ),
            explanation=explanation,
            threshold=self.attention_threshold,
        )
