"""
Robustness Evaluation Framework for Medical AI Models

Sweeps a clean test image through a list of attack configurations and
aggregates the outcome into a robustness report.

Per attack configuration:
- Clean prediction and attention map
- Adversarial example (the medical attention attack receives the clean map)
- Attention map of the adversarial image
- Robustness score = mean(confidence preservation, perturbation efficiency)
- Attack detection from the attention shift and perturbation size

Items are processed strictly one after another with a short pause in
between, so a sweep never saturates a constrained device. A failing
configuration is logged and recorded; the sweep continues.

Reports:
- JSON report with per-attack metrics, weakest attack and strongest defense
- Batch summary (success/failure counts, confidence, detection rate)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from meddef_robustness.adversarial.attacks import AttackResult, AttackType, run_attack
from meddef_robustness.adversarial.attention import AttentionMap, extract_attention_map
from meddef_robustness.adversarial.detection import (
    AttackDetectionResult,
    AttentionDiffDetector,
    StatisticalAttackDetector,
)
from meddef_robustness.adversarial.regions import RegionProfile
from meddef_robustness.assets import Asset
from meddef_robustness.datasets import DATASET_SPECS, DatasetType
from meddef_robustness.exceptions import AssetMismatchError
from meddef_robustness.models import has_gradient, predict_probabilities

if TYPE_CHECKING:
    from meddef_robustness.config.schema import AttackSpec

logger = logging.getLogger(__name__)

DEFAULT_ITEM_DELAY = 0.1


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def robustness_score(
    original_confidence: float,
    adversarial_confidence: float,
    perturbation_magnitude: float,
    epsilon: float,
) -> float:
    """
    Per-attack robustness score in [0, 1]; higher is more robust.

    confidence_preservation = adversarial_confidence / original_confidence
    perturbation_efficiency = 1 - perturbation_magnitude / epsilon

    Both components are clamped into [0, 1] before averaging.
    """
    if original_confidence > 0:
        preservation = _clamp01(adversarial_confidence / original_confidence)
    else:
        preservation = 0.0

    if epsilon > 0:
        efficiency = _clamp01(1 - perturbation_magnitude / epsilon)
    else:
        efficiency = 1.0 if perturbation_magnitude == 0 else 0.0

    return (preservation + efficiency) / 2


def attack_label(attack_type: AttackType | str, epsilon: float) -> str:
    """Report label of an attack configuration, e.g. 'fgsm (eps=0.05)'."""
    name = attack_type.value if isinstance(attack_type, AttackType) else str(attack_type)
    return f"{name} (eps={epsilon:g})"


@dataclass
class AdversarialTestResult:
    """Outcome of one attack configuration against one clean image."""

    label: str
    attack_type: AttackType
    epsilon: float
    attack_result: AttackResult
    original_confidence: float
    adversarial_confidence: float
    robustness_score: float
    attack_detected: bool
    detection: AttackDetectionResult
    original_attention: AttentionMap
    adversarial_attention: AttentionMap
    processing_time: float
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (attention grids omitted)."""
        return {
            "label": self.label,
            "attack_type": self.attack_type.value,
            "epsilon": float(self.epsilon),
            "attack_result": self.attack_result.to_dict(),
            "original_confidence": float(self.original_confidence),
            "adversarial_confidence": float(self.adversarial_confidence),
            "robustness_score": float(self.robustness_score),
            "attack_detected": bool(self.attack_detected),
            "detection": self.detection.to_dict(),
            "processing_time": float(self.processing_time),
            "timestamp": self.timestamp,
        }


@dataclass
class RobustnessReport:
    """Robustness evaluation report for one clean asset."""

    asset_path: str
    dataset: str
    evaluation_date: str
    overall_robustness: float
    weakest_attack: str | None
    strongest_defense: str | None
    num_succeeded: int
    num_failed: int
    results: list = field(default_factory=list)
    failures: list = field(default_factory=list)

    @property
    def scores(self) -> dict[str, float]:
        return {r["label"]: r["robustness_score"] for r in self._result_dicts()}

    def _result_dicts(self) -> list[dict]:
        return [r.to_dict() if hasattr(r, "to_dict") else r for r in self.results]

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "asset_path": self.asset_path,
            "dataset": self.dataset,
            "evaluation_date": self.evaluation_date,
            "overall_robustness": float(self.overall_robustness),
            "weakest_attack": self.weakest_attack,
            "strongest_defense": self.strongest_defense,
            "num_succeeded": self.num_succeeded,
            "num_failed": self.num_failed,
            "results": self._result_dicts(),
            "failures": self.failures,
        }

    def save(self, path: Path | str) -> None:
        """Save report to JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Saved robustness report to {path}")

    @classmethod
    def load(cls, path: Path | str) -> "RobustnessReport":
        """Load report from JSON file. Results are kept as dictionaries."""
        path = Path(path)

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        return cls(**data)


@dataclass
class TestResult:
    """Prediction and detection outcome for one asset of a batch."""

    __test__ = False

    image_path: str
    predicted_class: int
    predicted_label: str
    confidence: float
    attack_detected: bool
    detection: AttackDetectionResult
    attention_map: AttentionMap | None
    processing_time: float
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "image_path": self.image_path,
            "predicted_class": self.predicted_class,
            "predicted_label": self.predicted_label,
            "confidence": float(self.confidence),
            "attack_detected": bool(self.attack_detected),
            "detection": self.detection.to_dict(),
            "processing_time": float(self.processing_time),
            "timestamp": self.timestamp,
        }


@dataclass
class BatchTestResult:
    """Aggregate of a batch test; failed assets are counted, not fatal."""

    total_tests: int
    successful_tests: int
    failed_tests: int
    average_confidence: float
    average_processing_time: float
    attack_detection_rate: float
    results: list[TestResult] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_tests": self.total_tests,
            "successful_tests": self.successful_tests,
            "failed_tests": self.failed_tests,
            "average_confidence": float(self.average_confidence),
            "average_processing_time": float(self.average_processing_time),
            "attack_detection_rate": float(self.attack_detection_rate),
            "results": [r.to_dict() for r in self.results],
            "failures": self.failures,
        }


class RobustnessEvaluator:
    """
    Robustness evaluator for medical image classifiers.

    Runs attack sweeps on clean assets and batch detection tests, one
    item at a time.

    Attributes:
        model: Classifier with predict and gradient capabilities
        dataset: Dataset the model was trained on
        item_delay: Pause between items in seconds
    """

    def __init__(
        self,
        model: Any,
        dataset: DatasetType,
        statistical_detector: StatisticalAttackDetector | None = None,
        attention_detector: AttentionDiffDetector | None = None,
        region_profiles: dict[DatasetType, RegionProfile] | None = None,
        item_delay: float = DEFAULT_ITEM_DELAY,
    ):
        """
        Initialize evaluator.

        Args:
            model: Classifier to evaluate
            dataset: Dataset the model was trained on
            statistical_detector: Detector used by batch tests
            attention_detector: Detector used by attack sweeps
            region_profiles: Override of the anatomical protection profiles
            item_delay: Pause between sweep items in seconds
        """
        self.model = model
        self.dataset = dataset
        self.statistical_detector = statistical_detector or StatisticalAttackDetector(dataset)
        self.attention_detector = attention_detector or AttentionDiffDetector()
        self.region_profiles = region_profiles
        self.item_delay = item_delay

    def evaluate_attack(
        self,
        asset: Asset,
        spec: "AttackSpec",
        original_attention: AttentionMap | None = None,
    ) -> AdversarialTestResult:
        """
        Run a single attack configuration against a clean asset.

        Args:
            asset: Clean test asset
            spec: Attack type and configuration
            original_attention: Attention map of the clean image, if known

        Returns:
            AdversarialTestResult
        """
        start = time.perf_counter()
        label = attack_label(spec.type, spec.config.epsilon)
        logger.info(f"Evaluating {label} on {asset.path or 'in-memory asset'}...")

        if original_attention is None:
            original_attention = extract_attention_map(self.model, asset.image)

        attack_result = run_attack(
            self.model,
            asset.image,
            asset.true_label,
            self.dataset,
            spec.type,
            spec.config,
            attention_map=(
                original_attention if spec.type == AttackType.MEDICAL_ATTENTION else None
            ),
            region_profiles=self.region_profiles,
        )

        adversarial_attention = extract_attention_map(self.model, attack_result.adversarial_image)

        score = robustness_score(
            attack_result.original_confidence,
            attack_result.adversarial_confidence,
            attack_result.perturbation_magnitude,
            spec.config.epsilon,
        )
        detection = self.attention_detector.analyze(
            original_attention,
            adversarial_attention,
            attack_result.perturbation_magnitude,
        )

        logger.info(
            f"{label}: score={score:.3f}, success={attack_result.attack_success}, "
            f"detected={detection.is_attack}"
        )

        return AdversarialTestResult(
            label=label,
            attack_type=AttackType(spec.type),
            epsilon=spec.config.epsilon,
            attack_result=attack_result,
            original_confidence=attack_result.original_confidence,
            adversarial_confidence=attack_result.adversarial_confidence,
            robustness_score=score,
            attack_detected=detection.is_attack,
            detection=detection,
            original_attention=original_attention,
            adversarial_attention=adversarial_attention,
            processing_time=time.perf_counter() - start,
        )

    async def evaluate(self, asset: Asset, attack_specs: list["AttackSpec"]) -> RobustnessReport:
        """
        Sweep the asset through every attack configuration.

        Configurations run sequentially. A failing configuration is logged,
        recorded in ``failures`` and skipped.

        Args:
            asset: Clean test asset
            attack_specs: Attack configurations to sweep

        Returns:
            RobustnessReport
        """
        logger.info(
            f"Starting robustness evaluation with {len(attack_specs)} attack configurations"
        )

        results: list[AdversarialTestResult] = []
        failures: list[dict] = []
        original_attention: AttentionMap | None = None

        for index, spec in enumerate(attack_specs):
            if index > 0 and self.item_delay > 0:
                await asyncio.sleep(self.item_delay)

            label = attack_label(spec.type, spec.config.epsilon)
            try:
                if original_attention is None:
                    original_attention = extract_attention_map(self.model, asset.image)
                results.append(self.evaluate_attack(asset, spec, original_attention))
            except Exception as e:
                logger.error(f"Failed to run {label} attack: {e}")
                failures.append({"label": label, "error": str(e), "type": type(e).__name__})

        report = self._build_report(asset, results, failures)

        logger.info(
            f"Robustness evaluation complete: overall={report.overall_robustness:.3f}, "
            f"weakest={report.weakest_attack or '-'}, strongest={report.strongest_defense or '-'}, "
            f"{report.num_succeeded} succeeded, {report.num_failed} failed"
        )
        return report

    def _build_report(
        self,
        asset: Asset,
        results: list[AdversarialTestResult],
        failures: list[dict],
    ) -> RobustnessReport:
        weakest = None
        strongest = None
        if results:
            scores = [r.robustness_score for r in results]
            # First occurrence wins on ties
            weakest = results[int(np.argmin(scores))].label
            strongest = results[int(np.argmax(scores))].label
            overall = float(np.mean(scores))
        else:
            overall = 0.0

        return RobustnessReport(
            asset_path=asset.path,
            dataset=self.dataset.value,
            evaluation_date=datetime.now().isoformat(),
            overall_robustness=overall,
            weakest_attack=weakest,
            strongest_defense=strongest,
            num_succeeded=len(results),
            num_failed=len(failures),
            results=results,
            failures=failures,
        )

    def screen_asset(self, asset: Asset) -> TestResult:
        """Predict, explain and screen one asset for manipulation."""
        start = time.perf_counter()

        prediction = predict_probabilities(self.model, asset.image)
        predicted_class = int(np.argmax(prediction))
        confidence = float(np.max(prediction))
        labels = DATASET_SPECS[self.dataset].labels
        if predicted_class < len(labels):
            predicted_label = labels[predicted_class]
        else:
            predicted_label = str(predicted_class)

        attention = None
        if has_gradient(self.model):
            attention = extract_attention_map(self.model, asset.image, predicted_class)

        detection = self.statistical_detector.detect(prediction)

        logger.info(
            f"Test complete: {predicted_label} ({confidence * 100:.1f}%), "
            f"attack detected: {detection.is_attack}"
        )

        return TestResult(
            image_path=asset.path,
            predicted_class=predicted_class,
            predicted_label=predicted_label,
            confidence=confidence,
            attack_detected=detection.is_attack,
            detection=detection,
            attention_map=attention,
            processing_time=time.perf_counter() - start,
        )

    async def evaluate_batch(self, assets: list[Asset]) -> BatchTestResult:
        """
        Test each asset in turn and aggregate the outcome.

        Assets whose dataset differs from the model's fail individually.
        """
        logger.info(f"Starting batch test with {len(assets)} assets...")

        results: list[TestResult] = []
        failures: list[dict] = []

        for index, asset in enumerate(assets):
            if index > 0 and self.item_delay > 0:
                await asyncio.sleep(self.item_delay)
            try:
                if asset.dataset != self.dataset:
                    raise AssetMismatchError(
                        f"Asset dataset ({asset.dataset.value}) doesn't match "
                        f"loaded model ({self.dataset.value})"
                    )
                results.append(self.screen_asset(asset))
            except Exception as e:
                logger.error(f"Failed to test {asset.path or index}: {e}")
                failures.append({"path": asset.path, "error": str(e), "type": type(e).__name__})

        if results:
            average_confidence = float(np.mean([r.confidence for r in results]))
            average_time = float(np.mean([r.processing_time for r in results]))
            detection_rate = sum(r.attack_detected for r in results) / len(results)
        else:
            average_confidence = average_time = detection_rate = 0.0

        batch = BatchTestResult(
            total_tests=len(assets),
            successful_tests=len(results),
            failed_tests=len(failures),
            average_confidence=average_confidence,
            average_processing_time=average_time,
            attack_detection_rate=detection_rate,
            results=results,
            failures=failures,
        )

        logger.info(
            f"Batch test complete: {batch.successful_tests}/{batch.total_tests} successful, "
            f"average confidence {average_confidence * 100:.1f}%, "
            f"attack detection rate {detection_rate * 100:.1f}%"
        )
        return batch
