"""Tests for robustness sweeps, reports and batch tests."""

import asyncio
import json

import numpy as np
import pytest

from conftest import LinearSoftmaxModel, MeanIntensityModel, PredictOnlyModel
from meddef_robustness.adversarial.attacks import AttackType
from meddef_robustness.adversarial.detection import DetectionMethod
from meddef_robustness.adversarial.evaluator import (
    AdversarialTestResult,
    BatchTestResult,
    RobustnessEvaluator,
    RobustnessReport,
    attack_label,
    robustness_score,
)
from meddef_robustness.assets import Asset
from meddef_robustness.config.schema import AttackConfig, AttackSpec
from meddef_robustness.datasets import DatasetType


@pytest.fixture
def evaluator(mean_model):
    return RobustnessEvaluator(mean_model, DatasetType.CHEST_XRAY, item_delay=0)


class TestRobustnessScore:
    """Per-attack score combining confidence and perturbation."""

    def test_mean_of_components(self):
        assert robustness_score(0.8, 0.6, 0.0, 0.05) == pytest.approx((0.75 + 1.0) / 2)

    def test_components_are_clamped(self):
        # adversarial confidence above original, perturbation above epsilon
        assert robustness_score(0.5, 0.9, 1.0, 0.05) == pytest.approx(0.5)

    def test_zero_original_confidence(self):
        assert robustness_score(0.0, 0.5, 0.0, 0.05) == pytest.approx(0.5)

    def test_zero_epsilon(self):
        assert robustness_score(0.8, 0.8, 0.0, 0.0) == pytest.approx(1.0)
        assert robustness_score(0.8, 0.8, 0.1, 0.0) == pytest.approx(0.5)

    def test_in_unit_interval(self):
        for args in [(1.0, 0.0, 10.0, 0.01), (0.3, 0.3, 0.0, 1.0), (0.9, 0.1, 0.02, 0.05)]:
            assert 0.0 <= robustness_score(*args) <= 1.0


class TestAttackLabel:

    def test_format(self):
        assert attack_label(AttackType.FGSM, 0.05) == "fgsm (eps=0.05)"
        assert attack_label("pgd", 0.1) == "pgd (eps=0.1)"

    def test_spec_label(self):
        spec = AttackSpec(type="medical_attention", config=AttackConfig(epsilon=0.01))
        assert spec.label == "medical_attention (eps=0.01)"


class TestEvaluateAttack:
    """Single configuration against one clean asset."""

    def test_result_fields(self, evaluator, chest_asset):
        spec = AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05))
        result = evaluator.evaluate_attack(chest_asset, spec)

        assert isinstance(result, AdversarialTestResult)
        assert result.label == "fgsm (eps=0.05)"
        assert result.attack_type == AttackType.FGSM
        assert result.epsilon == 0.05
        assert result.original_confidence == pytest.approx(result.attack_result.original_confidence)
        assert 0.0 <= result.robustness_score <= 1.0
        assert result.detection.method == DetectionMethod.ATTENTION_DIFF
        assert result.attack_detected == result.detection.is_attack
        assert result.processing_time >= 0

    def test_score_matches_formula(self, evaluator, chest_asset):
        spec = AttackSpec(type="pgd", config=AttackConfig(epsilon=0.1, iterations=5))
        result = evaluator.evaluate_attack(chest_asset, spec)
        expected = robustness_score(
            result.original_confidence,
            result.adversarial_confidence,
            result.attack_result.perturbation_magnitude,
            0.1,
        )
        assert result.robustness_score == pytest.approx(expected)

    def test_medical_attention_receives_clean_map(self, evaluator, chest_asset):
        spec = AttackSpec(type="medical_attention", config=AttackConfig(epsilon=0.05))
        result = evaluator.evaluate_attack(chest_asset, spec)
        assert result.attack_result.attack_params["attention_weighted"] is True
        assert result.attack_result.attention_map is not None

    def test_to_dict_is_json_serializable(self, evaluator, chest_asset):
        spec = AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05))
        data = evaluator.evaluate_attack(chest_asset, spec).to_dict()
        json.dumps(data)
        assert data["attack_type"] == "fgsm"


class TestEvaluate:
    """Sequential sweeps."""

    def test_sweep_scenario(self, evaluator, chest_asset, sweep_specs):
        """fgsm 0.01, fgsm 0.05, pgd 0.05: overall is the mean, weakest is the minimum."""
        report = asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))

        assert isinstance(report, RobustnessReport)
        assert report.num_succeeded == 3
        assert report.num_failed == 0

        scores = [r.robustness_score for r in report.results]
        labels = [r.label for r in report.results]
        assert labels == ["fgsm (eps=0.01)", "fgsm (eps=0.05)", "pgd (eps=0.05)"]
        assert report.overall_robustness == pytest.approx(np.mean(scores))
        assert report.weakest_attack == labels[int(np.argmin(scores))]
        assert report.strongest_defense == labels[int(np.argmax(scores))]
        assert report.asset_path == "normal_001.npz"
        assert report.dataset == "chest_xray"

    def test_scores_property(self, evaluator, chest_asset, sweep_specs):
        report = asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))
        assert set(report.scores) == {"fgsm (eps=0.01)", "fgsm (eps=0.05)", "pgd (eps=0.05)"}

    def test_tie_first_occurrence_wins(self, evaluator, chest_asset):
        specs = [
            AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05)),
            AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05)),
        ]
        report = asyncio.run(evaluator.evaluate(chest_asset, specs))
        assert report.results[0].robustness_score == pytest.approx(report.results[1].robustness_score)
        assert report.weakest_attack == "fgsm (eps=0.05)"
        assert report.strongest_defense == "fgsm (eps=0.05)"

    def test_failing_configuration_is_recorded(self, evaluator, chest_asset):
        specs = [
            AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05)),
            AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05, target_class=7)),
            AttackSpec(type="pgd", config=AttackConfig(epsilon=0.05)),
        ]
        report = asyncio.run(evaluator.evaluate(chest_asset, specs))

        assert report.num_succeeded == 2
        assert report.num_failed == 1
        assert report.failures[0]["label"] == "fgsm (eps=0.05)"
        assert report.failures[0]["type"] == "InvalidAttackConfigError"
        assert report.overall_robustness == pytest.approx(
            np.mean([r.robustness_score for r in report.results])
        )

    def test_all_failed(self, chest_asset, sweep_specs, tmp_path):
        evaluator = RobustnessEvaluator(PredictOnlyModel(), DatasetType.CHEST_XRAY, item_delay=0)
        report = asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))

        assert report.num_succeeded == 0
        assert report.num_failed == 3
        assert report.overall_robustness == 0.0
        assert report.weakest_attack is None
        assert report.strongest_defense is None
        assert all(f["type"] == "GradientUnavailableError" for f in report.failures)

        report.save(tmp_path / "failed.json")
        loaded = RobustnessReport.load(tmp_path / "failed.json")
        assert loaded.weakest_attack is None
        assert loaded.strongest_defense is None

    def test_pauses_between_items(self, mean_model, chest_asset, sweep_specs, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr("meddef_robustness.adversarial.evaluator.asyncio.sleep", fake_sleep)
        evaluator = RobustnessEvaluator(mean_model, DatasetType.CHEST_XRAY, item_delay=0.25)
        asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))

        assert delays == [0.25, 0.25]

    def test_clean_attention_computed_once(self, chest_asset, sweep_specs):
        model = MeanIntensityModel()
        evaluator = RobustnessEvaluator(model, DatasetType.CHEST_XRAY, item_delay=0)
        asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))
        # 1 clean map + per item (attack gradients + adversarial map): 2 + 2 + 11
        assert model.gradient_calls == 1 + 2 + 2 + 11

    def test_asset_not_mutated(self, evaluator, chest_asset, sweep_specs):
        before = chest_asset.image.copy()
        asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))
        np.testing.assert_array_equal(chest_asset.image, before)


class TestReportPersistence:

    def test_save_and_load(self, evaluator, chest_asset, sweep_specs, tmp_path):
        report = asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))
        path = tmp_path / "reports" / "normal_001_robustness.json"
        report.save(path)

        assert path.exists()
        loaded = RobustnessReport.load(path)
        assert loaded.overall_robustness == pytest.approx(report.overall_robustness)
        assert loaded.weakest_attack == report.weakest_attack
        assert loaded.scores == pytest.approx(report.scores)
        assert loaded.to_dict()["results"][0]["label"] == "fgsm (eps=0.01)"

    def test_json_contents(self, evaluator, chest_asset, sweep_specs, tmp_path):
        report = asyncio.run(evaluator.evaluate(chest_asset, sweep_specs))
        path = tmp_path / "report.json"
        report.save(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["num_succeeded"] == 3
        assert "adversarial_image" not in data["results"][0]["attack_result"]


class TestBatch:
    """Batch prediction and detection."""

    def test_screen_asset(self, evaluator, chest_asset):
        result = evaluator.screen_asset(chest_asset)
        assert result.predicted_class == 0
        assert result.predicted_label == "Normal"
        assert result.confidence == pytest.approx(1 / (1 + np.exp(-0.5)))
        assert result.attention_map is not None
        assert result.detection.method == DetectionMethod.LIGHTWEIGHT

    def test_predict_only_model_skips_attention(self, chest_asset):
        evaluator = RobustnessEvaluator(PredictOnlyModel(), DatasetType.CHEST_XRAY, item_delay=0)
        result = evaluator.screen_asset(chest_asset)
        assert result.attention_map is None
        assert result.confidence == pytest.approx(0.7)

    def test_batch_aggregates(self, evaluator, chest_asset):
        bright = Asset(image=np.full((32, 32, 3), 0.7), true_label=1, dataset="chest_xray")
        batch = asyncio.run(evaluator.evaluate_batch([chest_asset, bright]))

        assert isinstance(batch, BatchTestResult)
        assert batch.total_tests == 2
        assert batch.successful_tests == 2
        assert batch.failed_tests == 0
        assert batch.average_confidence == pytest.approx(
            np.mean([r.confidence for r in batch.results])
        )
        detected = sum(r.attack_detected for r in batch.results)
        assert batch.attack_detection_rate == pytest.approx(detected / 2)
        assert [r.predicted_label for r in batch.results] == ["Normal", "Pneumonia"]

    def test_dataset_mismatch_fails_item(self, evaluator, chest_asset):
        retinal = Asset(image=np.full((32, 32, 3), 0.5), true_label=0, dataset="roct", path="cnv.npz")
        batch = asyncio.run(evaluator.evaluate_batch([retinal, chest_asset]))

        assert batch.successful_tests == 1
        assert batch.failed_tests == 1
        assert batch.failures[0]["path"] == "cnv.npz"
        assert batch.failures[0]["type"] == "AssetMismatchError"

    def test_empty_batch(self, evaluator):
        batch = asyncio.run(evaluator.evaluate_batch([]))
        assert batch.total_tests == 0
        assert batch.average_confidence == 0.0
        assert batch.attack_detection_rate == 0.0

    def test_multiclass_labels(self):
        model = LinearSoftmaxModel((8, 8, 1), num_classes=4, seed=5)
        evaluator = RobustnessEvaluator(model, DatasetType.ROCT, item_delay=0)
        asset = Asset(image=np.full((8, 8, 1), 0.5), true_label=3, dataset="roct")
        result = evaluator.screen_asset(asset)
        assert result.predicted_label in ("CNV", "DME", "Drusen", "Normal")

    def test_to_dict(self, evaluator, chest_asset):
        batch = asyncio.run(evaluator.evaluate_batch([chest_asset]))
        data = batch.to_dict()
        json.dumps(data)
        assert data["results"][0]["predicted_label"] == "Normal"
