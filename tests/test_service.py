"""Tests for RobustnessService operations on the resident model."""

import asyncio

import numpy as np
import pytest

from conftest import LinearSoftmaxModel, PredictOnlyModel
from meddef_robustness import RobustnessService
from meddef_robustness.adversarial.attacks import AttackType
from meddef_robustness.adversarial.attention import AttentionMap
from meddef_robustness.assets import Asset
from meddef_robustness.config import (
    AttackConfig,
    AttackSpec,
    DetectionConfig,
    ExperimentConfig,
    RegionConfig,
)
from meddef_robustness.datasets import DatasetType
from meddef_robustness.exceptions import (
    AssetMismatchError,
    AttentionMapShapeMismatchError,
    GradientUnavailableError,
    InvalidAttackConfigError,
    ModelNotLoadedError,
)
from meddef_robustness.models import ModelContext
from meddef_robustness.service import parse_attack_config, parse_attack_spec, parse_attack_type


@pytest.fixture
def service(chest_context):
    return RobustnessService(chest_context, item_delay=0)


@pytest.fixture
def empty_service():
    return RobustnessService(ModelContext(), item_delay=0)


class TestParsing:
    """Attack type, config and spec validation."""

    def test_parse_attack_type(self):
        assert parse_attack_type("FGSM") == AttackType.FGSM
        assert parse_attack_type(AttackType.PGD) == AttackType.PGD

    def test_parse_unknown_attack_type(self):
        with pytest.raises(InvalidAttackConfigError) as exc_info:
            parse_attack_type("carlini_wagner")
        assert "medical_attention" in exc_info.value.details["supported"]

    def test_parse_attack_config_from_dict(self):
        config = parse_attack_config({"epsilon": 0.08})
        assert isinstance(config, AttackConfig)
        assert config.step_size == pytest.approx(0.02)

    def test_parse_attack_config_passthrough(self):
        config = AttackConfig(epsilon=0.05)
        assert parse_attack_config(config) is config

    @pytest.mark.parametrize(
        "data",
        [{"epsilon": 0.0}, {"epsilon": -1.0}, {}, {"epsilon": 0.05, "iterations": 0}],
    )
    def test_invalid_config(self, data):
        with pytest.raises(InvalidAttackConfigError) as exc_info:
            parse_attack_config(data)
        assert exc_info.value.details["errors"]

    def test_parse_attack_spec(self):
        spec = parse_attack_spec({"type": "pgd", "config": {"epsilon": 0.05, "iterations": 3}})
        assert isinstance(spec, AttackSpec)
        assert spec.config.iterations == 3

    def test_parse_attack_spec_not_mapping(self):
        with pytest.raises(InvalidAttackConfigError):
            parse_attack_spec(["fgsm", 0.05])


class TestModelResidency:
    """Operations require a resident model."""

    def test_generate_without_model(self, empty_service, dark_image):
        with pytest.raises(ModelNotLoadedError):
            empty_service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, 0)

    def test_attention_without_model(self, empty_service, dark_image):
        with pytest.raises(ModelNotLoadedError):
            empty_service.extract_attention_map(dark_image)

    def test_detect_without_model(self, empty_service):
        with pytest.raises(ModelNotLoadedError):
            empty_service.detect_attack(prediction=np.array([0.5, 0.5]))

    def test_evaluation_without_model(self, empty_service, chest_asset):
        with pytest.raises(ModelNotLoadedError):
            asyncio.run(empty_service.run_robustness_evaluation(chest_asset, []))

    def test_batch_without_model(self, empty_service, chest_asset):
        with pytest.raises(ModelNotLoadedError):
            asyncio.run(empty_service.run_batch_test([chest_asset]))


class TestGenerateAdversarialExample:

    def test_fgsm(self, service, dark_image):
        result = service.generate_adversarial_example("fgsm", {"epsilon": 0.1}, dark_image, 0)
        assert result.attack_type == AttackType.FGSM
        assert result.attack_success is True
        assert result.attack_params["dataset"] == "chest_xray"

    def test_label_name(self, service, dark_image):
        by_name = service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, "Normal")
        by_index = service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, 0)
        np.testing.assert_array_equal(by_name.adversarial_image, by_index.adversarial_image)

    def test_numpy_label(self, service, dark_image):
        result = service.generate_adversarial_example("pgd", {"epsilon": 0.05}, dark_image, np.int64(0))
        assert result.attack_type == AttackType.PGD

    def test_unknown_label(self, service, dark_image):
        with pytest.raises(InvalidAttackConfigError):
            service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, "Fracture")

    def test_label_out_of_range(self, service, dark_image):
        with pytest.raises(InvalidAttackConfigError):
            service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, 3)

    def test_invalid_config(self, service, dark_image):
        with pytest.raises(InvalidAttackConfigError):
            service.generate_adversarial_example("fgsm", {"epsilon": 0.0}, dark_image, 0)

    def test_unknown_attack(self, service, dark_image):
        with pytest.raises(InvalidAttackConfigError):
            service.generate_adversarial_example("boundary", {"epsilon": 0.05}, dark_image, 0)

    def test_gradient_unavailable(self, dark_image):
        context = ModelContext()
        context.load(PredictOnlyModel, "chest_xray")
        service = RobustnessService(context)
        with pytest.raises(GradientUnavailableError):
            service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, 0)

    def test_attention_map_shape_mismatch(self, service, dark_image):
        attention_map = AttentionMap(values=np.ones((4, 4)), width=4, height=4, scale=1.0)
        with pytest.raises(AttentionMapShapeMismatchError):
            service.generate_adversarial_example(
                "medical_attention", {"epsilon": 0.05}, dark_image, 0, attention_map=attention_map
            )

    def test_region_config_is_applied(self, chest_context, dark_image):
        regions = RegionConfig(chest_lower=0.0, chest_upper=1.0, chest_factor=0.1)
        service = RobustnessService(chest_context, regions=regions)
        result = service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, 0)
        delta = result.adversarial_image - dark_image
        # bounds are exclusive, so row 0 and column 0 stay unprotected
        assert delta[1, 1, 0] == pytest.approx(0.005)
        assert delta[0, 0, 0] == pytest.approx(0.05)


class TestExtractAttention:

    def test_uniform_image(self, service, gray_image):
        attention = service.extract_attention_map(gray_image)
        assert attention.shape == (32, 32)
        assert np.var(attention.values) < 1e-12

    def test_target_class(self, service, gray_image):
        attention = service.extract_attention_map(gray_image, target_class=1)
        assert attention.scale == pytest.approx(0.5)

    def test_target_class_out_of_range(self, service, gray_image):
        with pytest.raises(InvalidAttackConfigError):
            service.extract_attention_map(gray_image, target_class=2)


class TestDetectAttack:

    def test_prediction_vector(self, service):
        result = service.detect_attack(prediction=np.array([0.5, 0.5]))
        assert result.is_attack is True
        assert result.threshold == 0.65

    def test_image(self, service, dark_image):
        result = service.detect_attack(image=dark_image)
        assert 0.0 <= result.confidence <= 1.0

    def test_requires_input(self, service):
        with pytest.raises(ValueError):
            service.detect_attack()

    def test_detection_config(self, chest_context):
        detection = DetectionConfig(thresholds={"chest_xray": 0.95})
        service = RobustnessService(chest_context, detection=detection)
        assert service.detect_attack(prediction=np.array([0.5, 0.5])).is_attack is False

    def test_invalid_prediction_fails_safe(self, service):
        result = service.detect_attack(prediction=np.array([np.nan, 1.0]))
        assert result.is_attack is False
        assert result.confidence == 0.5


class TestRobustnessEvaluation:

    def test_sweep(self, service, chest_asset, sweep_specs):
        report = asyncio.run(service.run_robustness_evaluation(chest_asset, sweep_specs))
        assert report.num_succeeded == 3
        scores = [r.robustness_score for r in report.results]
        assert report.overall_robustness == pytest.approx(np.mean(scores))

    def test_dict_specs(self, service, chest_asset):
        specs = [
            {"type": "fgsm", "config": {"epsilon": 0.05}},
            {"type": "medical_attention", "config": {"epsilon": 0.05}},
        ]
        report = asyncio.run(service.run_robustness_evaluation(chest_asset, specs))
        assert [r.label for r in report.results] == [
            "fgsm (eps=0.05)",
            "medical_attention (eps=0.05)",
        ]

    def test_invalid_spec_rejected_before_sweep(self, service, chest_asset):
        specs = [
            {"type": "fgsm", "config": {"epsilon": 0.05}},
            {"type": "fgsm", "config": {"epsilon": 2.0}},
        ]
        with pytest.raises(InvalidAttackConfigError):
            asyncio.run(service.run_robustness_evaluation(chest_asset, specs))

    def test_dataset_mismatch(self, service):
        asset = Asset(image=np.full((32, 32, 3), 0.5), true_label=0, dataset="roct")
        with pytest.raises(AssetMismatchError) as exc_info:
            asyncio.run(service.run_robustness_evaluation(asset, [{"type": "fgsm", "config": {"epsilon": 0.05}}]))
        assert exc_info.value.details == {"asset": "roct", "model": "chest_xray"}

    def test_requires_clean_asset(self, service, dark_image):
        asset = Asset(image=dark_image, true_label=0, dataset="chest_xray", is_clean=False)
        with pytest.raises(AssetMismatchError) as exc_info:
            asyncio.run(service.run_robustness_evaluation(asset, [{"type": "fgsm", "config": {"epsilon": 0.05}}]))
        assert "clean" in str(exc_info.value)


class TestBatchTest:

    def test_batch(self, service, chest_asset):
        batch = asyncio.run(service.run_batch_test([chest_asset, chest_asset]))
        assert batch.total_tests == 2
        assert batch.successful_tests == 2

    def test_mismatched_assets_counted(self, service, chest_asset):
        retinal = Asset(image=np.full((32, 32, 3), 0.5), true_label=0, dataset="roct")
        batch = asyncio.run(service.run_batch_test([chest_asset, retinal]))
        assert batch.successful_tests == 1
        assert batch.failed_tests == 1


class TestFromExperiment:

    def test_settings_are_taken_from_experiment(self, chest_context):
        config = ExperimentConfig(
            dataset="chest_xray",
            attacks=[{"type": "fgsm", "config": {"epsilon": 0.05}}],
            item_delay=0.0,
            detection={"attention_threshold": 0.5},
            regions={"chest_factor": 0.25},
        )
        service = RobustnessService.from_experiment(chest_context, config)

        assert service.item_delay == 0.0
        assert service.detection.attention_threshold == 0.5
        assert service.regions.chest_factor == 0.25

    def test_model_swap_unloads_previous(self, chest_context, dark_image):
        service = RobustnessService(chest_context)
        previous = chest_context.model

        chest_context.load(lambda: LinearSoftmaxModel((32, 32, 3), num_classes=4, seed=1), DatasetType.ROCT)

        assert chest_context.model is not previous
        result = service.generate_adversarial_example("fgsm", {"epsilon": 0.05}, dark_image, "DME")
        assert result.attack_params["dataset"] == "roct"
