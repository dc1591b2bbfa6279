"""
Adversarial Robustness Module for Medical Imaging AI

Provides attack generation, attribution maps and attack detection for
testing medical image classifiers (retinal OCT, chest X-ray).

Attack Methods:
- FGSM (Fast Gradient Sign Method): Single-step, anatomical regions protected
- PGD (Projected Gradient Descent): Iterative, projected onto the epsilon ball
- Medical attention: FGSM steered by the model's attention map

Detection Methods:
- Statistical: Entropy and uncertainty of the prediction, no gradients
- Attention difference: Attention shift plus perturbation magnitude

Usage:
    from meddef_robustness.adversarial import RobustnessEvaluator, fgsm_attack

    result = fgsm_attack(model, image, true_label=1, dataset="chest_xray", epsilon=0.05)

    evaluator = RobustnessEvaluator(model, DatasetType.CHEST_XRAY)
    report = asyncio.run(evaluator.evaluate(asset, attack_specs))
"""

from meddef_robustness.adversarial.attacks import (
    ATTACKS,
    AttackResult,
    AttackType,
    GradientAttack,
    fgsm_attack,
    medical_attention_attack,
    pgd_attack,
    run_attack,
)
from meddef_robustness.adversarial.attention import AttentionMap, extract_attention_map
from meddef_robustness.adversarial.buffers import BufferScope
from meddef_robustness.adversarial.detection import (
    AnomalyIndicators,
    AttackDetectionResult,
    AttentionDiffDetector,
    DetectionMethod,
    StatisticalAttackDetector,
)
from meddef_robustness.adversarial.evaluator import (
    AdversarialTestResult,
    BatchTestResult,
    RobustnessEvaluator,
    RobustnessReport,
)
from meddef_robustness.adversarial.regions import ChestProfile, RetinalProfile, region_mask

__all__ = [
    "ATTACKS",
    "AttackResult",
    "AttackType",
    "GradientAttack",
    "fgsm_attack",
    "medical_attention_attack",
    "pgd_attack",
    "run_attack",
    "AttentionMap",
    "extract_attention_map",
    "BufferScope",
    "AnomalyIndicators",
    "AttackDetectionResult",
    "AttentionDiffDetector",
    "DetectionMethod",
    "StatisticalAttackDetector",
    "AdversarialTestResult",
    "BatchTestResult",
    "RobustnessEvaluator",
    "RobustnessReport",
    "ChestProfile",
    "RetinalProfile",
    "region_mask",
]
