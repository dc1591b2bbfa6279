"""Shared pytest fixtures for meddef-robustness tests."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add src directory to path for imports without installation
_src_path = str(Path(__file__).parent.parent / "src")
if _src_path not in sys.path:
    sys.path.insert(0, _src_path)

from meddef_robustness.assets import Asset  # noqa: E402
from meddef_robustness.config.schema import AttackConfig, AttackSpec  # noqa: E402
from meddef_robustness.datasets import DatasetType  # noqa: E402
from meddef_robustness.models import LossKind, ModelContext  # noqa: E402


# =============================================================================
# Analytic test classifiers
# =============================================================================


class MeanIntensityModel:
    """
    Two-class classifier on mean image intensity.

    p(class 1) = sigmoid(sharpness * (mean(x) - center)); gradients are exact
    and identical for every pixel.
    """

    def __init__(self, sharpness: float = 10.0, center: float = 0.5):
        self.sharpness = sharpness
        self.center = center
        self.predict_calls = 0
        self.gradient_calls = 0

    def _p1(self, image: np.ndarray) -> float:
        z = self.sharpness * (float(np.mean(image)) - self.center)
        return float(1.0 / (1.0 + np.exp(-z)))

    def predict(self, image: np.ndarray) -> np.ndarray:
        self.predict_calls += 1
        p1 = self._p1(image)
        return np.array([1.0 - p1, p1])

    def gradient(self, loss, image: np.ndarray) -> np.ndarray:
        self.gradient_calls += 1
        p1 = self._p1(image)
        d_p1 = self.sharpness * p1 * (1 - p1) / image.size
        d_scores = np.array([-d_p1, d_p1])
        probs = np.array([1.0 - p1, p1])

        if loss.kind == LossKind.CLASS_SCORE:
            value = d_scores[loss.label]
        else:
            value = -d_scores[loss.label] / max(probs[loss.label], 1e-12)
        return np.full(image.shape, value, dtype=np.float64)


class LinearSoftmaxModel:
    """Softmax over linear logits; gradients vary per pixel."""

    def __init__(self, shape: tuple[int, int, int], num_classes: int = 2, seed: int = 0):
        rng = np.random.default_rng(seed)
        self.weights = rng.normal(0.0, 1.0, size=(num_classes, *shape)) / np.sqrt(np.prod(shape))
        self.bias = np.zeros(num_classes)
        self.num_classes = num_classes

    def predict(self, image: np.ndarray) -> np.ndarray:
        logits = np.tensordot(self.weights, image, axes=image.ndim) + self.bias
        logits = logits - np.max(logits)
        exp = np.exp(logits)
        return exp / np.sum(exp)

    def gradient(self, loss, image: np.ndarray) -> np.ndarray:
        probs = self.predict(image)
        mean_weight = np.tensordot(probs, self.weights, axes=1)
        direction = self.weights[loss.label] - mean_weight
        if loss.kind == LossKind.CLASS_SCORE:
            return probs[loss.label] * direction
        return -direction


class PredictOnlyModel:
    """Classifier without an input-gradient capability."""

    def __init__(self, probabilities=(0.7, 0.3)):
        self.probabilities = np.asarray(probabilities, dtype=np.float64)

    def predict(self, image: np.ndarray) -> np.ndarray:
        return self.probabilities.copy()


class ReleaseTrackingModel(MeanIntensityModel):
    """MeanIntensityModel recording released buffers and close() calls."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.released: list = []
        self.closed = 0

    def release(self, buffer) -> None:
        self.released.append(buffer)

    def close(self) -> None:
        self.closed += 1


class FailingGradientModel(MeanIntensityModel):
    """Gradient computation fails after ``fail_after`` successful calls."""

    def __init__(self, fail_after: int = 0, **kwargs):
        super().__init__(**kwargs)
        self.fail_after = fail_after
        self.released: list = []

    def gradient(self, loss, image):
        if self.gradient_calls >= self.fail_after:
            self.gradient_calls += 1
            raise RuntimeError("accelerator out of memory")
        return super().gradient(loss, image)

    def release(self, buffer) -> None:
        self.released.append(buffer)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def gray_image():
    """Uniform mid-gray 32x32 RGB image."""
    return np.full((32, 32, 3), 0.5)


@pytest.fixture
def dark_image():
    """Dark 32x32 RGB image classified as class 0 by MeanIntensityModel."""
    return np.full((32, 32, 3), 0.45)


@pytest.fixture
def random_image():
    """Random 16x16 RGB image."""
    rng = np.random.default_rng(42)
    return rng.uniform(0.0, 1.0, size=(16, 16, 3))


@pytest.fixture
def mean_model():
    return MeanIntensityModel()


@pytest.fixture
def linear_model():
    return LinearSoftmaxModel((16, 16, 3), num_classes=2, seed=7)


@pytest.fixture
def predict_only_model():
    return PredictOnlyModel()


@pytest.fixture
def release_model():
    return ReleaseTrackingModel()


@pytest.fixture
def chest_context(mean_model):
    """Model context with a chest X-ray model resident."""
    context = ModelContext()
    context.load(lambda: mean_model, DatasetType.CHEST_XRAY)
    return context


@pytest.fixture
def chest_asset(dark_image):
    return Asset(
        image=dark_image,
        true_label=0,
        dataset=DatasetType.CHEST_XRAY,
        path="normal_001.npz",
    )


@pytest.fixture
def sweep_specs():
    """FGSM at two strengths plus PGD."""
    return [
        AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.01)),
        AttackSpec(type="fgsm", config=AttackConfig(epsilon=0.05)),
        AttackSpec(type="pgd", config=AttackConfig(epsilon=0.05, iterations=10)),
    ]
