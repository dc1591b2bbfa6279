"""
Model capability and model residency for robustness testing.

The core never loads models itself. It talks to a classifier through the
small Model protocol below:

    predict(image) -> probability vector over C classes
    gradient(loss, image) -> d loss / d image, same shape as image  (optional)
    release(buffer) -> None                                        (optional)

Models without ``gradient`` can still be used for prediction and
statistical detection, but attacks and attention extraction fail with
GradientUnavailableError. There is no synthetic fallback.

ModelContext replaces a process-wide model cache: it is created by the
caller and passed to the service explicitly, and holds at most one
resident model at a time.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

import numpy as np

from meddef_robustness.datasets import DatasetType, resolve_dataset
from meddef_robustness.exceptions import (
    GradientUnavailableError,
    InvalidShapeError,
    ModelNotLoadedError,
)

logger = logging.getLogger(__name__)


class LossKind(str, Enum):
    """Quantities a model can differentiate with respect to its input."""

    CROSS_ENTROPY = "cross_entropy"  # -log p[label]
    CLASS_SCORE = "class_score"  # p[label]


@dataclass(frozen=True)
class LossSpec:
    """Loss whose input gradient is requested from the model."""

    kind: LossKind
    label: int

    @classmethod
    def cross_entropy(cls, label: int) -> "LossSpec":
        return cls(LossKind.CROSS_ENTROPY, int(label))

    @classmethod
    def class_score(cls, label: int) -> "LossSpec":
        return cls(LossKind.CLASS_SCORE, int(label))


@runtime_checkable
class Model(Protocol):
    """Minimal classifier capability consumed by the core."""

    def predict(self, image: np.ndarray) -> np.ndarray: ...


def has_gradient(model: Any) -> bool:
    """Check whether a model exposes the input-gradient capability."""
    return callable(getattr(model, "gradient", None))


def predict_probabilities(model: Any, image: np.ndarray) -> np.ndarray:
    """Run the model and return a flat float64 probability vector."""
    predictions = model.predict(image)
    if hasattr(predictions, "numpy"):
        predictions = predictions.numpy()
    return np.asarray(predictions, dtype=np.float64).reshape(-1)


def compute_gradient(model: Any, loss: LossSpec, image: np.ndarray) -> np.ndarray:
    """
    Compute the gradient of ``loss`` with respect to ``image``.

    Raises:
        GradientUnavailableError: If the model has no gradient capability
        InvalidShapeError: If the returned gradient cannot match the image
    """
    if not has_gradient(model):
        raise GradientUnavailableError(
            f"Model {type(model).__name__} does not provide input gradients",
            {"loss": loss.kind.value},
        )

    gradient = model.gradient(loss, image)
    if hasattr(gradient, "numpy"):
        gradient = gradient.numpy()
    gradient = np.asarray(gradient, dtype=np.float64)

    if gradient.shape != image.shape:
        # Batched gradients of a single image, e.g. (1, H, W, C)
        if gradient.size != image.size:
            raise InvalidShapeError(
                f"Gradient shape {gradient.shape} does not match image shape {image.shape}"
            )
        gradient = gradient.reshape(image.shape)

    return gradient


class KerasModel:
    """
    Adapter exposing a tf.keras classifier through the Model protocol.

    Gradients are computed with tf.GradientTape on a batch of one image.
    TensorFlow is imported lazily so that the rest of the package does not
    require it.
    """

    def __init__(self, model: Any, name: str | None = None) -> None:
        import tensorflow as tf

        self.tf = tf
        self.model = model
        self.name = name or getattr(model, "name", "keras_model")

    @classmethod
    def load(cls, path: str | Path) -> "KerasModel":
        """Load a .keras or .h5 model file."""
        import tensorflow as tf

        model = tf.keras.models.load_model(str(path))
        logger.info(f"Loaded Keras model from {path}")
        return cls(model, name=Path(path).stem)

    def _forward(self, batch: Any) -> Any:
        try:
            return self.model(batch, training=False)
        except TypeError:
            return self.model(batch)

    def predict(self, image: np.ndarray) -> np.ndarray:
        batch = self.tf.constant(image[np.newaxis], dtype=self.tf.float32)
        return self._forward(batch).numpy()[0]

    def gradient(self, loss: LossSpec, image: np.ndarray) -> np.ndarray:
        tf = self.tf
        batch = tf.constant(image[np.newaxis], dtype=tf.float32)

        with tf.GradientTape() as tape:
            tape.watch(batch)
            predictions = self._forward(batch)
            if loss.kind == LossKind.CROSS_ENTROPY:
                value = tf.keras.losses.sparse_categorical_crossentropy(
                    tf.constant([loss.label]), predictions, from_logits=False
                )
            else:
                value = predictions[:, loss.label]
            value = tf.reduce_sum(value)

        return tape.gradient(value, batch).numpy()[0]

    def close(self) -> None:
        """Free TensorFlow graph state held for this model."""
        self.tf.keras.backend.clear_session()


class ModelContext:
    """
    Holds the single resident model and the dataset it was trained on.

    Loading a model first unloads the current one, so two models are never
    resident at the same time.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._model: Any = None
        self._dataset: DatasetType | None = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def model(self) -> Any:
        return self._model

    @property
    def dataset(self) -> DatasetType | None:
        return self._dataset

    def load(self, loader: Callable[[], Any], dataset: DatasetType | str) -> Any:
        """
        Unload the resident model, then build a new one with ``loader``.

        ``loader`` is called with no arguments while the context lock is
        held, after the previous model has been closed. A model class with
        a no-argument constructor, ``functools.partial(KerasModel.load, path)``
        or a lambda all work. If ``loader`` raises, the context is left empty.

        Returns:
            The newly resident model
        """
        resolved = resolve_dataset(dataset)
        if resolved is None:
            raise ValueError(f"Unknown dataset: {dataset}")

        with self._lock:
            if self._model is not None:
                self._unload_locked()
            model = loader()
            self._model = model
            self._dataset = resolved

        logger.info(f"Loaded {type(model).__name__} for dataset {resolved.value}")
        return model

    def unload(self) -> None:
        """Unload the resident model, if any."""
        with self._lock:
            if self._model is not None:
                self._unload_locked()

    def _unload_locked(self) -> None:
        close = getattr(self._model, "close", None)
        if callable(close):
            close()
        logger.info(f"Unloaded model for dataset {self._dataset.value}")
        self._model = None
        self._dataset = None

    def require(self) -> tuple[Any, DatasetType]:
        """Return (model, dataset) or raise ModelNotLoadedError."""
        with self._lock:
            if self._model is None or self._dataset is None:
                raise ModelNotLoadedError("Model not loaded. Please load a model first.")
            return self._model, self._dataset
