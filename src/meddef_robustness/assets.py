"""
Test assets for robustness evaluation.

An asset is one preprocessed image with its ground truth. The core
never decodes image files; assets arrive through an AssetProvider.
NpzAssetProvider reads ``.npz`` archives with the keys:

    image    float array (H, W, C) in [0, 1]
    label    int class index or str class name
    dataset  "roct" or "chest_xray"
    clean    optional bool (default True)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import numpy as np

from meddef_robustness.datasets import DATASET_SPECS, DatasetType, resolve_dataset
from meddef_robustness.exceptions import InvalidShapeError

logger = logging.getLogger(__name__)


@dataclass
class Asset:
    """A test image with its ground truth label and dataset."""

    image: np.ndarray
    true_label: int
    dataset: DatasetType
    path: str = ""
    is_clean: bool = True

    def __post_init__(self) -> None:
        self.image = np.asarray(self.image, dtype=np.float64)
        if self.image.ndim != 3:
            raise InvalidShapeError(
                f"Asset image must be (H, W, C), got shape {self.image.shape}"
            )
        dataset = resolve_dataset(self.dataset)
        if dataset is None:
            raise ValueError(f"Unknown dataset: {self.dataset}")
        self.dataset = dataset
        self.true_label = int(self.true_label)


class AssetProvider(Protocol):
    """Loads an Asset from a path."""

    def load(self, path: str | Path) -> Asset: ...


class NpzAssetProvider:
    """Asset provider reading NumPy ``.npz`` archives."""

    def load(self, path: str | Path) -> Asset:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Asset not found: {path}")

        with np.load(path, allow_pickle=False) as data:
            missing = {"image", "label", "dataset"} - set(data.files)
            if missing:
                raise ValueError(f"Asset {path} is missing keys: {sorted(missing)}")

            image = np.asarray(data["image"], dtype=np.float64)
            dataset = resolve_dataset(str(data["dataset"]))
            if dataset is None:
                raise ValueError(f"Asset {path} has unknown dataset {data['dataset']}")

            raw_label = data["label"].item()
            if isinstance(raw_label, (bytes, str)):
                label = raw_label.decode() if isinstance(raw_label, bytes) else raw_label
                true_label = DATASET_SPECS[dataset].label_index(label)
            else:
                true_label = int(raw_label)

            is_clean = bool(data["clean"]) if "clean" in data.files else True

        logger.debug(f"Loaded {dataset.value} asset {path} (label={true_label})")
        return Asset(
            image=image,
            true_label=true_label,
            dataset=dataset,
            path=str(path),
            is_clean=is_clean,
        )

    @staticmethod
    def save(asset: Asset, path: str | Path) -> None:
        """Write an asset in the format ``load`` reads."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            path,
            image=asset.image,
            label=np.int64(asset.true_label),
            dataset=np.str_(asset.dataset.value),
            clean=np.bool_(asset.is_clean),
        )
        logger.info(f"Saved asset to {path}")
