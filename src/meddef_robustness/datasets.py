"""
Medical imaging dataset definitions.

Two datasets are supported, matching the MedDef research models:
- roct: Retinal OCT (CNV, DME, Drusen, Normal)
- chest_xray: Chest X-ray (Normal, Pneumonia)
"""

from dataclasses import dataclass
from enum import Enum


class DatasetType(str, Enum):
    """Supported medical imaging datasets."""

    ROCT = "roct"
    CHEST_XRAY = "chest_xray"


@dataclass(frozen=True)
class DatasetSpec:
    """Model-facing description of a dataset."""

    dataset: DatasetType
    labels: tuple[str, ...]
    input_size: tuple[int, int] = (224, 224)

    @property
    def num_classes(self) -> int:
        return len(self.labels)

    def label_index(self, label: str | int) -> int:
        """Resolve a label name (or pass through an index) to a class index."""
        if isinstance(label, int):
            if not 0 <= label < self.num_classes:
                raise ValueError(
                    f"Label index {label} out of range for {self.dataset.value}"
                )
            return label
        try:
            return self.labels.index(label)
        except ValueError:
            raise ValueError(
                f"Unknown label '{label}' for {self.dataset.value}: {list(self.labels)}"
            ) from None


DATASET_SPECS: dict[DatasetType, DatasetSpec] = {
    DatasetType.ROCT: DatasetSpec(
        dataset=DatasetType.ROCT,
        labels=("CNV", "DME", "Drusen", "Normal"),
    ),
    DatasetType.CHEST_XRAY: DatasetSpec(
        dataset=DatasetType.CHEST_XRAY,
        labels=("Normal", "Pneumonia"),
    ),
}

# Attack strengths used in the MedDef research evaluation
ATTACK_LEVELS: dict[str, tuple[float, ...]] = {
    "fgsm": (0.01, 0.05, 0.1),
    "pgd": (0.01, 0.05, 0.1),
}


def resolve_dataset(dataset: "DatasetType | str | None") -> DatasetType | None:
    """Return the DatasetType for an id, or None for unknown datasets."""
    if dataset is None or isinstance(dataset, DatasetType):
        return dataset
    try:
        return DatasetType(str(dataset).lower())
    except ValueError:
        return None
