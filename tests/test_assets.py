"""Tests for test assets and the .npz asset provider."""

import numpy as np
import pytest

from meddef_robustness.assets import Asset, NpzAssetProvider
from meddef_robustness.datasets import DatasetType
from meddef_robustness.exceptions import InvalidShapeError


class TestAsset:

    def test_coercion(self):
        asset = Asset(image=[[[0.5]]], true_label=np.int64(1), dataset="ROCT")
        assert asset.image.dtype == np.float64
        assert asset.dataset == DatasetType.ROCT
        assert isinstance(asset.true_label, int)
        assert asset.is_clean is True

    def test_rejects_2d_image(self):
        with pytest.raises(InvalidShapeError):
            Asset(image=np.zeros((4, 4)), true_label=0, dataset="roct")

    def test_rejects_unknown_dataset(self):
        with pytest.raises(ValueError):
            Asset(image=np.zeros((4, 4, 1)), true_label=0, dataset="mammography")


class TestNpzAssetProvider:
    """Reading and writing .npz assets."""

    def test_round_trip(self, tmp_path, chest_asset):
        path = tmp_path / "assets" / "normal_001.npz"
        NpzAssetProvider.save(chest_asset, path)

        loaded = NpzAssetProvider().load(path)

        np.testing.assert_array_equal(loaded.image, chest_asset.image)
        assert loaded.true_label == 0
        assert loaded.dataset == DatasetType.CHEST_XRAY
        assert loaded.path == str(path)
        assert loaded.is_clean is True

    def test_string_label(self, tmp_path):
        path = tmp_path / "drusen.npz"
        np.savez(path, image=np.zeros((8, 8, 1)), label=np.str_("Drusen"), dataset=np.str_("roct"))

        asset = NpzAssetProvider().load(path)

        assert asset.true_label == 2
        assert asset.is_clean is True

    def test_clean_flag(self, tmp_path):
        path = tmp_path / "attacked.npz"
        np.savez(
            path,
            image=np.zeros((8, 8, 1)),
            label=np.int64(1),
            dataset=np.str_("chest_xray"),
            clean=np.bool_(False),
        )
        assert NpzAssetProvider().load(path).is_clean is False

    def test_unknown_label(self, tmp_path):
        path = tmp_path / "bad_label.npz"
        np.savez(path, image=np.zeros((8, 8, 1)), label=np.str_("Fracture"), dataset=np.str_("chest_xray"))
        with pytest.raises(ValueError):
            NpzAssetProvider().load(path)

    def test_missing_keys(self, tmp_path):
        path = tmp_path / "incomplete.npz"
        np.savez(path, image=np.zeros((8, 8, 1)))
        with pytest.raises(ValueError, match="missing keys"):
            NpzAssetProvider().load(path)

    def test_unknown_dataset(self, tmp_path):
        path = tmp_path / "derm.npz"
        np.savez(path, image=np.zeros((8, 8, 1)), label=np.int64(0), dataset=np.str_("dermoscopy"))
        with pytest.raises(ValueError, match="unknown dataset"):
            NpzAssetProvider().load(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            NpzAssetProvider().load(tmp_path / "absent.npz")
