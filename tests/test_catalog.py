import numpy as np
import pytest

from multiplexalign.catalog import (
    ImageCatalog,
    ImageHandle,
    base_name_no_ext,
    has_tif_ext,
)
from multiplexalign.errors import ConfigError

from .conftest import textured_image, write_tif


def test_name_helpers():
    assert base_name_no_ext("Hu_Layer1.tif") == "Hu_Layer1"
    assert base_name_no_ext("noext") == "noext"
    assert has_tif_ext("a.TIFF")
    assert has_tif_ext("a.tif")
    assert not has_tif_ext("a.png")


def test_discovery_is_sorted_and_filtered(hu_folder):
    (hu_folder / "notes.txt").write_text("ignored")
    catalog = ImageCatalog(hu_folder, "Hu", "Layer")
    assert [ff.name for ff in catalog.discover()] == [
        "CD20_Layer2.tif",
        "CD3_Layer1.tif",
        "DAPI_Layer1.tif",
        "Hu_Layer1.tif",
        "Hu_Layer2.tif",
    ]


def test_common_marker_and_round_files(hu_folder):
    catalog = ImageCatalog(hu_folder, "HU", "layer")
    assert [ff.name for ff in catalog.common_marker_files()] == [
        "Hu_Layer1.tif",
        "Hu_Layer2.tif",
    ]
    assert [ff.name for ff in catalog.round_files(1)] == [
        "CD3_Layer1.tif",
        "DAPI_Layer1.tif",
    ]
    assert [ff.name for ff in catalog.round_files(2)] == ["CD20_Layer2.tif"]
    assert catalog.round_files(3) == []

    image_round = catalog.image_round(1, hu_folder / "Hu_Layer1.tif")
    assert image_round.reference_file.name == "Hu_Layer1.tif"
    assert catalog.image_round(2, hu_folder / "Hu_Layer1.tif").reference_file is None


def test_spaces_in_names_are_ignored(tmp_path):
    write_tif(tmp_path, "Layer 1 hu.tif", textured_image())
    write_tif(tmp_path, "Layer 1 GFAP.tif", textured_image())
    catalog = ImageCatalog(tmp_path, "Hu", "Layer")
    assert [ff.name for ff in catalog.round_files(1)] == ["Layer 1 GFAP.tif"]


def test_empty_folder_raises(tmp_path):
    with pytest.raises(ConfigError):
        ImageCatalog(tmp_path, "hu", "layer").discover()


def test_missing_marker_raises(hu_folder):
    with pytest.raises(ConfigError):
        ImageCatalog(hu_folder, "gfap", "layer").common_marker_files()


def test_image_handle(tmp_path):
    img = textured_image((40, 50))
    path = write_tif(tmp_path, "a.tif", img)
    with ImageHandle(path) as handle:
        assert handle.title == "a.tif"
        assert handle.shape == (40, 50)
        assert (handle.height, handle.width) == (40, 50)
        np.testing.assert_array_equal(handle.data, img)
    with pytest.raises(ValueError):
        handle.data


def test_image_handle_reduces_rgb(tmp_path):
    rgb = np.zeros((20, 30, 3), "uint8")
    rgb[..., 1] = 90
    path = write_tif(tmp_path, "rgb.tif", rgb)
    handle = ImageHandle(path)
    assert handle.shape == (20, 30)
    assert handle.data.dtype == np.uint8
    assert handle.data[0, 0] == 30


def test_marker_with_spaces_matches_compact_name(tmp_path):
    write_tif(tmp_path, "NeuN_Layer1.tif", textured_image())
    write_tif(tmp_path, "GFAP_Layer1.tif", textured_image())
    catalog = ImageCatalog(tmp_path, "neu n", "layer")
    assert [ff.name for ff in catalog.common_marker_files()] == ["NeuN_Layer1.tif"]
