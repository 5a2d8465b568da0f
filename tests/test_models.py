import pathlib

import numpy as np
import pytest

from multiplexalign.errors import ConfigError
from multiplexalign.models import ConfigBuilder, LandmarkPair, MatchResult, normalize


def test_normalize():
    assert normalize(" Layer 1 ") == "layer1"
    assert normalize(None) == ""


def test_builder_defaults(tmp_path):
    config = ConfigBuilder().image_folder(tmp_path).build()
    assert config.common_marker == "hu"
    assert config.multiplex_rounds == 2
    assert config.layer_keyword == "layer"
    assert config.save_folder == tmp_path
    assert config.results_dir == tmp_path / "Results"
    assert config.minimal_inlier_ratio == 0.5
    assert config.steps_per_scale_octave == 3


def test_builder_normalizes_tokens(tmp_path):
    config = (
        ConfigBuilder()
        .image_folder(str(tmp_path))
        .common_marker("  DAPI ")
        .layer_keyword("Round ")
        .save_folder(tmp_path / "out")
        .build()
    )
    assert config.common_marker == "dapi"
    assert config.layer_keyword == "round"
    assert isinstance(config.image_folder, pathlib.Path)
    assert config.save_folder == tmp_path / "out"


def test_config_is_immutable(tmp_path):
    config = ConfigBuilder().image_folder(tmp_path).build()
    with pytest.raises(AttributeError):
        config.multiplex_rounds = 5


@pytest.mark.parametrize("rounds", [0, -1])
def test_builder_rejects_round_count(tmp_path, rounds):
    with pytest.raises(ConfigError):
        ConfigBuilder().image_folder(tmp_path).multiplex_rounds(rounds).build()


def test_builder_rejects_missing_folder(tmp_path):
    with pytest.raises(ConfigError):
        ConfigBuilder().image_folder(tmp_path / "missing").build()
    with pytest.raises(ConfigError):
        ConfigBuilder().build()


def test_builder_rejects_file_as_folder(tmp_path):
    path = tmp_path / "file.tif"
    path.write_bytes(b"")
    with pytest.raises(ConfigError):
        ConfigBuilder().image_folder(path).build()


def test_fine_tune_controls_sift_parameters(tmp_path):
    builder = (
        ConfigBuilder()
        .image_folder(tmp_path)
        .minimal_inlier_ratio(0.2)
        .steps_per_scale_octave(6)
    )
    config = builder.build()
    assert (config.minimal_inlier_ratio, config.steps_per_scale_octave) == (0.5, 3)

    config = builder.fine_tune(True).build()
    assert (config.minimal_inlier_ratio, config.steps_per_scale_octave) == (0.2, 6)


def test_fine_tune_validates_ranges(tmp_path):
    builder = ConfigBuilder().image_folder(tmp_path).fine_tune(True)
    with pytest.raises(ConfigError):
        builder.minimal_inlier_ratio(1.5).build()
    with pytest.raises(ConfigError):
        builder.minimal_inlier_ratio(0.5).steps_per_scale_octave(0).build()


def test_landmark_pair_and_match_result():
    pair = LandmarkPair([[1, 2], [3, 4]], [[2, 3], [4, 5]])
    assert len(pair) == 2
    assert not pair.is_empty()
    labelled = pair.with_labels("hu_1_ref", "hu_1_target")
    assert labelled.reference_label == "hu_1_ref"
    np.testing.assert_array_equal(labelled.target_points, pair.target_points)

    result = MatchResult(attempts=[("SIFT", 3), ("SIFT", 6), ("MOPS", 9)])
    assert not result.found
    assert result.strategies_attempted == ["SIFT", "MOPS"]


def test_common_marker_keeps_inner_spaces(tmp_path):
    config = ConfigBuilder().image_folder(tmp_path).common_marker(" Neu N ").build()
    assert config.common_marker == "neu n"
    with pytest.raises(ConfigError):
        ConfigBuilder().image_folder(tmp_path).common_marker("   ").build()
