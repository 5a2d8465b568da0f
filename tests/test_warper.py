import numpy as np
import pytest

from multiplexalign.align.warper import ImageWarper, estimate_landmark_transform
from multiplexalign.errors import WarpApplicationError

from .conftest import SHIFT_XY, landmark_points, textured_image


def test_estimate_affine_maps_target_to_reference():
    ref, target = landmark_points()
    tform = estimate_landmark_transform(ref, target, "affine")
    np.testing.assert_allclose(tform(target), ref, atol=1e-6)


def test_translation_class():
    ref, target = landmark_points(2)
    tform = estimate_landmark_transform(ref, target, "translation")
    np.testing.assert_allclose(tform.translation, -SHIFT_XY)


def test_warp_undoes_shift():
    base = textured_image((140, 140), seed=3)
    dx, dy = SHIFT_XY.astype(int)
    # target(x, y) = ref(x - dx, y - dy)
    reference = base[10:130, 10:130]
    target = base[10 - dy : 130 - dy, 10 - dx : 130 - dx]
    ref_points, target_points = landmark_points()

    warped = ImageWarper().warp(target, ref_points, target_points)
    assert warped.dtype == target.dtype
    assert warped.shape == reference.shape
    np.testing.assert_array_equal(warped[10:-10, 10:-10], reference[10:-10, 10:-10])


def test_warp_output_shape():
    img = textured_image((50, 60))
    ref_points, target_points = landmark_points()
    warped = ImageWarper().warp(
        img, ref_points, target_points, interpolate=False, output_shape=(70, 80)
    )
    assert warped.shape == (70, 80)


def test_too_few_landmarks():
    ref, target = landmark_points(2)
    with pytest.raises(WarpApplicationError):
        ImageWarper().warp(textured_image(), ref, target, "affine")


def test_unknown_transform_class():
    ref, target = landmark_points()
    with pytest.raises(WarpApplicationError):
        ImageWarper().warp(textured_image(), ref, target, "elastic")


def test_mismatched_landmarks():
    ref, target = landmark_points()
    with pytest.raises(WarpApplicationError):
        ImageWarper().warp(textured_image(), ref, target[:4])


def test_non_2d_image():
    ref, target = landmark_points()
    with pytest.raises(WarpApplicationError):
        ImageWarper().warp(np.zeros((3, 10, 10)), ref, target)
