import os

os.environ.setdefault("MPLBACKEND", "Agg")

import cv2
import numpy as np
import pytest
import tifffile

from multiplexalign.align.providers import CorrespondenceProvider, empty_points

# target points are reference points shifted by this (x, y) offset
SHIFT_XY = np.array([4.0, -3.0])


def textured_image(shape=(128, 128), seed=0, sigma=2.0):
    """Smoothed noise; plenty of blob-like structure for the matchers."""
    rng = np.random.default_rng(seed)
    noise = rng.random(shape).astype("float32")
    smooth = cv2.GaussianBlur(noise, (0, 0), sigma)
    smooth -= smooth.min()
    smooth /= smooth.max()
    return (smooth * 60000).astype("uint16")


def write_tif(folder, name, img):
    path = folder / name
    tifffile.imwrite(path, img)
    return path


def landmark_points(n=6):
    ref = np.array(
        [[10, 10], [100, 12], [15, 90], [110, 105], [60, 50], [30, 70]][:n],
        dtype="float64",
    )
    return ref, ref + SHIFT_XY


class RecordingProvider(CorrespondenceProvider):
    """Returns canned point sets and records every call."""

    def __init__(self, name, calls, succeed_on=None, points=None):
        self.name = name
        self.calls = calls
        self.succeed_on = succeed_on
        self.points = points if points is not None else landmark_points()

    def extract(self, reference, target, params):
        steps = getattr(params, "steps_per_scale_octave", None)
        self.calls.append((self.name, steps, params))
        if self.succeed_on is None:
            return empty_points()
        if self.succeed_on is True or steps == self.succeed_on:
            return self.points
        return empty_points()


@pytest.fixture
def calls():
    return []


@pytest.fixture
def failing_providers(calls):
    return dict(
        sift=RecordingProvider("SIFT", calls),
        mops=RecordingProvider("MOPS", calls),
        block_matching=RecordingProvider("BlockMatching", calls),
    )


@pytest.fixture
def sift_providers(calls):
    return dict(
        sift=RecordingProvider("SIFT", calls, succeed_on=True),
        mops=RecordingProvider("MOPS", calls),
        block_matching=RecordingProvider("BlockMatching", calls),
    )


@pytest.fixture
def hu_folder(tmp_path):
    """Two rounds, common marker Hu, three markers besides it."""
    folder = tmp_path / "images"
    folder.mkdir()
    for seed, name in enumerate(
        [
            "Hu_Layer1.tif",
            "DAPI_Layer1.tif",
            "CD3_Layer1.tif",
            "Hu_Layer2.tif",
            "CD20_Layer2.tif",
        ]
    ):
        write_tif(folder, name, textured_image(seed=seed))
    return folder
