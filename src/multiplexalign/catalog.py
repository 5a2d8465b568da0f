"""Discovers and classifies the image files of a multiplex experiment."""

import logging
import pathlib
from functools import cached_property
from typing import List, Optional

import numpy as np
import tifffile

from .errors import ConfigError
from .models import ImageRound, normalize

log = logging.getLogger(__name__)

TIFF_SUFFIXES = (".tif", ".tiff")

# raised when an image file cannot be decoded into a single 2D plane
READ_ERRORS = (OSError, ValueError, tifffile.TiffFileError)


def base_name_no_ext(path) -> str:
    """`"Hu_Layer1.tif"` -> `"Hu_Layer1"`."""
    name = pathlib.Path(path).name
    idx = name.rfind(".")
    return name[:idx] if idx >= 0 else name


def has_tif_ext(path) -> bool:
    return pathlib.Path(path).name.lower().endswith(TIFF_SUFFIXES)


def _normalized_base(path) -> str:
    return normalize(base_name_no_ext(path))


class ImageHandle:
    """
    An image file opened for the duration of a run. Pixel data is read lazily
    on first access and dropped again by `close`.
    """

    def __init__(self, path):
        self.path = pathlib.Path(path)
        self.title = self.path.name
        self._closed = False

    @cached_property
    def data(self) -> np.ndarray:
        if self._closed:
            raise ValueError(f"Image {self.title} has been closed")
        img = tifffile.imread(self.path)
        img = np.squeeze(img)
        if img.ndim == 3 and img.shape[-1] in (3, 4):
            # RGB(A) images are reduced to luminance
            img = img[..., :3].mean(axis=-1).astype(img.dtype)
        if img.ndim != 2:
            raise ValueError(
                f"Expected a single 2D plane in {self.title}, got shape {img.shape}"
            )
        return img

    @property
    def shape(self):
        return self.data.shape

    @property
    def height(self) -> int:
        return self.shape[0]

    @property
    def width(self) -> int:
        return self.shape[1]

    def close(self):
        self.__dict__.pop("data", None)
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return f"ImageHandle({self.title!r})"


class ImageCatalog:
    """
    Files of one input folder, in filename order.

    Classification is by substring match on the normalized base name: the
    common marker token identifies reference images, `{layer_keyword}{r}`
    identifies round r.
    """

    def __init__(self, folder, common_marker: str, layer_keyword: str):
        self.folder = pathlib.Path(folder)
        self.common_marker = normalize(common_marker)
        self.layer_keyword = normalize(layer_keyword)

    @cached_property
    def files(self) -> List[pathlib.Path]:
        files = sorted(
            (pp for pp in self.folder.iterdir() if pp.is_file() and has_tif_ext(pp)),
            key=lambda pp: pp.name,
        )
        log.debug(f"Found {len(files)} TIFF files in {self.folder}")
        return files

    def discover(self) -> List[pathlib.Path]:
        """All TIFF files; raises `ConfigError` if there are none."""
        if not self.files:
            raise ConfigError("No .tif files found", folder=self.folder)
        return self.files

    def is_common_marker(self, path) -> bool:
        return self.common_marker in _normalized_base(path)

    def common_marker_files(self) -> List[pathlib.Path]:
        """Reference-marker files of every round; the first is the reference."""
        matches = [ff for ff in self.discover() if self.is_common_marker(ff)]
        if not matches:
            raise ConfigError(
                f"No files matching common marker '{self.common_marker}'",
                folder=self.folder,
            )
        return matches

    def round_files(self, round_index: int) -> List[pathlib.Path]:
        layer = f"{self.layer_keyword}{round_index}"
        return [
            ff
            for ff in self.discover()
            if layer in _normalized_base(ff) and not self.is_common_marker(ff)
        ]

    def image_round(
        self, round_index: int, reference_file: Optional[pathlib.Path] = None
    ) -> ImageRound:
        return ImageRound(
            index=round_index,
            channel_files=self.round_files(round_index),
            reference_file=reference_file if round_index == 1 else None,
        )
