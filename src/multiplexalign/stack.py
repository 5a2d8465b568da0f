"""Ordered image stacks and their ImageJ-compatible TIFF output."""

import logging
import pathlib
from typing import List, Optional, Tuple

import numpy as np
import tifffile

log = logging.getLogger(__name__)

# pixel types ImageJ hyperstacks can hold
IMAGEJ_DTYPES = (np.uint8, np.uint16, np.float32)


def fit_to_canvas(img: np.ndarray, shape: Tuple[int, int], dtype) -> np.ndarray:
    """Pastes `img` at the top-left of a zero canvas, cropping any overhang."""
    img = np.asarray(img)
    if img.shape == tuple(shape) and img.dtype == dtype:
        return img
    canvas = np.zeros(shape, dtype=dtype)
    h = min(shape[0], img.shape[0])
    w = min(shape[1], img.shape[1])
    if np.issubdtype(np.dtype(dtype), np.integer):
        info = np.iinfo(dtype)
        region = img[:h, :w]
        if np.issubdtype(region.dtype, np.floating):
            region = np.round(region)
        canvas[:h, :w] = np.clip(region, info.min, info.max)
    else:
        canvas[:h, :w] = img[:h, :w]
    return canvas


def imagej_compatible(data: np.ndarray) -> np.ndarray:
    if data.dtype.type in IMAGEJ_DTYPES:
        return data
    if data.dtype == bool or data.dtype == np.int8:
        return data.astype("uint8")
    if np.issubdtype(data.dtype, np.integer) and data.min() >= 0 and data.max() < 2**16:
        return data.astype("uint16")
    return data.astype("float32")


class Stack:
    """
    Slices of equal shape and pixel type, each with a label. The first slice
    fixes the canvas; later slices are cropped or zero-padded to it.
    """

    def __init__(
        self,
        name: str,
        shape: Optional[Tuple[int, int]] = None,
        dtype=None,
    ):
        self.name = name
        self.shape = None if shape is None else tuple(shape)
        self.dtype = None if dtype is None else np.dtype(dtype)
        self._slices: List[np.ndarray] = []
        self._labels: List[str] = []

    def append(self, img: np.ndarray, label: str) -> int:
        img = np.asarray(img)
        if self.shape is None:
            self.shape = img.shape
        if self.dtype is None:
            self.dtype = img.dtype
        if img.shape != self.shape:
            log.warning(
                f"Slice {label!r} has shape {img.shape}; fitting to {self.shape} "
                f"in {self.name}"
            )
        self._slices.append(fit_to_canvas(img, self.shape, self.dtype))
        self._labels.append(label)
        return len(self._slices)

    def __len__(self):
        return len(self._slices)

    @property
    def labels(self) -> List[str]:
        return list(self._labels)

    def to_array(self) -> np.ndarray:
        if not self._slices:
            raise ValueError(f"Stack {self.name} is empty")
        return np.stack(self._slices)

    def close(self):
        self._slices.clear()
        self._labels.clear()

    def save(self, path) -> pathlib.Path:
        """Writes a plain ImageJ stack (one Z slice per entry)."""
        return self._write(path, axes="ZYX")

    def save_composite(self, path) -> pathlib.Path:
        """Writes a grayscale hyperstack with one channel per slice (Z=1, T=1)."""
        return self._write(path, axes="CYX", mode="grayscale")

    def _write(self, path, axes: str, mode: Optional[str] = None) -> pathlib.Path:
        path = pathlib.Path(path)
        data = imagej_compatible(self.to_array())
        metadata = {"axes": axes, "Labels": self.labels}
        if mode is not None:
            metadata["mode"] = mode
        tifffile.imwrite(path, data, imagej=True, metadata=metadata)
        log.info(f"Saved {len(self)} slices ({axes}) to {path}")
        return path


def read_stack(path) -> Tuple[np.ndarray, List[str]]:
    """Reads a stack written by `Stack.save*`; returns (data, slice labels)."""
    with tifffile.TiffFile(path) as tif:
        data = tif.asarray()
        labels = (tif.imagej_metadata or {}).get("Labels", [])
    data = data.reshape(-1, *data.shape[-2:])
    if isinstance(labels, str):
        labels = [labels]
    return data, list(labels)
