"""Warps images into the reference frame using landmark correspondences."""

import logging
from typing import Optional, Tuple

import numpy as np
import skimage.transform

from ..errors import WarpApplicationError

log = logging.getLogger(__name__)

TRANSFORM_CLASSES = {
    "translation": ("euclidean", 1),
    "rigid": ("euclidean", 2),
    "euclidean": ("euclidean", 2),
    "similarity": ("similarity", 2),
    "affine": ("affine", 3),
}


def estimate_landmark_transform(
    reference_points: np.ndarray,
    target_points: np.ndarray,
    transform_class: str = "affine",
) -> skimage.transform.ProjectiveTransform:
    """Least-squares transform mapping target points onto reference points."""
    key = transform_class.lower()
    if key not in TRANSFORM_CLASSES:
        raise WarpApplicationError(
            f"Unsupported transformation class {transform_class!r}"
        )
    ttype, min_points = TRANSFORM_CLASSES[key]

    src = np.asarray(target_points, dtype="float64").reshape(-1, 2)
    dst = np.asarray(reference_points, dtype="float64").reshape(-1, 2)
    if len(src) != len(dst):
        raise WarpApplicationError(
            "Landmark sets differ in size", reference=len(dst), target=len(src)
        )
    if len(src) < min_points:
        raise WarpApplicationError(
            f"{transform_class} transform needs at least {min_points} landmarks",
            landmarks=len(src),
        )

    if key == "translation":
        shift = np.mean(dst - src, axis=0)
        return skimage.transform.EuclideanTransform(translation=shift)

    tform = skimage.transform.estimate_transform(ttype, src, dst)
    if tform is None or not np.all(np.isfinite(tform.params)):
        raise WarpApplicationError(
            f"Could not estimate {transform_class} transform from landmarks",
            landmarks=len(src),
        )
    return tform


class ImageWarper:
    """Applies the landmark transform of one round to its channel images."""

    def warp(
        self,
        image: np.ndarray,
        reference_points: np.ndarray,
        target_points: np.ndarray,
        transform_class: str = "affine",
        interpolate: bool = True,
        output_shape: Optional[Tuple[int, int]] = None,
    ) -> np.ndarray:
        image = np.asarray(image)
        if image.ndim != 2:
            raise WarpApplicationError(
                f"Expected a 2D image, got shape {image.shape}"
            )
        tform = estimate_landmark_transform(
            reference_points, target_points, transform_class
        )
        log.debug(f"Landmark transform ({transform_class}):\n{tform.params}")
        output_shape = image.shape if output_shape is None else tuple(output_shape)
        try:
            warped = skimage.transform.warp(
                image,
                tform.inverse,
                output_shape=output_shape,
                order=1 if interpolate else 0,
                cval=0,
                preserve_range=True,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            raise WarpApplicationError(f"Warping failed: {e}") from e
        if not np.all(np.isfinite(warped)):
            raise WarpApplicationError("Warped image contains non-finite values")
        if np.issubdtype(image.dtype, np.integer):
            info = np.iinfo(image.dtype)
            warped = np.clip(np.round(warped), info.min, info.max)
        return warped.astype(image.dtype)
