"""Landmark correspondence extraction strategies.

Each provider takes two 2D images and returns matched point sets
`(points_ref, points_target)` as (N, 2) xy arrays in full-resolution pixel
coordinates. Empty arrays mean no acceptable correspondence was found.
Providers hold no state between calls.
"""

import abc
import logging
from dataclasses import dataclass
from typing import List, Tuple

import cv2
import numpy as np
import palom.img_util
import skimage.exposure

log = logging.getLogger(__name__)

# an affine model is determined by three point pairs
AFFINE_MIN_POINTS = 3

PointSets = Tuple[np.ndarray, np.ndarray]


def empty_points() -> PointSets:
    return np.zeros((0, 2), "float64"), np.zeros((0, 2), "float64")


# --- Parameters ---
@dataclass(frozen=True)
class SiftParams:
    steps_per_scale_octave: int = 3
    maximum_image_size: int = 1024
    minimal_inlier_ratio: float = 0.05
    minimal_number_of_inliers: int = 7
    initial_gaussian_blur: float = 1.60
    minimum_image_size: int = 32
    closest_next_closest_ratio: float = 0.92
    maximal_alignment_error: float = 25.0


@dataclass(frozen=True)
class MopsParams:
    steps_per_scale_octave: int = 3
    maximum_image_size: int = 1024
    feature_descriptor_size: int = 16
    inlier_ratio: float = 0.50
    minimal_number_of_inliers: int = AFFINE_MIN_POINTS
    initial_gaussian_blur: float = 1.60
    minimum_image_size: int = 64
    closest_next_closest_ratio: float = 0.92
    maximal_alignment_error: float = 25.0
    max_corners_per_level: int = 500
    max_pyramid_levels: int = 16


@dataclass(frozen=True)
class BlockMatchingParams:
    layer_scale: float = 1.0
    search_radius: int = 50
    block_radius: int = 50
    resolution: int = 24
    minimal_pmcc_r: float = 0.10
    maximal_curvature_ratio: float = 1000.0
    maximal_second_best_r_ratio: float = 1.0
    use_local_smoothness_filter: bool = True
    local_region_sigma: float = 65.0
    maximal_local_displacement: float = 12.0
    maximal_relative_local_displacement: float = 3.0


# --- Shared helpers ---
def to_uint8(img: np.ndarray) -> np.ndarray:
    """Percentile-stretches an image to uint8 for the feature detectors."""
    img = np.asarray(img, dtype="float32")
    in_range = np.percentile(img, [0.1, 99.9])
    if in_range[1] <= in_range[0]:
        return np.zeros(img.shape, "uint8")
    return (
        skimage.exposure.rescale_intensity(
            img, in_range=tuple(in_range), out_range="uint8"
        )
        .round()
        .astype("uint8")
    )


def downscale_to(img: np.ndarray, max_size: int) -> Tuple[np.ndarray, int]:
    """Downscales by an integer factor so the longer side is <= `max_size`."""
    downsize_factor = max(1, int(np.ceil(max(img.shape) / max(max_size, 1))))
    img = np.asarray(img, dtype="float32")
    if downsize_factor > 1:
        img = palom.img_util.cv2_downscale_local_mean(img, downsize_factor)
    return img, downsize_factor


def ratio_test_matches(des_ref, des_target, ratio: float):
    """Lowe's closest/next-closest ratio test; returns (ref_idx, target_idx)."""
    if des_ref is None or des_target is None:
        return np.zeros(0, "int"), np.zeros(0, "int")
    if len(des_ref) < 2 or len(des_target) < 2:
        return np.zeros(0, "int"), np.zeros(0, "int")
    matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)
    matches = matcher.knnMatch(
        np.asarray(des_ref, "float32"), np.asarray(des_target, "float32"), k=2
    )
    good = [
        pair[0]
        for pair in matches
        if len(pair) == 2 and pair[0].distance < ratio * pair[1].distance
    ]
    ref_idx = np.array([mm.queryIdx for mm in good], dtype="int")
    target_idx = np.array([mm.trainIdx for mm in good], dtype="int")
    return ref_idx, target_idx


def filter_affine_inliers(
    points_ref: np.ndarray,
    points_target: np.ndarray,
    maximal_alignment_error: float,
    minimal_inlier_ratio: float,
    minimal_number_of_inliers: int,
) -> PointSets:
    """RANSAC affine fit; keeps the consensus set if it passes both floors."""
    n_candidates = len(points_ref)
    if n_candidates < max(AFFINE_MIN_POINTS, minimal_number_of_inliers):
        log.debug(f"{n_candidates} candidate matches; too few for an affine model")
        return empty_points()
    mx, inliers = cv2.estimateAffine2D(
        np.asarray(points_target, "float32"),
        np.asarray(points_ref, "float32"),
        method=cv2.RANSAC,
        ransacReprojThreshold=maximal_alignment_error,
        maxIters=2000,
        confidence=0.99,
    )
    if mx is None or inliers is None:
        return empty_points()
    inliers = inliers.ravel().astype(bool)
    n_inliers = int(inliers.sum())
    inlier_ratio = n_inliers / n_candidates
    log.debug(
        f"{n_inliers:6} inliers of {n_candidates:6} candidates "
        f"(ratio {inlier_ratio:.3f})"
    )
    if n_inliers < max(AFFINE_MIN_POINTS, minimal_number_of_inliers):
        return empty_points()
    if inlier_ratio < minimal_inlier_ratio:
        return empty_points()
    return (
        np.asarray(points_ref, "float64")[inliers],
        np.asarray(points_target, "float64")[inliers],
    )


# --- Strategies ---
class CorrespondenceProvider(abc.ABC):
    name: str = ""

    @abc.abstractmethod
    def extract(self, reference: np.ndarray, target: np.ndarray, params) -> PointSets:
        pass

    def __repr__(self):
        return f"{type(self).__name__}()"


class SiftCorrespondence(CorrespondenceProvider):
    """Scale-invariant feature matching with an affine RANSAC consensus."""

    name = "SIFT"

    def extract(self, reference, target, params: SiftParams) -> PointSets:
        img_ref, factor_ref = downscale_to(reference, params.maximum_image_size)
        img_target, factor_target = downscale_to(target, params.maximum_image_size)
        if min(*img_ref.shape, *img_target.shape) < params.minimum_image_size:
            log.debug("Image smaller than the minimum SIFT image size")
            return empty_points()

        sift = cv2.SIFT_create(
            nOctaveLayers=params.steps_per_scale_octave,
            sigma=params.initial_gaussian_blur,
        )
        kp_ref, des_ref = sift.detectAndCompute(to_uint8(img_ref), None)
        kp_target, des_target = sift.detectAndCompute(to_uint8(img_target), None)
        log.debug(
            f"SIFT ({params.steps_per_scale_octave} steps): "
            f"{len(kp_ref)} / {len(kp_target)} keypoints"
        )

        ref_idx, target_idx = ratio_test_matches(
            des_ref, des_target, params.closest_next_closest_ratio
        )
        if len(ref_idx) == 0:
            return empty_points()
        points_ref = np.array([kp_ref[ii].pt for ii in ref_idx]) * factor_ref
        points_target = np.array([kp_target[ii].pt for ii in target_idx]) * factor_target
        return filter_affine_inliers(
            points_ref,
            points_target,
            params.maximal_alignment_error,
            params.minimal_inlier_ratio,
            params.minimal_number_of_inliers,
        )


class MopsCorrespondence(CorrespondenceProvider):
    """
    Multi-scale oriented patches: Harris corners detected over a Gaussian
    scale space, described by rotation-normalized, bias/gain-normalized
    intensity patches.
    """

    name = "MOPS"

    def extract(self, reference, target, params: MopsParams) -> PointSets:
        img_ref, factor_ref = downscale_to(reference, params.maximum_image_size)
        img_target, factor_target = downscale_to(target, params.maximum_image_size)

        pts_ref, des_ref = self._features(img_ref, params)
        pts_target, des_target = self._features(img_target, params)
        log.debug(f"MOPS: {len(pts_ref)} / {len(pts_target)} features")

        ref_idx, target_idx = ratio_test_matches(
            des_ref, des_target, params.closest_next_closest_ratio
        )
        if len(ref_idx) == 0:
            return empty_points()
        return filter_affine_inliers(
            pts_ref[ref_idx] * factor_ref,
            pts_target[target_idx] * factor_target,
            params.maximal_alignment_error,
            params.inlier_ratio,
            params.minimal_number_of_inliers,
        )

    @staticmethod
    def scales(shape, params: MopsParams) -> List[float]:
        """
        Pyramid scales from 1 down to the minimum image size, one per step of
        the octave. Above `max_pyramid_levels` the same range is sampled with
        that many geometrically spaced levels.
        """
        smallest = params.minimum_image_size / min(shape)
        if smallest > 1:
            return []
        step = 2 ** (1 / params.steps_per_scale_octave)
        n_levels = int(np.floor(np.log(1 / smallest) / np.log(step) + 1e-9)) + 1
        if n_levels > params.max_pyramid_levels:
            return list(
                np.geomspace(1, step ** -(n_levels - 1), params.max_pyramid_levels)
            )
        return [step**-ii for ii in range(n_levels)]

    def _features(self, img: np.ndarray, params: MopsParams):
        img = to_uint8(img).astype("float32") / 255
        d = params.feature_descriptor_size
        points, descriptors = [], []
        for scale in self.scales(img.shape, params):
            level = cv2.resize(
                img,
                None,
                fx=scale,
                fy=scale,
                interpolation=cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR,
            )
            level = cv2.GaussianBlur(level, (0, 0), params.initial_gaussian_blur)
            corners = cv2.goodFeaturesToTrack(
                level,
                maxCorners=params.max_corners_per_level,
                qualityLevel=0.01,
                minDistance=max(d // 4, 1),
                useHarrisDetector=True,
                k=0.04,
            )
            if corners is not None:
                pts, des = self._describe(level, corners.reshape(-1, 2), d)
                if len(pts):
                    points.append(pts / scale)
                    descriptors.append(des)
        if not points:
            return np.zeros((0, 2)), None
        return np.vstack(points), np.vstack(descriptors)

    @staticmethod
    def _describe(level: np.ndarray, corners: np.ndarray, d: int):
        # orientation from the smoothed gradient, sampling spacing of 2 pixels
        spacing = 2.0
        smooth = cv2.GaussianBlur(level, (0, 0), 4.5)
        gy, gx = np.gradient(smooth)
        sampled = cv2.GaussianBlur(level, (0, 0), spacing)
        h, w = level.shape
        c0 = (d - 1) / 2
        kept_pts, kept_des = [], []
        for x, y in corners:
            xi, yi = int(round(x)), int(round(y))
            if not (0 <= xi < w and 0 <= yi < h):
                continue
            theta = np.arctan2(gy[yi, xi], gx[yi, xi])
            cos, sin = np.cos(theta) * spacing, np.sin(theta) * spacing
            mx = np.array(
                [
                    [cos, -sin, x - (cos - sin) * c0],
                    [sin, cos, y - (sin + cos) * c0],
                ],
                dtype="float64",
            )
            patch = cv2.warpAffine(
                sampled,
                mx,
                (d, d),
                flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
                borderMode=cv2.BORDER_REFLECT,
            )
            std = patch.std()
            if std < 1e-6:
                continue
            kept_pts.append((x, y))
            kept_des.append(((patch - patch.mean()) / std).ravel())
        if not kept_pts:
            return np.zeros((0, 2)), np.zeros((0, d * d), "float32")
        return np.array(kept_pts, "float64"), np.array(kept_des, "float32")


class BlockMatchingCorrespondence(CorrespondenceProvider):
    """
    Normalized cross-correlation of a regular grid of blocks, followed by a
    local smoothness filter that rejects matches disagreeing with an affine
    fit of their Gaussian-weighted neighbourhood.
    """

    name = "BlockMatching"

    def extract(self, reference, target, params: BlockMatchingParams) -> PointSets:
        ref = np.asarray(reference, "float32")
        tgt = np.asarray(target, "float32")
        if params.layer_scale != 1:
            ref = cv2.resize(ref, None, fx=params.layer_scale, fy=params.layer_scale)
            tgt = cv2.resize(tgt, None, fx=params.layer_scale, fy=params.layer_scale)

        points_ref, points_target = [], []
        for x, y in self.grid(ref.shape, params):
            match = self._match_block(ref, tgt, x, y, params)
            if match is not None:
                points_ref.append((x, y))
                points_target.append(match)
        log.debug(f"Block matching: {len(points_ref)} blocks passed PMCC filters")
        if not points_ref:
            return empty_points()

        points_ref = np.array(points_ref, "float64") / params.layer_scale
        points_target = np.array(points_target, "float64") / params.layer_scale
        if params.use_local_smoothness_filter:
            keep = local_smoothness_filter(points_ref, points_target, params)
            points_ref, points_target = points_ref[keep], points_target[keep]
            log.debug(f"Local smoothness filter kept {keep.sum()} matches")
        if len(points_ref) == 0:
            return empty_points()
        return points_ref, points_target

    @staticmethod
    def grid(shape, params: BlockMatchingParams):
        h, w = shape
        spacing = max(h, w) / params.resolution
        br = params.block_radius
        ys = np.arange(spacing / 2, h, spacing).round().astype(int)
        xs = np.arange(spacing / 2, w, spacing).round().astype(int)
        ys = ys[(ys >= br) & (ys < h - br)]
        xs = xs[(xs >= br) & (xs < w - br)]
        return [(x, y) for y in ys for x in xs]

    @staticmethod
    def _match_block(ref, tgt, x, y, params: BlockMatchingParams):
        br, sr = params.block_radius, params.search_radius
        block = ref[y - br : y + br + 1, x - br : x + br + 1]
        if block.std() == 0:
            return None
        h, w = tgt.shape
        r0, c0 = max(y - br - sr, 0), max(x - br - sr, 0)
        r1, c1 = min(y + br + sr + 1, h), min(x + br + sr + 1, w)
        window = tgt[r0:r1, c0:c1]
        if window.shape[0] < block.shape[0] or window.shape[1] < block.shape[1]:
            return None

        pmcc = cv2.matchTemplate(window, block, cv2.TM_CCOEFF_NORMED)
        pmcc = np.nan_to_num(pmcc, nan=-1.0)
        _, best_r, _, (bx, by) = cv2.minMaxLoc(pmcc)
        if best_r < params.minimal_pmcc_r:
            return None

        if 0 < by < pmcc.shape[0] - 1 and 0 < bx < pmcc.shape[1] - 1:
            dxx = pmcc[by, bx + 1] - 2 * best_r + pmcc[by, bx - 1]
            dyy = pmcc[by + 1, bx] - 2 * best_r + pmcc[by - 1, bx]
            dxy = (
                pmcc[by + 1, bx + 1]
                - pmcc[by + 1, bx - 1]
                - pmcc[by - 1, bx + 1]
                + pmcc[by - 1, bx - 1]
            ) / 4
            det = dxx * dyy - dxy**2
            r = params.maximal_curvature_ratio
            if det <= 0 or (dxx + dyy) ** 2 / det >= (r + 1) ** 2 / r:
                return None

        if params.maximal_second_best_r_ratio < 1:
            masked = pmcc.copy()
            masked[max(by - 1, 0) : by + 2, max(bx - 1, 0) : bx + 2] = -1
            if masked.max() > params.maximal_second_best_r_ratio * best_r:
                return None

        return (c0 + bx + br, r0 + by + br)


def _weighted_affine_residual(
    points_ref: np.ndarray, points_target: np.ndarray, idx: int, sigma: float
) -> float:
    others = np.arange(len(points_ref)) != idx
    src, dst = points_ref[others], points_target[others]
    d2 = np.sum((src - points_ref[idx]) ** 2, axis=1)
    weights = np.sqrt(np.exp(-d2 / (2 * sigma**2)))[:, np.newaxis]
    design = np.hstack([src, np.ones((len(src), 1))])
    coef, *_ = np.linalg.lstsq(weights * design, weights * dst, rcond=None)
    predicted = np.append(points_ref[idx], 1) @ coef
    return float(np.linalg.norm(predicted - points_target[idx]))


def local_smoothness_filter(
    points_ref: np.ndarray, points_target: np.ndarray, params: BlockMatchingParams
) -> np.ndarray:
    """Iteratively rejects matches with large local affine residuals."""
    keep = np.ones(len(points_ref), dtype=bool)
    while keep.sum() > AFFINE_MIN_POINTS:
        idx = np.flatnonzero(keep)
        residuals = np.array(
            [
                _weighted_affine_residual(
                    points_ref[idx], points_target[idx], ii, params.local_region_sigma
                )
                for ii in range(len(idx))
            ],
            dtype="float64",
        )
        # block positions are integral; sub-pixel medians are quantization noise
        median = max(float(np.median(residuals)), 1.0)
        reject = (residuals > params.maximal_local_displacement) | (
            residuals > params.maximal_relative_local_displacement * median
        )
        if not reject.any():
            break
        keep[idx[reject]] = False
    return keep
