"""Correspondence search with SIFT -> MOPS -> block matching fallbacks."""

import logging
import threading
from typing import Optional

import cv2
import numpy as np

from ..errors import raise_if_cancelled
from ..landmarks import LandmarkStore
from ..models import LandmarkPair, MatchResult
from .providers import (
    BlockMatchingCorrespondence,
    BlockMatchingParams,
    CorrespondenceProvider,
    MopsCorrespondence,
    MopsParams,
    SiftCorrespondence,
    SiftParams,
)

log = logging.getLogger(__name__)

MAX_STEPS_PER_SCALE_OCTAVE = 30
STEPS_INCREMENT = 3
SIFT_MINIMAL_NUMBER_OF_INLIERS = 7
MOPS_INLIER_RATIO = 0.50


def landmark_labels(common_marker: str, pair_index: int):
    return f"{common_marker}_{pair_index}_ref", f"{common_marker}_{pair_index}_target"


class FeatureMatcher:
    """
    Finds landmark correspondences between the reference image and a target.

    SIFT is tried with increasing steps per scale octave (by 3, up to 30).
    If it never yields correspondences, MOPS is tried once with the last steps
    value, then block matching once. The first strategy returning non-empty
    point sets for both images wins and its pair is appended to `store`.
    """

    def __init__(
        self,
        store: LandmarkStore,
        common_marker: str,
        sift: Optional[CorrespondenceProvider] = None,
        mops: Optional[CorrespondenceProvider] = None,
        block_matching: Optional[CorrespondenceProvider] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.store = store
        self.common_marker = common_marker
        self.sift = sift or SiftCorrespondence()
        self.mops = mops or MopsCorrespondence()
        self.block_matching = block_matching or BlockMatchingCorrespondence()
        self.cancel_event = cancel_event

    def match(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        pair_index: int,
        minimal_inlier_ratio: float,
        initial_steps: int,
    ) -> MatchResult:
        result = MatchResult()
        max_size = max(reference.shape[:2])

        steps = initial_steps
        pair = None
        while pair is None and steps <= MAX_STEPS_PER_SCALE_OCTAVE:
            params = SiftParams(
                steps_per_scale_octave=steps,
                maximum_image_size=max_size,
                minimal_inlier_ratio=minimal_inlier_ratio,
                minimal_number_of_inliers=SIFT_MINIMAL_NUMBER_OF_INLIERS,
            )
            pair = self._attempt(self.sift, reference, target, params, steps, result)
            steps += STEPS_INCREMENT

        if pair is None:
            params = MopsParams(
                steps_per_scale_octave=steps,
                maximum_image_size=max_size,
                inlier_ratio=MOPS_INLIER_RATIO,
            )
            pair = self._attempt(self.mops, reference, target, params, steps, result)

        if pair is None:
            params = BlockMatchingParams()
            pair = self._attempt(
                self.block_matching, reference, target, params, None, result
            )

        if pair is None:
            log.warning(
                f"No correspondences for pair {pair_index} after "
                f"{len(result.attempts)} attempts"
            )
            return result

        pair = pair.with_labels(*landmark_labels(self.common_marker, pair_index))
        self.store.append(pair)
        result.pair = pair
        result.strategy = result.attempts[-1][0]
        log.info(
            f"Pair {pair_index}: {len(pair)} correspondences via {result.strategy}"
        )
        return result

    def _attempt(self, provider, reference, target, params, steps, result):
        raise_if_cancelled(self.cancel_event, f"before {provider.name} matching")
        result.attempts.append((provider.name, steps))
        try:
            points_ref, points_target = provider.extract(reference, target, params)
        except (cv2.error, ValueError, np.linalg.LinAlgError) as e:
            log.debug(f"{provider.name} failed ({params}): {e}")
            return None
        if len(points_ref) == 0 or len(points_target) == 0:
            log.debug(f"{provider.name} found no correspondences ({params})")
            return None
        return LandmarkPair(points_ref, points_target)
