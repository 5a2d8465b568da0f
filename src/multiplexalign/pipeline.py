"""Multi-round registration: landmarks on the common marker, warp every channel.

Outputs written under `<save_folder>/Results/`:
    - `<marker>_stack.tif`: common-marker image of every round (QC)
    - `Aligned_Stack.tif`: all channels in the round-1 frame, one channel each
    - `landmark_correspondences.csv`: the landmark pair of each later round

A failure at any step aborts the run. Files written by earlier steps are left
in place. Channel files that cannot be decoded are skipped with a warning.
"""

import concurrent.futures
import logging
import pathlib
import threading
from typing import List, Optional

import tqdm

from .align.matcher import FeatureMatcher
from .align.warper import ImageWarper
from .catalog import READ_ERRORS, ImageCatalog, ImageHandle
from .errors import (
    CorrespondenceNotFoundError,
    OutputConflictError,
    ReferenceOpenError,
    RunInProgressError,
    WarpApplicationError,
    raise_if_cancelled,
)
from .landmarks import LandmarkStore
from .models import RegistrationConfig, RegistrationResult
from .qc import QcPlotter
from .stack import Stack

log = logging.getLogger(__name__)

ALIGNED_STACK_NAME = "Aligned_Stack.tif"
LANDMARK_EXPORT_NAME = "landmark_correspondences.csv"

_RUN_LOCK = threading.Lock()


class RegistrationPipeline:
    """Runs one registration at a time; see `run`."""

    def __init__(
        self,
        sift=None,
        mops=None,
        block_matching=None,
        warper: Optional[ImageWarper] = None,
        progress: bool = True,
    ):
        self._providers = dict(sift=sift, mops=mops, block_matching=block_matching)
        self.warper = warper or ImageWarper()
        self.store = LandmarkStore()
        self.progress = progress

    def run(
        self,
        config: RegistrationConfig,
        cancel_event: Optional[threading.Event] = None,
    ) -> RegistrationResult:
        if not _RUN_LOCK.acquire(blocking=False):
            raise RunInProgressError("Another registration run is in progress")
        try:
            return self._run(config, cancel_event)
        finally:
            _RUN_LOCK.release()

    def _run(self, config, cancel_event) -> RegistrationResult:
        results_dir = config.results_dir
        if results_dir.exists():
            raise OutputConflictError(
                "Remove the Results folder first", folder=results_dir.resolve()
            )
        results_dir.mkdir(parents=True)
        self.store.reset()

        catalog = ImageCatalog(
            config.image_folder, config.common_marker, config.layer_keyword
        )
        catalog.discover()
        marker_files = catalog.common_marker_files()
        log.info(
            f"{len(catalog.files)} images, {len(marker_files)} with common marker "
            f"'{config.common_marker}'"
        )

        reference = self._open_reference(marker_files[0])
        final_stack = None
        try:
            qc_stack_path = self._build_common_marker_stack(
                config, reference, marker_files[1:], cancel_event
            )
            final_stack = self._build_aligned_stack(
                config, catalog, reference, cancel_event
            )
            aligned_path = final_stack.save_composite(results_dir / ALIGNED_STACK_NAME)
            landmark_path = self.store.export_csv(results_dir / LANDMARK_EXPORT_NAME)
            result = RegistrationResult(
                aligned_stack_path=aligned_path,
                landmark_export_path=landmark_path,
                qc_stack_path=qc_stack_path,
                n_slices=len(final_stack),
                slice_labels=final_stack.labels,
            )
        finally:
            if final_stack is not None:
                final_stack.close()
            reference.close()

        log.info(f"Registration done. Saved to: {results_dir.resolve()}")
        return result

    @staticmethod
    def _read_marker(handle: ImageHandle, pair_index: Optional[int] = None):
        """Common-marker images are required; an unreadable one aborts the run."""
        try:
            return handle.data
        except READ_ERRORS as e:
            raise ReferenceOpenError(
                f"Failed to open common-marker image: {e}",
                file=handle.title,
                pair_index=pair_index,
            ) from e

    def _open_reference(self, path: pathlib.Path) -> ImageHandle:
        reference = ImageHandle(path)
        self._read_marker(reference)
        log.info(f"Reference image: {reference.title} {reference.shape}")
        return reference

    def _build_common_marker_stack(
        self,
        config: RegistrationConfig,
        reference: ImageHandle,
        target_files: List[pathlib.Path],
        cancel_event,
    ) -> pathlib.Path:
        matcher = FeatureMatcher(
            self.store,
            config.common_marker,
            cancel_event=cancel_event,
            **self._providers,
        )
        plotter = QcPlotter(config.results_dir / "qc") if config.qc_plots else None

        qc_stack = Stack(
            f"{config.common_marker}_stack", reference.shape, reference.data.dtype
        )
        qc_stack.append(reference.data, reference.title)
        try:
            for pair_index, path in enumerate(
                tqdm.tqdm(target_files, desc="Matching", disable=not self.progress),
                start=1,
            ):
                raise_if_cancelled(cancel_event, "before landmark matching")
                with ImageHandle(path) as target:
                    target_data = self._read_marker(target, pair_index)
                    match = matcher.match(
                        reference.data,
                        target_data,
                        pair_index,
                        config.minimal_inlier_ratio,
                        config.steps_per_scale_octave,
                    )
                    if not match.found:
                        raise CorrespondenceNotFoundError(
                            f"Couldn't find matches for {reference.title} vs "
                            f"{target.title}",
                            pair_index=pair_index,
                            file=target.title,
                            strategies=",".join(match.strategies_attempted),
                        )
                    if plotter is not None:
                        plotter.plot_landmarks(
                            reference.data,
                            target_data,
                            match.pair,
                            reference.title,
                            target.title,
                            match.strategy,
                        )
                    qc_stack.append(target_data, target.title)
            return qc_stack.save(config.results_dir / f"{config.common_marker}_stack.tif")
        finally:
            qc_stack.close()
            if plotter is not None:
                plotter.save_figures()

    def _build_aligned_stack(
        self,
        config: RegistrationConfig,
        catalog: ImageCatalog,
        reference: ImageHandle,
        cancel_event,
    ) -> Stack:
        final_stack = Stack("STACK", reference.shape, reference.data.dtype)
        rounds = range(1, config.multiplex_rounds + 1)
        for round_index in tqdm.tqdm(rounds, desc="Rounds", disable=not self.progress):
            raise_if_cancelled(cancel_event, "before round", round_index)
            image_round = catalog.image_round(round_index, reference.path)
            log.info(
                f"Round {round_index}: {len(image_round.channel_files)} channel(s)"
            )

            if round_index == 1:
                final_stack.append(reference.data, reference.title)
                for path in image_round.channel_files:
                    with ImageHandle(path) as channel:
                        data = self._read_channel(channel, round_index)
                        if data is not None:
                            final_stack.append(data, channel.title)
                continue

            pair = self.store.get(round_index)
            for path in image_round.channel_files:
                with ImageHandle(path) as channel:
                    data = self._read_channel(channel, round_index)
                    if data is None:
                        continue
                    try:
                        aligned = self.warper.warp(
                            data,
                            pair.reference_points,
                            pair.target_points,
                            transform_class="affine",
                            interpolate=True,
                            output_shape=reference.shape,
                        )
                    except WarpApplicationError as e:
                        e.context.update(round=round_index, file=channel.title)
                        raise
                    final_stack.append(aligned, channel.title)
                    del aligned
        return final_stack

    @staticmethod
    def _read_channel(handle: ImageHandle, round_index: int):
        try:
            return handle.data
        except READ_ERRORS as e:
            log.warning(
                f"Skipping unreadable channel {handle.title} (round {round_index}): {e}"
            )
            return None


def run_registration(
    config: RegistrationConfig,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> RegistrationResult:
    return RegistrationPipeline(**kwargs).run(config, cancel_event)


def run_in_background(
    config: RegistrationConfig,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> concurrent.futures.Future:
    """Runs the pipeline on a single worker thread and returns its future."""
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=1, thread_name_prefix="multiplexalign"
    )
    future = executor.submit(run_registration, config, cancel_event, **kwargs)
    executor.shutdown(wait=False)
    return future
