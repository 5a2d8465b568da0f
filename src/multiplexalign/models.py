"""Core data structures for multiplexalign."""

import dataclasses
import logging
import pathlib
from typing import List, Optional, Tuple

import numpy as np

from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_MINIMAL_INLIER_RATIO = 0.50
DEFAULT_STEPS_PER_SCALE_OCTAVE = 3


def normalize(text: Optional[str]) -> str:
    """Lower-cases, trims and strips spaces, e.g. `" Layer 1 "` -> `"layer1"`."""
    if text is None:
        return ""
    return text.lower().strip().replace(" ", "")


@dataclasses.dataclass(frozen=True)
class RegistrationConfig:
    """Parameters for a single multiplex registration run.

    Build instances with `ConfigBuilder`, which validates the folder and the
    round count.
    """

    image_folder: pathlib.Path
    common_marker: str
    multiplex_rounds: int
    layer_keyword: str
    save_folder: pathlib.Path
    fine_tune: bool = False
    minimal_inlier_ratio: float = DEFAULT_MINIMAL_INLIER_RATIO
    steps_per_scale_octave: int = DEFAULT_STEPS_PER_SCALE_OCTAVE
    qc_plots: bool = False

    @property
    def results_dir(self) -> pathlib.Path:
        return self.save_folder / "Results"


class ConfigBuilder:
    """Fluent builder for `RegistrationConfig`."""

    def __init__(self):
        self._image_folder = None
        self._common_marker = "hu"
        self._multiplex_rounds = 2
        self._layer_keyword = "layer"
        self._save_folder = None
        self._fine_tune = False
        self._minimal_inlier_ratio = None
        self._steps_per_scale_octave = None
        self._qc_plots = False

    def image_folder(self, path) -> "ConfigBuilder":
        self._image_folder = path
        return self

    def common_marker(self, marker: str) -> "ConfigBuilder":
        self._common_marker = marker
        return self

    def multiplex_rounds(self, n: int) -> "ConfigBuilder":
        self._multiplex_rounds = n
        return self

    def layer_keyword(self, keyword: str) -> "ConfigBuilder":
        self._layer_keyword = keyword
        return self

    def save_folder(self, path) -> "ConfigBuilder":
        self._save_folder = path
        return self

    def fine_tune(self, enabled: bool) -> "ConfigBuilder":
        self._fine_tune = enabled
        return self

    def minimal_inlier_ratio(self, ratio: float) -> "ConfigBuilder":
        self._minimal_inlier_ratio = ratio
        return self

    def steps_per_scale_octave(self, steps: int) -> "ConfigBuilder":
        self._steps_per_scale_octave = steps
        return self

    def qc_plots(self, enabled: bool) -> "ConfigBuilder":
        self._qc_plots = enabled
        return self

    def build(self) -> RegistrationConfig:
        if self._image_folder is None:
            raise ConfigError("Image folder is required")
        image_folder = pathlib.Path(self._image_folder)
        if not image_folder.is_dir():
            raise ConfigError("Image folder must be a directory", folder=image_folder)
        if self._multiplex_rounds < 1:
            raise ConfigError(
                "Number of multiplex rounds must be >= 1",
                rounds=self._multiplex_rounds,
            )
        common_marker = (self._common_marker or "").lower().strip()
        if not common_marker:
            raise ConfigError("Common marker must not be empty")

        inlier_ratio = DEFAULT_MINIMAL_INLIER_RATIO
        steps = DEFAULT_STEPS_PER_SCALE_OCTAVE
        if self._fine_tune:
            if self._minimal_inlier_ratio is not None:
                inlier_ratio = float(self._minimal_inlier_ratio)
            if self._steps_per_scale_octave is not None:
                steps = int(self._steps_per_scale_octave)
        elif (
            self._minimal_inlier_ratio is not None
            or self._steps_per_scale_octave is not None
        ):
            log.info(
                "Fine-tuning is off; using default SIFT parameters "
                f"(minimal inlier ratio {inlier_ratio}, steps per octave {steps})"
            )
        if not 0 <= inlier_ratio <= 1:
            raise ConfigError(
                "Minimal inlier ratio must be within [0, 1]", ratio=inlier_ratio
            )
        if steps < 1:
            raise ConfigError("Steps per scale octave must be >= 1", steps=steps)

        save_folder = self._save_folder
        save_folder = image_folder if save_folder is None else pathlib.Path(save_folder)

        return RegistrationConfig(
            image_folder=image_folder,
            common_marker=common_marker,
            multiplex_rounds=int(self._multiplex_rounds),
            layer_keyword=normalize(self._layer_keyword),
            save_folder=save_folder,
            fine_tune=bool(self._fine_tune),
            minimal_inlier_ratio=inlier_ratio,
            steps_per_scale_octave=steps,
            qc_plots=bool(self._qc_plots),
        )


@dataclasses.dataclass
class ImageRound:
    """Channel files of one imaging round, common marker excluded."""

    index: int
    channel_files: List[pathlib.Path]
    reference_file: Optional[pathlib.Path] = None


@dataclasses.dataclass(frozen=True, eq=False)
class LandmarkPair:
    """Matched point sets (xy, pixels) between the reference and a target."""

    reference_points: np.ndarray
    target_points: np.ndarray
    reference_label: str = ""
    target_label: str = ""

    def __post_init__(self):
        for name in ("reference_points", "target_points"):
            points = np.array(getattr(self, name), dtype="float64").reshape(-1, 2)
            points.setflags(write=False)
            object.__setattr__(self, name, points)

    def __len__(self):
        return len(self.reference_points)

    def is_empty(self) -> bool:
        return len(self.reference_points) == 0 or len(self.target_points) == 0

    def with_labels(self, reference_label: str, target_label: str) -> "LandmarkPair":
        return dataclasses.replace(
            self, reference_label=reference_label, target_label=target_label
        )


@dataclasses.dataclass
class MatchResult:
    """Outcome of the correspondence cascade; `pair is None` means NotFound."""

    pair: Optional[LandmarkPair] = None
    strategy: Optional[str] = None
    attempts: List[Tuple[str, Optional[int]]] = dataclasses.field(
        default_factory=list
    )

    @property
    def found(self) -> bool:
        return self.pair is not None

    @property
    def strategies_attempted(self) -> List[str]:
        return list(dict.fromkeys(name for name, _ in self.attempts))


@dataclasses.dataclass
class RegistrationResult:
    """Result of a successful registration run."""

    aligned_stack_path: pathlib.Path
    landmark_export_path: pathlib.Path
    qc_stack_path: pathlib.Path
    n_slices: int = 0
    slice_labels: List[str] = dataclasses.field(default_factory=list)
