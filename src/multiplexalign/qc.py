"""QC figures of the landmark correspondences found for each round."""

import logging
import pathlib
from typing import List

import numpy as np
import skimage.exposure

from .models import LandmarkPair

log = logging.getLogger(__name__)


def get_viz_img(img):
    in_range = np.percentile(img, [0.1, 99.9])
    if in_range[1] <= in_range[0]:
        return np.zeros(np.shape(img), "uint8")
    return skimage.exposure.adjust_gamma(
        skimage.exposure.rescale_intensity(
            np.asarray(img, "float32"), in_range=tuple(in_range), out_range="uint8"
        )
        .round()
        .astype("uint8"),
        gain=1.2,
    )


class QcPlotter:
    def __init__(self, qc_out_dir):
        self.qc_out_dir = pathlib.Path(qc_out_dir)
        self.figures: List = []

    def plot_landmarks(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        pair: LandmarkPair,
        reference_name: str,
        target_name: str,
        strategy: str,
    ):
        import matplotlib.pyplot as plt

        fig, (ax1, ax2) = plt.subplots(1, 2)
        ax1.imshow(get_viz_img(reference), cmap="Greys_r")
        ax2.imshow(get_viz_img(target), cmap="Greys_r")
        for ax, points in ((ax1, pair.reference_points), (ax2, pair.target_points)):
            ax.scatter(*points.T, s=6, c="lime", marker="+", linewidths=0.8)
            ax.set_axis_off()

        name1, name2 = self._get_truncated_names(reference_name, target_name)
        ax1.set_title(f"Reference: {name1}", fontsize=8)
        ax2.set_title(f"Target: {name2}", fontsize=8)
        fig.suptitle(
            f"{len(pair)} landmarks via {strategy} "
            f"({pair.reference_label} / {pair.target_label})",
            fontsize=10,
        )
        self._set_figure_size(fig, np.shape(reference), 2)
        fig.name = f"qc_landmarks-{pair.reference_label.removesuffix('_ref')}"
        self.figures.append(fig)

    def save_figures(self) -> List[pathlib.Path]:
        paths = []
        if not self.figures:
            return paths
        import matplotlib.pyplot as plt

        self.qc_out_dir.mkdir(parents=True, exist_ok=True)
        for fig in self.figures:
            path = self.qc_out_dir / f"{fig.name}.jpg"
            fig.savefig(path, dpi=144, bbox_inches="tight")
            plt.close(fig)
            paths.append(path)
        self.figures.clear()
        log.info(f"Saved {len(paths)} QC figures to {self.qc_out_dir}")
        return paths

    @staticmethod
    def _get_truncated_names(name1, name2):
        name1 = str(name1)
        name2 = str(name2)
        if len(name1) > 23:
            name1 = name1[:20] + "..."
        if len(name2) > 23:
            name2 = name2[:20] + "..."
        return name1, name2

    @staticmethod
    def _set_figure_size(fig, shape, num_subplots):
        im_h, im_w = shape[:2]
        if im_w < 500:
            im_h *= 500 / im_w
            im_w = 500
        _size_factor = np.divide([im_h, im_w], 2500).max()
        if _size_factor > 1:
            im_h, im_w = np.divide([im_h, im_w], _size_factor)
        fig.set_size_inches(im_w * num_subplots / 144, (im_h + 50) / 144)
        fig.tight_layout(pad=1.5)
