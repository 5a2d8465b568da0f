"""Append-only store of landmark point sets, one pair per round beyond the first."""

import csv
import logging
import pathlib
from typing import List, Tuple

import numpy as np

from .errors import LandmarkMissingError
from .models import LandmarkPair

log = logging.getLogger(__name__)


class LandmarkStore:
    """
    Ordered labelled point sets. Each appended pair occupies two slots:
    reference points at `2k`, target points at `2k + 1`. Round r > 1 reads
    slots `2 * (r - 2)` and `2 * (r - 2) + 1`.
    """

    def __init__(self):
        self._entries: List[Tuple[str, np.ndarray]] = []

    def reset(self):
        self._entries.clear()

    def count(self) -> int:
        return len(self._entries)

    def __len__(self):
        return self.count()

    def append(self, pair: LandmarkPair) -> int:
        if pair.is_empty():
            raise ValueError("Cannot store an empty landmark pair")
        slot = len(self._entries)
        self._entries.append((pair.reference_label, pair.reference_points))
        self._entries.append((pair.target_label, pair.target_points))
        log.debug(
            f"Stored {len(pair)} landmarks as {pair.reference_label!r} / "
            f"{pair.target_label!r} at slots {slot}, {slot + 1}"
        )
        return slot

    def get(self, round_index: int) -> LandmarkPair:
        if round_index < 2:
            raise LandmarkMissingError(
                "Round 1 is the reference frame and has no landmark pair",
                round=round_index,
            )
        required = 2 * (round_index - 1)
        if self.count() < required:
            raise LandmarkMissingError(
                "Landmark correspondences missing",
                round=round_index,
                stored=self.count(),
                required=required,
            )
        slot = 2 * (round_index - 2)
        (ref_label, ref_points), (target_label, target_points) = self._entries[
            slot : slot + 2
        ]
        return LandmarkPair(ref_points, target_points, ref_label, target_label)

    def labels(self) -> List[str]:
        return [label for label, _ in self._entries]

    def export_csv(self, path) -> pathlib.Path:
        """Writes every point set in append order as `label,slot,point_index,x,y`."""
        path = pathlib.Path(path)
        with open(path, "w", newline="", encoding="utf-8") as outfile:
            writer = csv.writer(outfile)
            writer.writerow(["label", "slot", "point_index", "x", "y"])
            for slot, (label, points) in enumerate(self._entries):
                for idx, (x, y) in enumerate(points):
                    writer.writerow([label, slot, idx, f"{x:.3f}", f"{y:.3f}"])
        log.info(f"Exported {self.count()} landmark sets to {path}")
        return path

    @classmethod
    def read_csv(cls, path) -> "LandmarkStore":
        """Loads a store previously written by `export_csv`."""
        store = cls()
        grouped = {}
        with open(path, mode="r", encoding="utf-8") as infile:
            for row in csv.DictReader(infile):
                key = (int(row["slot"]), row["label"])
                grouped.setdefault(key, []).append((float(row["x"]), float(row["y"])))
        for (_, label), points in sorted(grouped.items()):
            store._entries.append((label, np.array(points, dtype="float64")))
        return store
