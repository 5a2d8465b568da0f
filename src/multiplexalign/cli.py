"""Command-line interface for multiplexalign."""

import argparse
import logging
import os
import sys
import time

from . import __version__
from .errors import RegistrationError
from .models import (
    DEFAULT_MINIMAL_INLIER_RATIO,
    DEFAULT_STEPS_PER_SCALE_OCTAVE,
    ConfigBuilder,
)
from .pipeline import RegistrationPipeline

log = logging.getLogger(__name__)


def configure_matplotlib_backend():
    """QC figures are only ever written to disk."""
    import matplotlib

    matplotlib.use("Agg")
    log.debug(f"Using matplotlib backend: {matplotlib.get_backend()}")


def create_parser() -> argparse.ArgumentParser:
    """Creates the argument parser for the CLI."""
    os.environ["COLUMNS"] = "80"
    parser = argparse.ArgumentParser(
        description=(
            "Register multiplexed imaging rounds onto round 1 using a common "
            "marker present in every round."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--image-folder",
        required=True,
        metavar="DIR",
        help="Folder with the TIFF images of all rounds.",
    )
    parser.add_argument(
        "--common-marker",
        default="Hu",
        metavar="NAME",
        help="Marker imaged in every round, matched case-insensitively in file names.",
    )
    parser.add_argument(
        "--rounds",
        type=int,
        default=2,
        metavar="N",
        help="Number of multiplexing rounds.",
    )
    parser.add_argument(
        "--layer-keyword",
        default="Layer",
        metavar="WORD",
        help="Keyword followed by the round number in file names, e.g. Layer1.",
    )
    parser.add_argument(
        "--save-folder",
        metavar="DIR",
        help="Where the Results folder is created. Defaults to the image folder.",
    )
    parser.add_argument(
        "--fine-tune",
        action="store_true",
        help="Use the SIFT parameters below instead of the defaults.",
    )
    parser.add_argument(
        "--minimal-inlier-ratio",
        type=float,
        default=DEFAULT_MINIMAL_INLIER_RATIO,
        metavar="RATIO",
        help="SIFT minimal inlier ratio (with --fine-tune).",
    )
    parser.add_argument(
        "--steps-per-scale-octave",
        type=int,
        default=DEFAULT_STEPS_PER_SCALE_OCTAVE,
        metavar="STEPS",
        help="Initial SIFT steps per scale octave (with --fine-tune).",
    )
    parser.add_argument(
        "--qc-plots",
        action="store_true",
        help="Save landmark QC figures to Results/qc.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv=None):
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if args.qc_plots:
        configure_matplotlib_backend()

    start_time = time.time()
    try:
        builder = (
            ConfigBuilder()
            .image_folder(args.image_folder)
            .common_marker(args.common_marker)
            .multiplex_rounds(args.rounds)
            .layer_keyword(args.layer_keyword)
            .save_folder(args.save_folder)
            .fine_tune(args.fine_tune)
            .qc_plots(args.qc_plots)
        )
        if args.fine_tune:
            builder.minimal_inlier_ratio(args.minimal_inlier_ratio)
            builder.steps_per_scale_octave(args.steps_per_scale_octave)
        config = builder.build()
        result = RegistrationPipeline().run(config)
    except RegistrationError as e:
        log.error(f"Registration failed: {e}")
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    print("\n--- Registration Summary ---")
    print(f"Aligned stack: {result.aligned_stack_path} ({result.n_slices} channels)")
    print(f"Common-marker stack: {result.qc_stack_path}")
    print(f"Landmarks: {result.landmark_export_path}")
    print(f"\nTotal execution time: {time.time() - start_time:.2f} seconds")
    return 0


if __name__ == "__main__":
    sys.exit(main())
