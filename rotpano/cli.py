#!/usr/bin/env python3
"""
Rotation Panorama Stitching CLI
Command-line interface for stitching images taken from a single viewpoint.

Usage:
    rotpano image1.jpg image2.jpg image3.jpg [options]
"""

import argparse
import logging
import os
import sys
import time

from .config import StitchConfig, Timings
from .errors import ConfigError, StitchingError
from .image_io import read_images, write_image
from .stitcher import PanoramaStitcher


def print_banner():
    """Print ASCII art banner."""
    banner = r"""
 ____       _
|  _ \ ___ | |_ _ __   __ _ _ __   ___
| |_) / _ \| __| '_ \ / _` | '_ \ / _ \
|  _ < (_) | |_| |_) | (_| | | | | (_) |
|_| \_\___/ \__| .__/ \__,_|_| |_|\___/
               |_|
Rotation-model panorama stitching
    """
    print(banner)


def build_parser():
    parser = argparse.ArgumentParser(
        description='Stitch images taken from one viewpoint into a panorama'
    )

    parser.add_argument(
        'images',
        nargs='+',
        help='Input images (any order)'
    )

    parser.add_argument(
        '-o', '--output',
        default='result.jpg',
        help='Output panorama image path (default: result.jpg)'
    )

    parser.add_argument('--features', choices=['sift', 'harris'], default='sift',
                        help='Feature detector (default: sift)')
    parser.add_argument('--matcher', choices=['kdtree', 'brute'], default='kdtree',
                        help='Descriptor matcher (default: kdtree)')
    parser.add_argument('--match-conf', type=float, default=0.3,
                        help='Ratio-test confidence, higher is stricter (default: 0.3)')
    parser.add_argument('--range-width', type=int, default=-1,
                        help='Only match images at most this many positions apart (default: all pairs)')
    parser.add_argument('--ransac-threshold', type=float, default=3.0,
                        help='RANSAC reprojection threshold in pixels (default: 3.0)')
    parser.add_argument('--conf-thresh', type=float, default=1.0,
                        help='Threshold for two images being from the same panorama (default: 1.0)')
    parser.add_argument('--adjuster', choices=['reproj', 'ray'], default='reproj',
                        help='Bundle adjustment cost function (default: reproj)')
    parser.add_argument('--wave-correct', choices=['horiz', 'vert', 'no'], default='horiz',
                        help='Wave effect correction (default: horiz)')
    parser.add_argument('--warp', choices=['spherical', 'cylindrical'], default='spherical',
                        help='Warp surface type (default: spherical)')
    parser.add_argument('--expos-comp', choices=['gain', 'no'], default='gain',
                        help='Exposure compensation method (default: gain)')
    parser.add_argument('--seam', choices=['gc_color', 'gc_colorgrad', 'voronoi', 'no'],
                        default='gc_color', help='Seam estimation method (default: gc_color)')
    parser.add_argument('--blend', choices=['multiband', 'feather', 'no'], default='multiband',
                        help='Blending method (default: multiband)')
    parser.add_argument('--blend-strength', type=float, default=5.0,
                        help='Blending strength from [0,100] range (default: 5)')
    parser.add_argument('--bands', type=int, default=None,
                        help='Number of multi-band blending levels (default: from blend strength)')
    parser.add_argument('--work-megapix', type=float, default=0.6,
                        help='Resolution for image registration step (default: 0.6 Mpx)')
    parser.add_argument('--seam-megapix', type=float, default=0.1,
                        help='Resolution for seam estimation step (default: 0.1 Mpx)')
    parser.add_argument('--compose-megapix', type=float, default=-1,
                        help='Resolution for compositing step, -1 for original (default: -1)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Worker threads for feature extraction and matching (default: 1)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Give up after this many seconds (checked between stages)')
    parser.add_argument('--seed', type=int, default=0,
                        help='Random seed for RANSAC (default: 0)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Show per-stage log messages')
    return parser


def config_from_args(args):
    return StitchConfig(
        features=args.features,
        matcher=args.matcher,
        match_conf=args.match_conf,
        range_width=args.range_width,
        ransac_reproj_threshold=args.ransac_threshold,
        conf_thresh=args.conf_thresh,
        adjuster=args.adjuster,
        wave_correct=None if args.wave_correct == 'no' else args.wave_correct,
        warp=args.warp,
        expos_comp=args.expos_comp,
        seam=args.seam,
        blend=args.blend,
        blend_strength=args.blend_strength,
        num_bands=args.bands,
        work_megapix=args.work_megapix,
        seam_megapix=args.seam_megapix,
        compose_megapix=args.compose_megapix,
        num_workers=args.workers,
        seed=args.seed,
    )


def print_report(report):
    print(f"\n{report.summary()}")


def main(argv=None):
    """Main function for CLI."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    print_banner()

    if len(args.images) < 2:
        print("Error: Need at least 2 images to stitch")
        return 1

    try:
        config = config_from_args(args)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    output_dir = os.path.dirname(args.output)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir)

    print(f"Input images: {len(args.images)}")

    print("\nReading images...")
    images = read_images(args.images)
    for i, img in enumerate(images):
        if img is None:
            print(f"  Image {i + 1}: could not be read ({args.images[i]})")
        else:
            print(f"  Image {i + 1}: {img.shape}")

    print("\nStitching...")
    stitcher = PanoramaStitcher(config)
    timings = Timings()
    deadline = time.monotonic() + args.timeout if args.timeout is not None else None

    try:
        panorama, report = stitcher.stitch(images, timings=timings, deadline=deadline)
    except StitchingError as e:
        print(f"\nError during stitching: {e}")
        if e.report is not None:
            print_report(e.report)
        return 1

    print("\nSaving panorama...")
    write_image(args.output, panorama.image)

    print(f"\n{timings.report()}")
    print_report(report)
    print("\nSuccess!")
    print(f"  Panorama saved to: {args.output}")
    print(f"  Final size: {panorama.image.shape}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
