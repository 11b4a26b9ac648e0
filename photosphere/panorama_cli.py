#!/usr/bin/env python3
"""
Photosphere CLI
Command-line interface for panorama stitching.

Usage:
    photosphere-stitch image1.jpg image2.jpg image3.jpg [options]
    python -m photosphere.panorama_cli image1.jpg image2.jpg [options]
"""

import argparse
import json
import logging
import os
import sys
import time

from .config import BlendMode, ExposureMode, Projection, SeamMode, StitchConfig, \
    WaveCorrectAxis
from .image_io import decode_for_stitching, read_images, write_image
from .stitcher import PanoramaStitcher


def print_banner():
    """Print ASCII art banner."""
    banner = r"""
 ____  _           _                  _
|  _ \| |__   ___ | |_ ___  ___ _ __ | |__   ___ _ __ ___
| |_) | '_ \ / _ \| __/ _ \/ __| '_ \| '_ \ / _ \ '__/ _ \
|  __/| | | | (_) | || (_) \__ \ |_) | | | |  __/ | |  __/
|_|   |_| |_|\___/ \__\___/|___/ .__/|_| |_|\___|_|  \___|
                               |_|
Spherical panorama stitching (No OpenCV)
    """
    print(banner)


def build_parser():
    parser = argparse.ArgumentParser(
        description='Stitch overlapping photos into a panorama'
    )

    parser.add_argument(
        'images',
        nargs='+',
        help='Input images (any order)'
    )

    parser.add_argument(
        '-o', '--output',
        default='panorama.png',
        help='Output panorama image path (default: panorama.png)'
    )

    parser.add_argument(
        '--config',
        help='JSON file with StitchConfig fields; command-line options override it'
    )

    parser.add_argument(
        '--projection',
        choices=[p.value for p in Projection],
        help='Projection surface (default: spherical)'
    )

    parser.add_argument(
        '--no-wave',
        action='store_true',
        help='Disable wave correction'
    )

    parser.add_argument(
        '--wave-axis',
        choices=[a.value for a in WaveCorrectAxis],
        help='Wave correction axis (default: horizontal)'
    )

    parser.add_argument(
        '--seam',
        choices=[s.value for s in SeamMode],
        help='Seam finder (default: graphcut)'
    )

    parser.add_argument(
        '--blend',
        choices=[b.value for b in BlendMode],
        help='Blender (default: multiband)'
    )

    parser.add_argument(
        '--bands',
        type=int,
        help='Number of multi-band blending levels (default: 5)'
    )

    parser.add_argument(
        '--exposure',
        choices=[e.value for e in ExposureMode],
        help='Exposure compensation (default: gain)'
    )

    parser.add_argument(
        '--target-height',
        type=int,
        help='Working height images are downscaled to (default: 1000)'
    )

    parser.add_argument(
        '--max-dimension',
        type=int,
        help='Decode photos by power-of-two subsampling to at most this size'
    )

    parser.add_argument(
        '--multi-group',
        action='store_true',
        help='Write one panorama per group of overlapping images'
    )

    parser.add_argument(
        '--seed',
        type=int,
        help='RANSAC seed (default: 0)'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='count',
        default=0,
        help='Log pipeline progress (-vv for debug detail)'
    )

    return parser


def build_config(args):
    """Merge the optional JSON config file with command-line overrides."""
    values = {}
    if args.config:
        with open(args.config) as f:
            values = json.load(f)

    overrides = {
        'projection': args.projection,
        'wave_correct_axis': args.wave_axis,
        'seam': args.seam,
        'blend': args.blend,
        'blend_bands': args.bands,
        'exposure': args.exposure,
        'downscale_target_height': args.target_height,
        'seed': args.seed,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_wave:
        values['wave_correction'] = False
    if args.multi_group:
        values['multi_group'] = True

    return StitchConfig.from_dict(values)


def output_paths(output, count):
    """Output path for each canvas: image.png, image_1.png, ..."""
    root, ext = os.path.splitext(output)
    return [output] + [f"{root}_{k}{ext}" for k in range(1, count)]


def main(argv=None):
    """Main function for CLI."""
    args = build_parser().parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    # Print banner
    print_banner()

    # Check input files
    if len(args.images) < 2:
        print("Error: Need at least 2 images to stitch")
        return 1

    for img_path in args.images:
        if not os.path.exists(img_path):
            print(f"Error: Image not found: {img_path}")
            return 1

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        print(f"Error: Invalid configuration: {e}")
        return 1

    # Create output directory
    output_dir = os.path.dirname(args.output)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir)

    print(f"Input images: {len(args.images)}")

    # Read images
    print("\nReading images...")
    try:
        if args.max_dimension:
            images = [decode_for_stitching(path, args.max_dimension)[0]
                      for path in args.images]
        else:
            images = read_images(args.images)
    except OSError as e:
        print(f"Error reading images: {e}")
        return 1
    for i, img in enumerate(images):
        print(f"  Image {i+1}: {img.shape}")

    # Stitch images
    print("\nStitching...")
    start_time = time.time()
    result = PanoramaStitcher(config).stitch(images)
    elapsed_time = time.time() - start_time

    print(f"\nStatus: {result.status.message} ({int(result.status)})")
    if not result.ok:
        print(f"  Failed stage: {result.failed_stage.value}")
        print(f"  Error: {result.error}")
        if result.groups:
            print(f"  Image groups: {result.groups}")
        return 1

    if result.dropped:
        print(f"  Dropped images: {[i + 1 for i in result.dropped]}")

    # Save result
    print("\nSaving panorama...")
    try:
        for path, canvas in zip(output_paths(args.output, len(result.canvases)),
                                result.canvases):
            write_image(path, canvas)
            print(f"  Panorama saved to: {path}")
            print(f"  Final size: {canvas.shape[1]}x{canvas.shape[0]}")
    except (OSError, ValueError) as e:
        print(f"Error writing panorama: {e}")
        return 1

    print(f"  Processing time: {elapsed_time:.2f} seconds")
    return 0


if __name__ == '__main__':
    sys.exit(main())
