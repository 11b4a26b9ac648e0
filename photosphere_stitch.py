#!/usr/bin/env python3
"""
Wrapper script for panorama stitching.
Makes it easier to run without the -m flag.

Usage:
    python photosphere_stitch.py image1.jpg image2.jpg image3.jpg
"""

import sys

from photosphere.panorama_cli import main

if __name__ == '__main__':
    sys.exit(main())
