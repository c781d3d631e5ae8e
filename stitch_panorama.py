#!/usr/bin/env python3
"""
Wrapper script for panorama stitching.
Makes it easier to run without installing the package.

Usage:
    python stitch_panorama.py image1.jpg image2.jpg image3.jpg
"""

import sys
from rotpano.cli import main

if __name__ == '__main__':
    sys.exit(main())
