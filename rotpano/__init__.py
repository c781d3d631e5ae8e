"""
Panorama stitching for images taken from a single, rotating viewpoint.

This package provides a complete rotation-model stitching pipeline
using NumPy, SciPy, and Pillow.

Main components:
- Features: SIFT (or Harris corner) keypoints and descriptors
- Matching: k-d tree matcher with ratio test and RANSAC homographies
- Registration: image graph, camera estimation and bundle adjustment
- Composition: spherical/cylindrical warping, gain compensation,
  graph-cut seams and multi-band blending

Example usage:
    from rotpano.image_io import read_images, write_image
    from rotpano.stitcher import PanoramaStitcher

    images = read_images(['img1.jpg', 'img2.jpg', 'img3.jpg'])
    panorama, report = PanoramaStitcher().stitch(images)
    write_image('result.jpg', panorama.image)
"""

__version__ = '1.0.0'

from .config import StitchConfig, Timings
from .data_structures import (
    CameraParams,
    FeatureSet,
    ImageGraph,
    MatchSet,
    Panorama,
    SeamMasks,
    StitchReport,
    WarpedImage,
)
from .errors import (
    CompositionError,
    ConfigError,
    DeadlineExceeded,
    InputError,
    OptimizationError,
    StitchingError,
    TopologyError,
)
from .image_io import read_image, read_images, write_image
from .stitcher import PanoramaStitcher

__all__ = [
    'StitchConfig',
    'Timings',
    'CameraParams',
    'FeatureSet',
    'ImageGraph',
    'MatchSet',
    'Panorama',
    'SeamMasks',
    'StitchReport',
    'WarpedImage',
    'StitchingError',
    'InputError',
    'TopologyError',
    'OptimizationError',
    'CompositionError',
    'DeadlineExceeded',
    'ConfigError',
    'PanoramaStitcher',
    'read_image',
    'read_images',
    'write_image',
]
