"""
Panorama stitching on NumPy, SciPy and Pillow (no OpenCV).

The pipeline normalizes the input images, detects SIFT features, matches
every pair, groups the images into panoramas, estimates camera rotations and
focal lengths with bundle adjustment, straightens the horizon, and composes
the result with exposure compensation, graph-cut seams and multi-band
blending.

Main components:
- Normalizer: uniform 3-channel images at a bounded height
- SIFT and pairwise matching with RANSAC verification
- Image graph: overlap groups and spanning trees
- Pose estimation: homography initialisation and bundle adjustment
- Wave correction, warping, exposure compensation, seams, blending

Example usage:
    from photosphere import StitchConfig, stitch
    from photosphere.image_io import read_images, write_image

    images = read_images(['img1.jpg', 'img2.jpg', 'img3.jpg'])
    result = stitch(images, StitchConfig(projection='cylindrical'))
    if result.ok:
        write_image('panorama.png', result.canvas)
"""

__version__ = '1.0.0'

from .config import BlendMode, ExposureMode, Projection, SeamMode, StitchConfig, \
    WaveCorrectAxis
from .errors import CameraParamsAdjustError, CancelledError, CompositionError, \
    EstimationError, HomographyEstimationError, InputError, InsufficientInputError, \
    InsufficientOverlapError, MalformedImageError, MatchingError, NeedMoreImagesError, \
    PoseEstimationError, Status, StitchingError
from .image_io import decode_for_stitching, image_from_buffer, read_image, read_images, \
    write_image
from .normalizer import normalize_image, normalize_images
from .stitcher import PanoramaStitcher, StitchResult, StitchState, stitch, stitch_into

__all__ = [
    'StitchConfig',
    'WaveCorrectAxis',
    'Projection',
    'ExposureMode',
    'SeamMode',
    'BlendMode',
    'Status',
    'StitchingError',
    'InputError',
    'InsufficientInputError',
    'MalformedImageError',
    'MatchingError',
    'NeedMoreImagesError',
    'InsufficientOverlapError',
    'EstimationError',
    'HomographyEstimationError',
    'CameraParamsAdjustError',
    'PoseEstimationError',
    'CompositionError',
    'CancelledError',
    'PanoramaStitcher',
    'StitchResult',
    'StitchState',
    'stitch',
    'stitch_into',
    'normalize_image',
    'normalize_images',
    'read_image',
    'read_images',
    'write_image',
    'decode_for_stitching',
    'image_from_buffer',
]
