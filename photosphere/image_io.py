"""
Image I/O utilities using PIL (Pillow).
"""

import logging

import numpy as np
from PIL import Image, ImageOps

from .errors import MalformedImageError

logger = logging.getLogger(__name__)

_MODES = {1: 'L', 3: 'RGB', 4: 'RGBA'}


def read_image(filepath):
    """
    Read image from file, applying its EXIF orientation.

    Args:
        filepath: Path to image file

    Returns:
        Image as numpy array (H x W x C) for color or (H x W) for grayscale
    """
    try:
        with Image.open(filepath) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ('RGB', 'RGBA', 'L'):
                img = img.convert('RGB')
            return np.array(img)
    except OSError as e:
        raise IOError(f"Failed to read image from {filepath}: {e}") from e


def decode_for_stitching(filepath, max_dimension=1600):
    """
    Decode a photo the way the capture app hands it to the stitcher.

    The image is subsampled by the smallest power of two that brings both
    sides under ``max_dimension`` and then rotated according to EXIF.

    Returns:
        (image, sample_size, rotation) where rotation is in degrees
    """
    try:
        with Image.open(filepath) as img:
            width, height = img.size
            if width <= 0 or height <= 0:
                raise IOError(f"Failed to decode {filepath}")

            sample = 1
            while width // sample > max_dimension or height // sample > max_dimension:
                sample *= 2

            orientation = img.getexif().get(0x0112, 1)
            rotation = {3: 180.0, 6: 90.0, 8: 270.0}.get(orientation, 0.0)

            img = ImageOps.exif_transpose(img)
            if sample > 1:
                w, h = img.size
                img = img.resize((max(1, w // sample), max(1, h // sample)),
                                 Image.BILINEAR)
            if img.mode != 'RGBA':
                img = img.convert('RGBA')
            return np.array(img), sample, rotation
    except OSError as e:
        raise IOError(f"Failed to decode {filepath}: {e}") from e


def write_image(filepath, image):
    """
    Write image to file.

    Args:
        filepath: Path to save image
        image: Image as numpy array (grayscale, RGB or RGBA)
    """
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    channels = 1 if image.ndim == 2 else image.shape[2]
    if channels == 1 and image.ndim == 3:
        image = image[:, :, 0]
    if channels not in _MODES:
        raise ValueError(f"Cannot write image with {channels} channels")

    try:
        Image.fromarray(image).save(filepath)
    except OSError as e:
        raise IOError(f"Failed to write image to {filepath}: {e}") from e


def read_images(filepaths):
    """
    Read multiple images.

    Args:
        filepaths: List of image file paths

    Returns:
        List of images as numpy arrays
    """
    images = []

    for filepath in filepaths:
        img = read_image(filepath)
        logger.debug("Read %s: %s", filepath, img.shape)
        images.append(img)

    return images


def image_from_buffer(buffer, width, height, channels):
    """
    Wrap a raw interleaved 8-bit pixel buffer as an image.

    The returned array is a read-only view of ``buffer``; it is only valid
    while the caller keeps the buffer alive. The stitching pipeline copies
    it during normalization and never holds on to the view.
    """
    if width <= 0 or height <= 0:
        raise MalformedImageError(f"Invalid image size {width}x{height}")
    if channels not in _MODES:
        raise MalformedImageError(f"Unsupported channel count {channels}")

    view = np.frombuffer(memoryview(buffer).cast('B'), dtype=np.uint8)
    expected = width * height * channels
    if view.size != expected:
        raise MalformedImageError(
            f"Buffer holds {view.size} bytes, expected {expected} "
            f"for {width}x{height}x{channels}"
        )

    view = view.reshape(height, width, channels)
    if channels == 1:
        view = view[:, :, 0]
    view.flags.writeable = False
    return view


def resize_image(image, scale=1.0, width=None, height=None):
    """
    Resize image with Lanczos resampling.

    Args:
        image: Input uint8 image (grayscale, RGB or RGBA)
        scale: Scale factor (if width and height not specified)
        width: Target width (optional)
        height: Target height (optional)

    Returns:
        Resized image
    """
    if width is not None and height is not None:
        new_size = (width, height)
    else:
        h, w = image.shape[:2]
        new_size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))

    img = Image.fromarray(np.ascontiguousarray(image))
    img_resized = img.resize(new_size, Image.LANCZOS)

    return np.array(img_resized)
