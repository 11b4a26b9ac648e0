"""
Input normalization: uniform 3-channel uint8 images at a bounded height.
"""

import logging

import numpy as np

from .errors import InsufficientInputError, MalformedImageError
from .image_io import resize_image

logger = logging.getLogger(__name__)

DEFAULT_TARGET_HEIGHT = 1000


def _to_uint8(image):
    if image.dtype == np.uint8:
        return image
    if image.dtype == np.uint16:
        return (image.astype(np.uint32) // 257).astype(np.uint8)
    if np.issubdtype(image.dtype, np.floating):
        if not np.all(np.isfinite(image)):
            raise MalformedImageError("Image contains non-finite values")
        return np.clip(np.round(image * 255.0), 0, 255).astype(np.uint8)
    raise MalformedImageError(f"Unsupported pixel type {image.dtype}")


def normalize_image(image, target_height=DEFAULT_TARGET_HEIGHT):
    """
    Convert one image to a 3-channel uint8 copy no taller than target_height.

    RGBA input has its alpha dropped, grayscale input is replicated across
    the three channels. Taller images are scaled uniformly so that their
    height becomes target_height.

    Args:
        image: numpy array (H x W), (H x W x 1), (H x W x 3) or (H x W x 4)
        target_height: Maximum output height

    Returns:
        New contiguous (H' x W' x 3) uint8 array
    """
    if image is None:
        raise MalformedImageError("Image is missing")

    image = np.asarray(image)
    if image.ndim not in (2, 3) or image.size == 0:
        raise MalformedImageError(f"Invalid image shape {image.shape}")

    channels = 1 if image.ndim == 2 else image.shape[2]
    if channels not in (1, 3, 4):
        raise MalformedImageError(f"Unsupported channel count {channels}")

    image = _to_uint8(image)

    if channels == 4:
        rgb = image[:, :, :3]
    elif channels == 1:
        gray = image if image.ndim == 2 else image[:, :, 0]
        rgb = np.repeat(gray[:, :, np.newaxis], 3, axis=2)
    else:
        rgb = image

    rgb = np.ascontiguousarray(rgb).copy()

    h, w = rgb.shape[:2]
    if h > target_height:
        scale = target_height / float(h)
        new_w = max(1, int(round(w * scale)))
        rgb = resize_image(rgb, width=new_w, height=target_height)
        logger.debug("Downscaled %dx%d -> %dx%d", w, h, new_w, target_height)

    return rgb


def normalize_images(images, target_height=DEFAULT_TARGET_HEIGHT):
    """
    Normalize a list of images, preserving order.

    Raises:
        InsufficientInputError: fewer than two images were supplied
        MalformedImageError: an image is empty or has an unsupported layout
    """
    images = list(images) if images is not None else []
    if len(images) < 2:
        raise InsufficientInputError(
            f"Need at least two images to stitch, got {len(images)}"
        )

    normalized = []
    for i, image in enumerate(images):
        try:
            normalized.append(normalize_image(image, target_height))
        except MalformedImageError as e:
            raise MalformedImageError(f"Image {i}: {e}") from e
    return normalized
