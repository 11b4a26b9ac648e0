"""
Blending of seam-masked warped images into the final RGBA canvas.
"""

import logging

import numpy as np
from scipy.ndimage import distance_transform_edt, gaussian_filter, map_coordinates

from .config import BlendMode
from .errors import CompositionError
from .seam import place_on_canvas

logger = logging.getLogger(__name__)


class Blender:
    """
    Base class: subclasses accumulate images into a float canvas.

    ``blend`` returns an RGBA uint8 canvas cropped to the covered area, with
    alpha 255 on covered pixels and 0 elsewhere.
    """

    def blend(self, warped, seams, roi):
        """
        Args:
            warped: list of WarpedImage
            seams: SeamResult over the canvas
            roi: canvas rectangle (x, y, width, height)

        Returns:
            RGBA uint8 panorama
        """
        covered = seams.labels >= 0
        if not np.any(covered):
            raise CompositionError("Nothing to blend: canvas has no coverage")

        result = self._compose(warped, seams, roi)
        return self._finish(result, covered)

    def _compose(self, warped, seams, roi):
        raise NotImplementedError

    def _finish(self, result, covered):
        if not np.all(np.isfinite(result[covered])):
            raise CompositionError("Blending produced non-finite pixels")

        h, w = covered.shape
        rgba = np.zeros((h, w, 4), dtype=np.uint8)
        rgba[..., :3] = np.clip(np.round(result), 0, 255).astype(np.uint8)
        rgba[..., :3][~covered] = 0
        rgba[..., 3] = np.where(covered, 255, 0).astype(np.uint8)
        return self._crop_black_borders(rgba)

    def _crop_black_borders(self, image):
        """
        Crop the canvas to the bounding box of its covered (alpha > 0) pixels.

        Args:
            image: RGBA image

        Returns:
            Cropped image
        """
        mask = image[..., 3] > 0
        if not np.any(mask):
            return image

        # Find bounding box
        rows = np.any(mask, axis=1)
        cols = np.any(mask, axis=0)
        y_min, y_max = np.where(rows)[0][[0, -1]]
        x_min, x_max = np.where(cols)[0][[0, -1]]

        return np.ascontiguousarray(image[y_min:y_max + 1, x_min:x_max + 1])


class NoBlender(Blender):
    """Hard copy: every pixel comes from its seam owner."""

    def _compose(self, warped, seams, roi):
        h, w = seams.labels.shape
        result = np.zeros((h, w, 3), dtype=np.float32)
        for wi, mask in zip(warped, seams.masks):
            image = place_on_canvas(wi.image, wi.corner, roi)
            result[mask] = image[mask]
        return result


class FeatherBlender(Blender):
    """
    Weighted blending with Gaussian-smoothed seam masks.

    Each image's weight is its ownership mask smoothed over ``sigma`` pixels
    and restricted to where the image actually has pixels, so transitions
    are soft around seams but never pull in empty areas.
    """

    def __init__(self, sigma=8.0):
        """
        Args:
            sigma: Standard deviation of the Gaussian smoothing the seam masks
        """
        self.sigma = sigma

    def _compose(self, warped, seams, roi):
        h, w = seams.labels.shape
        accum = np.zeros((h, w, 3), dtype=np.float64)
        weight_sum = np.zeros((h, w), dtype=np.float64)
        for wi, mask in zip(warped, seams.masks):
            valid = place_on_canvas(wi.mask, wi.corner, roi, fill=False)
            weight = self._gaussian_smooth(mask.astype(np.float32), self.sigma) * valid
            image = place_on_canvas(wi.image, wi.corner, roi)
            accum += image * weight[..., np.newaxis]
            weight_sum += weight

        return accum / np.maximum(weight_sum, 1e-6)[..., np.newaxis]

    def _gaussian_smooth(self, image, sigma=1.0):
        """
        Apply Gaussian smoothing to image.

        Args:
            image: Input image
            sigma: Standard deviation of Gaussian kernel

        Returns:
            Smoothed image
        """
        if sigma <= 0:
            return image
        return gaussian_filter(image, sigma=sigma, mode='nearest')


class MultiBandBlender(Blender):
    """
    Multi-band (Laplacian pyramid) blending.

    Low frequencies are mixed over wide transitions and high frequencies over
    narrow ones, which hides exposure differences without ghosting detail.
    """

    def __init__(self, num_bands=5):
        self.num_bands = num_bands

    def _effective_bands(self, shape):
        # Every level must keep at least two pixels along each axis
        max_bands = int(np.floor(np.log2(max(min(shape), 1)))) - 1
        return max(0, min(self.num_bands, max_bands))

    def _compose(self, warped, seams, roi):
        shape = seams.labels.shape
        bands = self._effective_bands(shape)
        if bands < self.num_bands:
            logger.debug("Multi-band blending reduced to %d bands for %dx%d canvas",
                         bands, shape[1], shape[0])

        accum = None
        weight_sums = None
        for wi, mask in zip(warped, seams.masks):
            if not np.any(mask):
                continue
            image = _fill_uncovered(place_on_canvas(wi.image, wi.corner, roi),
                                    place_on_canvas(wi.mask, wi.corner, roi, fill=False))
            laplacian = laplacian_pyramid(image, bands)
            weights = gaussian_pyramid(mask.astype(np.float32), bands)

            if accum is None:
                accum = [np.zeros(level.shape, dtype=np.float64) for level in laplacian]
                weight_sums = [np.zeros(level.shape, dtype=np.float64) for level in weights]
            for level in range(bands + 1):
                accum[level] += laplacian[level] * weights[level][..., np.newaxis]
                weight_sums[level] += weights[level]

        if accum is None:
            raise CompositionError("Nothing to blend: no image owns any pixel")

        blended = []
        for acc, ws in zip(accum, weight_sums):
            # Undefined pixels would leak black into the covered area on collapse
            defined = ws > 1e-5
            level = acc / np.where(defined, ws, 1.0)[..., np.newaxis]
            blended.append(_fill_uncovered(level, defined))
        return collapse_pyramid(blended)


def _fill_uncovered(image, mask):
    """Extend an image past its coverage with the nearest covered pixel."""
    if np.all(mask) or not np.any(mask):
        return image
    _, (iy, ix) = distance_transform_edt(~mask, return_indices=True)
    return image[iy, ix]


def _downsample(image):
    sigma = (1.0, 1.0, 0.0) if image.ndim == 3 else 1.0
    return gaussian_filter(image, sigma=sigma, mode='nearest')[::2, ::2]


def _upsample(image, shape):
    """Bilinear upsampling to an exact (h, w); level pixel k sits at 2k."""
    h, w = shape[:2]
    yy, xx = np.meshgrid(np.arange(h) / 2.0, np.arange(w) / 2.0, indexing='ij')
    if image.ndim == 2:
        return map_coordinates(image, [yy, xx], order=1, mode='nearest')
    return np.stack([map_coordinates(image[..., c], [yy, xx], order=1, mode='nearest')
                     for c in range(image.shape[2])], axis=-1)


def gaussian_pyramid(image, levels):
    pyramid = [image]
    for _ in range(levels):
        pyramid.append(_downsample(pyramid[-1]))
    return pyramid


def laplacian_pyramid(image, levels):
    gaussian = gaussian_pyramid(image.astype(np.float32), levels)
    pyramid = []
    for level in range(levels):
        pyramid.append(gaussian[level] - _upsample(gaussian[level + 1], gaussian[level].shape))
    pyramid.append(gaussian[-1])
    return pyramid


def collapse_pyramid(pyramid):
    image = pyramid[-1]
    for level in reversed(pyramid[:-1]):
        image = level + _upsample(image, level.shape)
    return image


def create_blender(mode=BlendMode.MULTIBAND, num_bands=5, sigma=8.0):
    mode = BlendMode(mode)
    if mode is BlendMode.MULTIBAND:
        return MultiBandBlender(num_bands=num_bands)
    if mode is BlendMode.FEATHER:
        return FeatherBlender(sigma=sigma)
    return NoBlender()
