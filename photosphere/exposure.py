"""
Exposure compensation between overlapping warped images.

Gains are the least-squares solution of

    sum_ij N_ij * ((g_i I_ij - g_j I_ji)^2 / sigma_n^2 + (1 - g_i)^2 / sigma_g^2)

where N_ij is the overlap size of units i and j and I_ij the mean intensity
of unit i over that overlap. A unit is a whole image, one channel of an
image, or one block of an image depending on the mode.
"""

import logging
from dataclasses import replace

import numpy as np
from scipy.ndimage import convolve1d, map_coordinates
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import spsolve

from .config import ExposureMode

logger = logging.getLogger(__name__)

SIGMA_N = 10.0
SIGMA_G = 0.1


class _Unit:
    """A region of one warped image that receives its own gain."""

    def __init__(self, image, mask, corner):
        self.image = image
        self.mask = mask
        self.corner = corner

    @property
    def bbox(self):
        x, y = self.corner
        h, w = self.mask.shape
        return x, y, x + w, y + h


def _overlap_stats(units, channel=None):
    """
    Pairwise overlap sizes and mean intensities.

    Returns:
        dict {(i, j): (N_ij, I_ij, I_ji)} for i <= j with a non-empty overlap
    """
    boxes = np.array([u.bbox for u in units])
    stats = {}
    for i, a in enumerate(units):
        x0 = np.maximum(boxes[i, 0], boxes[i:, 0])
        y0 = np.maximum(boxes[i, 1], boxes[i:, 1])
        x1 = np.minimum(boxes[i, 2], boxes[i:, 2])
        y1 = np.minimum(boxes[i, 3], boxes[i:, 3])
        candidates = np.nonzero((x1 > x0) & (y1 > y0))[0] + i

        for j in candidates:
            b = units[j]
            ox0, oy0 = max(a.bbox[0], b.bbox[0]), max(a.bbox[1], b.bbox[1])
            ox1, oy1 = min(a.bbox[2], b.bbox[2]), min(a.bbox[3], b.bbox[3])
            sa = (slice(oy0 - a.corner[1], oy1 - a.corner[1]),
                  slice(ox0 - a.corner[0], ox1 - a.corner[0]))
            sb = (slice(oy0 - b.corner[1], oy1 - b.corner[1]),
                  slice(ox0 - b.corner[0], ox1 - b.corner[0]))
            overlap = a.mask[sa] & b.mask[sb]
            count = int(np.count_nonzero(overlap))
            if count == 0:
                continue
            stats[(i, int(j))] = (count, _intensity(a.image[sa], overlap, channel),
                                  _intensity(b.image[sb], overlap, channel))
    return stats


def _intensity(image, mask, channel):
    pixels = image[mask]
    if channel is None:
        return float(np.mean(pixels))
    return float(np.mean(pixels[:, channel]))


def _solve(num_units, stats):
    alpha = 1.0 / (SIGMA_N * SIGMA_N)
    beta = 1.0 / (SIGMA_G * SIGMA_G)

    rows, cols, data = [], [], []
    b = np.zeros(num_units)
    for (i, j), (count, I_ij, I_ji) in stats.items():
        if i == j:
            rows.append(i)
            cols.append(i)
            data.append(beta * count)
            b[i] += beta * count
            continue
        for p, q, I_pq, I_qp in ((i, j, I_ij, I_ji), (j, i, I_ji, I_ij)):
            b[p] += beta * count
            rows += [p, p]
            cols += [p, q]
            data += [beta * count + 2 * alpha * I_pq * I_pq * count,
                     -2 * alpha * I_pq * I_qp * count]

    # Units without any coverage keep unit gain
    for i in range(num_units):
        if (i, i) not in stats:
            rows.append(i)
            cols.append(i)
            data.append(1.0)
            b[i] += 1.0

    A = coo_matrix((data, (rows, cols)), shape=(num_units, num_units)).tocsr()
    return np.atleast_1d(spsolve(A, b))


class ExposureCompensator:
    """
    Gain-based exposure compensation.

    Args:
        mode: ExposureMode (none, gain, channels, blocks)
        gain_range: (low, high) bounds every gain is clamped to
        block_size: block edge in pixels for the blocks mode
    """

    def __init__(self, mode=ExposureMode.GAIN, gain_range=(0.5, 2.0), block_size=32):
        self.mode = ExposureMode(mode)
        self.gain_range = gain_range
        self.block_size = block_size
        self.gains = None

    def feed(self, warped):
        """
        Estimate gains for a list of WarpedImage.

        Returns:
            list with one entry per image: a float (gain), a (3,) array
            (channels) or an (h, w) gain map (blocks).
        """
        if self.mode is ExposureMode.NONE:
            self.gains = [1.0] * len(warped)
        elif self.mode is ExposureMode.GAIN:
            units = [_Unit(w.image, w.mask, w.corner) for w in warped]
            gains = self._clamp(_solve(len(units), _overlap_stats(units)))
            self.gains = [float(g) for g in gains]
        elif self.mode is ExposureMode.CHANNELS:
            units = [_Unit(w.image, w.mask, w.corner) for w in warped]
            per_channel = [_solve(len(units), _overlap_stats(units, channel=c))
                           for c in range(3)]
            gains = self._clamp(np.column_stack(per_channel))
            self.gains = list(gains)
        else:
            self.gains = self._feed_blocks(warped)

        logger.info("Exposure compensation (%s) over %d images", self.mode.value, len(warped))
        return self.gains

    def _clamp(self, gains):
        low, high = self.gain_range
        if not np.all(np.isfinite(gains)):
            logger.warning("Non-finite exposure gains replaced by 1.0")
            gains = np.where(np.isfinite(gains), gains, 1.0)
        clamped = np.clip(gains, low, high)
        if np.any(clamped != gains):
            logger.warning("Exposure gains clamped to [%.2f, %.2f]", low, high)
        return clamped

    def _feed_blocks(self, warped):
        size = self.block_size
        units, layout = [], []
        for w in warped:
            rows = (w.height + size - 1) // size
            cols = (w.width + size - 1) // size
            layout.append((len(units), rows, cols))
            for by in range(rows):
                for bx in range(cols):
                    sl = (slice(by * size, (by + 1) * size), slice(bx * size, (bx + 1) * size))
                    units.append(_Unit(w.image[sl], w.mask[sl],
                                       (w.corner[0] + bx * size, w.corner[1] + by * size)))

        gains = self._clamp(_solve(len(units), _overlap_stats(units)))

        kernel = np.array([0.25, 0.5, 0.25])
        maps = []
        for w, (start, rows, cols) in zip(warped, layout):
            grid = gains[start:start + rows * cols].reshape(rows, cols)
            for _ in range(2):
                grid = convolve1d(grid, kernel, axis=0, mode='nearest')
                grid = convolve1d(grid, kernel, axis=1, mode='nearest')
            maps.append(_upsample(grid, (w.height, w.width), size))
        return maps

    def apply(self, warped):
        """Return compensated copies of the warped images."""
        if self.gains is None:
            self.feed(warped)
        result = []
        for w, gain in zip(warped, self.gains):
            gain = np.asarray(gain, dtype=np.float32)
            if gain.ndim == 2:
                gain = gain[..., np.newaxis]
            image = np.clip(w.image * gain, 0.0, 255.0).astype(np.float32)
            image[~w.mask] = 0.0
            result.append(replace(w, image=image))
        return result


def _upsample(grid, shape, block_size):
    """Bilinear upsampling of a per-block grid to pixel resolution."""
    h, w = shape
    ys = (np.arange(h) + 0.5) / block_size - 0.5
    xs = (np.arange(w) + 0.5) / block_size - 0.5
    yy, xx = np.meshgrid(ys, xs, indexing='ij')
    return map_coordinates(grid, [yy, xx], order=1, mode='nearest').astype(np.float32)
