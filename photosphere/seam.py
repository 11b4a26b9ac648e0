"""
Seam finding: decide which image owns each covered canvas pixel.

Overlaps are resolved pairwise. Every pair removes the disputed pixels from
exactly one of its two images, so once all pairs are processed each covered
pixel has exactly one owner.
"""

import logging
from dataclasses import dataclass
from typing import List

import numpy as np
from scipy.ndimage import binary_dilation, distance_transform_edt
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import breadth_first_order, maximum_flow

from .config import SeamMode

logger = logging.getLogger(__name__)

# Capacity of the terminal links; large enough to never be cut
_TERMINAL_CAPACITY = 2 ** 30
# Colour differences are scaled by this before rounding to integer capacities
_COST_SCALE = 4.0
# Path cost outside the overlap for the DP seam
_OUTSIDE_COST = 1e6

_FOUR_NEIGHBOURS = np.array([[0, 1, 0], [1, 1, 1], [0, 1, 0]], dtype=bool)


@dataclass
class SeamResult:
    """
    Pixel ownership over the canvas.

    Attributes:
        labels: (H, W) int32, index into the warped list of the owning image,
            -1 where no image covers the pixel
        masks: one (H, W) bool ownership mask per warped image
    """

    labels: np.ndarray
    masks: List[np.ndarray]


def place_on_canvas(array, corner, roi, fill=0):
    """Embed a warped array into a canvas-sized array."""
    x0, y0, width, height = roi
    shape = (height, width) + array.shape[2:]
    canvas = np.full(shape, fill, dtype=array.dtype)
    ox, oy = corner[0] - x0, corner[1] - y0
    h, w = array.shape[:2]
    canvas[oy:oy + h, ox:ox + w] = array
    return canvas


class SeamFinder:
    """
    Args:
        mode: SeamMode (graphcut, dp, voronoi)
        max_pixels: largest overlap handed to the graph cut; bigger overlaps
            use the DP seam
    """

    def __init__(self, mode=SeamMode.GRAPHCUT, max_pixels=250_000):
        self.mode = SeamMode(mode)
        self.max_pixels = max_pixels

    def find(self, warped, roi):
        """
        Args:
            warped: list of WarpedImage (exposure compensated)
            roi: canvas rectangle (x, y, width, height) on the surface

        Returns:
            SeamResult
        """
        x0, y0, width, height = roi
        masks = [place_on_canvas(w.mask, w.corner, roi, fill=False) for w in warped]
        boxes = []
        for w in warped:
            bx0, by0, bx1, by1 = w.bbox
            boxes.append((bx0 - x0, by0 - y0, bx1 - x0, by1 - y0))

        for i in range(len(warped)):
            for j in range(i + 1, len(warped)):
                ix0, iy0 = max(boxes[i][0], boxes[j][0]), max(boxes[i][1], boxes[j][1])
                ix1, iy1 = min(boxes[i][2], boxes[j][2]), min(boxes[i][3], boxes[j][3])
                if ix1 <= ix0 or iy1 <= iy0:
                    continue
                # One pixel margin so exclusive neighbours of the overlap are visible
                region = (slice(max(iy0 - 1, 0), min(iy1 + 1, height)),
                          slice(max(ix0 - 1, 0), min(ix1 + 1, width)))
                self._resolve_pair(i, j, warped, masks, roi, region)

        labels = np.full((height, width), -1, dtype=np.int32)
        for index, mask in enumerate(masks):
            labels[mask] = index
        return SeamResult(labels=labels, masks=masks)

    def _resolve_pair(self, i, j, warped, masks, roi, region):
        mask_i = masks[i][region]
        mask_j = masks[j][region]
        overlap = mask_i & mask_j
        if not np.any(overlap):
            return

        if self.mode is SeamMode.VORONOI:
            take_i = self._voronoi(mask_i, mask_j, overlap)
        else:
            image_i = _crop(warped[i], roi, region)
            image_j = _crop(warped[j], roi, region)
            cost = np.linalg.norm(image_i - image_j, axis=2)
            if self.mode is SeamMode.GRAPHCUT:
                take_i = self._graph_cut(mask_i, mask_j, overlap, cost, (i, j))
            else:
                take_i = self._dp(mask_i, mask_j, overlap, cost)

        # Views into the canvas masks
        mask_i[overlap & ~take_i] = False
        mask_j[overlap & take_i] = False

    def _voronoi(self, mask_i, mask_j, overlap):
        only_i = mask_i & ~mask_j
        only_j = mask_j & ~mask_i
        if not np.any(only_j):
            return overlap.copy()
        if not np.any(only_i):
            return np.zeros_like(overlap)
        dist_i = distance_transform_edt(~only_i)
        dist_j = distance_transform_edt(~only_j)
        return overlap & (dist_i <= dist_j)

    def _graph_cut(self, mask_i, mask_j, overlap, cost, pair):
        n = int(np.count_nonzero(overlap))
        if n > self.max_pixels:
            logger.warning("Overlap of images %d-%d has %d pixels, using DP seam",
                           pair[0], pair[1], n)
            return self._dp(mask_i, mask_j, overlap, cost)

        source_seeds = overlap & binary_dilation(mask_i & ~mask_j, _FOUR_NEIGHBOURS)
        sink_seeds = overlap & binary_dilation(mask_j & ~mask_i, _FOUR_NEIGHBOURS)
        if not np.any(sink_seeds):
            return overlap.copy()
        if not np.any(source_seeds):
            return np.zeros_like(overlap)

        node = np.full(overlap.shape, -1, dtype=np.int64)
        node[overlap] = np.arange(n)
        source, sink = n, n + 1

        rows, cols, caps = [], [], []
        for dy, dx in ((0, 1), (1, 0)):
            h, w = overlap.shape
            a = (slice(0, h - dy), slice(0, w - dx))
            b = (slice(dy, h), slice(dx, w))
            both = overlap[a] & overlap[b]
            p = node[a][both]
            q = node[b][both]
            weight = (cost[a][both] + cost[b][both]) * _COST_SCALE
            weight = np.round(weight).astype(np.int64) + 1
            rows += [p, q]
            cols += [q, p]
            caps += [weight, weight]

        src_nodes = node[source_seeds]
        sink_nodes = node[sink_seeds]
        rows += [np.full(len(src_nodes), source), sink_nodes]
        cols += [src_nodes, np.full(len(sink_nodes), sink)]
        caps += [np.full(len(src_nodes), _TERMINAL_CAPACITY),
                 np.full(len(sink_nodes), _TERMINAL_CAPACITY)]

        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
        caps = np.concatenate(caps)
        capacity = coo_matrix((caps, (rows, cols)), shape=(n + 2, n + 2)).tocsr()
        capacity.data = np.minimum(capacity.data, _TERMINAL_CAPACITY).astype(np.int32)

        flow = maximum_flow(capacity, source, sink).flow
        residual = (capacity - flow).tocsr()
        residual.data[residual.data < 0] = 0
        residual.eliminate_zeros()

        reachable = breadth_first_order(residual, source, directed=True,
                                        return_predecessors=False)
        on_source_side = np.zeros(n + 2, dtype=bool)
        on_source_side[reachable] = True

        take_i = np.zeros_like(overlap)
        take_i[overlap] = on_source_side[:n]
        logger.debug("Graph cut for images %d-%d: %d pixels, %d to image %d",
                     pair[0], pair[1], n, int(np.count_nonzero(take_i)), pair[0])
        return take_i

    def _dp(self, mask_i, mask_j, overlap, cost):
        """Minimum-cost seam through the overlap, one pixel per scanline."""
        only_i = mask_i & ~mask_j
        only_j = mask_j & ~mask_i
        if not np.any(only_j):
            return overlap.copy()
        if not np.any(only_i):
            return np.zeros_like(overlap)

        ci = np.argwhere(only_i).mean(axis=0)
        cj = np.argwhere(only_j).mean(axis=0)
        vertical = abs(ci[1] - cj[1]) >= abs(ci[0] - cj[0])

        if vertical:
            seam = _min_cost_path(np.where(overlap, cost, _OUTSIDE_COST))
            cols = np.arange(overlap.shape[1])[np.newaxis, :]
            before = cols < seam[:, np.newaxis]
            i_first = ci[1] < cj[1]
        else:
            seam = _min_cost_path(np.where(overlap, cost, _OUTSIDE_COST).T)
            rows = np.arange(overlap.shape[0])[:, np.newaxis]
            before = rows < seam[np.newaxis, :]
            i_first = ci[0] < cj[0]

        take_i = before if i_first else ~before
        return overlap & take_i


def _min_cost_path(cost):
    """
    Column index per row of the cheapest 8-connected top-to-bottom path.
    """
    h, w = cost.shape
    total = cost.astype(np.float64).copy()
    back = np.zeros((h, w), dtype=np.int64)
    cols = np.arange(w)
    for r in range(1, h):
        prev = total[r - 1]
        left = np.concatenate([[np.inf], prev[:-1]])
        right = np.concatenate([prev[1:], [np.inf]])
        options = np.vstack([left, prev, right])
        step = np.argmin(options, axis=0)
        total[r] += options[step, cols]
        back[r] = cols + step - 1

    seam = np.empty(h, dtype=np.int64)
    seam[-1] = int(np.argmin(total[-1]))
    for r in range(h - 1, 0, -1):
        seam[r - 1] = back[r, seam[r]]
    return seam


def _crop(warped, roi, region):
    """Pixels of a warped image over a canvas region, zero where absent."""
    x0, y0 = roi[0], roi[1]
    ys, xs = region
    ox, oy = warped.corner[0] - x0, warped.corner[1] - y0
    out = np.zeros((ys.stop - ys.start, xs.stop - xs.start, 3), dtype=np.float32)

    sy0, sy1 = max(ys.start, oy), min(ys.stop, oy + warped.height)
    sx0, sx1 = max(xs.start, ox), min(xs.stop, ox + warped.width)
    if sy1 > sy0 and sx1 > sx0:
        out[sy0 - ys.start:sy1 - ys.start, sx0 - xs.start:sx1 - xs.start] = \
            warped.image[sy0 - oy:sy1 - oy, sx0 - ox:sx1 - ox]
    return out
