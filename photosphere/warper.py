"""
Projection of images onto the panorama surface.

Each warper maps world rays to surface coordinates (u, v) scaled by the
group's median focal length. Warping is backward: every surface pixel in an
image's footprint is mapped into the source image and sampled bilinearly.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .config import Projection
from .errors import CompositionError

logger = logging.getLogger(__name__)


@dataclass
class WarpedImage:
    """An image resampled onto the panorama surface."""

    image: np.ndarray  # (h, w, 3) float32
    mask: np.ndarray  # (h, w) bool, True where the source image contributed
    corner: Tuple[int, int]  # (x, y) of the top-left pixel on the surface

    @property
    def width(self):
        return self.image.shape[1]

    @property
    def height(self):
        return self.image.shape[0]

    @property
    def bbox(self):
        """(x0, y0, x1, y1), exclusive on the right and bottom."""
        x, y = self.corner
        return x, y, x + self.width, y + self.height


class Warper:
    """Base class; subclasses define the ray <-> surface mapping."""

    # Rays with non-positive depth are invalid for this projection
    requires_positive_z = False

    def __init__(self, scale):
        if not np.isfinite(scale) or scale <= 0:
            raise CompositionError(f"Invalid warp scale {scale}")
        self.scale = float(scale)

    def project_rays(self, rays):
        raise NotImplementedError

    def unproject(self, u, v):
        raise NotImplementedError

    def forward(self, points, K, R):
        """
        Map image pixels to surface coordinates.

        Args:
            points: (N, 2) pixel coordinates
            K, R: camera intrinsics and rotation

        Returns:
            uv: (N, 2) surface coordinates
            valid: (N,) bool
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        homogeneous = np.hstack([points, np.ones((len(points), 1))])
        rays = homogeneous @ (R @ np.linalg.inv(K)).T
        valid = np.ones(len(points), dtype=bool)
        if self.requires_positive_z:
            valid = rays[:, 2] > 1e-9
            rays = np.where(valid[:, None], rays, [0.0, 0.0, 1.0])
        return self.project_rays(rays), valid

    def inverse(self, u, v, K, R):
        """
        Map surface coordinates back to pixel coordinates of one camera.

        Returns:
            x, y: pixel coordinates (same shape as u)
            valid: True where the surface point lies in front of the camera
        """
        rays = self.unproject(u, v)
        M = K @ R.T
        cam = np.tensordot(rays, M.T, axes=1)
        z = cam[..., 2]
        valid = z > 1e-9
        z = np.where(valid, z, 1.0)
        return cam[..., 0] / z, cam[..., 1] / z, valid

    def warp_roi(self, size, K, R):
        """
        Integer surface rectangle (x0, y0, x1, y1) covering an image of the
        given (width, height), found by projecting its border.
        """
        w, h = size
        xs = np.arange(w + 1, dtype=np.float64)
        ys = np.arange(h + 1, dtype=np.float64)
        border = np.vstack([
            np.column_stack([xs, np.zeros_like(xs)]),
            np.column_stack([xs, np.full_like(xs, h)]),
            np.column_stack([np.zeros_like(ys), ys]),
            np.column_stack([np.full_like(ys, w), ys]),
        ]) - 0.5
        uv, valid = self.forward(border, K, R)
        if not np.all(valid):
            raise CompositionError(
                f"{type(self).__name__} cannot represent the field of view of an image")

        u_min, v_min = uv.min(axis=0)
        u_max, v_max = uv.max(axis=0)
        u_min, u_max, v_min, v_max = self._extend_for_poles(
            u_min, u_max, v_min, v_max, size, K, R)
        return (int(np.floor(u_min)), int(np.floor(v_min)),
                int(np.ceil(u_max)) + 1, int(np.ceil(v_max)) + 1)

    def _extend_for_poles(self, u_min, u_max, v_min, v_max, size, K, R):
        return u_min, u_max, v_min, v_max

    def warp(self, image, K, R):
        """
        Resample an image onto the surface.

        Args:
            image: (H, W, 3) uint8 or float image
            K, R: camera intrinsics and rotation

        Returns:
            WarpedImage
        """
        h, w = image.shape[:2]
        x0, y0, x1, y1 = self.warp_roi((w, h), K, R)

        v, u = np.meshgrid(np.arange(y0, y1, dtype=np.float64),
                           np.arange(x0, x1, dtype=np.float64), indexing='ij')
        src_x, src_y, in_front = self.inverse(u, v, K, R)

        warped, inside = bilinear_interpolate(image.astype(np.float32), src_x, src_y)
        mask = inside & in_front
        warped[~mask] = 0.0
        return WarpedImage(image=warped.astype(np.float32), mask=mask, corner=(x0, y0))


class SphericalWarper(Warper):
    """u = s * longitude, v = s * polar angle (measured from the up pole)."""

    def project_rays(self, rays):
        x, y, z = rays[:, 0], rays[:, 1], rays[:, 2]
        r = np.sqrt(x * x + y * y + z * z)
        u = self.scale * np.arctan2(x, z)
        v = self.scale * (np.pi - np.arccos(np.clip(y / r, -1.0, 1.0)))
        return np.column_stack([u, v])

    def unproject(self, u, v):
        theta = u / self.scale
        phi = np.pi - v / self.scale
        sin_phi = np.sin(phi)
        return np.stack([sin_phi * np.sin(theta), np.cos(phi),
                         sin_phi * np.cos(theta)], axis=-1)

    def _extend_for_poles(self, u_min, u_max, v_min, v_max, size, K, R):
        # A pole inside the image means it covers every longitude
        w, h = size
        M = K @ R.T
        for direction, v_limit in (((0.0, -1.0, 0.0), 0.0),
                                   ((0.0, 1.0, 0.0), np.pi * self.scale)):
            cam = M @ np.array(direction)
            if cam[2] <= 0:
                continue
            px, py = cam[0] / cam[2], cam[1] / cam[2]
            if -0.5 <= px <= w - 0.5 and -0.5 <= py <= h - 0.5:
                u_min, u_max = -np.pi * self.scale, np.pi * self.scale
                v_min, v_max = min(v_min, v_limit), max(v_max, v_limit)
        return u_min, u_max, v_min, v_max


class CylindricalWarper(Warper):
    """u = s * longitude, v = s * height on the unit cylinder."""

    def project_rays(self, rays):
        x, y, z = rays[:, 0], rays[:, 1], rays[:, 2]
        u = self.scale * np.arctan2(x, z)
        v = self.scale * y / np.sqrt(x * x + z * z)
        return np.column_stack([u, v])

    def unproject(self, u, v):
        theta = u / self.scale
        return np.stack([np.sin(theta), v / self.scale, np.cos(theta)], axis=-1)

    def warp_roi(self, size, K, R):
        x0, y0, x1, y1 = super().warp_roi(size, K, R)
        # Views near the cylinder axis stretch without bound
        if (y1 - y0) > 20 * self.scale:
            raise CompositionError("Cylindrical projection is unbounded for this view")
        return x0, y0, x1, y1


class PlaneWarper(Warper):
    """Rectilinear projection onto the plane z = 1."""

    requires_positive_z = True

    def project_rays(self, rays):
        x, y, z = rays[:, 0], rays[:, 1], rays[:, 2]
        return np.column_stack([self.scale * x / z, self.scale * y / z])

    def unproject(self, u, v):
        return np.stack([u / self.scale, v / self.scale, np.ones_like(u)], axis=-1)


WARPERS = {
    Projection.SPHERICAL: SphericalWarper,
    Projection.CYLINDRICAL: CylindricalWarper,
    Projection.PLANE: PlaneWarper,
}


def create_warper(projection, scale):
    return WARPERS[Projection(projection)](scale)


def bilinear_interpolate(image, x, y):
    """
    Bilinear interpolation for image warping.

    Args:
        image: Input image (H x W x C) or (H x W)
        x: X coordinates (h x w)
        y: Y coordinates (h x w)

    Returns:
        output: Interpolated values (h x w x C), zero outside the image
        mask: True where (x, y) falls inside the image
    """
    h, w = image.shape[:2]

    # Handle out of bounds
    mask = (x >= 0) & (x <= w - 1) & (y >= 0) & (y <= h - 1)
    x = np.where(mask, x, 0.0)
    y = np.where(mask, y, 0.0)

    # Get integer coordinates, clipped to image boundaries
    x0 = np.clip(np.floor(x).astype(int), 0, w - 1)
    y0 = np.clip(np.floor(y).astype(int), 0, h - 1)
    x1 = np.clip(x0 + 1, 0, w - 1)
    y1 = np.clip(y0 + 1, 0, h - 1)

    # Get fractional parts
    fx = x - x0
    fy = y - y0

    w00 = (1 - fx) * (1 - fy)
    w01 = (1 - fx) * fy
    w10 = fx * (1 - fy)
    w11 = fx * fy

    if image.ndim == 3:
        w00, w01, w10, w11 = (wt[..., np.newaxis] for wt in (w00, w01, w10, w11))

    output = (w00 * image[y0, x0] + w01 * image[y1, x0] +
              w10 * image[y0, x1] + w11 * image[y1, x1])
    if image.ndim == 3:
        output = output * mask[..., np.newaxis]
    else:
        output = output * mask

    return output.astype(image.dtype), mask


def warp_scale(cameras):
    """Surface scale of a group: median camera focal length."""
    return float(np.median([camera.focal for camera in cameras.values()]))


def warp_group(images, cameras, projection=Projection.SPHERICAL, workers=1):
    """
    Warp every camera's image onto a shared surface.

    Args:
        images: sequence of normalized images, indexed like ``cameras``
        cameras: dict {image index: CameraParams}
        projection: Projection
        workers: thread count

    Returns:
        list of WarpedImage in ascending image index order
    """
    warper = create_warper(projection, warp_scale(cameras))
    order = sorted(cameras)

    def run(index):
        camera = cameras[index]
        warped = warper.warp(images[index], camera.K(), camera.R)
        logger.debug("Warped image %d: %dx%d at %s", index, warped.width,
                     warped.height, warped.corner)
        return warped

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, order))


def canvas_roi(warped, max_pixels=50_000_000):
    """
    Union rectangle of all warped images.

    Returns:
        (x, y, width, height) of the canvas on the surface

    Raises:
        CompositionError: no image has coverage, or the canvas is too large
    """
    boxes = [w.bbox for w in warped if np.any(w.mask)]
    if not boxes:
        raise CompositionError("No warped image has any coverage")
    boxes = np.array(boxes)
    x0, y0 = boxes[:, 0].min(), boxes[:, 1].min()
    x1, y1 = boxes[:, 2].max(), boxes[:, 3].max()
    width, height = int(x1 - x0), int(y1 - y0)
    if width <= 0 or height <= 0:
        raise CompositionError("Degenerate panorama canvas")
    if width * height > max_pixels:
        raise CompositionError(
            f"Panorama canvas {width}x{height} exceeds {max_pixels} pixels")
    return int(x0), int(y0), width, height
