"""
Camera pose estimation for one panorama group.

Initial focal lengths and rotations come from the pairwise homographies,
chained along the maximum spanning tree of the image graph. A ray-based
bundle adjustment then refines focal length and rotation of every camera
jointly.
"""

import logging

import numpy as np
from scipy.optimize import least_squares

from .camera import CameraParams, orthonormalize, rotation_to_vector, \
    vector_to_rotation
from .errors import CameraParamsAdjustError, HomographyEstimationError, \
    PoseEstimationError

logger = logging.getLogger(__name__)


def focals_from_homography(H):
    """
    Focal length candidates implied by a rotation-only homography.

    H must map centred pixel coordinates of the first image to those of the
    second. Returns (f0, f1) where either may be None.
    """
    h = (H / H[2, 2]).ravel()

    def pick(d1, d2, v1, v2):
        # A zero denominator (e.g. a pure pan) only invalidates its own term
        v1 = v1 if np.isfinite(v1) else -1.0
        v2 = v2 if np.isfinite(v2) else -1.0
        if v1 < v2:
            v1, v2 = v2, v1
        if v1 > 0 and v2 > 0:
            return np.sqrt(v1 if abs(d1) > abs(d2) else v2)
        if v1 > 0:
            return np.sqrt(v1)
        return None

    with np.errstate(divide='ignore', invalid='ignore'):
        d1 = h[6] * h[7]
        d2 = (h[7] - h[6]) * (h[7] + h[6])
        v1 = -(h[0] * h[1] + h[3] * h[4]) / d1
        v2 = (h[0] * h[0] + h[3] * h[3] - h[1] * h[1] - h[4] * h[4]) / d2
        f1 = pick(d1, d2, v1, v2)

        d1 = h[0] * h[3] + h[1] * h[4]
        d2 = h[0] * h[0] + h[1] * h[1] - h[3] * h[3] - h[4] * h[4]
        v1 = -h[2] * h[5] / d1
        v2 = (h[5] * h[5] - h[2] * h[2]) / d2
        f0 = pick(d1, d2, v1, v2)

    return f0, f1


def estimate_focal(group, graph, features):
    """
    Common focal length of a group: median of the per-pair estimates, or the
    mean image width plus height when no pair yields one.
    """
    members = set(group)
    candidates = []
    for (i, j), info in graph.edges.items():
        if i not in members or j not in members:
            continue
        f0, f1 = focals_from_homography(info.H)
        if f0 is not None and f1 is not None:
            candidates.append(np.sqrt(f0 * f1))

    if candidates:
        focal = float(np.median(candidates))
        logger.debug("Focal from %d homographies: %.1f", len(candidates), focal)
        return focal

    focal = float(np.mean([sum(features[i].size) for i in group]))
    logger.warning("Could not estimate focal length from homographies, using %.1f", focal)
    return focal


class HomographyBasedEstimator:
    """Initial cameras from pairwise homographies."""

    def estimate(self, group, graph, features):
        """
        Args:
            group: image indices of one connected component
            graph: ImageGraph
            features: list of ImageFeatures (indexed by image)

        Returns:
            dict {image index: CameraParams}
        """
        focal = estimate_focal(group, graph, features)
        root = graph.reference_image(group)

        cameras = {i: CameraParams(focal=focal) for i in group}
        for parent, child in graph.maximum_spanning_tree(group):
            info = graph.edge(parent, child)
            H = info.H if info.src == parent else np.linalg.inv(info.H)

            K_parent = cameras[parent].K()
            K_child = cameras[child].K()
            try:
                R = np.linalg.inv(K_parent) @ np.linalg.inv(H) @ K_child
            except np.linalg.LinAlgError as e:
                raise HomographyEstimationError(
                    f"Singular homography between images {parent} and {child}",
                    group=group) from e
            cameras[child].R = cameras[parent].R @ R

        for i in group:
            camera = cameras[i]
            if not np.all(np.isfinite(camera.R)):
                raise HomographyEstimationError(
                    f"Degenerate rotation estimated for image {i}", group=group)
            camera.R = orthonormalize(camera.R)
            w, h = features[i].size
            camera.ppx = w * 0.5
            camera.ppy = h * 0.5

        logger.debug("Initial cameras for group %s rooted at image %d", group, root)
        return cameras


class BundleAdjuster:
    """
    Ray-based bundle adjustment of focal length and rotation.

    For every inlier correspondence the two back-projected unit rays must
    coincide; residuals are scaled by sqrt(f_i * f_j) so they read in pixels.
    The optimiser is capped at ``max_iterations`` function evaluations.
    """

    def __init__(self, max_iterations=100, tolerance=4.0):
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def _collect(self, group, graph, features):
        index = {image: k for k, image in enumerate(group)}
        blocks = []
        for (i, j), info in graph.edges.items():
            if i not in index or j not in index:
                continue
            pairs = info.inlier_matches
            src = features[info.src].keypoints[pairs[:, 0]]
            dst = features[info.dst].keypoints[pairs[:, 1]]
            blocks.append((index[info.src], index[info.dst], src, dst))
        return blocks

    @staticmethod
    def _pack(group, cameras):
        params = []
        for i in group:
            params.append(cameras[i].focal)
            params.extend(rotation_to_vector(cameras[i].R))
        return np.array(params, dtype=np.float64)

    @staticmethod
    def _rays(points, camera_params, pp):
        focal = camera_params[0]
        R = vector_to_rotation(camera_params[1:4])
        rays = np.column_stack([(points[:, 0] - pp[0]) / focal,
                                (points[:, 1] - pp[1]) / focal,
                                np.ones(len(points))])
        rays = rays @ R.T
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)

    def _residuals(self, params, blocks, principal_points):
        params = params.reshape(-1, 4)
        residuals = []
        for a, b, src, dst in blocks:
            ray_a = self._rays(src, params[a], principal_points[a])
            ray_b = self._rays(dst, params[b], principal_points[b])
            mult = np.sqrt(params[a, 0] * params[b, 0])
            residuals.append((mult * (ray_a - ray_b)).ravel())
        return np.concatenate(residuals)

    def adjust(self, group, cameras, graph, features):
        """
        Refine cameras in place and return them.

        Raises:
            CameraParamsAdjustError: the optimiser failed or diverged
            PoseEstimationError: RMS residual stays above tolerance
        """
        blocks = self._collect(group, graph, features)
        if not blocks:
            raise CameraParamsAdjustError("No correspondences to adjust", group=group)

        principal_points = [(cameras[i].ppx, cameras[i].ppy) for i in group]
        x0 = self._pack(group, cameras)
        n_points = sum(len(src) for _, _, src, _ in blocks)

        lower = np.full_like(x0, -np.inf)
        lower[0::4] = 1.0
        upper = np.full_like(x0, np.inf)

        try:
            result = least_squares(self._residuals, x0, args=(blocks, principal_points),
                                   bounds=(lower, upper), method='trf', x_scale='jac',
                                   max_nfev=self.max_iterations)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise CameraParamsAdjustError(f"Bundle adjustment failed: {e}",
                                          group=group) from e

        if not np.all(np.isfinite(result.x)) or not np.all(np.isfinite(result.fun)):
            raise CameraParamsAdjustError("Bundle adjustment diverged", group=group)

        initial_rms = np.sqrt(np.sum(self._residuals(x0, blocks, principal_points) ** 2) / n_points)
        rms = float(np.sqrt(np.sum(result.fun ** 2) / n_points))
        logger.info("Bundle adjustment: %d correspondences, RMS %.3f -> %.3f px (%d evaluations)",
                    n_points, initial_rms, rms, result.nfev)

        if rms > self.tolerance:
            raise PoseEstimationError(
                f"Bundle adjustment residual {rms:.2f} px exceeds {self.tolerance:.2f} px",
                group=group, residual=rms)

        params = result.x.reshape(-1, 4)
        for k, i in enumerate(group):
            cameras[i].focal = float(params[k, 0])
            cameras[i].R = orthonormalize(vector_to_rotation(params[k, 1:4]))

        # Fix the free global rotation at the reference image
        reference = graph.reference_image(group)
        R_ref_inv = cameras[reference].R.T
        for i in group:
            cameras[i].R = R_ref_inv @ cameras[i].R

        return cameras


class PoseEstimator:
    """Homography initialisation followed by bundle adjustment."""

    def __init__(self, adjuster_params=None, max_iterations=100, tolerance=4.0):
        adjuster_params = dict(adjuster_params or {})
        adjuster_params.setdefault('max_iterations', max_iterations)
        adjuster_params.setdefault('tolerance', tolerance)
        self.initializer = HomographyBasedEstimator()
        self.adjuster = BundleAdjuster(**adjuster_params)

    def estimate(self, group, graph, features):
        cameras = self.initializer.estimate(group, graph, features)
        return self.adjuster.adjust(group, cameras, graph, features)
