"""
Homography computation and RANSAC using NumPy.
"""

import numpy as np


class HomographyEstimator:
    """
    Homography matrix estimation using RANSAC algorithm.

    A homography is a 3x3 matrix that describes the projective transformation
    between two planes (images). Sampling draws from the generator passed to
    ``find_homography``, so a fixed seed gives reproducible results.
    """

    def __init__(self, ransac_reproj_threshold=3.0, max_iters=2000,
                 confidence=0.995, min_inliers=6):
        """
        Initialize Homography Estimator.

        Args:
            ransac_reproj_threshold: Maximum reprojection error to be considered inlier
            max_iters: Maximum number of RANSAC iterations
            confidence: Desired confidence level for RANSAC
            min_inliers: Minimum number of inliers required
        """
        self.ransac_reproj_threshold = ransac_reproj_threshold
        self.max_iters = max_iters
        self.confidence = confidence
        self.min_inliers = min_inliers

    def find_homography(self, src_points, dst_points, rng=None):
        """
        Find homography matrix using RANSAC.

        Args:
            src_points: Source points (N x 2)
            dst_points: Destination points (N x 2)
            rng: numpy Generator used for sampling (seed 0 if omitted)

        Returns:
            H: Homography matrix (3 x 3) mapping src to dst, or None
            mask: Inlier mask (N,), or None
        """
        src_points = np.asarray(src_points, dtype=np.float64)
        dst_points = np.asarray(dst_points, dtype=np.float64)

        if len(src_points) != len(dst_points):
            raise ValueError("Source and destination points must have same length")

        if len(src_points) < 4:
            return None, None

        if rng is None:
            rng = np.random.default_rng(0)

        best_H = None
        best_inliers = None
        best_num_inliers = 0

        n_points = len(src_points)
        n_iters_needed = self.max_iters

        iteration = 0
        while iteration < min(self.max_iters, n_iters_needed):
            iteration += 1

            indices = rng.choice(n_points, 4, replace=False)
            H = self._compute_homography_dlt(src_points[indices], dst_points[indices])
            if H is None:
                continue

            inliers = self._get_inliers(src_points, dst_points, H)
            num_inliers = int(np.sum(inliers))

            if num_inliers > best_num_inliers:
                best_num_inliers = num_inliers
                best_inliers = inliers
                best_H = H

                # Adaptive termination
                inlier_ratio = num_inliers / n_points
                if inlier_ratio >= 1.0:
                    break
                denom = np.log(1 - inlier_ratio ** 4)
                if denom < 0:
                    n_iters_needed = np.log(1 - self.confidence) / denom

        if best_H is None:
            return None, None

        # Refine homography using all inliers
        if best_num_inliers >= max(4, self.min_inliers):
            refined = self._compute_homography_dlt(src_points[best_inliers],
                                                   dst_points[best_inliers])
            if refined is not None:
                refined_inliers = self._get_inliers(src_points, dst_points, refined)
                if np.sum(refined_inliers) >= best_num_inliers:
                    best_H, best_inliers = refined, refined_inliers

        return best_H, best_inliers

    def _compute_homography_dlt(self, src_pts, dst_pts):
        """
        Compute homography using Direct Linear Transform.

        For each point correspondence (x, y) -> (x', y'), we have:
        x' = (h11*x + h12*y + h13) / (h31*x + h32*y + h33)
        y' = (h21*x + h22*y + h23) / (h31*x + h32*y + h33)

        This gives us 2 equations per point correspondence.
        We need at least 4 points (8 equations) to solve for 8 unknowns.
        """
        n = len(src_pts)

        if n < 4:
            return None

        # Normalize points for better numerical stability
        src_pts_norm, T_src = self._normalize_points(src_pts)
        dst_pts_norm, T_dst = self._normalize_points(dst_pts)

        x, y = src_pts_norm[:, 0], src_pts_norm[:, 1]
        xp, yp = dst_pts_norm[:, 0], dst_pts_norm[:, 1]
        zeros = np.zeros(n)
        ones = np.ones(n)

        A = np.empty((2 * n, 9))
        A[0::2] = np.column_stack([-x, -y, -ones, zeros, zeros, zeros, x * xp, y * xp, xp])
        A[1::2] = np.column_stack([zeros, zeros, zeros, -x, -y, -ones, x * yp, y * yp, yp])

        try:
            _, _, Vt = np.linalg.svd(A)
            H = Vt[-1].reshape(3, 3)
            H = np.linalg.inv(T_dst) @ H @ T_src
        except np.linalg.LinAlgError:
            return None

        if abs(H[2, 2]) < 1e-12 or not np.all(np.isfinite(H)):
            return None
        H = H / H[2, 2]

        # Reject near-singular solutions (degenerate samples)
        if abs(np.linalg.det(H)) < 1e-8:
            return None

        return H

    def _normalize_points(self, points):
        """
        Normalize points for better numerical stability.

        Translates points so centroid is at origin and scales so
        average distance from origin is sqrt(2).
        """
        points = np.asarray(points, dtype=np.float64)

        centroid = np.mean(points, axis=0)
        points_centered = points - centroid
        avg_dist = np.mean(np.sqrt(np.sum(points_centered ** 2, axis=1)))

        if avg_dist < 1e-10:
            avg_dist = 1.0

        scale = np.sqrt(2) / avg_dist

        T = np.array([
            [scale, 0, -scale * centroid[0]],
            [0, scale, -scale * centroid[1]],
            [0, 0, 1]
        ])

        return points_centered * scale, T

    def _get_inliers(self, src_pts, dst_pts, H):
        """
        Get inlier mask based on reprojection error.

        Args:
            src_pts: Source points (N x 2)
            dst_pts: Destination points (N x 2)
            H: Homography matrix (3 x 3)

        Returns:
            mask: Boolean mask indicating inliers
        """
        dst_projected = apply_homography(src_pts, H)
        errors = np.sqrt(np.sum((dst_pts - dst_projected) ** 2, axis=1))

        # NaN errors (points sent to infinity) never count as inliers
        return errors < self.ransac_reproj_threshold


def apply_homography(points, H):
    """
    Map (N x 2) points through H, returning (N x 2) Cartesian points.

    Points H sends to infinity come back as NaN.
    """
    points = np.asarray(points, dtype=np.float64)
    points_homogeneous = np.hstack([points, np.ones((len(points), 1))])
    transformed = (H @ points_homogeneous.T).T
    w = transformed[:, 2:3]
    valid = np.abs(w) > 1e-10
    projected = transformed[:, :2] / np.where(valid, w, 1.0)
    return np.where(valid, projected, np.nan)
