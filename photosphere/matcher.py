"""
Feature extraction and pairwise matching.

Descriptors are matched with L2 distance (brute force, Lowe's ratio test,
cross-check) and every candidate pair is verified geometrically with a RANSAC
homography fit.
"""

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from .homography import HomographyEstimator
from .sift import SIFT

logger = logging.getLogger(__name__)

# Pairs whose confidence exceeds this are near-duplicates and carry no
# useful geometry
DUPLICATE_CONFIDENCE = 3.0


@dataclass
class ImageFeatures:
    """Keypoints and descriptors of one normalized image."""

    index: int
    size: Tuple[int, int]  # (width, height)
    keypoints: np.ndarray  # (N, 2) x, y in pixels
    descriptors: np.ndarray  # (N, 128) uint8

    def __len__(self):
        return len(self.keypoints)

    def centered_keypoints(self):
        """Keypoints relative to the image centre."""
        w, h = self.size
        return self.keypoints - np.array([w * 0.5, h * 0.5])


@dataclass
class MatchInfo:
    """
    Verified correspondences between two images.

    ``H`` maps centred keypoints of ``src`` to centred keypoints of ``dst``.
    """

    src: int
    dst: int
    matches: np.ndarray  # (K, 2) query index into src, train index into dst
    inliers: np.ndarray  # (K,) bool
    H: np.ndarray
    confidence: float = 0.0
    num_inliers: int = field(init=False)

    def __post_init__(self):
        self.num_inliers = int(np.sum(self.inliers))

    @property
    def inlier_matches(self):
        return self.matches[self.inliers]


class FeatureMatcher:
    """
    Feature matcher using L2 (Euclidean) distance.
    Implements brute-force matching with cross-check and ratio test.
    """

    def __init__(self, cross_check=True, ratio_threshold=0.75):
        """
        Initialize feature matcher.

        Args:
            cross_check: Whether to perform cross-check for matches
            ratio_threshold: Lowe's ratio test threshold (0.75 recommended)
        """
        self.cross_check = cross_check
        self.ratio_threshold = ratio_threshold

    def match(self, descriptors1, descriptors2):
        """
        Match features between two sets of descriptors.

        Args:
            descriptors1: Descriptors from first image (N x 128)
            descriptors2: Descriptors from second image (M x 128)

        Returns:
            matches: (K, 2) int array of (queryIdx, trainIdx), sorted by distance
        """
        if len(descriptors1) < 2 or len(descriptors2) < 2:
            return np.zeros((0, 2), dtype=int)

        desc1 = descriptors1.astype(np.float32)
        desc2 = descriptors2.astype(np.float32)

        distances = self._compute_distance_matrix(desc1, desc2)

        query, train, dist = self._find_best_matches(distances)

        if self.cross_check:
            reverse_query, reverse_train, _ = self._find_best_matches(distances.T)
            reverse = np.full(len(desc2), -1)
            reverse[reverse_query] = reverse_train
            keep = reverse[train] == query
            query, train, dist = query[keep], train[keep], dist[keep]

        order = np.lexsort((query, dist))
        return np.column_stack([query[order], train[order]]).astype(int)

    def _compute_distance_matrix(self, desc1, desc2):
        """
        Compute L2 distance matrix between two sets of descriptors.

        Returns:
            distances: N x M matrix where distances[i, j] is L2 distance
                      between desc1[i] and desc2[j]
        """
        # ||a - b||^2 = ||a||^2 + ||b||^2 - 2*a·b
        sq_norms1 = np.sum(desc1 ** 2, axis=1, keepdims=True)
        sq_norms2 = np.sum(desc2 ** 2, axis=1, keepdims=True)
        sq_distances = sq_norms1 + sq_norms2.T - 2 * np.dot(desc1, desc2.T)
        return np.sqrt(np.maximum(sq_distances, 0))

    def _find_best_matches(self, distances):
        """Nearest neighbours passing Lowe's ratio test."""
        nearest_two = np.argpartition(distances, 1, axis=1)[:, :2]
        rows = np.arange(distances.shape[0])
        d_a = distances[rows, nearest_two[:, 0]]
        d_b = distances[rows, nearest_two[:, 1]]

        nearest_idx = np.where(d_a <= d_b, nearest_two[:, 0], nearest_two[:, 1])
        nearest_dist = np.minimum(d_a, d_b)
        second_dist = np.maximum(d_a, d_b)

        keep = (second_dist > 0) & (nearest_dist < self.ratio_threshold * second_dist)
        return rows[keep], nearest_idx[keep], nearest_dist[keep]


def extract_features(images, sift_params=None, max_features=800, workers=1):
    """
    Detect keypoints and descriptors for every image.

    Images are processed in a thread pool; the result list follows input order.
    """
    params = dict(sift_params or {})
    params.setdefault('max_features', max_features)

    def detect(item):
        index, image = item
        gray = to_grayscale(image)
        keypoints, descriptors = SIFT(**params).detect_and_compute(gray)
        points = np.array([[kp['x'], kp['y']] for kp in keypoints],
                          dtype=np.float64).reshape(-1, 2)
        h, w = image.shape[:2]
        logger.debug("Image %d: %d keypoints", index, len(points))
        return ImageFeatures(index=index, size=(w, h), keypoints=points,
                             descriptors=descriptors)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(detect, enumerate(images)))


def to_grayscale(image):
    """Convert RGB image to grayscale using standard weights."""
    if len(image.shape) == 3:
        return np.dot(image[..., :3].astype(np.float32), [0.299, 0.587, 0.114])
    return image.astype(np.float32)


class PairwiseMatcher:
    """
    Matches every unordered image pair and keeps geometrically verified ones.

    Each pair draws RANSAC samples from its own generator seeded with
    ``(seed, i, j)``, so results do not depend on thread scheduling.
    """

    def __init__(self, matcher_params=None, ransac_params=None, min_inliers=6,
                 seed=0, workers=1):
        matcher_params = matcher_params or {}
        self.matcher = FeatureMatcher(**matcher_params)

        ransac_params = dict(ransac_params or {})
        ransac_params.setdefault('min_inliers', min_inliers)
        self.homography_estimator = HomographyEstimator(**ransac_params)

        self.min_inliers = min_inliers
        self.seed = seed
        self.workers = workers

    def match_pair(self, features1, features2):
        """
        Match two feature sets.

        Returns:
            MatchInfo, or None when the pair has fewer than min_inliers inliers
        """
        matches = self.matcher.match(features1.descriptors, features2.descriptors)
        if len(matches) < self.min_inliers:
            return None

        src_pts = features1.centered_keypoints()[matches[:, 0]]
        dst_pts = features2.centered_keypoints()[matches[:, 1]]

        rng = np.random.default_rng([self.seed, features1.index, features2.index])
        H, inliers = self.homography_estimator.find_homography(src_pts, dst_pts, rng)
        if H is None:
            return None

        num_inliers = int(np.sum(inliers))
        if num_inliers < self.min_inliers:
            return None

        confidence = num_inliers / (8 + 0.3 * len(matches))
        if confidence > DUPLICATE_CONFIDENCE:
            confidence = 0.0

        return MatchInfo(src=features1.index, dst=features2.index, matches=matches,
                         inliers=inliers, H=H, confidence=confidence)

    def match_all(self, features: List[ImageFeatures]):
        """
        Match all pairs (i < j).

        Returns:
            List of MatchInfo ordered by (src, dst)
        """
        pairs = list(itertools.combinations(range(len(features)), 2))

        def run(pair):
            i, j = pair
            info = self.match_pair(features[i], features[j])
            if info is not None:
                logger.debug("Images %d-%d: %d inliers / %d matches, confidence %.2f",
                             i, j, info.num_inliers, len(info.matches), info.confidence)
            return info

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            results = list(pool.map(run, pairs))

        return [info for info in results if info is not None]
