"""
Panorama stitching pipeline.

Runs normalization, feature extraction, matching, pose estimation, wave
correction, warping, exposure compensation, seam finding and blending in a
fixed order. Failures of any stage end the call with a typed status; a
canvas is only returned when every stage succeeded.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .blending import create_blender
from .config import StitchConfig
from .errors import CancelledError, EstimationError, InsufficientOverlapError, \
    NeedMoreImagesError, Status, StitchingError
from .estimator import PoseEstimator
from .exposure import ExposureCompensator
from .graph import ImageGraph
from .matcher import PairwiseMatcher, extract_features
from .normalizer import normalize_images
from .seam import SeamFinder
from .warper import canvas_roi, warp_group
from .wave import wave_correct

logger = logging.getLogger(__name__)


class StitchState(str, Enum):
    INIT = "init"
    NORMALIZED = "normalized"
    FEATURES_EXTRACTED = "features_extracted"
    GRAPH_BUILT = "graph_built"
    POSES_ESTIMATED = "poses_estimated"
    WAVE_CORRECTED = "wave_corrected"
    WARPED = "warped"
    EXPOSURE_COMPENSATED = "exposure_compensated"
    SEAMS_FOUND = "seams_found"
    BLENDED = "blended"
    ERROR = "error"


@dataclass
class StitchResult:
    """
    Outcome of one stitching call.

    Attributes:
        status: Status code; ``status.is_ok`` tells success apart
        canvas: RGBA uint8 panorama of the largest group, None on error
        canvases: one canvas per stitched group (largest first)
        groups: image indices of each stitched group
        dropped: indices of input images left out of every canvas
        state: last state reached (BLENDED on success, ERROR otherwise)
        failed_stage: the stage that raised, on error
        error: the StitchingError that ended the call, on error
        cameras: per stitched group, dict {image index: CameraParams}
        history: states visited in order
        ownership: per stitched group, dict {image index: canvas pixels its seam
            mask assigns to it}
    """

    status: Status
    canvas: Optional[np.ndarray] = None
    canvases: List[np.ndarray] = field(default_factory=list)
    groups: List[List[int]] = field(default_factory=list)
    dropped: List[int] = field(default_factory=list)
    state: StitchState = StitchState.INIT
    failed_stage: Optional[StitchState] = None
    error: Optional[StitchingError] = None
    cameras: List[Dict[int, Any]] = field(default_factory=list)
    history: List[StitchState] = field(default_factory=list)
    ownership: List[Dict[int, int]] = field(default_factory=list)

    @property
    def ok(self):
        return self.status.is_ok

    def raise_for_status(self):
        """Re-raise the error that ended the call, if any."""
        if self.error is not None:
            raise self.error
        return self


class _Run:
    """State tracking of a single stitching call."""

    def __init__(self, cancel_event):
        self.cancel_event = cancel_event
        self.state = StitchState.INIT
        self.history = [StitchState.INIT]
        self.pending = None

    def begin(self, stage):
        self.pending = stage
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise CancelledError(f"Cancelled before {stage.value}", stage=stage)

    def advance(self, stage, message, *args):
        self.state = stage
        self.history.append(stage)
        self.pending = None
        logger.info("Stage %s: " + message, stage.value, *args)


@dataclass
class _Group:
    indices: List[int]
    cameras: Dict[int, Any] = None
    warped: list = None
    roi: tuple = None
    seams: Any = None
    canvas: np.ndarray = None


def _ownership(group):
    # Seam masks follow the warped images, which are in ascending index order
    return {index: int(np.count_nonzero(mask))
            for index, mask in zip(sorted(group.indices), group.seams.masks)}


class PanoramaStitcher:
    """
    Complete panorama stitching pipeline.

    This class coordinates all components:
    1. Image normalization
    2. SIFT feature detection and pairwise matching
    3. Image graph construction and grouping
    4. Camera estimation and bundle adjustment
    5. Wave correction
    6. Warping, exposure compensation, seam finding and blending

    The stitcher holds configuration only; every call allocates its own
    working state, so one instance may serve several calls.
    """

    def __init__(self,
                 config=None,
                 sift_params=None,
                 matcher_params=None,
                 ransac_params=None,
                 adjuster_params=None,
                 blending_params=None):
        """
        Initialize Panorama Stitcher.

        Args:
            config: Default StitchConfig for calls that do not pass one
            sift_params: Parameters for SIFT detector
            matcher_params: Parameters for feature matcher
            ransac_params: Parameters for RANSAC
            adjuster_params: Parameters for bundle adjustment
            blending_params: Parameters for the blender
        """
        self.config = config or StitchConfig()
        self.sift_params = dict(sift_params or {})
        self.matcher_params = dict(matcher_params or {})
        self.ransac_params = dict(ransac_params or {})
        self.adjuster_params = dict(adjuster_params or {})
        self.blending_params = dict(blending_params or {})

    def stitch(self, images, config=None, cancel_event=None):
        """
        Stitch images into a panorama.

        Args:
            images: sequence of images (H x W, H x W x 1/3/4)
            config: StitchConfig; the stitcher's default when omitted
            cancel_event: object with ``is_set()`` (e.g. threading.Event),
                checked before every stage

        Returns:
            StitchResult
        """
        config = config or self.config
        run = _Run(cancel_event)
        try:
            return self._run(images, config, run)
        except StitchingError as e:
            stage = run.pending or run.state
            if e.stage is None:
                e.stage = stage
            if isinstance(e, CancelledError):
                logger.info("Stitching cancelled before stage %s", stage.value)
            else:
                logger.error("Stitching failed in stage %s: %s", stage.value, e)
            run.history.append(StitchState.ERROR)
            groups = getattr(e, 'groups', None) or []
            return StitchResult(status=e.status, state=StitchState.ERROR,
                                failed_stage=stage, error=e, groups=groups,
                                history=run.history)

    def _run(self, images, config, run):
        run.begin(StitchState.NORMALIZED)
        normalized = normalize_images(images, config.downscale_target_height)
        run.advance(StitchState.NORMALIZED, "%d images", len(normalized))

        run.begin(StitchState.FEATURES_EXTRACTED)
        features = extract_features(normalized, self.sift_params,
                                    max_features=config.max_features,
                                    workers=config.workers)
        sparse = [f.index for f in features if len(f) < config.min_inliers]
        if len(features) - len(sparse) < 2:
            raise NeedMoreImagesError(
                f"Only {len(features) - len(sparse)} image(s) have enough features "
                f"to match; images {sparse} have too few")
        run.advance(StitchState.FEATURES_EXTRACTED, "%s keypoints",
                    [len(f) for f in features])

        run.begin(StitchState.GRAPH_BUILT)
        graph = self._build_graph(features, config)
        groups, dropped = graph.partition()
        if not groups:
            raise InsufficientOverlapError("No pair of images overlaps enough",
                                           groups=graph.components())
        if len(groups) > 1 and not config.multi_group:
            raise InsufficientOverlapError(
                f"Images form {len(groups)} separate panoramas",
                groups=graph.components())
        if dropped:
            logger.warning("Images %s do not overlap any other image and are dropped",
                           dropped)
        run.advance(StitchState.GRAPH_BUILT, "%d edges, groups %s",
                    len(graph.edges), groups)

        run.begin(StitchState.POSES_ESTIMATED)
        estimated = self._estimate_poses(groups, graph, features, config)
        stitched = {i for group in estimated for i in group.indices}
        dropped = sorted(set(range(len(normalized))) - stitched)
        run.advance(StitchState.POSES_ESTIMATED, "%d group(s)", len(estimated))

        run.begin(StitchState.WAVE_CORRECTED)
        axis = config.effective_wave_axis
        for group in estimated:
            wave_correct(group.cameras, axis)
        run.advance(StitchState.WAVE_CORRECTED, "axis %s", axis.value)

        run.begin(StitchState.WARPED)
        for group in estimated:
            group.warped = warp_group(normalized, group.cameras, config.projection,
                                      workers=config.workers)
            group.roi = canvas_roi(group.warped, config.max_canvas_pixels)
        run.advance(StitchState.WARPED, "canvases %s",
                    [f"{g.roi[2]}x{g.roi[3]}" for g in estimated])

        run.begin(StitchState.EXPOSURE_COMPENSATED)
        for group in estimated:
            compensator = ExposureCompensator(config.exposure, config.gain_range,
                                              config.exposure_block_size)
            compensator.feed(group.warped)
            group.warped = compensator.apply(group.warped)
        run.advance(StitchState.EXPOSURE_COMPENSATED, "mode %s", config.exposure.value)

        run.begin(StitchState.SEAMS_FOUND)
        seam_finder = SeamFinder(config.seam, config.seam_max_pixels)
        for group in estimated:
            group.seams = seam_finder.find(group.warped, group.roi)
        run.advance(StitchState.SEAMS_FOUND, "mode %s", config.seam.value)

        run.begin(StitchState.BLENDED)
        blending_params = dict(self.blending_params)
        blending_params.setdefault('num_bands', config.blend_bands)
        blender = create_blender(config.blend, **blending_params)
        for group in estimated:
            group.canvas = blender.blend(group.warped, group.seams, group.roi)
        run.advance(StitchState.BLENDED, "panorama %dx%d",
                    estimated[0].canvas.shape[1], estimated[0].canvas.shape[0])

        status = Status.OK_IMAGES_DROPPED if dropped else Status.OK
        return StitchResult(status=status,
                            canvas=estimated[0].canvas,
                            canvases=[g.canvas for g in estimated],
                            groups=[g.indices for g in estimated],
                            dropped=dropped,
                            state=run.state,
                            cameras=[g.cameras for g in estimated],
                            history=run.history,
                            ownership=[_ownership(g) for g in estimated])

    def _build_graph(self, features, config):
        matcher_params = dict(self.matcher_params)
        matcher_params.setdefault('ratio_threshold', config.match_ratio)
        ransac_params = dict(self.ransac_params)
        ransac_params.setdefault('ransac_reproj_threshold', config.ransac_threshold)
        ransac_params.setdefault('max_iters', config.ransac_max_iters)

        matcher = PairwiseMatcher(matcher_params=matcher_params,
                                  ransac_params=ransac_params,
                                  min_inliers=config.min_inliers,
                                  seed=config.seed,
                                  workers=config.workers)
        matches = matcher.match_all(features)
        logger.info("%d verified image pairs", len(matches))
        return ImageGraph.from_matches(len(features), matches,
                                       min_inliers=config.min_inliers,
                                       conf_threshold=config.match_confidence)

    def _estimate_poses(self, groups, graph, features, config):
        estimator = PoseEstimator(self.adjuster_params,
                                  max_iterations=config.ba_max_iterations,
                                  tolerance=config.ba_tolerance)
        estimated = []
        failures = []
        for indices in groups:
            try:
                cameras = estimator.estimate(indices, graph, features)
            except EstimationError as e:
                if not config.multi_group:
                    raise
                logger.warning("Pose estimation failed for group %s: %s", indices, e)
                failures.append(e)
                continue
            estimated.append(_Group(indices=indices, cameras=cameras))

        if not estimated:
            raise failures[0]
        return estimated


def stitch(images, config=None, cancel_event=None, **params):
    """
    Stitch images with a fresh PanoramaStitcher.

    Keyword arguments are forwarded to PanoramaStitcher (component params).
    """
    return PanoramaStitcher(**params).stitch(images, config=config,
                                             cancel_event=cancel_event)


def stitch_into(images, out, config=None, cancel_event=None, **params):
    """
    Stitch into a caller-allocated RGBA buffer.

    ``out`` must be a writable (H, W, 4) uint8 array at least as large as the
    panorama. The panorama is written to its top-left corner and the rest is
    cleared to transparent. On failure ``out`` is left untouched.

    Returns:
        StitchResult whose ``canvas`` is the written view of ``out``

    Raises:
        ValueError: ``out`` has the wrong dtype, rank or is too small
    """
    if out.dtype != np.uint8 or out.ndim != 3 or out.shape[2] != 4:
        raise ValueError("Output buffer must be an (H, W, 4) uint8 array")

    result = stitch(images, config=config, cancel_event=cancel_event, **params)
    if not result.ok:
        return result

    h, w = result.canvas.shape[:2]
    if out.shape[0] < h or out.shape[1] < w:
        raise ValueError(
            f"Output buffer {out.shape[1]}x{out.shape[0]} is smaller than the "
            f"panorama {w}x{h}")
    out[...] = 0
    out[:h, :w] = result.canvas
    result.canvas = out[:h, :w]
    if result.canvases:
        result.canvases[0] = result.canvas
    return result
