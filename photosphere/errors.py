"""
Status codes and exception types for the stitching pipeline.

Codes 0-3 mirror the status values of the classic stitcher API so that callers
written against it keep working. Everything raised by this package itself
maps to an out-of-band code so failures of the pipeline stages can be told
apart from the library-compatible ones.
"""

from enum import IntEnum


class Status(IntEnum):
    OK = 0
    ERR_NEED_MORE_IMAGES = 1
    ERR_HOMOGRAPHY_EST_FAIL = 2
    ERR_CAMERA_PARAMS_ADJUST_FAIL = 3

    INSUFFICIENT_INPUT = -1
    INSUFFICIENT_OVERLAP = -2
    POSE_ESTIMATION = -3
    COMPOSITION = -4
    CANCELLED = -5
    MALFORMED_INPUT = -6

    # Success, but some input images were left out of the panorama
    OK_IMAGES_DROPPED = 10

    @property
    def is_ok(self):
        return self in (Status.OK, Status.OK_IMAGES_DROPPED)

    @property
    def message(self):
        return _MESSAGES.get(self, "Unknown error")


_MESSAGES = {
    Status.OK: "OK",
    Status.ERR_NEED_MORE_IMAGES: "Need more images",
    Status.ERR_HOMOGRAPHY_EST_FAIL: "Homography estimation failed",
    Status.ERR_CAMERA_PARAMS_ADJUST_FAIL: "Camera parameters adjustment failed",
    Status.INSUFFICIENT_INPUT: "At least two images are required",
    Status.INSUFFICIENT_OVERLAP: "Images do not overlap enough",
    Status.POSE_ESTIMATION: "Bundle adjustment did not converge",
    Status.COMPOSITION: "Panorama composition failed",
    Status.CANCELLED: "Stitching cancelled",
    Status.MALFORMED_INPUT: "Malformed input image",
    Status.OK_IMAGES_DROPPED: "OK (some images were dropped)",
}


class StitchingError(Exception):
    """Base class for every failure the pipeline reports as a status."""

    status = Status.COMPOSITION

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.stage = stage


class InputError(StitchingError):
    status = Status.MALFORMED_INPUT


class InsufficientInputError(InputError):
    status = Status.INSUFFICIENT_INPUT


class MalformedImageError(InputError):
    status = Status.MALFORMED_INPUT


class MatchingError(StitchingError):
    status = Status.INSUFFICIENT_OVERLAP


class NeedMoreImagesError(MatchingError):
    status = Status.ERR_NEED_MORE_IMAGES


class InsufficientOverlapError(MatchingError):
    """
    Raised when the images do not form a single stitchable group.

    Attributes:
        groups: Partition of the input indices into connected components
            (singletons included), sorted by first index.
    """

    status = Status.INSUFFICIENT_OVERLAP

    def __init__(self, message, groups=None, stage=None):
        super().__init__(message, stage=stage)
        self.groups = [list(g) for g in (groups or [])]


class EstimationError(StitchingError):
    status = Status.POSE_ESTIMATION

    def __init__(self, message, group=None, stage=None):
        super().__init__(message, stage=stage)
        self.group = list(group) if group is not None else None


class HomographyEstimationError(EstimationError):
    status = Status.ERR_HOMOGRAPHY_EST_FAIL


class CameraParamsAdjustError(EstimationError):
    status = Status.ERR_CAMERA_PARAMS_ADJUST_FAIL


class PoseEstimationError(EstimationError):
    status = Status.POSE_ESTIMATION

    def __init__(self, message, group=None, residual=None, stage=None):
        super().__init__(message, group=group, stage=stage)
        self.residual = residual


class CompositionError(StitchingError):
    status = Status.COMPOSITION


class CancelledError(StitchingError):
    status = Status.CANCELLED
