"""
Tests for per-call configuration and the status/error taxonomy.
"""

import pytest

from .config import BlendMode, Projection, SeamMode, StitchConfig, WaveCorrectAxis
from .errors import CameraParamsAdjustError, CancelledError, CompositionError, \
    EstimationError, HomographyEstimationError, InsufficientInputError, \
    InsufficientOverlapError, MalformedImageError, MatchingError, NeedMoreImagesError, \
    PoseEstimationError, Status, StitchingError


def test_defaults_match_panorama_preset():
    config = StitchConfig()

    assert config.wave_correction is True
    assert config.effective_wave_axis is WaveCorrectAxis.HORIZONTAL
    assert config.projection is Projection.SPHERICAL
    assert config.downscale_target_height == 1000
    assert config.multi_group is False


def test_enum_fields_accept_strings():
    config = StitchConfig(projection='cylindrical', seam='dp', blend='feather')

    assert config.projection is Projection.CYLINDRICAL
    assert config.seam is SeamMode.DP
    assert config.blend is BlendMode.FEATHER


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        StitchConfig(projection='fisheye')
    with pytest.raises(ValueError):
        StitchConfig(min_inliers=2)
    with pytest.raises(ValueError):
        StitchConfig(gain_range=(1.5, 2.0))
    with pytest.raises(ValueError):
        StitchConfig(seed=-1)


def test_disabling_wave_correction_overrides_axis():
    config = StitchConfig(wave_correction=False, wave_correct_axis='vertical')

    assert config.effective_wave_axis is WaveCorrectAxis.NONE


def test_from_dict_round_trips_plain_values():
    config = StitchConfig(projection='plane', gain_range=(0.8, 1.25), seed=7)

    values = config.to_dict()

    assert values['projection'] == 'plane'
    assert values['gain_range'] == [0.8, 1.25]
    assert StitchConfig.from_dict(values) == config


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ValueError, match='warp_mode'):
        StitchConfig.from_dict({'warp_mode': 'spherical'})


def test_config_is_immutable():
    config = StitchConfig()

    with pytest.raises(AttributeError):
        config.seed = 3
    assert config.replace(seed=3).seed == 3
    assert config.seed == 0


def test_library_and_pipeline_codes_are_disjoint():
    library = {Status.OK, Status.ERR_NEED_MORE_IMAGES, Status.ERR_HOMOGRAPHY_EST_FAIL,
               Status.ERR_CAMERA_PARAMS_ADJUST_FAIL}

    assert [int(s) for s in sorted(library)] == [0, 1, 2, 3]
    for status in Status:
        if status not in library:
            assert not 0 <= int(status) <= 3
    assert len({int(s) for s in Status}) == len(Status)


def test_ok_statuses():
    assert Status.OK.is_ok
    assert Status.OK_IMAGES_DROPPED.is_ok
    assert not Status.INSUFFICIENT_OVERLAP.is_ok
    assert Status.ERR_NEED_MORE_IMAGES.message == "Need more images"


@pytest.mark.parametrize('error, status', [
    (InsufficientInputError("x"), Status.INSUFFICIENT_INPUT),
    (MalformedImageError("x"), Status.MALFORMED_INPUT),
    (NeedMoreImagesError("x"), Status.ERR_NEED_MORE_IMAGES),
    (InsufficientOverlapError("x"), Status.INSUFFICIENT_OVERLAP),
    (HomographyEstimationError("x"), Status.ERR_HOMOGRAPHY_EST_FAIL),
    (CameraParamsAdjustError("x"), Status.ERR_CAMERA_PARAMS_ADJUST_FAIL),
    (PoseEstimationError("x"), Status.POSE_ESTIMATION),
    (CompositionError("x"), Status.COMPOSITION),
    (CancelledError("x"), Status.CANCELLED),
])
def test_error_status_mapping(error, status):
    assert isinstance(error, StitchingError)
    assert error.status is status


def test_error_families():
    assert issubclass(NeedMoreImagesError, MatchingError)
    assert issubclass(InsufficientOverlapError, MatchingError)
    assert issubclass(PoseEstimationError, EstimationError)

    error = InsufficientOverlapError("split", groups=[(0,), (1, 2)])
    assert error.groups == [[0], [1, 2]]

    error = PoseEstimationError("diverged", group=[1, 2], residual=12.5)
    assert error.group == [1, 2]
    assert error.residual == 12.5
