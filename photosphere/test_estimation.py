"""
Tests for camera estimation, bundle adjustment and wave correction.

Correspondences are generated from known cameras looking at random world
directions, so the expected poses are exact.
"""

import logging

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from .camera import CameraParams
from .config import WaveCorrectAxis
from .errors import CameraParamsAdjustError, PoseEstimationError
from .estimator import BundleAdjuster, HomographyBasedEstimator, PoseEstimator, \
    focals_from_homography
from .graph import ImageGraph
from .matcher import ImageFeatures, MatchInfo
from .wave import wave_correct

FOCAL = 300.0
SIZE = (260, 200)


def rot_y(deg):
    a = np.radians(deg)
    return np.array([[np.cos(a), 0, np.sin(a)], [0, 1, 0], [-np.sin(a), 0, np.cos(a)]])


def rot_x(deg):
    a = np.radians(deg)
    return np.array([[1, 0, 0], [0, np.cos(a), -np.sin(a)], [0, np.sin(a), np.cos(a)]])


def rot_z(deg):
    a = np.radians(deg)
    return np.array([[np.cos(a), -np.sin(a), 0], [np.sin(a), np.cos(a), 0], [0, 0, 1]])


def centred_homography(R_src, R_dst, focal=FOCAL):
    K = np.diag([focal, focal, 1.0])
    return K @ R_dst.T @ R_src @ np.linalg.inv(K)


def synthetic_scene(rotations, noise=0.0, seed=0, num_points=400):
    """
    Features and a graph for cameras with the given camera-to-world rotations.
    """
    rng = np.random.default_rng(seed)
    yaw = rng.uniform(-0.9, 0.9, num_points)
    pitch = rng.uniform(-0.3, 0.3, num_points)
    rays = np.column_stack([np.sin(yaw) * np.cos(pitch), np.sin(pitch),
                            np.cos(yaw) * np.cos(pitch)])

    w, h = SIZE
    K = np.array([[FOCAL, 0, w / 2.0], [0, FOCAL, h / 2.0], [0, 0, 1]])
    features, visible = [], []
    for index, R in enumerate(rotations):
        cam = rays @ (K @ R.T).T
        in_front = cam[:, 2] > 0
        pts = cam[:, :2] / np.where(in_front, cam[:, 2], 1.0)[:, None]
        seen = in_front & (pts[:, 0] >= 0) & (pts[:, 0] < w) & (pts[:, 1] >= 0) & (pts[:, 1] < h)
        ids = np.nonzero(seen)[0]
        keypoints = pts[ids] + rng.normal(0, noise, size=(len(ids), 2))
        features.append(ImageFeatures(index=index, size=SIZE, keypoints=keypoints,
                                      descriptors=np.zeros((len(ids), 128), dtype=np.uint8)))
        visible.append({point: k for k, point in enumerate(ids)})

    matches = []
    for i in range(len(rotations)):
        for j in range(i + 1, len(rotations)):
            common = sorted(set(visible[i]) & set(visible[j]))
            if len(common) < 6:
                continue
            pairs = np.array([[visible[i][p], visible[j][p]] for p in common])
            matches.append(MatchInfo(src=i, dst=j, matches=pairs,
                                     inliers=np.ones(len(pairs), dtype=bool),
                                     H=centred_homography(rotations[i], rotations[j]),
                                     confidence=len(pairs) / (8 + 0.3 * len(pairs))))

    return features, ImageGraph.from_matches(len(rotations), matches)


def relative(cameras, i, j):
    return cameras[i].R.T @ cameras[j].R


def test_focals_from_rotation_homography():
    H = centred_homography(np.eye(3), rot_y(20) @ rot_x(5))

    f0, f1 = focals_from_homography(H)

    assert f0 == pytest.approx(FOCAL, rel=1e-6)
    assert f1 == pytest.approx(FOCAL, rel=1e-6)


def test_focals_from_pure_pan():
    f0, f1 = focals_from_homography(centred_homography(np.eye(3), rot_y(25)))

    assert f0 == pytest.approx(FOCAL, rel=1e-6)
    assert f1 == pytest.approx(FOCAL, rel=1e-6)


def test_initial_cameras_reproduce_relative_rotations():
    rotations = [rot_y(-20), rot_y(0), rot_y(20) @ rot_x(3)]
    features, graph = synthetic_scene(rotations)

    cameras = HomographyBasedEstimator().estimate([0, 1, 2], graph, features)

    assert cameras[0].focal == pytest.approx(FOCAL, rel=1e-6)
    assert (cameras[1].ppx, cameras[1].ppy) == (130.0, 100.0)
    for i, j in ((0, 1), (1, 2), (0, 2)):
        np.testing.assert_allclose(relative(cameras, i, j),
                                   rotations[i].T @ rotations[j], atol=1e-6)


def test_bundle_adjustment_recovers_focal_from_bad_start():
    rotations = [rot_y(-20), rot_y(0), rot_y(20)]
    features, graph = synthetic_scene(rotations, noise=0.3, seed=1)
    cameras = HomographyBasedEstimator().estimate([0, 1, 2], graph, features)
    for camera in cameras.values():
        camera.focal *= 1.15

    adjusted = BundleAdjuster(max_iterations=200, tolerance=2.0).adjust(
        [0, 1, 2], cameras, graph, features)

    for camera in adjusted.values():
        assert camera.focal == pytest.approx(FOCAL, rel=0.02)
        np.testing.assert_allclose(camera.R @ camera.R.T, np.eye(3), atol=1e-9)
    np.testing.assert_allclose(relative(adjusted, 0, 2), rotations[0].T @ rotations[2],
                               atol=5e-3)
    reference = graph.reference_image([0, 1, 2])
    np.testing.assert_allclose(adjusted[reference].R, np.eye(3), atol=1e-9)


def test_residual_above_tolerance_is_a_pose_error():
    rotations = [rot_y(-20), rot_y(0)]
    features, graph = synthetic_scene(rotations, noise=2.0, seed=2)

    with pytest.raises(PoseEstimationError) as excinfo:
        PoseEstimator(tolerance=0.01).estimate([0, 1], graph, features)

    assert excinfo.value.residual > 0.01
    assert excinfo.value.group == [0, 1]


def test_group_without_correspondences_cannot_be_adjusted():
    features, _ = synthetic_scene([rot_y(0), rot_y(10)])
    empty = ImageGraph(2, {})
    cameras = {0: CameraParams(focal=FOCAL), 1: CameraParams(focal=FOCAL)}

    with pytest.raises(CameraParamsAdjustError):
        BundleAdjuster().adjust([0, 1], cameras, empty, features)


def test_wave_correction_levels_a_tilted_sweep():
    tilt = rot_z(12) @ rot_x(-8)
    cameras = {k: CameraParams(focal=FOCAL, R=tilt @ rot_y(yaw))
               for k, yaw in enumerate((-40, -15, 15, 40))}

    wave_correct(cameras, WaveCorrectAxis.HORIZONTAL)

    for camera in cameras.values():
        # Camera x axes lie in the horizontal plane and y still points down
        assert abs(camera.R[1, 0]) < 1e-9
        assert camera.R[1, 1] > 0.99
        np.testing.assert_allclose(camera.R @ camera.R.T, np.eye(3), atol=1e-9)


def test_wave_correction_none_is_a_no_op():
    cameras = {0: CameraParams(R=rot_z(10)), 1: CameraParams(R=rot_z(10) @ rot_y(20))}
    before = {k: c.R.copy() for k, c in cameras.items()}

    correction = wave_correct(cameras, WaveCorrectAxis.NONE)

    np.testing.assert_array_equal(correction, np.eye(3))
    for k in cameras:
        np.testing.assert_array_equal(cameras[k].R, before[k])


def test_wave_correction_falls_back_on_degenerate_cameras(caplog):
    # Both cameras look straight up, so "up" and the mean view coincide
    up = rot_x(90)
    cameras = {0: CameraParams(R=up), 1: CameraParams(R=up @ rot_z(30))}

    with caplog.at_level(logging.WARNING, logger='photosphere.wave'):
        correction = wave_correct(cameras, 'horizontal')

    np.testing.assert_array_equal(correction, np.eye(3))
    assert 'degenerate' in caplog.text


def test_wave_correction_leaves_a_pitch_sweep_alone(caplog):
    # Pitch-only views share one x axis up to a milliradian of estimation noise
    rng = np.random.default_rng(3)
    cameras = {}
    for k, pitch in enumerate((-20, 0, 20)):
        noise = Rotation.from_rotvec(rng.normal(0, 1e-3, 3)).as_matrix()
        cameras[k] = CameraParams(focal=FOCAL, R=rot_x(pitch) @ noise)
    before = {k: c.R.copy() for k, c in cameras.items()}

    with caplog.at_level(logging.WARNING, logger='photosphere.wave'):
        correction = wave_correct(cameras, WaveCorrectAxis.HORIZONTAL)

    np.testing.assert_array_equal(correction, np.eye(3))
    for k in cameras:
        np.testing.assert_array_equal(cameras[k].R, before[k])
    assert 'degenerate' in caplog.text


def test_wave_correction_on_a_pitch_sweep_about_the_vertical_axis():
    cameras = {k: CameraParams(focal=FOCAL, R=rot_x(pitch))
               for k, pitch in enumerate((-20, 0, 20))}

    correction = wave_correct(cameras, WaveCorrectAxis.VERTICAL)

    # The shared x axis is already the up vector, so only a sign can change
    np.testing.assert_allclose(np.abs(correction[1]), [1.0, 0.0, 0.0], atol=1e-9)
    np.testing.assert_allclose(correction @ correction.T, np.eye(3), atol=1e-9)
