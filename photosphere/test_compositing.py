"""
Tests for warping, exposure compensation, seam finding and blending.
"""

import logging

import numpy as np
import pytest

from .blending import FeatherBlender, MultiBandBlender, NoBlender, collapse_pyramid, \
    laplacian_pyramid
from .camera import CameraParams
from .config import ExposureMode, SeamMode
from .errors import CompositionError
from .exposure import ExposureCompensator
from .seam import SeamFinder
from .warper import CylindricalWarper, PlaneWarper, SphericalWarper, WarpedImage, \
    bilinear_interpolate, canvas_roi, warp_group


def yaw(deg):
    a = np.radians(deg)
    return np.array([[np.cos(a), 0, np.sin(a)], [0, 1, 0], [-np.sin(a), 0, np.cos(a)]])


def camera(deg, focal=300.0, size=(260, 200)):
    return CameraParams(focal=focal, ppx=size[0] / 2.0, ppy=size[1] / 2.0, R=yaw(deg))


def textured(height, width, seed=0, level=None):
    rng = np.random.default_rng(seed)
    if level is not None:
        return np.full((height, width, 3), float(level), dtype=np.float32)
    return rng.uniform(0, 255, size=(height, width, 3)).astype(np.float32)


def strip(x, width, height=60, y=0, level=None, seed=0):
    """A fully covered warped image occupying columns [x, x + width)."""
    return WarpedImage(image=textured(height, width, seed, level),
                       mask=np.ones((height, width), dtype=bool), corner=(x, y))


@pytest.mark.parametrize('warper_type', [SphericalWarper, CylindricalWarper, PlaneWarper])
def test_inverse_undoes_forward(warper_type):
    cam = camera(15)
    warper = warper_type(300.0)
    points = np.array([[10.0, 20.0], [130.0, 100.0], [250.0, 190.0]])

    uv, valid = warper.forward(points, cam.K(), cam.R)
    x, y, in_front = warper.inverse(uv[:, 0], uv[:, 1], cam.K(), cam.R)

    assert valid.all() and in_front.all()
    np.testing.assert_allclose(np.column_stack([x, y]), points, atol=1e-6)


def test_spherical_surface_is_proportional_to_angles():
    warper = SphericalWarper(300.0)
    cam = camera(30)

    uv, _ = warper.forward(np.array([[130.0, 100.0]]), cam.K(), cam.R)

    # Optical axis at 30 degrees yaw on the horizon
    assert uv[0, 0] == pytest.approx(300.0 * np.radians(30))
    assert uv[0, 1] == pytest.approx(300.0 * np.pi / 2)


def test_warp_produces_mask_and_corner():
    image = textured(200, 260, seed=1).astype(np.uint8)

    warped = SphericalWarper(300.0).warp(image, camera(0).K(), camera(0).R)

    assert warped.image.dtype == np.float32
    assert warped.mask.shape == warped.image.shape[:2]
    assert 0.8 < warped.mask.mean() <= 1.0
    assert np.all(warped.image[~warped.mask] == 0)
    x0, y0, x1, y1 = warped.bbox
    assert x0 < 0 < x1 and y0 < 300.0 * np.pi / 2 < y1


def test_plane_cannot_show_a_view_behind_it():
    cam = camera(180)

    with pytest.raises(CompositionError):
        PlaneWarper(300.0).warp(np.zeros((200, 260, 3), dtype=np.uint8), cam.K(), cam.R)


def test_bilinear_interpolation_between_pixels():
    image = np.array([[0.0, 10.0], [20.0, 30.0]], dtype=np.float32)

    values, mask = bilinear_interpolate(image, np.array([[0.5, 3.0]]), np.array([[0.5, 0.0]]))

    assert values[0, 0] == pytest.approx(15.0)
    assert mask.tolist() == [[True, False]]
    assert values[0, 1] == 0.0


def test_warp_group_preserves_image_order():
    images = [textured(200, 260, seed=s).astype(np.uint8) for s in range(3)]
    cameras = {0: camera(-20), 1: camera(0), 2: camera(20)}

    warped = warp_group(images, cameras, 'cylindrical', workers=3)

    corners = [w.corner[0] for w in warped]
    assert corners == sorted(corners)


def test_canvas_roi_is_union_and_bounded():
    warped = [strip(-10, 50), strip(30, 40, y=5)]

    assert canvas_roi(warped) == (-10, 0, 80, 65)
    with pytest.raises(CompositionError):
        canvas_roi(warped, max_pixels=1000)
    with pytest.raises(CompositionError):
        canvas_roi([WarpedImage(np.zeros((4, 4, 3), np.float32),
                                np.zeros((4, 4), bool), (0, 0))])


def test_gain_compensation_equalizes_overlap():
    dark, bright = strip(0, 80, level=100), strip(40, 80, level=150)
    compensator = ExposureCompensator(ExposureMode.GAIN)

    gains = compensator.feed([dark, bright])

    assert gains[0] > 1.0 > gains[1]
    before = abs(100 - 150)
    after = abs(100 * gains[0] - 150 * gains[1])
    assert after < 0.5 * before
    compensated = compensator.apply([dark, bright])
    assert compensated[0].image[0, 0, 0] == pytest.approx(100 * gains[0], rel=1e-5)


def test_gains_are_clamped(caplog):
    very_dark, very_bright = strip(0, 80, level=10), strip(40, 80, level=250)

    with caplog.at_level(logging.WARNING, logger='photosphere.exposure'):
        gains = ExposureCompensator('gain', gain_range=(0.8, 1.25)).feed(
            [very_dark, very_bright])

    assert min(gains) >= 0.8 and max(gains) <= 1.25
    assert 'clamped' in caplog.text


def test_channel_and_block_modes():
    a = strip(0, 96, height=64, level=100)
    b = strip(48, 96, height=64, level=120)
    b.image[..., 2] = 200

    channel_gains = ExposureCompensator('channels').feed([a, b])
    block_gains = ExposureCompensator('blocks', block_size=16).feed([a, b])

    assert channel_gains[0].shape == (3,)
    assert channel_gains[0][2] > channel_gains[0][0]
    assert block_gains[0].shape == a.mask.shape
    assert block_gains[1].shape == b.mask.shape
    # Blocks far from the overlap stay close to unit gain
    assert abs(block_gains[0][32, 2] - 1.0) < abs(block_gains[0][32, 90] - 1.0)


def test_exposure_none_leaves_images_untouched():
    a = strip(0, 40, level=90)

    (result,) = ExposureCompensator('none').apply([a])

    np.testing.assert_array_equal(result.image, a.image)


def three_overlapping():
    warped = [strip(0, 120, seed=1), strip(70, 120, y=4, seed=2), strip(150, 100, y=-3, seed=3)]
    warped[1].mask[:10, :20] = False
    return warped, canvas_roi(warped)


@pytest.mark.parametrize('mode', list(SeamMode))
def test_every_covered_pixel_has_exactly_one_owner(mode):
    warped, roi = three_overlapping()

    seams = SeamFinder(mode).find(warped, roi)

    owners = np.sum(seams.masks, axis=0)
    covered = seams.labels >= 0
    assert np.all(owners[covered] == 1)
    assert np.all(owners[~covered] == 0)
    for index, (w, mask) in enumerate(zip(warped, seams.masks)):
        ox, oy = w.corner[0] - roi[0], w.corner[1] - roi[1]
        footprint = np.zeros_like(mask)
        footprint[oy:oy + w.height, ox:ox + w.width] = w.mask
        assert not np.any(mask & ~footprint)
        assert np.any(mask)
        assert np.all(seams.labels[mask] == index)


def test_oversized_graph_cut_falls_back_to_dp(caplog):
    warped, roi = three_overlapping()

    with caplog.at_level(logging.WARNING, logger='photosphere.seam'):
        seams = SeamFinder('graphcut', max_pixels=100).find(warped, roi)

    assert 'DP seam' in caplog.text
    assert np.all(np.sum(seams.masks, axis=0)[seams.labels >= 0] == 1)


def test_graph_cut_follows_low_difference_column():
    # Images agree only along column 50 of the overlap, so the seam goes there
    left = strip(0, 80, height=40, level=0)
    right = strip(30, 80, height=40, level=200)
    right.image[:, 20] = 0
    roi = canvas_roi([left, right])

    seams = SeamFinder('graphcut').find([left, right], roi)

    assert np.all(seams.labels[:, :50] == 0)
    assert np.all(seams.labels[:, 51:] == 1)


def blended_pair(blender):
    warped = [strip(0, 70, height=50, level=80), strip(40, 70, height=50, y=10, level=80)]
    roi = canvas_roi(warped)
    seams = SeamFinder('voronoi').find(warped, roi)
    return blender.blend(warped, seams, roi), seams


@pytest.mark.parametrize('blender', [MultiBandBlender(5), FeatherBlender(), NoBlender()])
def test_blend_alpha_marks_coverage(blender):
    canvas, seams = blended_pair(blender)

    assert canvas.dtype == np.uint8
    assert canvas.shape == seams.labels.shape + (4,)
    covered = seams.labels >= 0
    np.testing.assert_array_equal(canvas[..., 3] == 255, covered)
    np.testing.assert_array_equal(canvas[..., 3] == 0, ~covered)
    # Constant input survives blending
    assert np.all(np.abs(canvas[covered][:, :3].astype(int) - 80) <= 1)
    assert np.all(canvas[~covered][:, :3] == 0)


def test_blend_crops_to_covered_area():
    warped = [strip(0, 30, height=20, level=50)]
    roi = (-5, -5, 40, 30)
    seams = SeamFinder().find(warped, roi)

    canvas = NoBlender().blend(warped, seams, roi)

    assert canvas.shape == (20, 30, 4)
    assert np.all(canvas[..., 3] == 255)


def test_blend_without_coverage_fails():
    warped = [WarpedImage(np.zeros((4, 4, 3), np.float32), np.zeros((4, 4), bool), (0, 0))]
    roi = (0, 0, 4, 4)
    seams = SeamFinder().find(warped, roi)

    with pytest.raises(CompositionError):
        MultiBandBlender().blend(warped, seams, roi)


def test_laplacian_pyramid_collapses_to_original():
    image = textured(37, 53, seed=8)

    restored = collapse_pyramid(laplacian_pyramid(image, 3))

    np.testing.assert_allclose(restored, image, atol=1e-3)
