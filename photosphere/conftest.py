"""
Shared fixtures: a synthetic spherical scene and pinhole views of it.

Every view is rendered from the same centre of projection, so overlapping
views are related by a pure rotation like a handheld panorama sweep.
"""

import numpy as np
import pytest
from scipy.ndimage import gaussian_filter, map_coordinates

VIEW_WIDTH = 260
VIEW_HEIGHT = 200
VIEW_FOCAL = 300.0


def make_scene(seed=1234, height=1024, width=2048):
    """Equirectangular texture with smooth shading and many sharp shapes."""
    rng = np.random.default_rng(seed)
    base = gaussian_filter(rng.random((height, width, 3)), sigma=(12, 12, 0))
    base = (base - base.min()) / (base.max() - base.min())
    scene = 40.0 + 160.0 * base

    yy, xx = np.mgrid[0:64, 0:64]
    for _ in range(1500):
        size = int(rng.integers(6, 40))
        row = int(rng.integers(0, height - size))
        col = int(rng.integers(0, width - size))
        color = rng.uniform(0, 255, size=3)
        patch = scene[row:row + size, col:col + size]
        if rng.random() < 0.5:
            patch[...] = color
        else:
            r = size / 2.0
            disc = (yy[:size, :size] - r + 0.5) ** 2 + (xx[:size, :size] - r + 0.5) ** 2 <= r * r
            patch[disc] = color

    return gaussian_filter(scene, sigma=(0.8, 0.8, 0))


def rotation(yaw_deg=0.0, pitch_deg=0.0):
    """Camera-to-world rotation: pitch about x, then yaw about y."""
    yaw, pitch = np.radians(yaw_deg), np.radians(pitch_deg)
    R_yaw = np.array([[np.cos(yaw), 0, np.sin(yaw)],
                      [0, 1, 0],
                      [-np.sin(yaw), 0, np.cos(yaw)]])
    R_pitch = np.array([[1, 0, 0],
                        [0, np.cos(pitch), -np.sin(pitch)],
                        [0, np.sin(pitch), np.cos(pitch)]])
    return R_yaw @ R_pitch


def render_view(scene, yaw_deg=0.0, pitch_deg=0.0, focal=VIEW_FOCAL,
                width=VIEW_WIDTH, height=VIEW_HEIGHT):
    """Pinhole view of the scene sphere as an (H, W, 3) uint8 image."""
    sh, sw = scene.shape[:2]
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    rays = np.stack([(xs - width / 2.0) / focal,
                     (ys - height / 2.0) / focal,
                     np.ones_like(xs)], axis=-1)
    rays = rays @ rotation(yaw_deg, pitch_deg).T
    norm = np.linalg.norm(rays, axis=-1)

    longitude = np.arctan2(rays[..., 0], rays[..., 2])
    polar = np.arccos(np.clip(rays[..., 1] / norm, -1.0, 1.0))
    cols = (longitude + np.pi) / (2 * np.pi) * sw
    rows = polar / np.pi * (sh - 1)

    view = np.stack([map_coordinates(scene[..., c], [rows, cols], order=1, mode='wrap')
                     for c in range(3)], axis=-1)
    return np.clip(np.round(view), 0, 255).astype(np.uint8)


@pytest.fixture(scope='session')
def scene():
    return make_scene()


@pytest.fixture(scope='session')
def sweep(scene):
    """Three overlapping views panning left to right."""
    return [render_view(scene, yaw) for yaw in (-25.0, 0.0, 25.0)]


@pytest.fixture(scope='session')
def far_view(scene):
    """A view sharing no content with the sweep."""
    return render_view(scene, 180.0)
