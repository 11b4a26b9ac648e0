"""
Wave correction: straighten the horizon of a panorama.

Finds the world "up" direction implied by the cameras and rotates all of
them so it becomes the warper's vertical axis.
"""

import logging

import numpy as np

from .config import WaveCorrectAxis

logger = logging.getLogger(__name__)

# Smallest eigenvalue gap, relative to the trace, that fixes an up vector
DEGENERATE_SPREAD = 1e-2


def wave_correct(cameras, axis=WaveCorrectAxis.HORIZONTAL):
    """
    Rotate cameras so the panorama horizon is straight.

    Args:
        cameras: dict {image index: CameraParams}; updated in place
        axis: WaveCorrectAxis; NONE leaves cameras untouched

    Returns:
        The 3x3 rotation applied to every camera.
    """
    axis = WaveCorrectAxis(axis)
    if axis is WaveCorrectAxis.NONE or len(cameras) < 2:
        return np.eye(3)

    rotations = [cameras[i].R for i in sorted(cameras)]

    moment = np.zeros((3, 3))
    for R in rotations:
        col = R[:, 0]
        moment += np.outer(col, col)
    eigenvalues, eigenvectors = np.linalg.eigh(moment)

    if axis is WaveCorrectAxis.HORIZONTAL:
        rg1 = eigenvectors[:, 0]
        spread = eigenvalues[1] - eigenvalues[0]
    else:
        rg1 = eigenvectors[:, 2]
        spread = eigenvalues[2] - eigenvalues[1]

    # The up vector is only defined when its eigenvalue stands apart;
    # near-collinear x axes (a pure pitch sweep) leave it to noise
    if spread < DEGENERATE_SPREAD * eigenvalues.sum():
        logger.warning("Wave correction skipped: camera directions are degenerate")
        return np.eye(3)

    img_k = np.zeros(3)
    for R in rotations:
        img_k += R[:, 2]

    rg0 = np.cross(rg1, img_k)
    norm = np.linalg.norm(rg0)
    if norm <= 1e-5:
        logger.warning("Wave correction skipped: camera directions are degenerate")
        return np.eye(3)
    rg0 /= norm

    rg2 = np.cross(rg0, rg1)

    conf = 0.0
    if axis is WaveCorrectAxis.HORIZONTAL:
        for R in rotations:
            conf += rg0 @ R[:, 0]
    else:
        for R in rotations:
            conf -= rg1 @ R[:, 0]
    if conf < 0:
        rg0 = -rg0
        rg1 = -rg1

    correction = np.vstack([rg0, rg1, rg2])
    for i in cameras:
        cameras[i].R = correction @ cameras[i].R
    return correction
