"""
Camera model shared by the estimation and warping stages.
"""

from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation


@dataclass
class CameraParams:
    """
    Pinhole camera of one image.

    ``R`` rotates camera rays into the common world frame, so a pixel ``p``
    looks along ``R @ inv(K) @ p``. Translation is kept for completeness and
    stays zero under the rotation-only panorama model.
    """

    focal: float = 1.0
    aspect: float = 1.0
    ppx: float = 0.0
    ppy: float = 0.0
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def K(self):
        return np.array([[self.focal, 0.0, self.ppx],
                         [0.0, self.focal * self.aspect, self.ppy],
                         [0.0, 0.0, 1.0]])

    def copy(self):
        return CameraParams(focal=self.focal, aspect=self.aspect, ppx=self.ppx,
                            ppy=self.ppy, R=self.R.copy(), t=self.t.copy())


def orthonormalize(R):
    """Closest proper rotation matrix to R."""
    U, _, Vt = np.linalg.svd(R)
    result = U @ Vt
    if np.linalg.det(result) < 0:
        U[:, -1] *= -1
        result = U @ Vt
    return result


def rotation_to_vector(R):
    return Rotation.from_matrix(orthonormalize(R)).as_rotvec()


def vector_to_rotation(rvec):
    return Rotation.from_rotvec(rvec).as_matrix()
