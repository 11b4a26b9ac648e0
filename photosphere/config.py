"""
Per-call stitching configuration.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Tuple


class WaveCorrectAxis(str, Enum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    NONE = "none"


class Projection(str, Enum):
    SPHERICAL = "spherical"
    CYLINDRICAL = "cylindrical"
    PLANE = "plane"


class ExposureMode(str, Enum):
    NONE = "none"
    GAIN = "gain"
    CHANNELS = "channels"
    BLOCKS = "blocks"


class SeamMode(str, Enum):
    GRAPHCUT = "graphcut"
    DP = "dp"
    VORONOI = "voronoi"


class BlendMode(str, Enum):
    MULTIBAND = "multiband"
    FEATHER = "feather"
    NONE = "none"


_ENUM_FIELDS = {
    "wave_correct_axis": WaveCorrectAxis,
    "projection": Projection,
    "exposure": ExposureMode,
    "seam": SeamMode,
    "blend": BlendMode,
}


@dataclass(frozen=True)
class StitchConfig:
    """
    Settings for one stitching call.

    The defaults reproduce the panorama preset of the mobile shim: horizontal
    wave correction, spherical projection and a 1000 px working height.
    """

    wave_correction: bool = True
    wave_correct_axis: WaveCorrectAxis = WaveCorrectAxis.HORIZONTAL
    projection: Projection = Projection.SPHERICAL
    downscale_target_height: int = 1000

    # Features and matching
    max_features: int = 800
    match_ratio: float = 0.75
    min_inliers: int = 6
    match_confidence: float = 1.0
    ransac_threshold: float = 3.0
    ransac_max_iters: int = 2000

    # Bundle adjustment
    ba_max_iterations: int = 100
    ba_tolerance: float = 4.0

    # Compositing
    exposure: ExposureMode = ExposureMode.GAIN
    gain_range: Tuple[float, float] = (0.5, 2.0)
    exposure_block_size: int = 32
    seam: SeamMode = SeamMode.GRAPHCUT
    seam_max_pixels: int = 250_000
    blend: BlendMode = BlendMode.MULTIBAND
    blend_bands: int = 5
    max_canvas_pixels: int = 50_000_000

    multi_group: bool = False
    seed: int = 0
    workers: int = 4

    def __post_init__(self):
        for name, enum_type in _ENUM_FIELDS.items():
            value = getattr(self, name)
            if not isinstance(value, enum_type):
                object.__setattr__(self, name, enum_type(value))

        if self.downscale_target_height < 1:
            raise ValueError("downscale_target_height must be positive")
        if self.min_inliers < 4:
            raise ValueError("min_inliers must be at least 4")
        if not 0.0 < self.match_ratio <= 1.0:
            raise ValueError("match_ratio must be in (0, 1]")
        low, high = self.gain_range
        if not 0.0 < low <= 1.0 <= high:
            raise ValueError("gain_range must bracket 1.0")
        object.__setattr__(self, "gain_range", (float(low), float(high)))
        if self.ba_max_iterations < 1:
            raise ValueError("ba_max_iterations must be positive")
        if self.blend_bands < 0:
            raise ValueError("blend_bands must be non-negative")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.seed < 0:
            raise ValueError("seed must be non-negative")

    @property
    def effective_wave_axis(self):
        """Axis actually applied, folding the boolean switch into the enum."""
        if not self.wave_correction:
            return WaveCorrectAxis.NONE
        return self.wave_correct_axis

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        result = dataclasses.asdict(self)
        for name in _ENUM_FIELDS:
            result[name] = result[name].value
        result["gain_range"] = list(result["gain_range"])
        return result

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]):
        """
        Build a config from plain values (e.g. parsed JSON).

        Enum fields accept their string values. Unknown keys are an error
        rather than being silently ignored.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        kwargs = dict(values)
        if "gain_range" in kwargs:
            kwargs["gain_range"] = tuple(kwargs["gain_range"])
        return cls(**kwargs)
