"""
SIFT (Scale-Invariant Feature Transform) implementation
using NumPy and SciPy.
"""

import numpy as np
from scipy.ndimage import gaussian_filter, map_coordinates, maximum_filter, minimum_filter


class SIFT:
    """
    Scale-Invariant Feature Transform (SIFT) implementation.

    This class implements the full SIFT pipeline:
    1. Scale-space extrema detection
    2. Keypoint localization
    3. Orientation assignment
    4. Keypoint descriptor

    At most ``max_features`` keypoints are kept, strongest response first.
    The detector is fully deterministic.
    """

    # Descriptor layout: d x d spatial cells with n orientation bins
    DESCRIPTOR_CELLS = 4
    DESCRIPTOR_BINS = 8
    ORIENTATION_BINS = 36
    MAX_INTERP_STEPS = 5

    def __init__(self, num_octaves=5, num_scales=3, sigma=1.6,
                 contrast_threshold=0.04, edge_threshold=10,
                 border_width=5, max_features=800, min_octave_size=16,
                 upsample=True):
        """
        Initialize SIFT detector.

        Args:
            num_octaves: Maximum number of octaves in the scale space
            num_scales: Number of scales per octave
            sigma: Base sigma for Gaussian blur
            contrast_threshold: Threshold for low-contrast keypoint removal
            edge_threshold: Threshold for edge response removal
            border_width: Border width to ignore keypoints
            max_features: Maximum number of keypoints to return
            min_octave_size: Smallest image side an octave may have
            upsample: Start the scale space from the image doubled in size,
                which finds the small-scale features a plain pyramid misses
        """
        self.num_octaves = num_octaves
        self.num_scales = num_scales
        self.sigma = sigma
        self.contrast_threshold = contrast_threshold
        self.edge_threshold = edge_threshold
        self.border_width = border_width
        self.max_features = max_features
        self.min_octave_size = min_octave_size
        self.upsample = upsample
        self.k = 2 ** (1.0 / num_scales)  # Scale multiplication factor

    def detect_and_compute(self, image):
        """
        Detect keypoints and compute descriptors.

        Args:
            image: Grayscale image (2D numpy array, 0-255 range)

        Returns:
            keypoints: List of keypoint dicts (x, y, sigma, orientation, ...)
            descriptors: Array of descriptors (N x 128, uint8)
        """
        if len(image.shape) == 3:
            image = np.mean(image, axis=2)
        image = image.astype(np.float32) / 255.0

        gaussian_pyramid = self._build_gaussian_pyramid(image)
        dog_pyramid = self._build_dog_pyramid(gaussian_pyramid)

        keypoints = self._find_scale_space_extrema(dog_pyramid)
        keypoints = self._retain_best(keypoints)

        gradients = _GradientCache(gaussian_pyramid)
        keypoints = self._assign_orientations(gradients, keypoints)
        keypoints, descriptors = self._generate_descriptors(gradients, keypoints)

        if len(keypoints) > self.max_features:
            keypoints = keypoints[:self.max_features]
            descriptors = descriptors[:self.max_features]

        return keypoints, descriptors

    def _octave_count(self, shape):
        smallest = min(shape)
        count = 1
        while (count < self.num_octaves and
               smallest / (2 ** count) >= self.min_octave_size):
            count += 1
        return count

    def _build_gaussian_pyramid(self, image):
        """Build Gaussian pyramid with incremental blurring."""
        pyramid = []
        num_images = self.num_scales + 3

        # Input is assumed to carry a blur of 0.5, twice that once doubled
        blur = 0.5
        if self.upsample:
            image = _double(image)
            blur = 1.0
        base = gaussian_filter(image, np.sqrt(max(self.sigma ** 2 - blur ** 2, 0.01)))

        for octave in range(self._octave_count(image.shape)):
            if octave > 0:
                base = self._downsample(pyramid[octave - 1][self.num_scales])

            octave_pyramid = [base]
            for scale in range(1, num_images):
                sigma_prev = self.sigma * (self.k ** (scale - 1))
                sigma_total = sigma_prev * self.k
                sigma_step = np.sqrt(sigma_total ** 2 - sigma_prev ** 2)
                octave_pyramid.append(gaussian_filter(octave_pyramid[-1], sigma_step))

            pyramid.append(octave_pyramid)

        return pyramid

    def _build_dog_pyramid(self, gaussian_pyramid):
        """Build Difference of Gaussians pyramid."""
        dog_pyramid = []

        for octave_pyramid in gaussian_pyramid:
            stack = np.stack(octave_pyramid)
            dog_pyramid.append(stack[1:] - stack[:-1])

        return dog_pyramid

    def _find_scale_space_extrema(self, dog_pyramid):
        """Find and refine local extrema in DoG scale space."""
        keypoints = []
        threshold = self.contrast_threshold / self.num_scales

        for octave_idx, dog in enumerate(dog_pyramid):
            maxima = dog == maximum_filter(dog, size=3, mode='nearest')
            minima = dog == minimum_filter(dog, size=3, mode='nearest')
            candidates = (maxima | minima) & (np.abs(dog) > 0.5 * threshold)

            # Only interior scales have neighbours on both sides
            candidates[0] = False
            candidates[-1] = False
            b = self.border_width
            candidates[:, :b, :] = False
            candidates[:, -b:, :] = False
            candidates[:, :, :b] = False
            candidates[:, :, -b:] = False

            # Octave pixels in input image pixels
            step = 2.0 ** octave_idx
            if self.upsample:
                step *= 0.5

            seen = set()
            for scale_idx, y, x in np.argwhere(candidates):
                refined = self._refine_keypoint(dog, int(scale_idx), int(y), int(x), threshold)
                if refined is None:
                    continue

                (s, y, x), (y_off, x_off, s_off), response = refined
                # Neighbouring candidates may converge on the same extremum
                if (s, y, x) in seen:
                    continue
                seen.add((s, y, x))

                scale = s + s_off
                keypoints.append({
                    'octave': octave_idx,
                    'scale': scale,
                    'y': (y + y_off) * step,
                    'x': (x + x_off) * step,
                    'octave_y': y + y_off,
                    'octave_x': x + x_off,
                    'sigma': self.sigma * (self.k ** scale) * step,
                    'octave_sigma': self.sigma * (self.k ** scale),
                    'response': response,
                })

        return keypoints

    def _refine_keypoint(self, dog, scale_idx, y, x, threshold):
        """
        Refine keypoint location using quadratic interpolation.

        The sample point moves to the neighbouring pixel while the fitted
        offset exceeds half a pixel in any dimension, for at most
        MAX_INTERP_STEPS steps. Also removes low-contrast and edge responses.

        Returns:
            ((scale, y, x), (y_off, x_off, s_off), response) or None
        """
        num_layers, h, w = dog.shape
        b = self.border_width

        for _ in range(self.MAX_INTERP_STEPS):
            gradient, H = self._derivatives(dog, scale_idx, y, x)
            try:
                offset = -np.linalg.solve(H, gradient)
            except np.linalg.LinAlgError:
                return None

            if np.all(np.abs(offset) < 0.5):
                break
            if not np.all(np.isfinite(offset)) or np.any(np.abs(offset) > w + h):
                return None

            x += int(round(offset[0]))
            y += int(round(offset[1]))
            scale_idx += int(round(offset[2]))
            if (scale_idx < 1 or scale_idx > num_layers - 2 or
                    y < b or y >= h - b or x < b or x >= w - b):
                return None
        else:
            return None

        value = dog[scale_idx, y, x] + 0.5 * np.dot(gradient, offset)
        if abs(value) < threshold:
            return None

        # Eliminate edge responses
        dxx, dyy, dxy = H[0, 0], H[1, 1], H[0, 1]
        trace = dxx + dyy
        det = dxx * dyy - dxy * dxy
        if det <= 0:
            return None

        ratio = trace * trace / det
        if ratio > ((self.edge_threshold + 1) ** 2) / self.edge_threshold:
            return None

        return (scale_idx, y, x), (offset[1], offset[0], offset[2]), float(abs(value))

    @staticmethod
    def _derivatives(dog, scale_idx, y, x):
        """Gradient and Hessian of the DoG stack at an integer sample."""
        prev_dog = dog[scale_idx - 1]
        curr_dog = dog[scale_idx]
        next_dog = dog[scale_idx + 1]

        dx = (curr_dog[y, x + 1] - curr_dog[y, x - 1]) / 2.0
        dy = (curr_dog[y + 1, x] - curr_dog[y - 1, x]) / 2.0
        ds = (next_dog[y, x] - prev_dog[y, x]) / 2.0

        dxx = curr_dog[y, x + 1] + curr_dog[y, x - 1] - 2 * curr_dog[y, x]
        dyy = curr_dog[y + 1, x] + curr_dog[y - 1, x] - 2 * curr_dog[y, x]
        dss = next_dog[y, x] + prev_dog[y, x] - 2 * curr_dog[y, x]

        dxy = ((curr_dog[y + 1, x + 1] - curr_dog[y + 1, x - 1]) -
               (curr_dog[y - 1, x + 1] - curr_dog[y - 1, x - 1])) / 4.0
        dxs = ((next_dog[y, x + 1] - next_dog[y, x - 1]) -
               (prev_dog[y, x + 1] - prev_dog[y, x - 1])) / 4.0
        dys = ((next_dog[y + 1, x] - next_dog[y - 1, x]) -
               (prev_dog[y + 1, x] - prev_dog[y - 1, x])) / 4.0

        H = np.array([[dxx, dxy, dxs],
                      [dxy, dyy, dys],
                      [dxs, dys, dss]], dtype=np.float64)
        gradient = np.array([dx, dy, ds], dtype=np.float64)
        return gradient, H

    def _retain_best(self, keypoints):
        """Keep the strongest keypoints; ties keep detection order."""
        if len(keypoints) <= self.max_features:
            return keypoints
        responses = np.array([kp['response'] for kp in keypoints])
        order = np.argsort(-responses, kind='stable')[:self.max_features]
        return [keypoints[i] for i in order]

    def _assign_orientations(self, gradients, keypoints):
        """Assign one keypoint per dominant orientation."""
        keypoints_with_orientation = []

        for kp in keypoints:
            for orientation in self._compute_keypoint_orientations(gradients, kp):
                kp_oriented = kp.copy()
                kp_oriented['orientation'] = orientation
                keypoints_with_orientation.append(kp_oriented)

        return keypoints_with_orientation

    def _compute_keypoint_orientations(self, gradients, kp):
        """Compute dominant orientations from a weighted gradient histogram."""
        scale_idx = int(np.clip(round(kp['scale']), 0, self.num_scales + 2))
        magnitude, angle = gradients.get(kp['octave'], scale_idx)

        sigma = 1.5 * kp['octave_sigma']
        radius = int(round(3 * sigma))
        y = int(round(kp['octave_y']))
        x = int(round(kp['octave_x']))

        h, w = magnitude.shape
        y0, y1 = max(1, y - radius), min(h - 1, y + radius + 1)
        x0, x1 = max(1, x - radius), min(w - 1, x + radius + 1)
        if y1 <= y0 or x1 <= x0:
            return [0.0]

        yy, xx = np.mgrid[y0:y1, x0:x1]
        weights = np.exp(-((yy - y) ** 2 + (xx - x) ** 2) / (2 * sigma ** 2))
        weights = weights * magnitude[y0:y1, x0:x1]

        num_bins = self.ORIENTATION_BINS
        bins = np.floor(angle[y0:y1, x0:x1] * num_bins / (2 * np.pi)).astype(int) % num_bins
        hist = np.bincount(bins.ravel(), weights=weights.ravel(), minlength=num_bins)

        # Circular smoothing
        hist = (np.roll(hist, 1) + hist + np.roll(hist, -1)) / 3.0

        max_val = hist.max()
        if max_val <= 0:
            return [0.0]

        orientations = []
        for i in range(num_bins):
            prev_val = hist[(i - 1) % num_bins]
            next_val = hist[(i + 1) % num_bins]
            if hist[i] > 0.8 * max_val and hist[i] >= prev_val and hist[i] >= next_val:
                denom = prev_val - 2 * hist[i] + next_val
                interp = 0.5 * (prev_val - next_val) / denom if denom != 0 else 0.0
                angle_deg = ((i + 0.5 + interp) * 360.0 / num_bins) % 360
                orientations.append(np.radians(angle_deg))

        return orientations or [0.0]

    def _generate_descriptors(self, gradients, keypoints):
        """Generate SIFT descriptors for keypoints."""
        descriptors = []
        valid_keypoints = []

        for kp in keypoints:
            scale_idx = int(np.clip(round(kp['scale']), 0, self.num_scales + 2))
            magnitude, angle = gradients.get(kp['octave'], scale_idx)
            descriptor = self._compute_descriptor(magnitude, angle, kp)
            if descriptor is not None:
                descriptors.append(descriptor)
                valid_keypoints.append(kp)

        if len(descriptors) > 0:
            descriptors = np.array(descriptors, dtype=np.uint8)
        else:
            descriptors = np.zeros((0, self.DESCRIPTOR_CELLS ** 2 * self.DESCRIPTOR_BINS),
                                   dtype=np.uint8)

        return valid_keypoints, descriptors

    def _compute_descriptor(self, magnitude, angle, kp):
        """
        Compute the 128-dimensional descriptor: a 4x4 grid of 8-bin
        orientation histograms with trilinear interpolation.
        """
        d = self.DESCRIPTOR_CELLS
        n = self.DESCRIPTOR_BINS

        hist_width = 3.0 * kp['octave_sigma']
        radius = int(round(hist_width * np.sqrt(2) * (d + 1) * 0.5))
        y = int(round(kp['octave_y']))
        x = int(round(kp['octave_x']))

        h, w = magnitude.shape
        y0, y1 = max(1, y - radius), min(h - 1, y + radius + 1)
        x0, x1 = max(1, x - radius), min(w - 1, x + radius + 1)
        if y1 - y0 < 3 or x1 - x0 < 3:
            return None

        yy, xx = np.mgrid[y0:y1, x0:x1]
        dy = (yy - y).ravel()
        dx = (xx - x).ravel()

        orientation = kp['orientation']
        cos_o = np.cos(orientation)
        sin_o = np.sin(orientation)
        x_rot = (cos_o * dx + sin_o * dy) / hist_width
        y_rot = (-sin_o * dx + cos_o * dy) / hist_width

        row_bin = y_rot + d / 2.0 - 0.5
        col_bin = x_rot + d / 2.0 - 0.5
        inside = (row_bin > -1) & (row_bin < d) & (col_bin > -1) & (col_bin < d)
        if not np.any(inside):
            return None

        mag = magnitude[y0:y1, x0:x1].ravel()[inside]
        ang = angle[y0:y1, x0:x1].ravel()[inside]
        row_bin = row_bin[inside]
        col_bin = col_bin[inside]
        weight = mag * np.exp(-(x_rot[inside] ** 2 + y_rot[inside] ** 2) / (2 * (0.5 * d) ** 2))
        ori_bin = ((ang - orientation) % (2 * np.pi)) * n / (2 * np.pi)

        r0 = np.floor(row_bin).astype(int)
        c0 = np.floor(col_bin).astype(int)
        o0 = np.floor(ori_bin).astype(int)
        fr = row_bin - r0
        fc = col_bin - c0
        fo = ori_bin - o0

        # Padded histogram so the -1 and d neighbours need no bounds checks
        hist = np.zeros((d + 2, d + 2, n), dtype=np.float64)
        for dr in (0, 1):
            wr = fr if dr else 1 - fr
            for dc in (0, 1):
                wc = fc if dc else 1 - fc
                for do in (0, 1):
                    wo = fo if do else 1 - fo
                    np.add.at(hist, (r0 + dr + 1, c0 + dc + 1, (o0 + do) % n),
                              weight * wr * wc * wo)

        descriptor = hist[1:-1, 1:-1, :].ravel()

        norm = np.linalg.norm(descriptor)
        if norm > 0:
            descriptor = descriptor / norm

        # Clip values to 0.2 and renormalize (illumination invariance)
        descriptor = np.clip(descriptor, 0, 0.2)
        norm = np.linalg.norm(descriptor)
        if norm > 0:
            descriptor = descriptor / norm

        return np.clip(np.round(descriptor * 512), 0, 255).astype(np.uint8)

    def _downsample(self, image):
        """Downsample image by factor of 2."""
        return image[::2, ::2]


def _double(image):
    """Bilinear upsampling by two; output pixel k samples input position k / 2."""
    h, w = image.shape
    yy, xx = np.meshgrid(np.arange(2 * h) / 2.0, np.arange(2 * w) / 2.0, indexing='ij')
    return map_coordinates(image, [yy, xx], order=1, mode='nearest').astype(np.float32)


class _GradientCache:
    """Lazily computed gradient magnitude/angle per pyramid image."""

    def __init__(self, gaussian_pyramid):
        self._pyramid = gaussian_pyramid
        self._cache = {}

    def get(self, octave, scale):
        key = (octave, scale)
        if key not in self._cache:
            image = self._pyramid[octave][scale]
            gx = np.zeros_like(image)
            gy = np.zeros_like(image)
            gx[:, 1:-1] = image[:, 2:] - image[:, :-2]
            gy[1:-1, :] = image[2:, :] - image[:-2, :]
            magnitude = np.sqrt(gx ** 2 + gy ** 2)
            angle = np.arctan2(gy, gx) % (2 * np.pi)
            self._cache[key] = (magnitude, angle)
        return self._cache[key]
