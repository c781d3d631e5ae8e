"""
Feature extraction: keypoint detectors and descriptors.

Two interchangeable finders are provided, both returning a FeatureSet:
- SiftFeatureFinder: DoG scale-space keypoints with 128-d SIFT descriptors
- HarrisFeatureFinder: Harris corners with normalised 8x8 patch descriptors
"""

import logging

import numpy as np
from scipy.ndimage import gaussian_filter, map_coordinates, maximum_filter, minimum_filter, sobel

from .data_structures import FeatureSet

logger = logging.getLogger(__name__)


def to_grayscale(image):
    """Convert an RGB image to float grayscale in [0, 1]."""
    image = np.asarray(image)
    integral = np.issubdtype(image.dtype, np.integer)
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]
    if image.ndim == 3:
        image = np.dot(image[..., :3].astype(np.float64), [0.299, 0.587, 0.114])
    image = image.astype(np.float32)
    if integral or image.max(initial=0.0) > 1.0:
        image = image / 255.0
    return image


class FeatureFinder:
    """Base class for keypoint detector/descriptor strategies."""

    descriptor_size = 128

    def find(self, image, image_index=0):
        """
        Detect keypoints and compute descriptors for one image.

        Args:
            image: (H x W x C) or (H x W) image
            image_index: Index of the image in the stitching session

        Returns:
            FeatureSet, possibly empty
        """
        gray = to_grayscale(image)
        h, w = gray.shape
        keypoints, descriptors = self.detect_and_compute(gray)
        if len(keypoints) == 0:
            logger.debug("image %d: no keypoints", image_index)
            return FeatureSet.empty(image_index, (w, h), self.descriptor_size)
        return FeatureSet(
            image_index=image_index,
            image_size=(w, h),
            keypoints=keypoints,
            descriptors=descriptors,
        )

    def detect_and_compute(self, gray):
        """Return (N x 4 keypoints, N x D descriptors) for a [0, 1] grayscale image."""
        raise NotImplementedError

    @staticmethod
    def _keep_strongest(keypoints, descriptors, responses, max_features):
        if max_features is None or len(keypoints) <= max_features:
            return keypoints, descriptors
        order = np.argsort(-responses, kind="stable")[:max_features]
        order.sort()
        return keypoints[order], descriptors[order]


class SiftFeatureFinder(FeatureFinder):
    """
    Scale-Invariant Feature Transform (SIFT).

    Pipeline:
    1. Scale-space extrema detection in the Difference-of-Gaussians pyramid
    2. Sub-pixel keypoint localization and edge-response rejection
    3. Orientation assignment from a 36-bin gradient histogram
    4. 4x4x8 gradient-histogram descriptor
    """

    descriptor_size = 128

    def __init__(self, num_octaves=4, num_scales=3, sigma=1.6,
                 contrast_threshold=0.01, edge_threshold=10,
                 border_width=5, max_features=None):
        """
        Initialize SIFT detector.

        Args:
            num_octaves: Number of octaves in the scale space
            num_scales: Number of scales per octave
            sigma: Base sigma for Gaussian blur
            contrast_threshold: Threshold for low-contrast keypoint removal
            edge_threshold: Threshold for edge response removal
            border_width: Border width to ignore keypoints
            max_features: Keep at most this many strongest keypoints (None = all)
        """
        self.num_octaves = num_octaves
        self.num_scales = num_scales
        self.sigma = sigma
        self.contrast_threshold = contrast_threshold
        self.edge_threshold = edge_threshold
        self.border_width = border_width
        self.max_features = max_features
        self.k = 2 ** (1.0 / num_scales)  # Scale multiplication factor

    def detect_and_compute(self, gray):
        gaussian_pyramid = self._build_gaussian_pyramid(gray)
        dog_pyramid = self._build_dog_pyramid(gaussian_pyramid)

        keypoints = self._find_scale_space_extrema(dog_pyramid)
        keypoints = self._assign_orientations(gaussian_pyramid, keypoints)
        keypoints, descriptors = self._generate_descriptors(gaussian_pyramid, keypoints)

        if len(keypoints) == 0:
            return np.zeros((0, 4)), np.zeros((0, self.descriptor_size), dtype=np.uint8)

        responses = np.array([kp['response'] for kp in keypoints])
        keypoints = np.array(
            [[kp['x'], kp['y'], kp['size'], kp['orientation']] for kp in keypoints]
        )
        return self._keep_strongest(keypoints, descriptors, responses, self.max_features)

    def _build_gaussian_pyramid(self, image):
        """Build Gaussian pyramid, num_scales + 3 images per octave."""
        pyramid = []

        # Assume the input carries a blur of 0.5 already
        base_image = gaussian_filter(image, np.sqrt(max(self.sigma ** 2 - 0.25, 0.01)))

        for octave in range(self.num_octaves):
            if octave > 0:
                # The image with twice the base blur becomes the next base
                base_image = self._downsample(pyramid[octave - 1][self.num_scales])
                if min(base_image.shape) < 2 * self.border_width + 3:
                    break

            octave_pyramid = [base_image]
            for scale in range(1, self.num_scales + 3):
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
        """Find local extrema over the 3x3x3 scale-space neighbourhood."""
        keypoints = []

        for octave_idx, octave_dog in enumerate(dog_pyramid):
            is_max = octave_dog == maximum_filter(octave_dog, size=3)
            is_min = octave_dog == minimum_filter(octave_dog, size=3)
            candidates = (is_max | is_min) & (np.abs(octave_dog) > 0.5 * self.contrast_threshold)
            # Only interior scales have both neighbours
            candidates[0] = False
            candidates[-1] = False

            for scale_idx, y, x in np.argwhere(candidates):
                if self._is_on_border(octave_dog[scale_idx], y, x):
                    continue

                refined = self._refine_keypoint(octave_dog, scale_idx, y, x)
                if refined is None:
                    continue

                y, x, s, offset, value = refined
                octave_scale = 2 ** octave_idx
                keypoints.append({
                    'octave': octave_idx,
                    'scale': s,
                    'y': (y + offset[1]) * octave_scale,
                    'x': (x + offset[0]) * octave_scale,
                    'sigma': self.sigma * (self.k ** (s + offset[2])),
                    'size': self.sigma * (self.k ** (s + offset[2])) * octave_scale,
                    'response': abs(value),
                })

        return keypoints

    def _is_on_border(self, image, y, x):
        """Check if point is on image border."""
        h, w = image.shape
        border = self.border_width
        return (x < border or x >= w - border or
                y < border or y >= h - border)

    def _refine_keypoint(self, octave_dog, scale_idx, y, x, max_steps=5):
        """
        Refine keypoint location using quadratic interpolation.
        Also removes low-contrast and edge responses.

        Returns:
            (y, x, scale, offset, value) with offset = (dx, dy, ds), or None
        """
        num_dog = octave_dog.shape[0]

        for _ in range(max_steps):
            prev_dog = octave_dog[scale_idx - 1]
            curr_dog = octave_dog[scale_idx]
            next_dog = octave_dog[scale_idx + 1]

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
                          [dxs, dys, dss]])
            gradient = np.array([dx, dy, ds])

            try:
                offset = -np.linalg.solve(H, gradient)
            except np.linalg.LinAlgError:
                return None

            if np.all(np.abs(offset) < 0.5):
                break

            # Move to the neighbouring sample and try again
            x += int(round(offset[0]))
            y += int(round(offset[1]))
            scale_idx += int(round(offset[2]))
            if (scale_idx < 1 or scale_idx > num_dog - 2 or
                    self._is_on_border(curr_dog, y, x)):
                return None
        else:
            return None

        value = curr_dog[y, x] + 0.5 * np.dot(gradient, offset)
        if abs(value) < self.contrast_threshold:
            return None

        # Eliminate edge responses
        trace = dxx + dyy
        det = dxx * dyy - dxy * dxy
        if det <= 0:
            return None
        threshold_ratio = ((self.edge_threshold + 1) ** 2) / self.edge_threshold
        if trace * trace / det >= threshold_ratio:
            return None

        return y, x, scale_idx, offset, value

    def _assign_orientations(self, gaussian_pyramid, keypoints):
        """Assign one keypoint per dominant orientation."""
        keypoints_with_orientation = []

        for kp in keypoints:
            image = gaussian_pyramid[kp['octave']][kp['scale']]
            octave_scale = 2 ** kp['octave']
            y = int(round(kp['y'] / octave_scale))
            x = int(round(kp['x'] / octave_scale))

            for orientation in self._compute_keypoint_orientations(image, y, x, kp['sigma']):
                kp_oriented = kp.copy()
                kp_oriented['orientation'] = orientation
                keypoints_with_orientation.append(kp_oriented)

        return keypoints_with_orientation

    def _compute_keypoint_orientations(self, image, y, x, sigma, num_bins=36):
        """Dominant gradient orientations (radians) around (y, x)."""
        weight_sigma = 1.5 * sigma
        radius = int(round(3 * weight_sigma))

        gx, gy, dx, dy = self._gradient_window(image, y, x, radius)
        if gx.size == 0:
            return [0.0]

        magnitude = np.sqrt(gx ** 2 + gy ** 2)
        weight = np.exp(-(dx ** 2 + dy ** 2) / (2 * weight_sigma ** 2))
        angle = np.arctan2(gy, gx) % (2 * np.pi)
        bins = (np.floor(angle * num_bins / (2 * np.pi)).astype(int)) % num_bins

        hist = np.bincount(bins, weights=magnitude * weight, minlength=num_bins)

        # Circular smoothing
        hist = (np.roll(hist, 1) + hist + np.roll(hist, -1)) / 3.0

        max_val = hist.max()
        if max_val <= 0:
            return [0.0]

        orientations = []
        for i in range(num_bins):
            prev_val = hist[(i - 1) % num_bins]
            next_val = hist[(i + 1) % num_bins]
            if hist[i] >= 0.8 * max_val and hist[i] > prev_val and hist[i] >= next_val:
                # Parabolic interpolation for sub-bin accuracy
                denom = prev_val - 2 * hist[i] + next_val
                interp = 0.5 * (prev_val - next_val) / denom if denom != 0 else 0.0
                angle = ((i + 0.5 + interp) * 2 * np.pi / num_bins) % (2 * np.pi)
                orientations.append(float(angle))

        return orientations or [0.0]

    def _generate_descriptors(self, gaussian_pyramid, keypoints):
        """Generate SIFT descriptors for keypoints."""
        descriptors = []
        valid_keypoints = []

        for kp in keypoints:
            image = gaussian_pyramid[kp['octave']][kp['scale']]
            octave_scale = 2 ** kp['octave']
            y = int(round(kp['y'] / octave_scale))
            x = int(round(kp['x'] / octave_scale))

            descriptor = self._compute_descriptor(image, y, x, kp['orientation'], kp['sigma'])
            if descriptor is not None:
                descriptors.append(descriptor)
                valid_keypoints.append(kp)

        if len(descriptors) > 0:
            descriptors = np.array(descriptors)
        else:
            descriptors = np.zeros((0, self.descriptor_size), dtype=np.uint8)

        return valid_keypoints, descriptors

    def _compute_descriptor(self, image, y, x, orientation, sigma, d=4, n=8):
        """
        Compute 128-dimensional SIFT descriptor.
        Uses 4x4 grid of histograms with 8 orientation bins each.
        """
        hist_width = 3.0 * sigma
        radius = int(round(hist_width * np.sqrt(2) * (d + 1) * 0.5))

        gx, gy, dx, dy = self._gradient_window(image, y, x, radius)
        if gx.size == 0:
            return None

        # Rotate sample offsets into the keypoint frame
        cos_o = np.cos(orientation)
        sin_o = np.sin(orientation)
        x_rot = (cos_o * dx + sin_o * dy) / hist_width
        y_rot = (-sin_o * dx + cos_o * dy) / hist_width

        row_bin = y_rot + d / 2.0 - 0.5
        col_bin = x_rot + d / 2.0 - 0.5
        inside = (row_bin > -1) & (row_bin < d) & (col_bin > -1) & (col_bin < d)
        if not np.any(inside):
            return None

        row_bin = row_bin[inside]
        col_bin = col_bin[inside]
        magnitude = np.sqrt(gx[inside] ** 2 + gy[inside] ** 2)
        angle = (np.arctan2(gy[inside], gx[inside]) - orientation) % (2 * np.pi)
        angle_bin = angle * n / (2 * np.pi)
        weight = magnitude * np.exp(-(x_rot[inside] ** 2 + y_rot[inside] ** 2) / (0.5 * d * d))

        r0 = np.floor(row_bin).astype(int)
        c0 = np.floor(col_bin).astype(int)
        o0 = np.floor(angle_bin).astype(int)
        fr = row_bin - r0
        fc = col_bin - c0
        fo = angle_bin - o0

        # Trilinear interpolation into a padded histogram
        hist = np.zeros((d + 2, d + 2, n))
        for dr in (0, 1):
            wr = fr if dr else 1 - fr
            for dc in (0, 1):
                wc = fc if dc else 1 - fc
                for do in (0, 1):
                    wo = fo if do else 1 - fo
                    np.add.at(hist, (r0 + dr + 1, c0 + dc + 1, (o0 + do) % n),
                              weight * wr * wc * wo)

        descriptor = hist[1:d + 1, 1:d + 1, :].flatten()

        norm = np.linalg.norm(descriptor)
        if norm <= 0:
            return None
        descriptor = descriptor / norm

        # Clip values to 0.2 and renormalize (illumination invariance)
        descriptor = np.clip(descriptor, 0, 0.2)
        descriptor = descriptor / np.linalg.norm(descriptor)

        return np.clip(descriptor * 512, 0, 255).astype(np.uint8)

    @staticmethod
    def _gradient_window(image, y, x, radius):
        """Central-difference gradients in a window, clipped to the image.

        Returns flattened gx, gy and the sample offsets dx, dy from (y, x).
        """
        h, w = image.shape
        y0, y1 = max(1, y - radius), min(h - 1, y + radius + 1)
        x0, x1 = max(1, x - radius), min(w - 1, x + radius + 1)
        if y1 <= y0 or x1 <= x0:
            empty = np.zeros(0)
            return empty, empty, empty, empty

        gx = image[y0:y1, x0 + 1:x1 + 1] - image[y0:y1, x0 - 1:x1 - 1]
        gy = image[y0 + 1:y1 + 1, x0:x1] - image[y0 - 1:y1 - 1, x0:x1]
        dy, dx = np.mgrid[y0 - y:y1 - y, x0 - x:x1 - x]
        return gx.ravel(), gy.ravel(), dx.ravel().astype(float), dy.ravel().astype(float)

    def _downsample(self, image):
        """Downsample image by factor of 2."""
        return image[::2, ::2]


class HarrisFeatureFinder(FeatureFinder):
    """
    Harris corners with bias/gain-normalised patch descriptors.

    Descriptors are 8x8 samples taken with a 5 pixel spacing from a blurred
    copy of the image, so each one summarises a 40x40 window.
    """

    descriptor_size = 64

    def __init__(self, k=0.04, sigma=1.5, nms_radius=4, rel_threshold=0.01,
                 patch_spacing=5, max_features=None):
        self.k = k
        self.sigma = sigma
        self.nms_radius = nms_radius
        self.rel_threshold = rel_threshold
        self.patch_spacing = patch_spacing
        self.max_features = max_features

    def detect_and_compute(self, gray):
        smoothed = gaussian_filter(gray, 1.0)
        ix = sobel(smoothed, axis=1)
        iy = sobel(smoothed, axis=0)

        ixx = gaussian_filter(ix * ix, self.sigma)
        iyy = gaussian_filter(iy * iy, self.sigma)
        ixy = gaussian_filter(ix * iy, self.sigma)
        response = ixx * iyy - ixy * ixy - self.k * (ixx + iyy) ** 2

        peak = response.max(initial=0.0)
        if peak <= 0:
            return np.zeros((0, 4)), np.zeros((0, self.descriptor_size), dtype=np.float32)

        local_max = response == maximum_filter(response, size=2 * self.nms_radius + 1)
        corners = local_max & (response > self.rel_threshold * peak)

        # Keep corners whose descriptor window fits inside the image
        half = 4 * self.patch_spacing
        h, w = gray.shape
        corners[:half, :] = False
        corners[h - half:, :] = False
        corners[:, :half] = False
        corners[:, w - half:] = False

        ys, xs = np.nonzero(corners)
        if len(ys) == 0:
            return np.zeros((0, 4)), np.zeros((0, self.descriptor_size), dtype=np.float32)

        blurred = gaussian_filter(gray, self.patch_spacing / 2.0)
        offsets = (np.arange(8) - 3.5) * self.patch_spacing
        grid_y, grid_x = np.meshgrid(offsets, offsets, indexing='ij')

        sample_y = ys[:, None] + grid_y.ravel()[None, :]
        sample_x = xs[:, None] + grid_x.ravel()[None, :]
        patches = map_coordinates(blurred, [sample_y.ravel(), sample_x.ravel()],
                                  order=1, mode='nearest').reshape(len(ys), -1)

        patches = patches - patches.mean(axis=1, keepdims=True)
        std = patches.std(axis=1, keepdims=True)
        usable = std[:, 0] > 1e-6
        descriptors = (patches[usable] / std[usable]).astype(np.float32)

        keypoints = np.column_stack([
            xs[usable], ys[usable],
            np.full(usable.sum(), float(self.patch_spacing)),
            np.zeros(usable.sum()),
        ]).astype(np.float64)
        responses = response[ys[usable], xs[usable]]

        return self._keep_strongest(keypoints, descriptors, responses, self.max_features)


def create_feature_finder(config):
    """Build the feature finder named by `config.features`."""
    if config.features == "sift":
        return SiftFeatureFinder(
            num_octaves=config.sift_octaves,
            num_scales=config.sift_scales,
            contrast_threshold=config.contrast_threshold,
            max_features=config.max_features,
        )
    return HarrisFeatureFinder(max_features=config.max_features)


__all__ = [
    "FeatureFinder",
    "SiftFeatureFinder",
    "HarrisFeatureFinder",
    "create_feature_finder",
    "to_grayscale",
]
