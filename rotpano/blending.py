"""
Image blending for panorama composition.

Blenders take the warped images and the seam masks and produce the final
panorama canvas:

- MultiBandBlender: Laplacian pyramid blending (low frequencies are mixed
  over a wide band around the seam, fine detail over a narrow one)
- FeatherBlender: weights are the seam masks smoothed with a Gaussian
- NoBlender: every pixel takes the colour of the image owning it
"""

import logging
import math

import numpy as np
from scipy.ndimage import convolve1d, distance_transform_edt, gaussian_filter

from .data_structures import Panorama, overlap_slices, union_roi

logger = logging.getLogger(__name__)

# 5-tap binomial kernel used for both pyramid reduction and expansion
PYRAMID_KERNEL = np.array([1.0, 4.0, 6.0, 4.0, 1.0]) / 16.0

WEIGHT_EPS = 1e-5


class Blender:
    """
    Base blender.

    Subclasses implement `_compose(canvas_roi, warped, masks)` and return the
    float canvas; the base class takes care of the coverage mask and the
    conversion to a Panorama.
    """

    def blend(self, warped, seams):
        """
        Blend warped images into one panorama.

        Args:
            warped: list of WarpedImage
            seams: SeamMasks with one mask per warped image (same order)

        Returns:
            Panorama
        """
        if len(warped) != len(seams.masks):
            raise ValueError(f"{len(warped)} warped images but {len(seams.masks)} seam masks")

        canvas_roi = union_roi(wi.roi for wi in warped)
        _, _, width, height = canvas_roi

        # A pixel belongs to the panorama only if some image owns it there
        masks = [wi.mask & m for wi, m in zip(warped, seams.masks)]
        covered = np.zeros((height, width), dtype=bool)
        contributing = []
        for wi, mask in zip(warped, masks):
            if not np.any(mask):
                continue
            covered |= _place(mask, wi.roi, canvas_roi)
            contributing.append(wi.index)

        result = self._compose(canvas_roi, warped, masks)
        result[~covered] = 0

        logger.info("blended %d images into a %dx%d canvas",
                    len(contributing), width, height)
        return Panorama(
            image=np.clip(np.rint(result), 0, 255).astype(np.uint8),
            mask=covered,
            corner=canvas_roi[:2],
            contributing=tuple(sorted(contributing)),
        )

    def _compose(self, canvas_roi, warped, masks):
        raise NotImplementedError


class NoBlender(Blender):
    """Hard seams: each pixel is copied from the image owning it."""

    def _compose(self, canvas_roi, warped, masks):
        _, _, width, height = canvas_roi
        channels = warped[0].image.shape[2]
        result = np.zeros((height, width, channels), dtype=np.float32)
        # Paint highest index first so overlapping masks resolve to the lowest
        order = sorted(range(len(warped)), key=lambda k: -warped[k].index)
        for k in order:
            image = _place(warped[k].image, warped[k].roi, canvas_roi)
            mask = _place(masks[k], warped[k].roi, canvas_roi)
            result[mask] = image[mask]
        return result


class FeatherBlender(Blender):
    """
    Weighted blending with Gaussian smoothing.

    Each seam mask is blurred into a soft weight map, so images fade into
    each other across the seam instead of switching abruptly.
    """

    def __init__(self, blend_strength=5.0):
        """
        Initialize Feather Blender.

        Args:
            blend_strength: Width of the transition as a percentage of the
                            canvas size
        """
        self.blend_strength = blend_strength

    def _compose(self, canvas_roi, warped, masks):
        _, _, width, height = canvas_roi
        channels = warped[0].image.shape[2]
        sigma = max(0.5, blend_width(width, height, self.blend_strength) / 6.0)

        accumulated = np.zeros((height, width, channels), dtype=np.float64)
        weight_sum = np.zeros((height, width), dtype=np.float64)
        for wi, mask in zip(warped, masks):
            image = _place(wi.image, wi.roi, canvas_roi)
            valid = _place(wi.mask, wi.roi, canvas_roi)
            owned = _place(mask, wi.roi, canvas_roi)
            weight = self._gaussian_smooth(owned.astype(np.float32), sigma)
            # Owned pixels always keep some weight of their own
            weight = np.where(valid, np.maximum(weight, WEIGHT_EPS * owned), 0.0)
            accumulated += image * weight[..., np.newaxis]
            weight_sum += weight

        return accumulated / np.maximum(weight_sum, WEIGHT_EPS)[..., np.newaxis]

    def _gaussian_smooth(self, image, sigma=1.0):
        """
        Apply Gaussian smoothing to image.

        Args:
            image: Input image
            sigma: Standard deviation of Gaussian kernel

        Returns:
            Smoothed image
        """
        return gaussian_filter(image, sigma=sigma, mode='nearest')


class MultiBandBlender(Blender):
    """
    Multi-band (Laplacian pyramid) blending.

    Every image is decomposed into a Laplacian pyramid and every seam mask
    into a Gaussian pyramid. Each band is blended with the weights of its
    own level, normalised, and the blended pyramid is collapsed back into
    one image.
    """

    def __init__(self, num_bands=None, blend_strength=5.0):
        """
        Initialize Multi-Band Blender.

        Args:
            num_bands: Number of pyramid levels; None derives it from
                       blend_strength and the canvas size
            blend_strength: Blend width as a percentage of the canvas size
        """
        self.num_bands = num_bands
        self.blend_strength = blend_strength

    def bands_for(self, width, height):
        """Pyramid depth for a canvas of the given size."""
        if self.num_bands is not None:
            bands = self.num_bands
        else:
            width_px = blend_width(width, height, self.blend_strength)
            bands = math.ceil(math.log2(width_px)) - 1 if width_px >= 1 else 0
        # The coarsest level must keep at least one pixel
        max_bands = int(math.floor(math.log2(max(1, min(width, height)))))
        return int(max(0, min(bands, max_bands)))

    def _compose(self, canvas_roi, warped, masks):
        _, _, width, height = canvas_roi
        channels = warped[0].image.shape[2]
        bands = self.bands_for(width, height)

        # Pad so every level halves exactly
        step = 2 ** bands
        padded_h = int(math.ceil(height / step) * step)
        padded_w = int(math.ceil(width / step) * step)
        padded_roi = (canvas_roi[0], canvas_roi[1], padded_w, padded_h)
        logger.debug("multi-band blending with %d bands on %dx%d", bands, padded_w, padded_h)

        shapes = [(padded_h // 2 ** k, padded_w // 2 ** k) for k in range(bands + 1)]
        blended = [np.zeros(shape + (channels,), dtype=np.float64) for shape in shapes]
        weights = [np.zeros(shape, dtype=np.float64) for shape in shapes]

        for wi, mask in zip(warped, masks):
            if not np.any(mask):
                continue
            image = _place(wi.image, wi.roi, padded_roi).astype(np.float64)
            valid = _place(wi.mask, wi.roi, padded_roi)
            image = _fill_invalid(image, valid)

            laplacian = laplacian_pyramid(image, bands)
            mask_pyramid = gaussian_pyramid(_place(mask, wi.roi, padded_roi).astype(np.float64), bands)
            for level in range(bands + 1):
                blended[level] += laplacian[level] * mask_pyramid[level][..., np.newaxis]
                weights[level] += mask_pyramid[level]

        for level in range(bands + 1):
            blended[level] /= (weights[level] + WEIGHT_EPS)[..., np.newaxis]

        result = collapse_pyramid(blended)
        return result[:height, :width]


def blend_width(width, height, blend_strength):
    """Transition width in pixels: blend_strength percent of sqrt(area)."""
    return math.sqrt(width * height) * blend_strength / 100.0


def pyr_down(image):
    """Blur with the binomial kernel and drop every other row and column."""
    smoothed = convolve1d(image, PYRAMID_KERNEL, axis=0, mode='reflect')
    smoothed = convolve1d(smoothed, PYRAMID_KERNEL, axis=1, mode='reflect')
    return smoothed[::2, ::2]


def pyr_up(image, shape):
    """Insert zeros between samples and interpolate with the binomial kernel."""
    upsampled = np.zeros(tuple(shape) + image.shape[2:], dtype=image.dtype)
    upsampled[::2, ::2] = image
    upsampled = convolve1d(upsampled, 2.0 * PYRAMID_KERNEL, axis=0, mode='reflect')
    return convolve1d(upsampled, 2.0 * PYRAMID_KERNEL, axis=1, mode='reflect')


def gaussian_pyramid(image, levels):
    pyramid = [image]
    for _ in range(levels):
        pyramid.append(pyr_down(pyramid[-1]))
    return pyramid


def laplacian_pyramid(image, levels):
    """Band-pass levels followed by the low-pass residual."""
    gaussian = gaussian_pyramid(image, levels)
    pyramid = []
    for level in range(levels):
        pyramid.append(gaussian[level] - pyr_up(gaussian[level + 1], gaussian[level].shape[:2]))
    pyramid.append(gaussian[-1])
    return pyramid


def collapse_pyramid(pyramid):
    image = pyramid[-1]
    for level in reversed(pyramid[:-1]):
        image = pyr_up(image, level.shape[:2]) + level
    return image


def _place(array, roi, canvas_roi):
    """Copy an ROI-aligned array onto a zero canvas."""
    _, _, width, height = canvas_roi
    out = np.zeros((height, width) + array.shape[2:], dtype=array.dtype)
    overlap = overlap_slices(canvas_roi, roi)
    if overlap is not None:
        canvas_slices, roi_slices = overlap
        out[canvas_slices] = array[roi_slices]
    return out


def _fill_invalid(image, valid):
    """Replace pixels outside `valid` with the nearest valid pixel.

    Keeps the black surroundings of a warped image from bleeding into the
    coarse pyramid levels.
    """
    if valid.all() or not valid.any():
        return image
    _, (rows, cols) = distance_transform_edt(~valid, return_indices=True)
    return image[rows, cols]


def create_blender(kind, num_bands=None, blend_strength=5.0):
    """Blender by name: 'multiband', 'feather' or 'no'."""
    if kind == 'multiband':
        return MultiBandBlender(num_bands=num_bands, blend_strength=blend_strength)
    if kind == 'feather':
        return FeatherBlender(blend_strength=blend_strength)
    if kind == 'no':
        return NoBlender()
    raise ValueError(f"unknown blender: {kind}")


__all__ = [
    "Blender",
    "MultiBandBlender",
    "FeatherBlender",
    "NoBlender",
    "create_blender",
    "laplacian_pyramid",
    "collapse_pyramid",
]
