"""
Exposure compensation: one scalar gain per image so that overlapping
regions have matching mean intensity.
"""

import logging

import numpy as np

from .data_structures import WarpedImage, overlap_slices

logger = logging.getLogger(__name__)


class NoExposureCompensator:
    """Leaves every image untouched."""

    def feed(self, warped):
        return {w.index: 1.0 for w in warped}

    def apply(self, warped_image, gain):
        return warped_image


class GainCompensator:
    """
    Per-image gains from overlap statistics.

    Minimises, over gains g_i,
        sum_ij N_ij * (alpha * (g_i I_ij - g_j I_ji)^2 + beta * (1 - g_i)^2)
    where N_ij is the overlap size of images i and j and I_ij the mean
    intensity of image i inside that overlap. The beta term keeps gains
    near 1.
    """

    def __init__(self, alpha=0.01, beta=100.0):
        self.alpha = alpha
        self.beta = beta

    def feed(self, warped):
        """
        Args:
            warped: list of WarpedImage

        Returns:
            dict image index -> gain
        """
        n = len(warped)
        N = np.zeros((n, n))
        I = np.zeros((n, n))

        for i, wi in enumerate(warped):
            N[i, i] = np.count_nonzero(wi.mask)
            for j in range(i + 1, n):
                wj = warped[j]
                overlap = overlap_slices(wi.roi, wj.roi)
                if overlap is None:
                    continue
                si, sj = overlap
                both = wi.mask[si] & wj.mask[sj]
                count = np.count_nonzero(both)
                if count == 0:
                    continue
                N[i, j] = N[j, i] = count
                I[i, j] = _intensity(wi.image[si][both])
                I[j, i] = _intensity(wj.image[sj][both])

        A = np.zeros((n, n))
        b = np.zeros(n)
        for i in range(n):
            for j in range(n):
                b[i] += self.beta * N[i, j]
                A[i, i] += self.beta * N[i, j]
                if j == i:
                    continue
                A[i, i] += 2 * self.alpha * I[i, j] * I[i, j] * N[i, j]
                A[i, j] -= 2 * self.alpha * I[i, j] * I[j, i] * N[i, j]

        try:
            gains = np.linalg.solve(A, b)
        except np.linalg.LinAlgError:
            logger.warning("gain compensation system is singular, keeping unit gains")
            gains = np.ones(n)

        result = {w.index: float(g) for w, g in zip(warped, gains)}
        logger.debug("exposure gains: %s", result)
        return result

    def apply(self, warped_image, gain):
        if gain == 1.0:
            return warped_image
        return WarpedImage(
            index=warped_image.index,
            image=np.clip(warped_image.image * gain, 0, 255),
            mask=warped_image.mask,
            corner=warped_image.corner,
        )


def _intensity(pixels):
    """Mean colour-vector norm of an (N x C) pixel array."""
    return float(np.mean(np.sqrt(np.sum(pixels.astype(np.float64) ** 2, axis=-1))))


def create_exposure_compensator(kind):
    if kind == "gain":
        return GainCompensator()
    return NoExposureCompensator()


__all__ = ["GainCompensator", "NoExposureCompensator", "create_exposure_compensator"]
