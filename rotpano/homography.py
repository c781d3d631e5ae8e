"""
Homography estimation with RANSAC, and focal length recovery from
homographies induced by a purely rotating camera.
"""

import numpy as np


class HomographyEstimator:
    """
    Homography matrix estimation using RANSAC algorithm.

    A homography is a 3x3 matrix that describes the projective transformation
    between two images taken by a camera rotating about its centre.
    """

    def __init__(self, ransac_reproj_threshold=3.0, max_iters=2000,
                 confidence=0.995, min_inliers=6, seed=0):
        """
        Initialize Homography Estimator.

        Args:
            ransac_reproj_threshold: Maximum reprojection error to be considered inlier
            max_iters: Maximum number of RANSAC iterations
            confidence: Desired confidence level for RANSAC
            min_inliers: Minimum number of inliers required
            seed: Seed of the sampling generator, fixed for reproducible output
        """
        self.ransac_reproj_threshold = ransac_reproj_threshold
        self.max_iters = max_iters
        self.confidence = confidence
        self.min_inliers = min_inliers
        self.seed = seed

    def find_homography(self, src_points, dst_points):
        """
        Find homography matrix using RANSAC.

        Args:
            src_points: Source points (N x 2)
            dst_points: Destination points (N x 2)

        Returns:
            H: Homography matrix (3 x 3), or None
            mask: Inlier mask (N,)
        """
        src_points = np.asarray(src_points, dtype=np.float64).reshape(-1, 2)
        dst_points = np.asarray(dst_points, dtype=np.float64).reshape(-1, 2)

        if len(src_points) != len(dst_points):
            raise ValueError("Source and destination points must have same length")

        n_points = len(src_points)
        no_inliers = np.zeros(n_points, dtype=bool)
        if n_points < 4:
            return None, no_inliers

        # A fresh generator per call keeps results independent of call order
        rng = np.random.default_rng(self.seed)

        best_H = None
        best_inliers = no_inliers
        best_num_inliers = 0
        n_iters_needed = self.max_iters

        iteration = 0
        while iteration < min(self.max_iters, n_iters_needed):
            iteration += 1
            indices = rng.choice(n_points, 4, replace=False)

            H = compute_homography_dlt(src_points[indices], dst_points[indices])
            if H is None:
                continue

            inliers = self._get_inliers(src_points, dst_points, H)
            num_inliers = int(np.sum(inliers))

            if num_inliers > best_num_inliers:
                best_num_inliers = num_inliers
                best_inliers = inliers
                best_H = H

                # Adaptive termination
                inlier_ratio = num_inliers / n_points
                with np.errstate(divide='ignore'):
                    denom = np.log(1 - inlier_ratio ** 4)
                if denom < 0:
                    n_iters_needed = int(np.ceil(np.log(1 - self.confidence) / denom))
                else:
                    n_iters_needed = self.max_iters
                if inlier_ratio >= 1.0:
                    break

        if best_H is None or best_num_inliers < self.min_inliers:
            return None, no_inliers

        # Refine homography using all inliers
        refined = compute_homography_dlt(src_points[best_inliers], dst_points[best_inliers])
        if refined is not None:
            refined_inliers = self._get_inliers(src_points, dst_points, refined)
            if refined_inliers.sum() >= best_num_inliers:
                best_H, best_inliers = refined, refined_inliers

        return best_H, best_inliers

    def _get_inliers(self, src_pts, dst_pts, H):
        """
        Get inlier mask based on reprojection error.

        Args:
            src_pts: Source points (N x 2)
            dst_pts: Destination points (N x 2)
            H: Homography matrix (3 x 3)

        Returns:
            mask: Boolean mask indicating inliers
        """
        with np.errstate(divide='ignore', invalid='ignore'):
            dst_projected = apply_homography(src_pts, H)
            errors = np.sqrt(np.sum((dst_pts - dst_projected) ** 2, axis=1))
        return np.isfinite(errors) & (errors < self.ransac_reproj_threshold)


def compute_homography_dlt(src_pts, dst_pts):
    """
    Compute homography using the normalised Direct Linear Transform.

    For each point correspondence (x, y) -> (x', y'), we have:
    x' = (h11*x + h12*y + h13) / (h31*x + h32*y + h33)
    y' = (h21*x + h22*y + h23) / (h31*x + h32*y + h33)

    This gives 2 equations per correspondence, so at least 4 points are
    needed for the 8 unknowns.

    Returns:
        H normalised so that H[2, 2] = 1, or None for degenerate input
    """
    n = len(src_pts)
    if n < 4:
        return None

    src_norm, T_src = normalize_points(src_pts)
    dst_norm, T_dst = normalize_points(dst_pts)

    x, y = src_norm[:, 0], src_norm[:, 1]
    xp, yp = dst_norm[:, 0], dst_norm[:, 1]
    zeros = np.zeros(n)
    ones = np.ones(n)

    # Two rows per correspondence
    A = np.empty((2 * n, 9))
    A[0::2] = np.column_stack([-x, -y, -ones, zeros, zeros, zeros, x * xp, y * xp, xp])
    A[1::2] = np.column_stack([zeros, zeros, zeros, -x, -y, -ones, x * yp, y * yp, yp])

    try:
        _, singular_values, Vt = np.linalg.svd(A)
    except np.linalg.LinAlgError:
        return None

    # Rank-deficient system (e.g. three collinear points in a minimal sample)
    if n == 4 and singular_values[7] < 1e-8 * singular_values[0]:
        return None

    H = np.linalg.inv(T_dst) @ Vt[-1].reshape(3, 3) @ T_src

    if abs(H[2, 2]) < 1e-12 or not np.all(np.isfinite(H)):
        return None
    H = H / H[2, 2]

    if abs(np.linalg.det(H)) < 1e-10:
        return None
    return H


def normalize_points(points):
    """
    Normalize points for better numerical stability.

    Translates points so centroid is at origin and scales so
    average distance from origin is sqrt(2).
    """
    points = np.asarray(points, dtype=np.float64)

    centroid = np.mean(points, axis=0)
    points_centered = points - centroid

    avg_dist = np.mean(np.sqrt(np.sum(points_centered ** 2, axis=1)))
    if avg_dist < 1e-10:
        avg_dist = 1.0

    scale = np.sqrt(2) / avg_dist

    T = np.array([
        [scale, 0, -scale * centroid[0]],
        [0, scale, -scale * centroid[1]],
        [0, 0, 1]
    ])

    return points_centered * scale, T


def apply_homography(points, H):
    """
    Apply homography transformation to points.

    Args:
        points: Points to transform (N x 2)
        H: Homography matrix (3 x 3)

    Returns:
        Transformed points (N x 2)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    points_homogeneous = np.hstack([points, np.ones((len(points), 1))])
    transformed = points_homogeneous @ np.asarray(H).T
    return transformed[:, :2] / transformed[:, 2:3]


def focals_from_homography(H):
    """
    Recover focal lengths from a homography between two rotated views.

    For H = K1 R K0^-1 with K = diag(f, f, 1) (coordinates centred on the
    principal point), the orthonormality of R's rows and columns gives two
    closed-form estimates for each focal.

    Returns:
        (f0, f1): focal of the source and destination views; either may be
        None when the homography does not determine it.
    """
    h = np.asarray(H, dtype=np.float64).ravel()

    f1 = None
    d1 = h[6] * h[7]
    d2 = (h[7] - h[6]) * (h[7] + h[6])
    v1 = -(h[0] * h[1] + h[3] * h[4]) / d1 if d1 != 0 else -np.inf
    v2 = (h[0] * h[0] + h[3] * h[3] - h[1] * h[1] - h[4] * h[4]) / d2 if d2 != 0 else -np.inf
    if v1 < v2:
        v1, v2 = v2, v1
    if v1 > 0 and v2 > 0:
        f1 = np.sqrt(v1 if abs(d1) > abs(d2) else v2)
    elif v1 > 0:
        f1 = np.sqrt(v1)

    f0 = None
    d1 = h[0] * h[3] + h[1] * h[4]
    d2 = h[0] * h[0] + h[1] * h[1] - h[3] * h[3] - h[4] * h[4]
    v1 = -h[2] * h[5] / d1 if d1 != 0 else -np.inf
    v2 = (h[5] * h[5] - h[2] * h[2]) / d2 if d2 != 0 else -np.inf
    if v1 < v2:
        v1, v2 = v2, v1
    if v1 > 0 and v2 > 0:
        f0 = np.sqrt(v1 if abs(d1) > abs(d2) else v2)
    elif v1 > 0:
        f0 = np.sqrt(v1)

    return f0, f1


__all__ = [
    "HomographyEstimator",
    "compute_homography_dlt",
    "normalize_points",
    "apply_homography",
    "focals_from_homography",
]
