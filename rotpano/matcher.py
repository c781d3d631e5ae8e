"""
Pairwise feature matching with geometric verification.

Descriptors are matched by nearest-neighbour search (k-d tree or brute
force L2) with Lowe's ratio test; the candidates are then verified by
fitting a homography with RANSAC. The inlier count becomes the confidence
of the resulting MatchSet.
"""

import logging
from itertools import combinations

import numpy as np
from scipy.spatial import cKDTree

from .data_structures import MatchSet
from .homography import HomographyEstimator

logger = logging.getLogger(__name__)


class FeatureMatcher:
    """
    Descriptor matcher using L2 (Euclidean) distance.

    Matches are searched in both directions; each direction applies the
    ratio test and the two result sets are merged (union by default, mutual
    matches only with cross_check).
    """

    def __init__(self, method='kdtree', match_conf=0.3, cross_check=False, eps=0.0):
        """
        Initialize feature matcher.

        Args:
            method: 'kdtree' (scipy cKDTree) or 'brute' (full distance matrix)
            match_conf: A match is kept when best < (1 - match_conf) * second best
            cross_check: Keep only mutual best matches
            eps: Approximation factor of the k-d tree search (0 = exact)
        """
        if method not in ('kdtree', 'brute'):
            raise ValueError(f"unknown matcher method: {method}")
        self.method = method
        self.match_conf = match_conf
        self.cross_check = cross_check
        self.eps = eps

    @property
    def ratio_threshold(self):
        return 1.0 - self.match_conf

    def match(self, descriptors1, descriptors2):
        """
        Match features between two sets of descriptors.

        Args:
            descriptors1: Descriptors from first image (N x D)
            descriptors2: Descriptors from second image (M x D)

        Returns:
            (K x 2) int array of (index in descriptors1, index in descriptors2)
        """
        if len(descriptors1) < 2 or len(descriptors2) < 2:
            return np.zeros((0, 2), dtype=np.int64)

        desc1 = np.asarray(descriptors1, dtype=np.float32)
        desc2 = np.asarray(descriptors2, dtype=np.float32)

        forward = self._ratio_matches(desc1, desc2)
        backward = self._ratio_matches(desc2, desc1)[:, ::-1]

        if self.cross_check:
            backward_set = {tuple(p) for p in backward.tolist()}
            kept = [p for p in forward.tolist() if tuple(p) in backward_set]
        else:
            seen = set()
            kept = []
            for p in forward.tolist() + backward.tolist():
                key = tuple(p)
                if key not in seen:
                    seen.add(key)
                    kept.append(p)

        if not kept:
            return np.zeros((0, 2), dtype=np.int64)
        return np.array(kept, dtype=np.int64)

    def _ratio_matches(self, query, train):
        """Best matches of every query descriptor that pass the ratio test."""
        distances, indices = self._two_nearest(query, train)
        keep = distances[:, 0] < self.ratio_threshold * distances[:, 1]
        query_idx = np.nonzero(keep)[0]
        return np.column_stack([query_idx, indices[keep, 0]]).astype(np.int64)

    def _two_nearest(self, query, train):
        if self.method == 'kdtree':
            tree = cKDTree(train)
            distances, indices = tree.query(query, k=2, eps=self.eps)
            return distances, indices

        distances = self._compute_distance_matrix(query, train)
        # Stable sort keeps the lowest index on ties
        indices = np.argsort(distances, axis=1, kind='stable')[:, :2]
        return np.take_along_axis(distances, indices, axis=1), indices

    def _compute_distance_matrix(self, desc1, desc2):
        """
        Compute L2 distance matrix between two sets of descriptors.

        Args:
            desc1: N x D array
            desc2: M x D array

        Returns:
            distances: N x M matrix where distances[i, j] is L2 distance
                      between desc1[i] and desc2[j]
        """
        # ||a - b||^2 = ||a||^2 + ||b||^2 - 2*a.b
        desc1 = desc1.astype(np.float64)
        desc2 = desc2.astype(np.float64)
        sq_norms1 = np.sum(desc1 ** 2, axis=1, keepdims=True)
        sq_norms2 = np.sum(desc2 ** 2, axis=1, keepdims=True)
        sq_distances = sq_norms1 + sq_norms2.T - 2 * desc1 @ desc2.T

        # Ensure non-negative (numerical stability)
        return np.sqrt(np.maximum(sq_distances, 0))


class PairwiseMatcher:
    """
    Matches every candidate image pair and verifies it geometrically.

    A pair that cannot be verified yields a MatchSet with confidence 0
    rather than an error: it simply means "no connection".
    """

    def __init__(self, feature_matcher=None, homography_estimator=None, range_width=-1):
        """
        Args:
            feature_matcher: FeatureMatcher used for descriptor matching
            homography_estimator: HomographyEstimator used for RANSAC
            range_width: Only match pairs (i, j) with |i - j| <= range_width
                         (-1 matches all pairs)
        """
        self.feature_matcher = feature_matcher or FeatureMatcher()
        self.homography_estimator = homography_estimator or HomographyEstimator()
        self.range_width = range_width

    @property
    def min_inliers(self):
        return self.homography_estimator.min_inliers

    def candidate_pairs(self, indices):
        """Unordered pairs (i, j), i < j, of the given image indices."""
        pairs = combinations(sorted(indices), 2)
        if self.range_width < 0:
            return list(pairs)
        return [(i, j) for i, j in pairs if j - i <= self.range_width]

    def match_pair(self, features1, features2):
        """
        Match two FeatureSets.

        Returns:
            MatchSet from features1.image_index to features2.image_index
        """
        src, dst = features1.image_index, features2.image_index
        pairs = self.feature_matcher.match(features1.descriptors, features2.descriptors)

        if len(pairs) < self.min_inliers:
            logger.debug("pair (%d, %d): %d matches, too few to verify", src, dst, len(pairs))
            return MatchSet.rejected(src, dst, pairs)

        # Homographies are fitted in coordinates centred on each image
        src_points = features1.points[pairs[:, 0]] - _centre(features1)
        dst_points = features2.points[pairs[:, 1]] - _centre(features2)

        H, inliers = self.homography_estimator.find_homography(src_points, dst_points)
        if H is None:
            logger.debug("pair (%d, %d): homography rejected (%d matches)", src, dst, len(pairs))
            return MatchSet.rejected(src, dst, pairs)

        num_inliers = int(inliers.sum())
        logger.debug("pair (%d, %d): %d matches, %d inliers", src, dst, len(pairs), num_inliers)
        return MatchSet(
            src=src,
            dst=dst,
            pairs=pairs,
            inliers=inliers,
            homography=H,
            num_inliers=num_inliers,
            confidence=float(num_inliers),
        )

    def match_all(self, features, executor=None):
        """
        Match all candidate pairs of a list of FeatureSets.

        Args:
            features: FeatureSets, one per image
            executor: Optional concurrent.futures executor; pairs are
                      independent, results keep the candidate order

        Returns:
            List of MatchSets in candidate-pair order
        """
        by_index = {f.image_index: f for f in features}
        pairs = self.candidate_pairs(by_index)
        mapper = executor.map if executor is not None else map
        return list(mapper(lambda p: self.match_pair(by_index[p[0]], by_index[p[1]]), pairs))


def _centre(features):
    w, h = features.image_size
    return np.array([0.5 * w, 0.5 * h])


def create_pairwise_matcher(config):
    """Build the pairwise matcher described by a StitchConfig."""
    return PairwiseMatcher(
        feature_matcher=FeatureMatcher(
            method=config.matcher,
            match_conf=config.match_conf,
            cross_check=config.cross_check,
        ),
        homography_estimator=HomographyEstimator(
            ransac_reproj_threshold=config.ransac_reproj_threshold,
            max_iters=config.ransac_max_iters,
            min_inliers=config.min_inliers,
            seed=config.seed,
        ),
        range_width=config.range_width,
    )


__all__ = ["FeatureMatcher", "PairwiseMatcher", "create_pairwise_matcher"]
