"""
Shared data structures handed between pipeline stages.

Every stage produces a new immutable value; numpy arrays stored in these
containers are flagged read-only on construction so a later stage cannot
modify an earlier stage's output in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np


def _frozen(array, dtype=None):
    array = np.array(array, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class FeatureSet:
    """Keypoints and descriptors detected in one image."""

    image_index: int
    # (width, height) of the image the features were detected in.
    image_size: Tuple[int, int]
    # keypoints: (N, 4) float array of x, y, scale, orientation (radians),
    # in pixel coordinates of the source image.
    keypoints: np.ndarray
    # descriptors: (N, D) array aligned with `keypoints` by row.
    descriptors: np.ndarray

    def __post_init__(self):
        keypoints = np.asarray(self.keypoints, dtype=np.float64).reshape(-1, 4)
        descriptors = np.asarray(self.descriptors)
        if descriptors.ndim != 2:
            descriptors = descriptors.reshape(len(keypoints), -1)
        if len(keypoints) != len(descriptors):
            raise ValueError(
                f"{len(keypoints)} keypoints but {len(descriptors)} descriptors"
            )
        object.__setattr__(self, "keypoints", _frozen(keypoints))
        object.__setattr__(self, "descriptors", _frozen(descriptors))

    def __len__(self):
        return len(self.keypoints)

    @property
    def points(self):
        """(N, 2) keypoint locations."""
        return self.keypoints[:, :2]

    @classmethod
    def empty(cls, image_index, image_size, descriptor_size=128):
        return cls(
            image_index=image_index,
            image_size=image_size,
            keypoints=np.zeros((0, 4)),
            descriptors=np.zeros((0, descriptor_size), dtype=np.float32),
        )


@dataclass(frozen=True)
class MatchSet:
    """Verified correspondences between image `src` and image `dst`."""

    src: int
    dst: int
    # pairs: (M, 2) int array, column 0 indexes FeatureSet(src),
    # column 1 indexes FeatureSet(dst).
    pairs: np.ndarray
    # inliers: (M,) bool array, True for correspondences consistent with
    # `homography`.
    inliers: np.ndarray
    # Homography mapping centred src coordinates to centred dst coordinates,
    # or None if the pair was rejected.
    homography: Optional[np.ndarray] = None
    num_inliers: int = 0
    confidence: float = 0.0

    def __post_init__(self):
        pairs = np.asarray(self.pairs, dtype=np.int64).reshape(-1, 2)
        inliers = np.asarray(self.inliers, dtype=bool).reshape(-1)
        if len(inliers) != len(pairs):
            raise ValueError("inlier mask must have one entry per correspondence")
        if self.confidence < 0:
            raise ValueError("confidence must be non-negative")
        object.__setattr__(self, "pairs", _frozen(pairs))
        object.__setattr__(self, "inliers", _frozen(inliers))
        if self.homography is not None:
            object.__setattr__(self, "homography", _frozen(self.homography, np.float64))

    @property
    def is_valid(self):
        return self.confidence > 0 and self.homography is not None

    @property
    def num_matches(self):
        return len(self.pairs)

    @property
    def inlier_pairs(self):
        return self.pairs[self.inliers]

    def check_bounds(self, src_features, dst_features):
        """Raise ValueError if any index falls outside its FeatureSet."""
        if len(self.pairs) == 0:
            return
        if self.pairs.min() < 0:
            raise ValueError("negative feature index in match set")
        if self.pairs[:, 0].max() >= len(src_features):
            raise ValueError(f"match index out of range for image {self.src}")
        if self.pairs[:, 1].max() >= len(dst_features):
            raise ValueError(f"match index out of range for image {self.dst}")

    @classmethod
    def rejected(cls, src, dst, pairs=None):
        pairs = np.zeros((0, 2), dtype=np.int64) if pairs is None else pairs
        return cls(src=src, dst=dst, pairs=pairs,
                   inliers=np.zeros(len(pairs), dtype=bool))


@dataclass(frozen=True)
class ImageGraph:
    """Images that form the panorama and the match sets connecting them."""

    num_images: int
    # Sorted indices of the retained images.
    nodes: Tuple[int, ...]
    # Surviving match sets, one per unordered pair with src < dst.
    edges: Tuple[MatchSet, ...]
    # image index -> reason the image is not part of the panorama.
    dropped: Dict[int, str] = field(default_factory=dict)

    def neighbors(self, node):
        """Neighbouring nodes of `node` in ascending order."""
        result = set()
        for edge in self.edges:
            if edge.src == node:
                result.add(edge.dst)
            elif edge.dst == node:
                result.add(edge.src)
        return sorted(result)

    def degree(self, node):
        return len(self.neighbors(node))

    def edge(self, i, j):
        """Return the match set between i and j, or None."""
        for edge in self.edges:
            if (edge.src, edge.dst) in ((i, j), (j, i)):
                return edge
        return None


@dataclass(frozen=True)
class CameraParams:
    """Rotation-only camera: focal length, principal point and rotation.

    `R` maps camera rays into the panorama frame, so a pixel p of this image
    looks along R @ inv(K) @ [p.x, p.y, 1].
    """

    focal: float
    R: np.ndarray
    ppx: float = 0.0
    ppy: float = 0.0
    aspect: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "focal", float(self.focal))
        object.__setattr__(self, "R", _frozen(self.R, np.float64).reshape(3, 3))

    def K(self):
        return np.array([
            [self.focal, 0.0, self.ppx],
            [0.0, self.focal * self.aspect, self.ppy],
            [0.0, 0.0, 1.0],
        ])

    def scaled(self, factor):
        """Camera for the same view rendered at `factor` times the resolution."""
        return CameraParams(
            focal=self.focal * factor,
            R=self.R,
            ppx=self.ppx * factor,
            ppy=self.ppy * factor,
            aspect=self.aspect,
        )

    def with_rotation(self, R):
        return CameraParams(self.focal, R, self.ppx, self.ppy, self.aspect)


@dataclass(frozen=True)
class WarpedImage:
    """One source image reprojected onto the panorama surface."""

    index: int
    # image: (h, w, C) float32 in the ROI.
    image: np.ndarray
    # mask: (h, w) bool, True where the destination pixel is covered.
    mask: np.ndarray
    # Top-left corner (x, y) of the ROI in panorama pixel coordinates.
    corner: Tuple[int, int]

    def __post_init__(self):
        image = np.asarray(self.image, dtype=np.float32)
        if image.ndim == 2:
            image = image[:, :, np.newaxis]
        object.__setattr__(self, "image", _frozen(image))
        object.__setattr__(self, "mask", _frozen(self.mask, bool))
        object.__setattr__(self, "corner", (int(self.corner[0]), int(self.corner[1])))

    @property
    def roi(self):
        h, w = self.mask.shape
        return self.corner[0], self.corner[1], w, h


def overlap_slices(roi_a, roi_b):
    """
    Intersection of two (x, y, w, h) rectangles in each one's local pixels.

    Returns:
        (slices into a, slices into b), or None if they do not intersect
    """
    ax, ay, aw, ah = roi_a
    bx, by, bw, bh = roi_b
    x0, y0 = max(ax, bx), max(ay, by)
    x1, y1 = min(ax + aw, bx + bw), min(ay + ah, by + bh)
    if x1 <= x0 or y1 <= y0:
        return None
    slices_a = (slice(y0 - ay, y1 - ay), slice(x0 - ax, x1 - ax))
    slices_b = (slice(y0 - by, y1 - by), slice(x0 - bx, x1 - bx))
    return slices_a, slices_b


def union_roi(rois):
    """Bounding (x, y, w, h) of a collection of rectangles."""
    rois = list(rois)
    x0 = min(r[0] for r in rois)
    y0 = min(r[1] for r in rois)
    x1 = max(r[0] + r[2] for r in rois)
    y1 = max(r[1] + r[3] for r in rois)
    return x0, y0, x1 - x0, y1 - y0


@dataclass(frozen=True)
class SeamMasks:
    """Per-pixel ownership decided by a seam finder."""

    # One (h, w) bool mask per warped image, in that image's ROI.
    masks: Tuple[np.ndarray, ...]
    # Top-left corner of the `labels` canvas in panorama coordinates.
    corner: Tuple[int, int]
    # labels: (H, W) int32 canvas; the owning image index or -1.
    labels: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "masks", tuple(_frozen(m, bool) for m in self.masks))
        object.__setattr__(self, "labels", _frozen(self.labels, np.int32))


@dataclass(frozen=True)
class Panorama:
    """Final composited image."""

    image: np.ndarray
    mask: np.ndarray
    corner: Tuple[int, int]
    contributing: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, "image", _frozen(self.image, np.uint8))
        object.__setattr__(self, "mask", _frozen(self.mask, bool))


@dataclass
class StitchReport:
    """Which images made it into the panorama and why others did not."""

    num_images: int
    used: Tuple[int, ...] = ()
    dropped: Dict[int, str] = field(default_factory=dict)

    def drop(self, index, reason):
        # First recorded reason wins; later stages only see survivors.
        self.dropped.setdefault(index, reason)

    def summary(self):
        """Human-readable report; images are numbered from 1 as on the command line."""
        lines = [f"Images used: {[i + 1 for i in self.used]}"]
        for index in sorted(self.dropped):
            lines.append(f"  Image {index + 1} dropped: {self.dropped[index]}")
        return "\n".join(lines)


__all__ = [
    "FeatureSet",
    "MatchSet",
    "ImageGraph",
    "CameraParams",
    "WarpedImage",
    "SeamMasks",
    "Panorama",
    "StitchReport",
    "overlap_slices",
    "union_roi",
]
