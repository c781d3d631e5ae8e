"""
Initial camera estimation from pairwise homographies, wave correction and
the panorama scale (median focal length).
"""

import logging
from collections import deque

import numpy as np

from .data_structures import CameraParams, ImageGraph
from .graph import maximum_spanning_tree
from .homography import focals_from_homography

logger = logging.getLogger(__name__)


def median_focal(focals):
    """
    Median of the camera focal lengths, used as the warping scale.

    With an even number of cameras the two middle values are averaged:
    {500, 520, 540} -> 520, {500, 520, 540, 560} -> 530.
    """
    focals = sorted(float(f) for f in focals)
    if not focals:
        raise ValueError("need at least one camera to compute a panorama scale")
    n = len(focals)
    if n % 2 == 1:
        return focals[n // 2]
    return (focals[n // 2 - 1] + focals[n // 2]) * 0.5


def orthonormalize(R):
    """Closest rotation matrix to R (in the Frobenius sense), sign fixed."""
    U, _, Vt = np.linalg.svd(R)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        R = -R
    return R


def estimate_focal(features, edges, num_nodes):
    """
    Common initial focal length for all cameras.

    Uses the median over edges of sqrt(f0 * f1) recovered from each
    homography when enough edges give an estimate, otherwise falls back to
    the mean of (width + height) over the images.
    """
    all_focals = []
    for edge in edges:
        f0, f1 = focals_from_homography(edge.homography)
        if f0 is not None and f1 is not None:
            all_focals.append(np.sqrt(f0 * f1))

    if len(all_focals) >= max(num_nodes - 1, 1):
        return median_focal(all_focals)

    logger.warning("focal estimation failed on %d of %d edges, using image size",
                   len(edges) - len(all_focals), len(edges))
    sizes = [features[i].image_size for i in features]
    return float(np.mean([w + h for w, h in sizes]))


class HomographyBasedEstimator:
    """
    Initial rotations and focals from pairwise homographies.

    A maximum spanning tree of the image graph (by confidence) is traversed
    breadth-first from the node of highest degree; each newly reached camera
    gets its rotation by composing the homography of the tree edge with its
    parent's rotation.
    """

    def estimate(self, features, graph):
        """
        Args:
            features: dict image index -> FeatureSet (retained images)
            graph: ImageGraph

        Returns:
            dict image index -> CameraParams
        """
        focal = estimate_focal(features, graph.edges, len(graph.nodes))
        logger.info("initial focal estimate: %.2f", focal)

        tree = ImageGraph(
            num_images=graph.num_images,
            nodes=graph.nodes,
            edges=maximum_spanning_tree(graph.nodes, graph.edges),
        )
        seed = min(tree.nodes, key=lambda n: (-tree.degree(n), n))

        # Principal point at the origin: homographies use centred coordinates
        K = np.diag([focal, focal, 1.0])
        K_inv = np.linalg.inv(K)

        rotations = {seed: np.eye(3)}
        queue = deque([seed])
        while queue:
            node = queue.popleft()
            for neighbor in tree.neighbors(node):
                if neighbor in rotations:
                    continue
                edge = tree.edge(node, neighbor)
                H = edge.homography if edge.src == node else np.linalg.inv(edge.homography)
                R_rel = K_inv @ np.linalg.inv(H) @ K
                rotations[neighbor] = orthonormalize(rotations[node] @ R_rel)
                queue.append(neighbor)

        cameras = {}
        for node in graph.nodes:
            w, h = features[node].image_size
            cameras[node] = CameraParams(focal=focal, R=rotations[node], ppx=0.5 * w, ppy=0.5 * h)
        return cameras


def wave_correct(cameras, kind="horiz"):
    """
    Straighten the panorama by aligning the world up vector.

    For horizontal panoramas the up vector is the direction most orthogonal
    to all camera x-axes; the world frame is rotated so that it becomes the
    y-axis.

    Args:
        cameras: dict image index -> CameraParams
        kind: 'horiz' or 'vert'

    Returns:
        dict of corrected CameraParams (the input is returned unchanged when
        the correction is undefined)
    """
    if kind not in ("horiz", "vert"):
        raise ValueError(f"unknown wave correction kind: {kind}")

    rotations = [cameras[i].R for i in sorted(cameras)]
    moment = np.zeros((3, 3))
    for R in rotations:
        col = R[:, 0:1]
        moment += col @ col.T

    _, eigen_vecs = np.linalg.eigh(moment)
    # eigh sorts eigenvalues in ascending order
    rg1 = eigen_vecs[:, 0] if kind == "horiz" else eigen_vecs[:, 2]

    img_k = np.sum([R[:, 2] for R in rotations], axis=0)
    rg0 = np.cross(rg1, img_k)
    rg0_norm = np.linalg.norm(rg0)
    if rg0_norm <= np.finfo(float).tiny:
        return dict(cameras)
    rg0 = rg0 / rg0_norm

    if kind == "horiz":
        conf = sum(rg0 @ R[:, 0] for R in rotations)
        if conf < 0:
            rg0, rg1 = -rg0, -rg1
    else:
        conf = -sum(rg1 @ R[:, 0] for R in rotations)
        if conf < 0:
            rg0, rg1 = -rg0, -rg1
    rg2 = np.cross(rg0, rg1)

    correction = np.vstack([rg0, rg1, rg2])
    return {i: cam.with_rotation(correction @ cam.R) for i, cam in cameras.items()}


__all__ = [
    "HomographyBasedEstimator",
    "estimate_focal",
    "median_focal",
    "orthonormalize",
    "wave_correct",
]
