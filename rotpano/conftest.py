"""
Shared fixtures: views of a procedurally textured sphere rendered through
known camera rotations.
"""

import numpy as np
import pytest
from scipy.ndimage import gaussian_filter, map_coordinates

from rotpano.data_structures import CameraParams, FeatureSet, ImageGraph, MatchSet

VIEW_SIZE = (240, 180)
VIEW_FOCAL = 200.0


def make_texture(width=2048, height=1024, seed=7):
    """Equirectangular RGB texture of multi-scale smoothed noise."""
    rng = np.random.default_rng(seed)
    channels = []
    for _ in range(3):
        layer = np.zeros((height, width))
        for sigma, weight in ((2.0, 1.0), (6.0, 1.5), (18.0, 2.0)):
            noise = gaussian_filter(rng.random((height, width)), sigma, mode='wrap')
            noise = (noise - noise.mean()) / (noise.std() + 1e-12)
            layer += weight * noise
        channels.append(layer)
    texture = np.stack(channels, axis=2)
    texture = (texture - texture.min()) / (texture.max() - texture.min())
    return (texture * 255.0).astype(np.float64)


def rotation(yaw_deg=0.0, pitch_deg=0.0):
    """Camera-to-world rotation looking at the given yaw and pitch."""
    yaw, pitch = np.radians(yaw_deg), np.radians(pitch_deg)
    R_yaw = np.array([
        [np.cos(yaw), 0.0, np.sin(yaw)],
        [0.0, 1.0, 0.0],
        [-np.sin(yaw), 0.0, np.cos(yaw)],
    ])
    R_pitch = np.array([
        [1.0, 0.0, 0.0],
        [0.0, np.cos(pitch), -np.sin(pitch)],
        [0.0, np.sin(pitch), np.cos(pitch)],
    ])
    return R_yaw @ R_pitch


def camera(yaw_deg=0.0, pitch_deg=0.0, focal=VIEW_FOCAL, size=VIEW_SIZE):
    w, h = size
    return CameraParams(focal=focal, R=rotation(yaw_deg, pitch_deg), ppx=0.5 * w, ppy=0.5 * h)


def render_view(texture, cam, size=VIEW_SIZE):
    """Pinhole view of the textured sphere seen by `cam`."""
    w, h = size
    xs, ys = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    pixels = np.stack([xs.ravel(), ys.ravel(), np.ones(w * h)])
    rays = cam.R @ np.linalg.inv(cam.K()) @ pixels
    rays /= np.linalg.norm(rays, axis=0)

    tex_h, tex_w = texture.shape[:2]
    longitude = np.arctan2(rays[0], rays[2])
    polar = np.arccos(np.clip(rays[1], -1.0, 1.0))
    u = (longitude + np.pi) / (2 * np.pi) * tex_w
    v = polar / np.pi * tex_h

    view = np.stack([
        map_coordinates(texture[:, :, c], [v, u], order=1, mode='grid-wrap')
        for c in range(texture.shape[2])
    ], axis=1)
    return np.clip(view, 0, 255).reshape(h, w, -1).astype(np.uint8)


@pytest.fixture(scope='session')
def texture():
    return make_texture()


@pytest.fixture(scope='session')
def three_views(texture):
    """Three overlapping views 30 degrees apart, with their true cameras."""
    cameras = [camera(yaw) for yaw in (-30.0, 0.0, 30.0)]
    return [render_view(texture, c) for c in cameras], cameras


@pytest.fixture(scope='session')
def two_views(texture):
    cameras = [camera(0.0), camera(25.0)]
    return [render_view(texture, c) for c in cameras], cameras


@pytest.fixture(scope='session')
def opposite_views(texture):
    """Two views facing away from each other (no overlap)."""
    cameras = [camera(0.0), camera(180.0)]
    return [render_view(texture, c) for c in cameras], cameras


def synthetic_registration(cameras, size=VIEW_SIZE, num_points=60, noise=0.0, seed=0):
    """
    Features and an image graph with exact correspondences between every
    pair of overlapping cameras.

    Returns:
        features: dict index -> FeatureSet
        graph: ImageGraph over all cameras
    """
    rng = np.random.default_rng(seed)
    w, h = size
    keypoints = {i: [] for i in range(len(cameras))}
    edges = []

    for i in range(len(cameras)):
        for j in range(i + 1, len(cameras)):
            ci, cj = cameras[i], cameras[j]
            H = cj.K() @ cj.R.T @ ci.R @ np.linalg.inv(ci.K())
            pts = np.column_stack([rng.uniform(0, w - 1, 4000), rng.uniform(0, h - 1, 4000)])
            proj = np.hstack([pts, np.ones((len(pts), 1))]) @ H.T
            in_front = proj[:, 2] > 0
            proj = proj[:, :2] / proj[:, 2:3]
            inside = in_front & (proj[:, 0] >= 0) & (proj[:, 0] <= w - 1) & \
                (proj[:, 1] >= 0) & (proj[:, 1] <= h - 1)
            if inside.sum() < num_points:
                continue
            src = pts[inside][:num_points]
            dst = proj[inside][:num_points]
            if noise:
                dst = dst + rng.normal(0, noise, dst.shape)

            start_i, start_j = len(keypoints[i]), len(keypoints[j])
            keypoints[i].extend(src.tolist())
            keypoints[j].extend(dst.tolist())
            pairs = np.column_stack([np.arange(start_i, start_i + num_points),
                                     np.arange(start_j, start_j + num_points)])

            centred_i = np.diag([ci.focal, ci.focal, 1.0])
            centred_j = np.diag([cj.focal, cj.focal, 1.0])
            H_centred = centred_j @ cj.R.T @ ci.R @ np.linalg.inv(centred_i)
            edges.append(MatchSet(
                src=i, dst=j, pairs=pairs,
                inliers=np.ones(num_points, dtype=bool),
                homography=H_centred / H_centred[2, 2],
                num_inliers=num_points,
                confidence=float(num_points),
            ))

    features = {}
    for i, points in keypoints.items():
        points = np.array(points, dtype=np.float64).reshape(-1, 2)
        features[i] = FeatureSet(
            image_index=i,
            image_size=size,
            keypoints=np.column_stack([points, np.ones(len(points)), np.zeros(len(points))]),
            descriptors=np.zeros((len(points), 128), dtype=np.float32),
        )

    graph = ImageGraph(num_images=len(cameras), nodes=tuple(range(len(cameras))), edges=tuple(edges))
    return features, graph
