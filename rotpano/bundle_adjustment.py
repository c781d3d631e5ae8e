"""
Bundle adjustment for refining camera rotations and focal lengths.

All cameras are refined jointly with Levenberg-Marquardt
(scipy.optimize.least_squares). Rotations are parametrised as rotation
vectors and rebuilt at every evaluation, so they stay orthonormal; the
reference camera's rotation is held fixed to remove the global gauge
freedom.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

import numpy as np
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation

from .data_structures import CameraParams
from .errors import OptimizationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdjustmentResult:
    """Refined cameras plus the sum of squared residuals before and after."""

    cameras: Dict[int, CameraParams]
    initial_error: float
    final_error: float
    num_evaluations: int
    message: str


@dataclass(frozen=True)
class _Observations:
    """Inlier correspondences of one graph edge, in pixel coordinates."""

    src: int
    dst: int
    src_points: np.ndarray
    dst_points: np.ndarray


class BundleAdjusterBase:
    """
    Shared machinery of the bundle adjusters.

    Subclasses define `edge_residuals`, the residual vector of one edge for
    given K and R of its two cameras.
    """

    def __init__(self, max_iterations=100, tolerance=1e-6):
        """
        Args:
            max_iterations: Upper bound on Levenberg-Marquardt iterations
            tolerance: Relative cost-decrease tolerance for convergence
        """
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def adjust(self, features, graph, cameras):
        """
        Refine all cameras jointly.

        Args:
            features: dict image index -> FeatureSet
            graph: ImageGraph whose edges provide the correspondences
            cameras: dict image index -> initial CameraParams

        Returns:
            AdjustmentResult

        Raises:
            OptimizationError: when the optimisation diverges or produces
                invalid parameters
        """
        nodes = list(graph.nodes)
        reference = nodes[0]
        observations = self._collect_observations(features, graph)
        if not observations:
            raise OptimizationError("no inlier correspondences to refine cameras with")

        # Local workspace: the parameter vector is owned by this call only
        x0 = self._pack(nodes, reference, cameras)

        def residuals(x):
            Ks, Rs = self._unpack(x, nodes, reference, cameras)
            return np.concatenate([
                self.edge_residuals(obs, Ks[obs.src], Rs[obs.src], Ks[obs.dst], Rs[obs.dst])
                for obs in observations
            ])

        r0 = residuals(x0)
        if not np.all(np.isfinite(r0)):
            raise OptimizationError("initial camera estimate gives non-finite residuals")
        initial_error = float(np.sum(r0 ** 2))

        # Levenberg-Marquardt needs at least as many residuals as parameters
        method = "lm" if r0.size >= x0.size else "trf"
        logger.info(
            "bundle adjustment: %d cameras, %d edges, %d residuals, %d parameters (%s)",
            len(nodes), len(observations), r0.size, x0.size, method,
        )

        try:
            result = least_squares(
                residuals,
                x0,
                method=method,
                x_scale="jac",
                ftol=self.tolerance,
                xtol=self.tolerance,
                # Each iteration costs one evaluation per parameter for the
                # finite-difference Jacobian plus the step itself
                max_nfev=self.max_iterations * (x0.size + 1),
            )
        except (ValueError, np.linalg.LinAlgError) as exc:
            raise OptimizationError(f"bundle adjustment failed: {exc}") from exc

        x = result.x
        if not np.all(np.isfinite(x)):
            raise OptimizationError("bundle adjustment produced non-finite parameters")

        final_residuals = residuals(x)
        if not np.all(np.isfinite(final_residuals)):
            raise OptimizationError("bundle adjustment produced non-finite residuals")
        final_error = float(np.sum(final_residuals ** 2))

        if final_error > initial_error:
            x, final_error = x0, initial_error

        refined = self._cameras_from(x, nodes, reference, cameras)
        for index, camera in refined.items():
            if not camera.focal > 0:
                raise OptimizationError(
                    f"bundle adjustment produced invalid focal {camera.focal} for image {index}"
                )

        logger.info("bundle adjustment: error %.4g -> %.4g after %d evaluations (%s)",
                    initial_error, final_error, result.nfev, result.message)
        return AdjustmentResult(
            cameras=refined,
            initial_error=initial_error,
            final_error=final_error,
            num_evaluations=int(result.nfev),
            message=str(result.message),
        )

    def total_error(self, features, graph, cameras):
        """Sum of squared residuals of `cameras` over all graph edges."""
        nodes = list(graph.nodes)
        Ks = {i: cameras[i].K() for i in nodes}
        Rs = {i: cameras[i].R for i in nodes}
        total = 0.0
        for obs in self._collect_observations(features, graph):
            r = self.edge_residuals(obs, Ks[obs.src], Rs[obs.src], Ks[obs.dst], Rs[obs.dst])
            total += float(np.sum(r ** 2))
        return total

    def edge_residuals(self, obs, K_src, R_src, K_dst, R_dst):
        raise NotImplementedError

    @staticmethod
    def _collect_observations(features, graph):
        observations = []
        for edge in graph.edges:
            inlier_pairs = edge.inlier_pairs
            if len(inlier_pairs) == 0:
                continue
            observations.append(_Observations(
                src=edge.src,
                dst=edge.dst,
                src_points=features[edge.src].points[inlier_pairs[:, 0]],
                dst_points=features[edge.dst].points[inlier_pairs[:, 1]],
            ))
        return observations

    @staticmethod
    def _pack(nodes, reference, cameras):
        """[focal of every camera] + [rotation vector of every non-reference camera]."""
        focals = [cameras[i].focal for i in nodes]
        rotvecs = [Rotation.from_matrix(cameras[i].R).as_rotvec() for i in nodes if i != reference]
        return np.concatenate([np.array(focals, dtype=np.float64)] + rotvecs)

    @staticmethod
    def _unpack(x, nodes, reference, cameras):
        n = len(nodes)
        focals = x[:n]
        rotvecs = x[n:].reshape(-1, 3)
        Ks, Rs = {}, {}
        k = 0
        for i, node in enumerate(nodes):
            cam = cameras[node]
            Ks[node] = np.array([
                [focals[i], 0.0, cam.ppx],
                [0.0, focals[i] * cam.aspect, cam.ppy],
                [0.0, 0.0, 1.0],
            ])
            if node == reference:
                Rs[node] = cam.R
            else:
                Rs[node] = Rotation.from_rotvec(rotvecs[k]).as_matrix()
                k += 1
        return Ks, Rs

    def _cameras_from(self, x, nodes, reference, cameras):
        Ks, Rs = self._unpack(x, nodes, reference, cameras)
        return {
            node: CameraParams(
                focal=Ks[node][0, 0],
                R=Rs[node],
                ppx=cameras[node].ppx,
                ppy=cameras[node].ppy,
                aspect=cameras[node].aspect,
            )
            for node in nodes
        }


class ReprojectionAdjuster(BundleAdjusterBase):
    """Minimises the pixel distance between observed and transferred points.

    Every inlier is transferred in both directions, src -> dst through
    K_dst R_dst^T R_src K_src^-1 and back through its inverse.
    """

    def edge_residuals(self, obs, K_src, R_src, K_dst, R_dst):
        H = K_dst @ R_dst.T @ R_src @ np.linalg.inv(K_src)
        H_inv = K_src @ R_src.T @ R_dst @ np.linalg.inv(K_dst)
        forward = _transfer(obs.src_points, H) - obs.dst_points
        backward = _transfer(obs.dst_points, H_inv) - obs.src_points
        return np.concatenate([forward.ravel(), backward.ravel()])


class RayAdjuster(BundleAdjusterBase):
    """Minimises the distance between the two viewing rays of each match.

    Rays are unit vectors in the panorama frame, scaled by sqrt(f_src * f_dst)
    so the residual is roughly in pixels.
    """

    def edge_residuals(self, obs, K_src, R_src, K_dst, R_dst):
        rays_src = _rays(obs.src_points, R_src @ np.linalg.inv(K_src))
        rays_dst = _rays(obs.dst_points, R_dst @ np.linalg.inv(K_dst))
        scale = np.sqrt(K_src[0, 0] * K_dst[0, 0])
        return (scale * (rays_src - rays_dst)).ravel()


def _transfer(points, H):
    homogeneous = np.hstack([points, np.ones((len(points), 1))]) @ H.T
    return homogeneous[:, :2] / homogeneous[:, 2:3]


def _rays(points, M):
    rays = np.hstack([points, np.ones((len(points), 1))]) @ M.T
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def create_bundle_adjuster(config):
    adjuster_cls = RayAdjuster if config.adjuster == "ray" else ReprojectionAdjuster
    return adjuster_cls(max_iterations=config.ba_max_iterations, tolerance=config.ba_tolerance)


__all__ = [
    "AdjustmentResult",
    "BundleAdjusterBase",
    "ReprojectionAdjuster",
    "RayAdjuster",
    "create_bundle_adjuster",
]
