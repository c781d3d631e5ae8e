"""
Rotation warpers: project images onto a spherical or cylindrical panorama
surface given their camera parameters and the panorama scale.

Surface coordinates (u, v) are in panorama pixels. u is the longitude
times the scale, measured from a session-wide longitude origin so that the
+/-180 degree seam falls where no camera is looking; each image's
longitudes are unwrapped around its own optical axis, so an image is never
split across the seam.
"""

import logging

import numpy as np

from .data_structures import WarpedImage
from .errors import CompositionError

logger = logging.getLogger(__name__)


def wrap_angle(angle):
    """Wrap angles to [-pi, pi)."""
    return (np.asarray(angle) + np.pi) % (2 * np.pi) - np.pi


def camera_longitude(camera):
    """Longitude of the camera's optical axis in the panorama frame."""
    axis = camera.R[:, 2]
    return float(np.arctan2(axis[0], axis[2]))


def choose_seam_longitude(cameras):
    """
    Longitude origin that puts the +/-180 degree seam in the middle of the
    widest angular gap between camera optical axes.

    Args:
        cameras: iterable of CameraParams

    Returns:
        Longitude (radians) to use as the centre of the panorama
    """
    longitudes = np.sort([camera_longitude(c) for c in cameras])
    if len(longitudes) == 0:
        return 0.0
    if len(longitudes) == 1:
        return float(longitudes[0])

    gaps = np.diff(np.concatenate([longitudes, [longitudes[0] + 2 * np.pi]]))
    widest = int(np.argmax(gaps))
    seam = longitudes[widest] + 0.5 * gaps[widest]
    return float(wrap_angle(seam + np.pi))


class RotationWarper:
    """
    Base class of the surface projections.

    Subclasses implement the mapping between unit-free rays in the panorama
    frame and (theta, t) surface coordinates, where theta is the longitude
    and t the projection-specific vertical coordinate.
    """

    def __init__(self, scale, center_longitude=0.0, max_area_ratio=100.0):
        """
        Args:
            scale: Panorama scale (pixels per radian), usually the median focal
            center_longitude: Longitude mapped to u = 0, from choose_seam_longitude
            max_area_ratio: A warped ROI larger than this many times the source
                            image is treated as a degenerate projection
        """
        if not scale > 0:
            raise ValueError(f"panorama scale must be positive, got {scale}")
        self.scale = float(scale)
        self.center_longitude = float(center_longitude)
        self.max_area_ratio = max_area_ratio

    def _ray_to_surface(self, x, y, z):
        raise NotImplementedError

    def _surface_to_ray(self, theta, t):
        raise NotImplementedError

    def _pole_rows(self):
        """Surface t values of the poles, or None if the surface has none."""
        return None

    def _local_center(self, camera):
        return float(wrap_angle(camera_longitude(camera) - self.center_longitude))

    def warp_points(self, points, camera):
        """
        Forward-map source pixels to panorama pixel coordinates.

        Args:
            points: (N x 2) source pixel coordinates
            camera: CameraParams of the source image

        Returns:
            (N x 2) array of (u, v)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        rays = np.hstack([points, np.ones((len(points), 1))]) @ (camera.R @ np.linalg.inv(camera.K())).T
        theta, t = self._ray_to_surface(rays[:, 0], rays[:, 1], rays[:, 2])

        center = self._local_center(camera)
        theta = wrap_angle(theta - self.center_longitude)
        theta = center + wrap_angle(theta - center)
        return np.column_stack([self.scale * theta, self.scale * t])

    def warp_roi(self, image_size, camera):
        """
        Minimal rectangle covering the warped image.

        Returns:
            (x, y, w, h) in panorama pixels
        """
        w, h = image_size
        step = max(1, min(w, h) // 32)
        xs = np.arange(w, dtype=np.float64)
        ys = np.arange(h, dtype=np.float64)
        border = np.vstack([
            np.column_stack([xs, np.zeros(w)]),
            np.column_stack([xs, np.full(w, h - 1.0)]),
            np.column_stack([np.zeros(h), ys]),
            np.column_stack([np.full(h, w - 1.0), ys]),
        ])
        gx, gy = np.meshgrid(np.arange(0, w, step), np.arange(0, h, step))
        samples = np.vstack([border, np.column_stack([gx.ravel(), gy.ravel()])])

        uv = self.warp_points(samples, camera)
        u_min, v_min = uv.min(axis=0)
        u_max, v_max = uv.max(axis=0)

        poles = self._pole_rows()
        if poles is not None:
            center = self._local_center(camera)
            for pole_direction, pole_t in poles:
                if self._sees(pole_direction, image_size, camera):
                    # The whole circle of longitudes is visible around a pole
                    u_min = min(u_min, self.scale * (center - np.pi))
                    u_max = max(u_max, self.scale * (center + np.pi))
                    v_min = min(v_min, self.scale * pole_t)
                    v_max = max(v_max, self.scale * pole_t)

        if not np.all(np.isfinite([u_min, u_max, v_min, v_max])):
            raise CompositionError("warped region is not finite")

        x0, y0 = int(np.floor(u_min)), int(np.floor(v_min))
        x1, y1 = int(np.floor(u_max)), int(np.floor(v_max))
        return x0, y0, x1 - x0 + 1, y1 - y0 + 1

    @staticmethod
    def _sees(direction, image_size, camera):
        p = camera.K() @ camera.R.T @ np.asarray(direction, dtype=np.float64)
        if p[2] <= 0:
            return False
        x, y = p[0] / p[2], p[1] / p[2]
        w, h = image_size
        return 0 <= x <= w - 1 and 0 <= y <= h - 1

    def build_maps(self, roi, camera):
        """
        Inverse maps from the destination ROI to source pixel coordinates.

        Returns:
            map_x, map_y: (h x w) source coordinates
            in_front: (h x w) bool, False where the ray is behind the camera
        """
        x0, y0, w, h = roi
        u = (x0 + np.arange(w, dtype=np.float64)) / self.scale
        v = (y0 + np.arange(h, dtype=np.float64)) / self.scale
        theta, t = np.meshgrid(u, v)
        rx, ry, rz = self._surface_to_ray(theta + self.center_longitude, t)

        M = camera.K() @ camera.R.T
        px = M[0, 0] * rx + M[0, 1] * ry + M[0, 2] * rz
        py = M[1, 0] * rx + M[1, 1] * ry + M[1, 2] * rz
        pz = M[2, 0] * rx + M[2, 1] * ry + M[2, 2] * rz

        in_front = pz > 1e-12
        safe_z = np.where(in_front, pz, 1.0)
        map_x = np.where(in_front, px / safe_z, -1.0)
        map_y = np.where(in_front, py / safe_z, -1.0)
        return map_x, map_y, in_front

    def warp(self, image, camera, index=0, mask=None):
        """
        Warp an image and its validity mask onto the panorama surface.

        Args:
            image: (H x W x C) or (H x W) source image
            camera: CameraParams of the image
            index: Image index recorded in the result
            mask: Optional (H x W) source validity mask

        Returns:
            WarpedImage

        Raises:
            CompositionError: for a degenerate projection
        """
        image = np.asarray(image)
        src_h, src_w = image.shape[:2]
        roi = self.warp_roi((src_w, src_h), camera)
        if roi[2] <= 0 or roi[3] <= 0 or roi[2] * roi[3] > self.max_area_ratio * src_w * src_h:
            raise CompositionError(
                f"degenerate projection for image {index}: roi {roi}", index=index
            )

        map_x, map_y, in_front = self.build_maps(roi, camera)
        valid = (in_front & (map_x >= 0) & (map_x <= src_w - 1) &
                 (map_y >= 0) & (map_y <= src_h - 1))
        if mask is not None:
            mask = np.asarray(mask, dtype=bool)
            valid &= mask[np.clip(np.rint(map_y).astype(int), 0, src_h - 1),
                          np.clip(np.rint(map_x).astype(int), 0, src_w - 1)]
        if not np.any(valid):
            raise CompositionError(f"image {index} does not cover any panorama pixel", index=index)

        warped = bilinear_interpolate(image.astype(np.float32), map_x, map_y, valid)
        return WarpedImage(index=index, image=warped, mask=valid, corner=roi[:2])


class SphericalWarper(RotationWarper):
    """Equirectangular projection: u = s * longitude, v = s * polar angle."""

    def _ray_to_surface(self, x, y, z):
        r = np.sqrt(x * x + y * y + z * z)
        theta = np.arctan2(x, z)
        t = np.pi - np.arccos(np.clip(y / r, -1.0, 1.0))
        return theta, t

    def _surface_to_ray(self, theta, t):
        sin_t = np.sin(np.pi - t)
        return sin_t * np.sin(theta), np.cos(np.pi - t), sin_t * np.cos(theta)

    def _pole_rows(self):
        # Image y points down, so world -y is "up" (t = 0)
        return [((0.0, -1.0, 0.0), 0.0), ((0.0, 1.0, 0.0), np.pi)]


class CylindricalWarper(RotationWarper):
    """Cylindrical projection: u = s * longitude, v = s * height on the cylinder."""

    def _ray_to_surface(self, x, y, z):
        theta = np.arctan2(x, z)
        with np.errstate(divide='ignore', invalid='ignore'):
            t = y / np.sqrt(x * x + z * z)
        return theta, t

    def _surface_to_ray(self, theta, t):
        return np.sin(theta), t, np.cos(theta)


WARPERS = {
    "spherical": SphericalWarper,
    "cylindrical": CylindricalWarper,
}


def create_warper(kind, scale, center_longitude=0.0):
    """Warper of the given kind ('spherical' or 'cylindrical')."""
    try:
        warper_cls = WARPERS[kind]
    except KeyError:
        raise ValueError(f"unknown warper: {kind}") from None
    return warper_cls(scale, center_longitude)


def bilinear_interpolate(image, x, y, mask=None):
    """
    Bilinear interpolation for image warping.

    Args:
        image: Input image (H x W x C) or (H x W)
        x: X coordinates (h x w)
        y: Y coordinates (h x w)
        mask: Optional (h x w) bool; samples outside it are set to 0

    Returns:
        Interpolated values (h x w x C), float32
    """
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    h, w = image.shape[:2]

    x0 = np.floor(x).astype(int)
    y0 = np.floor(y).astype(int)
    fx = (x - x0)[..., np.newaxis]
    fy = (y - y0)[..., np.newaxis]

    # Clip to image boundaries
    x0 = np.clip(x0, 0, w - 1)
    x1 = np.clip(x0 + 1, 0, w - 1)
    y0 = np.clip(y0, 0, h - 1)
    y1 = np.clip(y0 + 1, 0, h - 1)

    output = ((1 - fx) * (1 - fy) * image[y0, x0] +
              (1 - fx) * fy * image[y1, x0] +
              fx * (1 - fy) * image[y0, x1] +
              fx * fy * image[y1, x1])

    if mask is not None:
        output = output * mask[..., np.newaxis]
    return output.astype(np.float32)


__all__ = [
    "RotationWarper",
    "SphericalWarper",
    "CylindricalWarper",
    "create_warper",
    "choose_seam_longitude",
    "camera_longitude",
    "bilinear_interpolate",
    "wrap_angle",
]
