"""
Configuration and timing accumulator threaded through the pipeline.
"""

from __future__ import annotations

import dataclasses
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigError

FEATURE_TYPES = ("sift", "harris")
MATCHER_TYPES = ("kdtree", "brute")
ADJUSTER_TYPES = ("reproj", "ray")
WAVE_CORRECT_TYPES = (None, "horiz", "vert")
WARP_TYPES = ("spherical", "cylindrical")
EXPOS_COMP_TYPES = ("gain", "no")
SEAM_TYPES = ("gc_color", "gc_colorgrad", "voronoi", "no")
BLEND_TYPES = ("multiband", "feather", "no")


@dataclass(frozen=True)
class StitchConfig:
    """Algorithm knobs for one stitching session.

    Every option has a default; build variants with `replace(**changes)`.
    """

    # Feature extraction
    features: str = "sift"
    max_features: Optional[int] = 2000
    sift_octaves: int = 4
    sift_scales: int = 3
    contrast_threshold: float = 0.01

    # Pairwise matching
    matcher: str = "kdtree"
    match_conf: float = 0.3
    cross_check: bool = False
    range_width: int = -1
    ransac_reproj_threshold: float = 3.0
    ransac_max_iters: int = 2000
    min_inliers: int = 6

    # Image graph
    conf_thresh: float = 1.0
    prune_edges: bool = False

    # Registration
    adjuster: str = "reproj"
    ba_max_iterations: int = 100
    ba_tolerance: float = 1e-6
    wave_correct: Optional[str] = "horiz"

    # Composition
    warp: str = "spherical"
    expos_comp: str = "gain"
    seam: str = "gc_color"
    blend: str = "multiband"
    blend_strength: float = 5.0
    num_bands: Optional[int] = None

    # Resolution of the registration, seam and composition passes
    # (megapixels, -1 keeps the original resolution).
    work_megapix: float = 0.6
    seam_megapix: float = 0.1
    compose_megapix: float = -1.0

    num_workers: int = 1
    seed: int = 0

    def __post_init__(self):
        self.validate()

    def validate(self):
        _check_choice("features", self.features, FEATURE_TYPES)
        _check_choice("matcher", self.matcher, MATCHER_TYPES)
        _check_choice("adjuster", self.adjuster, ADJUSTER_TYPES)
        _check_choice("wave_correct", self.wave_correct, WAVE_CORRECT_TYPES)
        _check_choice("warp", self.warp, WARP_TYPES)
        _check_choice("expos_comp", self.expos_comp, EXPOS_COMP_TYPES)
        _check_choice("seam", self.seam, SEAM_TYPES)
        _check_choice("blend", self.blend, BLEND_TYPES)
        if not 0.0 < self.match_conf < 1.0:
            raise ConfigError(f"match_conf must be in (0, 1), got {self.match_conf}")
        if self.ransac_reproj_threshold <= 0:
            raise ConfigError("ransac_reproj_threshold must be positive")
        if self.ransac_max_iters < 1:
            raise ConfigError("ransac_max_iters must be at least 1")
        if self.min_inliers < 4:
            raise ConfigError("min_inliers must be at least 4 (homography needs 4 points)")
        if self.ba_max_iterations < 1:
            raise ConfigError("ba_max_iterations must be at least 1")
        if self.num_bands is not None and self.num_bands < 0:
            raise ConfigError("num_bands must be non-negative")
        if self.num_workers < 1:
            raise ConfigError("num_workers must be at least 1")
        if self.max_features is not None and self.max_features < 1:
            raise ConfigError("max_features must be positive or None")
        for name in ("work_megapix", "seam_megapix", "compose_megapix"):
            value = getattr(self, name)
            if value == 0:
                raise ConfigError(f"{name} must be positive or -1")

    def replace(self, **changes):
        return dataclasses.replace(self, **changes)


def _check_choice(name, value, choices):
    if value not in choices:
        raise ConfigError(f"{name} must be one of {choices}, got {value!r}")


def megapix_scale(megapix, image_size):
    """Scale that brings an image of `image_size` (w, h) to `megapix`.

    Never upscales; a negative value keeps the original resolution.
    """
    if megapix < 0:
        return 1.0
    w, h = image_size
    return min(1.0, (megapix * 1e6 / float(w * h)) ** 0.5)


@dataclass
class Timings:
    """Elapsed seconds per pipeline stage.

    Stages add to these fields through `measure`; a stitcher run without a
    Timings object behaves identically.
    """

    find_features_time: float = 0.0
    registration_time: float = 0.0
    adjuster_time: float = 0.0
    matcher_time: float = 0.0
    composing_time: float = 0.0
    seam_search_time: float = 0.0
    blending_time: float = 0.0
    total_time: float = 0.0

    def add(self, name, seconds):
        setattr(self, name, getattr(self, name) + seconds)

    @contextmanager
    def measure(self, name):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.add(name, time.perf_counter() - start)

    def report(self):
        return "\n".join([
            f"Finding features time: {self.find_features_time:.3f} sec",
            f"Images registration time: {self.registration_time:.3f} sec",
            f"   Adjuster time: {self.adjuster_time:.3f} sec",
            f"   Matching time: {self.matcher_time:.3f} sec",
            f"Composing time: {self.composing_time:.3f} sec",
            f"   Seam search time: {self.seam_search_time:.3f} sec",
            f"   Blending time: {self.blending_time:.3f} sec",
            f"Application total time: {self.total_time:.3f} sec",
        ])


@contextmanager
def measure(timings, name):
    """`timings.measure(name)` that tolerates `timings=None`."""
    if timings is None:
        yield
    else:
        with timings.measure(name):
            yield


__all__ = ["StitchConfig", "Timings", "measure", "megapix_scale"]
