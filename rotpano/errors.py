"""
Exceptions raised by the stitching pipeline.

Per-image and per-pair failures (no features, too few inliers) are not
exceptions: they are absorbed by the stage that detects them and show up as
dropped images or missing graph edges. The classes below are the fatal,
pipeline-level outcomes.
"""


class StitchingError(Exception):
    """Base class for pipeline failures.

    Carries the StitchReport built so far (if any) so callers can tell the
    user which images were used and which were dropped.
    """

    def __init__(self, message, report=None):
        super().__init__(message)
        self.report = report


class InputError(StitchingError):
    """Fewer than two usable images."""


class TopologyError(StitchingError):
    """The largest connected component of the image graph is too small."""

    def __init__(self, message, graph=None, report=None):
        super().__init__(message, report=report)
        self.graph = graph


class OptimizationError(StitchingError):
    """Bundle adjustment diverged or produced invalid camera parameters."""


class CompositionError(StitchingError):
    """Warping or blending failed numerically for one image."""

    def __init__(self, message, index=None, report=None):
        super().__init__(message, report=report)
        self.index = index


class DeadlineExceeded(StitchingError):
    """The caller-supplied deadline passed at a stage boundary."""


class ConfigError(StitchingError, ValueError):
    """Invalid configuration value."""
