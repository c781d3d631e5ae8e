"""
Panorama stitching pipeline for rotating-camera image sets.

The stitcher coordinates all components:
1. Feature detection (at the registration resolution)
2. Pairwise matching with RANSAC homography verification
3. Image graph construction (largest consistent component)
4. Camera estimation, bundle adjustment and wave correction
5. Seam pass: warping, exposure compensation and seam search at low resolution
6. Compose pass: warping at the output resolution and multi-band blending
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext

import numpy as np
from scipy.ndimage import binary_dilation

from .bundle_adjustment import create_bundle_adjuster
from .camera import HomographyBasedEstimator, median_focal, wave_correct
from .config import StitchConfig, measure, megapix_scale
from .data_structures import StitchReport
from .errors import CompositionError, DeadlineExceeded, InputError, StitchingError
from .exposure import create_exposure_compensator
from .features import create_feature_finder
from .graph import build_image_graph
from .image_io import resize_image
from .matcher import create_pairwise_matcher
from .blending import create_blender
from .seam import build_seam_masks, create_seam_finder
from .warpers import choose_seam_longitude, create_warper

logger = logging.getLogger(__name__)


class PanoramaStitcher:
    """
    Complete panorama stitching pipeline.

    A stitcher holds no per-run state: every call to `stitch` works on its
    own copies, so one instance can be reused (and shared) freely.
    """

    def __init__(self, config=None):
        """
        Initialize Panorama Stitcher.

        Args:
            config: StitchConfig; defaults are used when omitted
        """
        self.config = config or StitchConfig()
        self.config.validate()

        self.feature_finder = create_feature_finder(self.config)
        self.matcher = create_pairwise_matcher(self.config)
        self.estimator = HomographyBasedEstimator()
        self.adjuster = create_bundle_adjuster(self.config)
        self.seam_finder = create_seam_finder(self.config.seam)
        self.blender = create_blender(
            self.config.blend,
            num_bands=self.config.num_bands,
            blend_strength=self.config.blend_strength,
        )

    def stitch(self, images, timings=None, deadline=None):
        """
        Stitch a set of overlapping images taken from one viewpoint.

        Args:
            images: List of images (H x W x C or H x W uint8 arrays); None
                    entries stand for files that could not be decoded
            timings: Optional Timings accumulator
            deadline: Optional time.monotonic() value; checked between stages

        Returns:
            panorama: Panorama
            report: StitchReport with the used and dropped images

        Raises:
            InputError: fewer than two usable images
            TopologyError: no two images overlap well enough
            OptimizationError: bundle adjustment failed
            CompositionError: no image could be composited
            DeadlineExceeded: the deadline passed between two stages
        """
        start = time.perf_counter()
        report = StitchReport(num_images=len(images))
        try:
            panorama = self._stitch(images, report, timings, deadline)
        except StitchingError as exc:
            graph = getattr(exc, "graph", None)
            if graph is not None:
                for index, reason in graph.dropped.items():
                    report.drop(index, reason)
                report.used = graph.nodes
            if exc.report is None:
                exc.report = report
            raise
        finally:
            if timings is not None:
                timings.add("total_time", time.perf_counter() - start)
        return panorama, report

    def _stitch(self, images, report, timings, deadline):
        config = self.config
        usable = self._prepare_images(images, report)
        if len(usable) < 2:
            raise InputError(f"need at least 2 usable images, got {len(usable)}")

        first_size = _size(next(iter(usable.values())))
        work_scale = megapix_scale(config.work_megapix, first_size)
        seam_scale = megapix_scale(config.seam_megapix, first_size)
        compose_scale = megapix_scale(config.compose_megapix, first_size)
        logger.info("stitching %d images (work scale %.3f, seam scale %.3f, compose scale %.3f)",
                    len(usable), work_scale, seam_scale, compose_scale)

        workers = config.num_workers
        with (ThreadPoolExecutor(max_workers=workers) if workers > 1 else nullcontext()) as executor:
            mapper = executor.map if executor is not None else map

            # Registration at work resolution
            _check_deadline(deadline, "feature extraction")
            with measure(timings, "find_features_time"):
                features = list(mapper(
                    lambda item: self.feature_finder.find(_rescale(item[1], work_scale), item[0]),
                    usable.items(),
                ))
            for feature_set in features:
                logger.info("image %d: %d features", feature_set.image_index, len(feature_set))
                if len(feature_set) == 0:
                    report.drop(feature_set.image_index, "no features")
            features = {f.image_index: f for f in features if len(f) > 0}

            with measure(timings, "registration_time"):
                _check_deadline(deadline, "matching")
                with measure(timings, "matcher_time"):
                    matches = self.matcher.match_all(list(features.values()), executor)

                graph = build_image_graph(
                    len(images), matches,
                    conf_thresh=config.conf_thresh,
                    spanning_tree=config.prune_edges,
                    dropped=report.dropped,
                )
                for index, reason in graph.dropped.items():
                    report.drop(index, reason)
                # Provisional; blending narrows it to the contributing images
                report.used = graph.nodes

                _check_deadline(deadline, "camera estimation")
                node_features = {i: features[i] for i in graph.nodes}
                cameras = self.estimator.estimate(node_features, graph)

                _check_deadline(deadline, "bundle adjustment")
                with measure(timings, "adjuster_time"):
                    cameras = self.adjuster.adjust(node_features, graph, cameras).cameras

                if config.wave_correct:
                    cameras = wave_correct(cameras, config.wave_correct)

            warped_image_scale = median_focal(c.focal for c in cameras.values())
            seam_longitude = choose_seam_longitude(cameras.values())
            logger.info("panorama scale %.2f, centre longitude %.1f deg",
                        warped_image_scale, np.degrees(seam_longitude))

            with measure(timings, "composing_time"):
                _check_deadline(deadline, "seam search")
                seam_warped, gains, seams = self._seam_pass(
                    usable, cameras, warped_image_scale * seam_scale / work_scale,
                    seam_scale / work_scale, seam_scale, seam_longitude, report, timings,
                )

                _check_deadline(deadline, "composition")
                compose_warped, compose_masks = self._compose_pass(
                    usable, cameras, warped_image_scale * compose_scale / work_scale,
                    compose_scale / work_scale, compose_scale, seam_longitude,
                    seam_warped, gains, seams, report,
                )

                _check_deadline(deadline, "blending")
                with measure(timings, "blending_time"):
                    panorama = self.blender.blend(
                        compose_warped, build_seam_masks(compose_warped, compose_masks)
                    )

        for index in graph.nodes:
            if index not in panorama.contributing:
                report.drop(index, "no pixels left after seam selection")
        report.used = panorama.contributing
        if not report.used:
            raise CompositionError("no image contributed to the panorama")
        logger.info("panorama %dx%d from images %s",
                    panorama.image.shape[1], panorama.image.shape[0], list(report.used))
        return panorama

    def _seam_pass(self, images, cameras, scale, camera_scale, image_scale,
                   seam_longitude, report, timings):
        """Warp at seam resolution, estimate exposure gains and find seams."""
        warper = create_warper(self.config.warp, scale, seam_longitude)
        warped = self._warp_all(warper, images, cameras, camera_scale, image_scale, report)

        compensator = create_exposure_compensator(self.config.expos_comp)
        gains = compensator.feed(warped)
        warped = [compensator.apply(w, gains[w.index]) for w in warped]

        with measure(timings, "seam_search_time"):
            seams = self.seam_finder.find(warped)
        return warped, gains, seams

    def _compose_pass(self, images, cameras, scale, camera_scale, image_scale,
                      seam_longitude, seam_warped, gains, seams, report):
        """Warp at output resolution and carry the seam masks over."""
        warper = create_warper(self.config.warp, scale, seam_longitude)
        compensator = create_exposure_compensator(self.config.expos_comp)
        seam_masks = {w.index: mask for w, mask in zip(seam_warped, seams.masks)}

        warped = self._warp_all(warper, images, {i: cameras[i] for i in seam_masks},
                                camera_scale, image_scale, report)

        masks = []
        for w in warped:
            h, w_ = w.mask.shape
            seam_mask = binary_dilation(seam_masks[w.index])
            seam_mask = resize_image(seam_mask, width=w_, height=h)
            masks.append(seam_mask & w.mask)
        warped = [compensator.apply(w, gains[w.index]) for w in warped]
        return warped, masks

    def _warp_all(self, warper, images, cameras, camera_scale, image_scale, report):
        """Warp every camera's image; images that fail to warp are dropped."""
        warped = []
        for index in sorted(cameras):
            camera = cameras[index].scaled(camera_scale)
            try:
                warped.append(warper.warp(_rescale(images[index], image_scale), camera, index))
            except CompositionError as exc:
                logger.warning("image %d excluded: %s", index, exc)
                report.drop(index, f"warping failed: {exc}")

        if not warped:
            raise CompositionError("no image could be warped onto the panorama surface")
        return warped

    @staticmethod
    def _prepare_images(images, report):
        """Usable images by index, all with the same number of channels."""
        usable = {}
        for index, image in enumerate(images):
            if image is None:
                report.drop(index, "unreadable")
                continue
            image = np.asarray(image)
            if image.ndim == 2:
                image = image[:, :, np.newaxis]
            if image.ndim != 3 or image.shape[0] < 2 or image.shape[1] < 2:
                report.drop(index, "unreadable")
                continue
            usable[index] = image[:, :, :3]

        if len({image.shape[2] for image in usable.values()}) > 1:
            usable = {i: np.repeat(img, 3, axis=2) if img.shape[2] == 1 else img
                      for i, img in usable.items()}
        return usable


def _size(image):
    return image.shape[1], image.shape[0]


def _rescale(image, scale):
    if scale >= 1.0:
        return image
    return resize_image(image, scale)


def _check_deadline(deadline, stage):
    if deadline is not None and time.monotonic() > deadline:
        raise DeadlineExceeded(f"deadline passed before {stage}")


__all__ = ["PanoramaStitcher"]
