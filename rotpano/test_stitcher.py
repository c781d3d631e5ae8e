import time

import numpy as np
import pytest

from rotpano.config import StitchConfig, Timings
from rotpano.errors import DeadlineExceeded, InputError, OptimizationError, TopologyError
from rotpano.stitcher import PanoramaStitcher

FAST = StitchConfig(seam='voronoi', max_features=600)


@pytest.fixture(scope='module')
def default_result(three_views):
    images, _ = three_views
    timings = Timings()
    panorama, report = PanoramaStitcher().stitch(images, timings=timings)
    return panorama, report, timings


def test_three_views_are_stitched(default_result, three_views):
    panorama, report, _ = default_result
    images, _ = three_views

    assert report.used == (0, 1, 2)
    assert report.dropped == {}
    assert panorama.contributing == (0, 1, 2)

    h, w = panorama.image.shape[:2]
    assert panorama.image.dtype == np.uint8
    assert panorama.image.shape[2] == 3
    assert panorama.mask.shape == (h, w)
    # Three views 30 degrees apart span well over one view
    assert w > 1.4 * 240
    assert 120 < h < 300
    assert panorama.mask.mean() > 0.6

    covered = panorama.image[panorama.mask].mean()
    source = np.mean([img.mean() for img in images])
    assert abs(covered - source) < 20


def test_timings_are_recorded(default_result):
    _, _, timings = default_result
    assert timings.find_features_time > 0
    assert timings.registration_time >= timings.matcher_time + timings.adjuster_time
    assert timings.composing_time >= timings.seam_search_time + timings.blending_time
    assert timings.total_time >= timings.registration_time + timings.composing_time
    assert "Seam search time" in timings.report()


def test_worker_threads_do_not_change_the_result(three_views):
    images, _ = three_views
    serial, _ = PanoramaStitcher(FAST).stitch(images)
    parallel, _ = PanoramaStitcher(FAST.replace(num_workers=3)).stitch(images)
    np.testing.assert_array_equal(serial.image, parallel.image)
    np.testing.assert_array_equal(serial.mask, parallel.mask)


def test_alternative_pipeline_options(two_views):
    images, _ = two_views
    config = StitchConfig(
        adjuster='ray',
        wave_correct=None,
        warp='cylindrical',
        expos_comp='no',
        seam='gc_colorgrad',
        blend='feather',
        seam_megapix=0.01,
        compose_megapix=0.02,
    )
    panorama, report = PanoramaStitcher(config).stitch(images)

    assert report.used == (0, 1)
    # Composition runs below the input resolution
    assert panorama.image.shape[0] < 180
    assert panorama.image.shape[1] > panorama.image.shape[0]


def test_featureless_image_is_dropped(three_views):
    images, _ = three_views
    flat = np.full((180, 240, 3), 128, dtype=np.uint8)
    panorama, report = PanoramaStitcher(FAST).stitch(list(images) + [flat])

    assert report.dropped == {3: "no features"}
    assert report.used == (0, 1, 2)
    assert panorama.contributing == (0, 1, 2)


def test_unreadable_image_is_dropped(three_views):
    images, _ = three_views
    _, report = PanoramaStitcher(FAST).stitch([images[0], None, images[1], images[2]])

    assert report.dropped == {1: "unreadable"}
    assert report.used == (0, 2, 3)


def test_single_image_raises_input_error(three_views):
    images, _ = three_views
    with pytest.raises(InputError) as excinfo:
        PanoramaStitcher(FAST).stitch([images[0], None])
    assert excinfo.value.report is not None
    assert excinfo.value.report.dropped == {1: "unreadable"}
    assert excinfo.value.report.used == ()


def test_views_without_overlap_raise_topology_error(opposite_views):
    images, _ = opposite_views
    with pytest.raises(TopologyError) as excinfo:
        PanoramaStitcher(FAST).stitch(images)

    graph = excinfo.value.graph
    assert graph.nodes == (0,)
    assert graph.edges == ()
    report = excinfo.value.report
    assert report.num_images == 2
    assert report.used == (0,)
    assert report.dropped == {1: "no verified matches with any other image"}
    assert "Image 2 dropped: no verified matches" in report.summary()


def test_failure_after_registration_reports_graph_nodes(three_views, monkeypatch):
    images, _ = three_views
    stitcher = PanoramaStitcher(FAST)
    seen = {}

    def fail(features, graph, cameras):
        seen["nodes"] = graph.nodes
        raise OptimizationError("bundle adjustment diverged")

    monkeypatch.setattr(stitcher.adjuster, "adjust", fail)
    with pytest.raises(OptimizationError) as excinfo:
        stitcher.stitch([images[0], None, images[1], images[2]])

    report = excinfo.value.report
    assert seen["nodes"] == (0, 2, 3)
    assert report.used == (0, 2, 3)
    assert report.dropped == {1: "unreadable"}


def test_passed_deadline_stops_the_pipeline(three_views):
    images, _ = three_views
    timings = Timings()
    with pytest.raises(DeadlineExceeded):
        PanoramaStitcher(FAST).stitch(images, timings=timings, deadline=time.monotonic() - 1.0)
    assert timings.find_features_time == 0
    assert timings.total_time > 0
