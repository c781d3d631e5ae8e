import numpy as np
import pytest

from rotpano.data_structures import WarpedImage, overlap_slices, union_roi
from rotpano.seam import (
    GraphCutSeamFinder,
    NoSeamFinder,
    VoronoiSeamFinder,
    create_seam_finder,
)


def textured(index, corner, size=(40, 30), seed=0, texture=None):
    w, h = size
    if texture is None:
        texture = np.random.default_rng(seed).uniform(0, 255, (h, w, 3))
    mask = np.ones((h, w), dtype=bool)
    return WarpedImage(index=index, image=texture, mask=mask, corner=corner)


def on_canvas(warped, masks):
    """Stack of the masks placed on the union canvas."""
    canvas = union_roi(w.roi for w in warped)
    stack = np.zeros((len(warped), canvas[3], canvas[2]), dtype=bool)
    for k, (w, mask) in enumerate(zip(warped, masks)):
        canvas_slices, roi_slices = overlap_slices(canvas, w.roi)
        stack[k][canvas_slices] = mask[roi_slices]
    return stack


def three_images():
    return [
        textured(3, (0, 0), seed=1),
        textured(5, (25, 5), seed=2),
        textured(8, (10, 20), seed=3),
    ]


@pytest.mark.parametrize("finder", [
    GraphCutSeamFinder("color"),
    GraphCutSeamFinder("color_grad"),
    VoronoiSeamFinder(),
    NoSeamFinder(),
])
def test_every_covered_pixel_gets_exactly_one_label(finder):
    warped = three_images()
    seams = finder.find(warped)

    coverage = on_canvas(warped, [w.mask for w in warped]).any(axis=0)
    assert seams.labels.shape == coverage.shape
    assert seams.corner == (0, 0)
    assert np.all(seams.labels[~coverage] == -1)
    assert np.all(np.isin(seams.labels[coverage], [3, 5, 8]))
    # The uncovered corner of the canvas is really there
    assert not coverage.all()


@pytest.mark.parametrize("finder", [GraphCutSeamFinder(), VoronoiSeamFinder()])
def test_seam_masks_partition_the_coverage(finder):
    warped = three_images()
    seams = finder.find(warped)

    owned = on_canvas(warped, seams.masks)
    coverage = on_canvas(warped, [w.mask for w in warped]).any(axis=0)
    assert np.all(owned.sum(axis=0) == coverage)
    for k, w in enumerate(warped):
        assert owned[k].any()
        np.testing.assert_array_equal(seams.labels[owned[k]], w.index)


def test_graph_cut_avoids_cutting_through_differences():
    h, w = 30, 40
    scene = np.random.default_rng(0).uniform(0, 255, (h, 65, 3))
    left = textured(0, (0, 0), texture=scene[:, :40])
    ghost = scene[:, 25:65].copy()
    # An object present only in the right image, inside the overlap
    ghost[8:22, 8:15] = 255.0 - ghost[8:22, 8:15]
    right = textured(1, (25, 0), texture=ghost)

    seams = GraphCutSeamFinder().find([left, right])
    ghost_labels = seams.labels[8:22, 33:40]
    assert np.unique(ghost_labels).tolist() == [1]
    assert seams.masks[0].any() and seams.masks[1].any()


def test_voronoi_ties_go_to_lower_index():
    a = textured(4, (0, 0), seed=1)
    b = textured(2, (0, 0), seed=2)
    seams = VoronoiSeamFinder().find([a, b])
    assert np.all(seams.labels == 2)
    assert not seams.masks[0].any()
    assert seams.masks[1].all()


def test_voronoi_splits_side_by_side_images_in_the_middle():
    seams = VoronoiSeamFinder().find([textured(0, (0, 0)), textured(1, (20, 0))])
    row = seams.labels[15]
    assert row[:25].tolist() == [0] * 25
    assert row[35:].tolist() == [1] * 25


def test_no_seam_finder_keeps_masks_and_labels_lowest_index():
    warped = three_images()
    seams = NoSeamFinder().find(warped)
    for w, mask in zip(warped, seams.masks):
        np.testing.assert_array_equal(mask, w.mask)
    # (30, 10) is covered by images 3 and 5
    assert seams.labels[10, 30] == 3


def test_create_seam_finder():
    assert isinstance(create_seam_finder("gc_color"), GraphCutSeamFinder)
    assert create_seam_finder("gc_colorgrad").cost_type == "color_grad"
    assert isinstance(create_seam_finder("voronoi"), VoronoiSeamFinder)
    assert isinstance(create_seam_finder("no"), NoSeamFinder)
    with pytest.raises(ValueError):
        create_seam_finder("dp_color")
