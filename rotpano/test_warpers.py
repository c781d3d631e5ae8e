import numpy as np
import pytest

from rotpano.conftest import camera
from rotpano.data_structures import overlap_slices
from rotpano.errors import CompositionError
from rotpano.warpers import (
    CylindricalWarper,
    SphericalWarper,
    camera_longitude,
    choose_seam_longitude,
    create_warper,
    wrap_angle,
)


def gradient_image(width=240, height=180):
    ys, xs = np.mgrid[0:height, 0:width]
    return (xs + ys).astype(np.float64)


def test_wrap_angle():
    np.testing.assert_allclose(wrap_angle([0.0, np.pi, 3 * np.pi / 2, -3 * np.pi / 2]),
                               [0.0, -np.pi, -np.pi / 2, np.pi / 2])


def test_camera_longitude():
    assert np.degrees(camera_longitude(camera(35.0))) == pytest.approx(35.0)
    assert np.degrees(camera_longitude(camera(-120.0, 10.0))) == pytest.approx(-120.0)


def test_seam_goes_opposite_a_compact_group():
    cameras = [camera(-30.0), camera(0.0), camera(30.0)]
    assert choose_seam_longitude(cameras) == pytest.approx(0.0, abs=1e-9)


def test_seam_longitude_of_group_across_180_degrees():
    centre = choose_seam_longitude([camera(170.0), camera(-170.0)])
    assert abs(wrap_angle(centre - np.pi)) < 1e-9


def test_principal_point_maps_to_equator():
    warper = SphericalWarper(200.0)
    u, v = warper.warp_points([[120.0, 90.0]], camera(0.0))[0]
    assert u == pytest.approx(0.0, abs=1e-9)
    assert v == pytest.approx(200.0 * np.pi / 2)


def test_images_across_180_degrees_stay_whole_and_adjacent():
    cams = [camera(170.0), camera(-170.0)]
    warper = SphericalWarper(200.0, choose_seam_longitude(cams))
    rois = [warper.warp_roi((240, 180), c) for c in cams]

    for roi in rois:
        # An image torn across the seam would span the whole circle
        assert roi[2] < 300
    centres = [roi[0] + roi[2] / 2.0 for roi in rois]
    assert centres[0] < centres[1]
    assert centres[1] - centres[0] == pytest.approx(200.0 * np.radians(20.0), abs=3.0)
    assert overlap_slices(rois[0], rois[1]) is not None


@pytest.mark.parametrize("warper_cls", [SphericalWarper, CylindricalWarper])
def test_warped_pixels_sample_the_source(warper_cls):
    image = gradient_image()
    cam = camera(10.0, 5.0)
    warper = warper_cls(200.0)
    warped = warper.warp(image, cam, index=3)

    assert warped.index == 3
    assert warped.image.dtype == np.float32
    assert warped.image.shape[:2] == warped.mask.shape
    assert warped.roi == warper.warp_roi((240, 180), cam)

    for x, y in [(60.0, 45.0), (120.0, 90.0), (200.0, 150.0)]:
        u, v = warper.warp_points([[x, y]], cam)[0]
        col = int(round(u)) - warped.corner[0]
        row = int(round(v)) - warped.corner[1]
        assert warped.mask[row, col]
        assert warped.image[row, col, 0] == pytest.approx(x + y, abs=2.5)


def test_uncovered_pixels_are_masked_out():
    warped = SphericalWarper(200.0).warp(gradient_image() + 10.0, camera(0.0, 20.0))
    assert not warped.mask.all()
    assert np.all(warped.image[~warped.mask] == 0)


def test_source_mask_is_respected():
    mask = np.ones((180, 240), dtype=bool)
    mask[:, :120] = False
    cam = camera(0.0)
    warper = SphericalWarper(200.0)
    full = warper.warp(gradient_image(), cam)
    half = warper.warp(gradient_image(), cam, mask=mask)
    assert half.mask.sum() < 0.6 * full.mask.sum()


def test_view_of_the_pole_wraps_full_circle():
    warper = SphericalWarper(200.0)
    warped = warper.warp(gradient_image(), camera(0.0, 90.0))
    assert warped.roi[2] >= int(2 * np.pi * 200.0) - 2
    assert warped.mask.any()


def test_degenerate_projection_raises():
    with pytest.raises(CompositionError):
        CylindricalWarper(200.0).warp(gradient_image(), camera(0.0, 90.0), index=1)

    tiny = SphericalWarper(200.0)
    tiny.max_area_ratio = 0.01
    with pytest.raises(CompositionError) as excinfo:
        tiny.warp(gradient_image(), camera(0.0), index=5)
    assert excinfo.value.index == 5


def test_create_warper():
    assert isinstance(create_warper("spherical", 100.0), SphericalWarper)
    assert isinstance(create_warper("cylindrical", 100.0, 0.5), CylindricalWarper)
    with pytest.raises(ValueError):
        create_warper("fisheye", 100.0)
    with pytest.raises(ValueError):
        SphericalWarper(0.0)
