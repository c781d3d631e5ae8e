import numpy as np
import pytest

from rotpano.blending import (
    FeatherBlender,
    MultiBandBlender,
    NoBlender,
    collapse_pyramid,
    create_blender,
    laplacian_pyramid,
)
from rotpano.data_structures import WarpedImage
from rotpano.seam import VoronoiSeamFinder, build_seam_masks


def flat(index, corner, size, color):
    w, h = size
    image = np.empty((h, w, 3), dtype=np.float32)
    image[:] = color
    return WarpedImage(index=index, image=image, mask=np.ones((h, w), dtype=bool), corner=corner)


def test_pyramid_collapse_restores_image():
    image = np.random.default_rng(0).uniform(0, 255, (48, 64, 3))
    pyramid = laplacian_pyramid(image, 4)
    assert len(pyramid) == 5
    assert pyramid[-1].shape == (3, 4, 3)
    np.testing.assert_allclose(collapse_pyramid(pyramid), image, atol=1e-9)


@pytest.mark.parametrize("blender", [
    MultiBandBlender(num_bands=3),
    FeatherBlender(),
    NoBlender(),
])
def test_equal_images_blend_to_same_colour(blender):
    # 64 x 32 canvas: divisible by 2 ** 3, so no padding is needed
    color = (100.0, 150.0, 200.0)
    warped = [flat(0, (0, 0), (40, 32), color), flat(1, (24, 0), (40, 32), color)]
    seams = VoronoiSeamFinder().find(warped)

    panorama = blender.blend(warped, seams)
    assert panorama.image.shape == (32, 64, 3)
    assert panorama.mask.all()
    assert panorama.contributing == (0, 1)
    assert np.abs(panorama.image.astype(int) - np.array(color, dtype=int)).max() <= 1


def test_multiband_transition_is_local():
    warped = [flat(0, (0, 0), (64, 32), 50.0), flat(1, (32, 0), (64, 32), 200.0)]
    seams = VoronoiSeamFinder().find(warped)

    panorama = MultiBandBlender(num_bands=3).blend(warped, seams)
    row = panorama.image[16, :, 0].astype(int)
    assert abs(row[2] - 50) <= 2
    assert abs(row[93] - 200) <= 2
    assert 60 < row[48] < 190


@pytest.mark.parametrize("blender", [MultiBandBlender(), FeatherBlender(), NoBlender()])
def test_uncovered_pixels_are_black_and_masked(blender):
    warped = [flat(0, (0, 0), (20, 20), 120.0), flat(1, (30, 10), (20, 20), 80.0)]
    seams = VoronoiSeamFinder().find(warped)

    panorama = blender.blend(warped, seams)
    assert panorama.image.shape == (30, 50, 3)
    assert panorama.corner == (0, 0)
    assert not panorama.mask[25, 5]
    assert np.all(panorama.image[25, 5] == 0)
    assert panorama.mask[5, 5] and panorama.mask[25, 45]


def test_no_blender_copies_owner_pixels():
    rng = np.random.default_rng(3)
    warped = [
        WarpedImage(index=k, image=rng.integers(0, 256, (30, 40, 3)).astype(np.float32),
                    mask=np.ones((30, 40), dtype=bool), corner=corner)
        for k, corner in enumerate([(0, 0), (25, 5)])
    ]
    seams = VoronoiSeamFinder().find(warped)
    panorama = NoBlender().blend(warped, seams)

    for wi in warped:
        x0, y0 = wi.corner
        h, w = wi.mask.shape
        owned = seams.labels[y0:y0 + h, x0:x0 + w] == wi.index
        assert owned.any()
        np.testing.assert_array_equal(panorama.image[y0:y0 + h, x0:x0 + w][owned],
                                      wi.image[owned].astype(np.uint8))


def test_image_with_empty_seam_mask_does_not_contribute():
    warped = [flat(2, (0, 0), (30, 20), 90.0), flat(4, (10, 0), (30, 20), 30.0)]
    masks = [np.ones((20, 30), dtype=bool), np.zeros((20, 30), dtype=bool)]
    seams = build_seam_masks(warped, masks)

    panorama = FeatherBlender().blend(warped, seams)
    assert panorama.contributing == (2,)
    assert not panorama.mask[:, 30:].any()
    assert np.all(panorama.image[:, :30] == 90)


def test_mask_count_must_match_images():
    warped = [flat(0, (0, 0), (10, 10), 10.0), flat(1, (5, 0), (10, 10), 10.0)]
    seams = build_seam_masks(warped[:1], [np.ones((10, 10), dtype=bool)])
    with pytest.raises(ValueError):
        MultiBandBlender().blend(warped, seams)


def test_band_count():
    assert MultiBandBlender().bands_for(1000, 500) == 5
    assert MultiBandBlender(num_bands=3).bands_for(1000, 500) == 3
    # The coarsest level keeps at least one pixel
    assert MultiBandBlender(num_bands=10).bands_for(8, 8) == 3
    assert MultiBandBlender(blend_strength=0).bands_for(1000, 500) == 0


def test_create_blender():
    assert isinstance(create_blender('multiband', num_bands=4), MultiBandBlender)
    assert create_blender('multiband', num_bands=4).num_bands == 4
    assert isinstance(create_blender('feather'), FeatherBlender)
    assert isinstance(create_blender('no'), NoBlender)
    with pytest.raises(ValueError):
        create_blender('laplace')
