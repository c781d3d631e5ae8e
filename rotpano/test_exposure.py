import numpy as np
import pytest

from rotpano.data_structures import WarpedImage
from rotpano.exposure import GainCompensator, NoExposureCompensator, create_exposure_compensator


def flat(index, value, corner, size=(40, 30)):
    w, h = size
    return WarpedImage(
        index=index,
        image=np.full((h, w, 3), value, dtype=np.float32),
        mask=np.ones((h, w), dtype=bool),
        corner=corner,
    )


def test_gains_pull_overlaps_together():
    dark, bright = flat(0, 100.0, (0, 0)), flat(1, 150.0, (20, 0))
    gains = GainCompensator().feed([dark, bright])

    assert gains[0] > 1.0 > gains[1]
    assert abs(gains[0] * 100.0 - gains[1] * 150.0) < 50.0


def test_identical_exposure_keeps_unit_gains():
    gains = GainCompensator().feed([flat(2, 120.0, (0, 0)), flat(5, 120.0, (15, 5))])
    assert gains[2] == pytest.approx(1.0)
    assert gains[5] == pytest.approx(1.0)


def test_images_without_overlap_keep_unit_gains():
    gains = GainCompensator().feed([flat(0, 60.0, (0, 0)), flat(1, 200.0, (100, 0))])
    assert gains == {0: pytest.approx(1.0), 1: pytest.approx(1.0)}


def test_apply_scales_and_clips():
    warped = flat(0, 200.0, (3, 4))
    adjusted = GainCompensator().apply(warped, 1.5)
    assert adjusted is not warped
    assert adjusted.corner == (3, 4)
    assert np.all(adjusted.image == 255.0)
    assert np.all(warped.image == 200.0)


def test_no_compensation():
    compensator = create_exposure_compensator("no")
    assert isinstance(compensator, NoExposureCompensator)
    warped = flat(0, 10.0, (0, 0))
    assert compensator.feed([warped]) == {0: 1.0}
    assert compensator.apply(warped, 1.0) is warped
    assert isinstance(create_exposure_compensator("gain"), GainCompensator)
