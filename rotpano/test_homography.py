import numpy as np
import pytest

from rotpano.conftest import rotation
from rotpano.homography import (
    HomographyEstimator,
    apply_homography,
    compute_homography_dlt,
    focals_from_homography,
)


def rotation_homography(focal0, focal1, R_rel):
    K0 = np.diag([focal0, focal0, 1.0])
    K1 = np.diag([focal1, focal1, 1.0])
    return K1 @ R_rel @ np.linalg.inv(K0)


def test_dlt_recovers_exact_homography():
    H = rotation_homography(300.0, 300.0, rotation(12.0, 4.0))
    H /= H[2, 2]
    src = np.array([[-80.0, -60.0], [90.0, -50.0], [70.0, 65.0], [-85.0, 55.0], [5.0, 3.0]])
    estimated = compute_homography_dlt(src, apply_homography(src, H))
    np.testing.assert_allclose(estimated, H, atol=1e-8)


def test_dlt_rejects_collinear_sample():
    src = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [3.0, 3.0]])
    assert compute_homography_dlt(src, src + 5.0) is None


def test_ransac_separates_outliers():
    rng = np.random.default_rng(3)
    H = rotation_homography(250.0, 250.0, rotation(15.0, -3.0))
    H /= H[2, 2]
    src = rng.uniform(-100, 100, (120, 2))
    dst = apply_homography(src, H) + rng.normal(0, 0.3, (120, 2))
    outliers = np.arange(120) % 4 == 0
    dst[outliers] = rng.uniform(-150, 150, (outliers.sum(), 2))

    estimated, inliers = HomographyEstimator(seed=1).find_homography(src, dst)
    assert estimated is not None
    assert not np.any(inliers & outliers)
    assert inliers[~outliers].mean() > 0.95
    errors = np.linalg.norm(apply_homography(src[~outliers], estimated)
                            - apply_homography(src[~outliers], H), axis=1)
    assert errors.max() < 1.5


def test_ransac_is_deterministic_for_fixed_seed():
    rng = np.random.default_rng(5)
    src = rng.uniform(-100, 100, (60, 2))
    dst = src + rng.normal(0, 2.0, (60, 2))
    estimator = HomographyEstimator(seed=11)
    H1, mask1 = estimator.find_homography(src, dst)
    H2, mask2 = estimator.find_homography(src, dst)
    np.testing.assert_array_equal(H1, H2)
    np.testing.assert_array_equal(mask1, mask2)


def test_ransac_needs_enough_inliers():
    src = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    H, inliers = HomographyEstimator().find_homography(src, src)
    assert H is None
    assert not inliers.any()

    rng = np.random.default_rng(0)
    H, inliers = HomographyEstimator(min_inliers=12).find_homography(
        rng.uniform(-100, 100, (30, 2)), rng.uniform(-100, 100, (30, 2))
    )
    assert H is None


@pytest.mark.parametrize("yaw, pitch", [(20.0, 0.0), (18.0, 6.0), (-25.0, 10.0)])
def test_focals_from_rotation_homography(yaw, pitch):
    H = rotation_homography(320.0, 280.0, rotation(yaw, pitch).T)
    f0, f1 = focals_from_homography(H * 3.7)
    assert f0 == pytest.approx(320.0, rel=1e-6)
    assert f1 == pytest.approx(280.0, rel=1e-6)


def test_focals_undetermined_for_identity():
    assert focals_from_homography(np.eye(3)) == (None, None)
