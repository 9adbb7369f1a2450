import math

import numpy as np
import pytest
from celldet.core import (
    InvalidInputError,
    RunningStatistics,
    STATISTICS,
    compute_running_statistics,
    statistics_to_measurements,
)


def test_empty_statistics_are_nan():
    s = RunningStatistics()
    vals = s.values()
    assert list(vals) == list(STATISTICS)
    assert all(math.isnan(v) for v in vals.values())


def test_running_statistics_population_std():
    s = RunningStatistics()
    for v in (1.0, 2.0, float("nan"), 3.0, 4.0, float("inf")):
        s.add(v)
    assert s.size == 4
    assert s.mean == pytest.approx(2.5)
    assert s.std_dev == pytest.approx(math.sqrt(1.25))
    assert s.range == pytest.approx(3.0)


def test_per_label_statistics():
    img = np.array([[1, 2, 0], [3, 4, 9]], np.float32)
    labels = np.array([[1, 1, 0], [2, 2, 0]], np.int32)
    stats = compute_running_statistics(img, labels, 3)
    assert len(stats) == 3
    assert stats[0].mean == pytest.approx(1.5)
    assert stats[1].sum == pytest.approx(7.0)
    assert stats[1].minimum == 3 and stats[1].maximum == 4
    assert stats[0].std_dev == pytest.approx(0.5)
    # label 3 has no pixels
    assert math.isnan(stats[2].mean) and stats[2].size == 0


def test_statistics_ignore_non_finite_pixels():
    img = np.array([[1, np.nan, 3]], np.float32)
    labels = np.ones((1, 3), np.int32)
    s = compute_running_statistics(img, labels, 1)[0]
    assert s.size == 2 and s.mean == pytest.approx(2.0)


def test_large_offset_variance_is_stable():
    img = np.full((10, 10), 1e6, np.float64)
    img[::2] += 1.0
    labels = np.ones_like(img, dtype=np.int32)
    s = compute_running_statistics(img, labels, 1)[0]
    assert s.std_dev == pytest.approx(0.5, rel=1e-6)


def test_shape_mismatch():
    with pytest.raises(InvalidInputError):
        compute_running_statistics(np.zeros((3, 3)), np.zeros((3, 4), np.int32), 1)


def test_measurement_names():
    s = RunningStatistics()
    s.add(5.0)
    m = statistics_to_measurements("Nucleus: ", "DAPI", s)
    assert set(m) == {f"Nucleus: DAPI {k}" for k in STATISTICS}
    assert m["Nucleus: DAPI mean"] == 5.0
    assert m["Nucleus: DAPI std dev"] == 0.0
