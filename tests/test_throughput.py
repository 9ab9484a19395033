import pytest

from disktrip import SPEED_WINDOW, ThroughputEstimator


def _estimator(samples, capacity=SPEED_WINDOW):
    est = ThroughputEstimator(capacity)
    for s in samples:
        est.add(s)
    return est


def test_empty_window_averages_to_zero():
    assert ThroughputEstimator().average() == 0.0


def test_window_is_bounded_fifo():
    est = _estimator(range(SPEED_WINDOW + 5))
    assert len(est.samples) == SPEED_WINDOW
    assert est.samples[0] == 5


def test_single_outlier_is_trimmed():
    est = _estimator([100.0] * 9 + [10_000.0])
    assert est.average() == pytest.approx(100.0)


def test_stall_is_trimmed():
    est = _estimator([200.0] * 19 + [1.0])
    assert est.average() == pytest.approx(200.0)


def test_small_deviation_is_kept():
    # 115 vs mean 103 is within the 1.2 ratio, so nothing is discarded
    est = _estimator([100.0] * 4 + [115.0])
    assert est.average() == pytest.approx(103.0)


def test_at_most_a_fifth_is_discarded():
    # two outliers in ten samples may go, a third one may not
    est = _estimator([100.0] * 7 + [1000.0, 2000.0, 3000.0])
    assert est.average() == pytest.approx((700.0 + 1000.0) / 8)


def test_short_window_is_plain_mean():
    est = _estimator([100.0, 300.0])
    assert est.average() == pytest.approx(200.0)


def test_zero_sample_counts_as_outlier():
    est = _estimator([0.0, 100.0, 100.0, 100.0, 100.0])
    assert est.average() == pytest.approx(100.0)


def test_all_zero_samples():
    assert _estimator([0.0] * 10).average() == 0.0
