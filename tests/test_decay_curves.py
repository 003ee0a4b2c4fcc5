import pytest

from adaptive_dread.logic.decay_curves import CORE_METRIC_CURVES, PiecewiseLinearCurve, core_curve


def test_interpolates_between_control_points():
    curve = core_curve("horror_effectiveness")

    assert curve.evaluate(0) == pytest.approx(1.0)
    assert curve.evaluate(150) == pytest.approx(0.75)
    assert curve.evaluate(450) == pytest.approx(0.35)


def test_clamps_outside_covered_range():
    curve = core_curve("psychological_impact")

    assert curve.evaluate(-10) == pytest.approx(1.0)
    assert curve.evaluate(600) == pytest.approx(0.3)
    assert curve(10_000) == pytest.approx(0.3)


def test_points_are_sorted_on_construction():
    curve = PiecewiseLinearCurve([(10, 0.0), (0, 1.0), (5, 0.8)])

    assert [t for t, _ in curve.points] == [0.0, 5.0, 10.0]
    assert curve.evaluate(7.5) == pytest.approx(0.4)


@pytest.mark.parametrize("points", [[], [(1, 0.5), (1, 0.2)]])
def test_rejects_degenerate_curves(points):
    with pytest.raises(ValueError):
        PiecewiseLinearCurve(points)


def test_core_curves_never_increase():
    for metric_id in CORE_METRIC_CURVES:
        curve = core_curve(metric_id)
        samples = [curve.evaluate(t) for t in range(0, 1200, 25)]
        assert samples == sorted(samples, reverse=True), metric_id
