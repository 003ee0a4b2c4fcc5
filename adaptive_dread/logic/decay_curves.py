# adaptive_dread/logic/decay_curves.py

from __future__ import annotations

from bisect import bisect_right
from typing import Iterable, List, Sequence, Tuple


class PiecewiseLinearCurve:
    """
    Retention curve over elapsed seconds.

    Control points are (time, value) pairs sorted by time. ``evaluate`` linearly
    interpolates between neighbours and holds the first/last value outside the
    covered range.
    """

    __slots__ = ("_times", "_values")

    def __init__(self, points: Iterable[Tuple[float, float]]):
        ordered: List[Tuple[float, float]] = sorted((float(t), float(v)) for t, v in points)
        if not ordered:
            raise ValueError("a decay curve needs at least one control point")
        for (t0, _), (t1, _) in zip(ordered, ordered[1:]):
            if t0 == t1:
                raise ValueError(f"duplicate control point at t={t0}")
        self._times = [t for t, _ in ordered]
        self._values = [v for _, v in ordered]

    @property
    def points(self) -> Sequence[Tuple[float, float]]:
        return list(zip(self._times, self._values))

    def evaluate(self, t: float) -> float:
        times, values = self._times, self._values
        if t <= times[0]:
            return values[0]
        if t >= times[-1]:
            return values[-1]
        idx = bisect_right(times, t)
        t0, t1 = times[idx - 1], times[idx]
        v0, v1 = values[idx - 1], values[idx]
        return v0 + (v1 - v0) * ((t - t0) / (t1 - t0))

    def __call__(self, t: float) -> float:
        return self.evaluate(t)

    def __repr__(self) -> str:
        return f"PiecewiseLinearCurve({self.points!r})"


# Retention curves for the core feedback metrics.
CORE_METRIC_CURVES = {
    "horror_effectiveness": ((0.0, 1.0), (300.0, 0.5), (600.0, 0.2)),
    "psychological_impact": ((0.0, 1.0), (180.0, 0.7), (600.0, 0.3)),
    "personal_resonance": ((0.0, 1.0), (400.0, 0.6), (800.0, 0.2)),
    "narrative_coherence": ((0.0, 1.0), (500.0, 0.8), (1000.0, 0.4)),
}


def core_curve(metric_id: str) -> PiecewiseLinearCurve:
    return PiecewiseLinearCurve(CORE_METRIC_CURVES[metric_id])
