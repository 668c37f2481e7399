"""
Price projection from a linear regression over recent closes
"""
from typing import List

import numpy as np

from .models import Candle, Projection, ProjectionPoint

# Projection horizon per chart interval
PROJECTION_PERIODS = {"15m": 96, "1h": 168, "4h": 180, "1d": 180, "1w": 52}
DEFAULT_PERIODS = 72


def calculate_projection(candles: List[Candle], periods: int = DEFAULT_PERIODS,
                         window: int = 50, widening: float = 0.015) -> Projection:
    """Extend the regression line of the last `window` closes `periods` steps
    ahead. Bull and bear cases sit one standard deviation away, widening by
    `widening` per step; the bear case never goes below zero."""
    if not candles:
        return Projection()

    closes = np.array([c.close for c in candles], dtype=float)
    last_time = candles[-1].time
    step = candles[-1].time - candles[-2].time if len(candles) > 1 else 3600

    recent = closes[-window:]
    n = recent.size
    x = np.arange(n, dtype=float)
    x_mean = (n - 1) / 2
    y_mean = recent.mean()
    den = ((x - x_mean) ** 2).sum()
    slope = float(((x - x_mean) * (recent - y_mean)).sum() / den) if den != 0 else 0.0
    intercept = y_mean - slope * x_mean
    std = float(recent.std())

    projection = Projection()
    for i in range(periods + 1):
        time = last_time + (i + 1) * step
        base = float(intercept + slope * (n - 1 + i))
        spread = std * (1 + i * widening)
        projection.base_case.append(ProjectionPoint(time=time, value=base))
        projection.bull_case.append(ProjectionPoint(time=time, value=base + spread))
        projection.bear_case.append(ProjectionPoint(time=time, value=max(base - spread, 0.0)))
    return projection
