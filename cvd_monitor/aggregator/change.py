import math

EPSILON = 1e-8


def safe_percent_change(current: float | None, previous: float | None) -> float:
    """百分比变化，参考值为空/非有限/接近 0 时返回 0"""
    if current is None or previous is None:
        return 0.0
    if not math.isfinite(current) or not math.isfinite(previous) or abs(previous) <= EPSILON:
        return 0.0
    return (current - previous) / abs(previous) * 100
