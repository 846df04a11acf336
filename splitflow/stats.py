"""Hypothesis-testing helpers for conversion-rate comparisons."""

import math
from statistics import NormalDist
from typing import Tuple

# Two-sided alpha = 0.05 and power = 0.8
Z_ALPHA = 1.96
Z_BETA = 0.84

_STANDARD_NORMAL = NormalDist()


def conversion_rate(conversions: int, sessions: int) -> float:
    """Return conversions / sessions, or 0.0 for an empty variant."""
    if sessions <= 0:
        return 0.0
    return conversions / sessions


def standard_error(rate: float, sessions: int) -> float:
    """Binomial standard error of a conversion rate (0.0 for an empty variant)."""
    if sessions <= 0:
        return 0.0
    return math.sqrt(max(rate * (1 - rate), 0.0) / sessions)


def confidence_interval(rate: float, se: float, z: float = Z_ALPHA) -> Tuple[float, float]:
    """Normal-approximation interval, clipped to [0, 1]."""
    margin = z * se
    return max(0.0, rate - margin), min(1.0, rate + margin)


def normal_cdf(z: float) -> float:
    return _STANDARD_NORMAL.cdf(z)


def z_score(rate_a: float, se_a: float, rate_b: float, se_b: float) -> float:
    """Unpooled two-proportion z statistic for B versus A."""
    combined = math.sqrt(se_a ** 2 + se_b ** 2)
    if combined <= 0:
        return 0.0
    return (rate_b - rate_a) / combined


def p_value(z: float) -> float:
    """Two-tailed p-value for a standard normal statistic."""
    return max(0.0, min(1.0, 2 * (1 - normal_cdf(abs(z)))))


def confidence_percent(z: float) -> float:
    """Confidence (%) that the observed difference is not due to chance."""
    return (1 - p_value(z)) * 100


def required_sample_size(
    baseline_rate: float,
    expected_rate: float,
    default: int = 1000,
) -> int:
    """Return observations per variant needed to detect baseline -> expected.

    Standard two-proportion power calculation with fixed z values for
    alpha = 0.05 and power = 0.8. `default` is returned when the effect is
    zero or the rates are outside (0, 1).
    """

    p1 = baseline_rate
    p2 = expected_rate
    if not (0.0 <= p1 <= 1.0 and 0.0 <= p2 <= 1.0):
        return default

    denominator = (p1 - p2) ** 2
    if denominator <= 0:
        return default

    p_bar = (p1 + p2) / 2
    numerator = (
        Z_ALPHA * math.sqrt(2 * p_bar * (1 - p_bar))
        + Z_BETA * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return int(math.ceil(numerator / denominator))
