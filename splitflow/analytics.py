"""
Significance and winner analysis.

Everything here is a pure function over snapshots of funnel sessions and
attribution records; nothing is stored, so concurrent writers only make
results slightly stale.
"""

from typing import Optional, List, Dict, Tuple
from collections import defaultdict
import math

from splitflow import stats
from splitflow.schemas import (
    DAY_MS,
    AdvancedTestMetrics,
    FunnelAnalytics,
    RevenueAnalytics,
    RevenueAttribution,
    TimeSeriesPoint,
    UserFunnelSession,
    VariantCounts,
    VariantMetrics,
    WinnerAnalysis,
)


def build_variant_metrics(counts: List[VariantCounts]) -> List[VariantMetrics]:
    """
    Derive per-variant metrics. The first entry is the control.

    Variants with zero sessions get rate, error and interval of 0.
    """
    metrics = []
    control: Optional[VariantMetrics] = None

    for entry in counts:
        rate = stats.conversion_rate(entry.conversions, entry.sessions)
        se = stats.standard_error(rate, entry.sessions)
        margin = stats.Z_ALPHA * se

        metric = VariantMetrics(
            variant=entry.variant,
            sessions=entry.sessions,
            conversions=entry.conversions,
            conversion_rate=rate,
            revenue=entry.revenue,
            revenue_per_visitor=entry.revenue / entry.sessions if entry.sessions > 0 else 0.0,
            average_order_value=entry.revenue / entry.conversions if entry.conversions > 0 else 0.0,
            standard_error=se,
            margin_of_error=margin,
            confidence_interval=stats.confidence_interval(rate, se),
        )

        if control is None:
            control = metric
        else:
            z = stats.z_score(control.conversion_rate, control.standard_error, rate, se)
            metric.significance_vs_control = stats.confidence_percent(z)
            metric.lift = (
                (rate - control.conversion_rate) / control.conversion_rate * 100
                if control.conversion_rate > 0 else 0.0
            )
        metrics.append(metric)

    return metrics


def statistical_significance(metrics: List[VariantMetrics]) -> Dict[str, float]:
    """Confidence (%) of each variant against control, keyed 'control_vs_variant'."""
    if len(metrics) < 2:
        return {}

    control = metrics[0]
    significance = {}
    for variant in metrics[1:]:
        z = stats.z_score(
            control.conversion_rate, control.standard_error,
            variant.conversion_rate, variant.standard_error,
        )
        significance[f"{control.variant}_vs_{variant.variant}"] = stats.confidence_percent(z)
    return significance


def recommend(winner: str, confidence: float, current_sample: int, required_sample: int) -> str:
    if confidence >= 95:
        return f"Declare winner - {winner} is statistically significant"
    if confidence >= 90:
        return f"Strong evidence for {winner} - consider running a bit longer"
    if confidence >= 80:
        return f"Promising results for {winner} - continue test"
    if current_sample < required_sample / 2:
        return "Test is too early - need more data"
    return "No clear winner yet - continue testing"


def analyze_winner(
    metrics: List[VariantMetrics],
    observed_days: Optional[float] = None,
    default_sample_size: int = 1000,
) -> Optional[WinnerAnalysis]:
    """
    Pick the best non-control variant by revenue per visitor.

    Returns None with fewer than two variants. `days_to_significance` is
    None when `observed_days` is unknown or no traffic has been seen.
    """
    if len(metrics) < 2:
        return None

    control = metrics[0]
    best = metrics[1]
    for candidate in metrics[2:]:
        if candidate.revenue_per_visitor > best.revenue_per_visitor:
            best = candidate

    lift = (
        (best.revenue_per_visitor - control.revenue_per_visitor) / control.revenue_per_visitor * 100
        if control.revenue_per_visitor > 0 else 0.0
    )

    z = stats.z_score(control.conversion_rate, control.standard_error, best.conversion_rate, best.standard_error)
    confidence = stats.confidence_percent(z)

    per_variant = stats.required_sample_size(control.conversion_rate, best.conversion_rate, default_sample_size)
    required = per_variant * len(metrics)
    current = sum(m.sessions for m in metrics)
    remaining = max(0, required - current)

    days_to_significance = None
    if remaining == 0:
        days_to_significance = 0
    elif observed_days and observed_days > 0 and current > 0:
        daily_traffic = current / observed_days
        days_to_significance = int(math.ceil(remaining / daily_traffic))

    return WinnerAnalysis(
        winning_variant=best.variant,
        control_variant=control.variant,
        confidence=confidence,
        expected_lift=lift,
        projected_revenue=best.revenue_per_visitor * 1000,
        required_sample_size=required,
        current_sample_size=current,
        days_to_significance=days_to_significance,
        recommendation=recommend(best.variant, confidence, current, required),
    )


def variant_order(sessions: List[UserFunnelSession]) -> List[str]:
    """Variants in encounter order: earliest session start first, ties by name."""
    order: List[str] = []
    for session in sorted(sessions, key=lambda s: (s.started_at, s.variant)):
        if session.variant not in order:
            order.append(session.variant)
    return order


def _converted(session: UserFunnelSession, conversion_type: Optional[str]) -> bool:
    return any(conversion_type is None or c.type == conversion_type for c in session.conversions)


def collect_variant_counts(
    sessions: List[UserFunnelSession],
    variant_revenue: Dict[str, float],
    conversion_type: Optional[str] = None,
) -> List[VariantCounts]:
    """
    Aggregate sessions into per-variant counts, control first.

    A session counts as one conversion when it has at least one conversion
    (of `conversion_type`, when given). Revenue is the attributed revenue.
    """
    by_variant: Dict[str, List[UserFunnelSession]] = defaultdict(list)
    for session in sessions:
        by_variant[session.variant].append(session)

    return [
        VariantCounts(
            variant=variant,
            sessions=len(by_variant[variant]),
            conversions=sum(1 for s in by_variant[variant] if _converted(s, conversion_type)),
            revenue=variant_revenue.get(variant, 0.0),
        )
        for variant in variant_order(sessions)
    ]


def build_revenue_analytics(
    attributions: List[RevenueAttribution],
    variant_revenue: Dict[str, float],
) -> RevenueAnalytics:
    by_source: Dict[str, float] = defaultdict(float)
    orders: Dict[str, List[float]] = defaultdict(list)
    for attribution in attributions:
        orders[attribution.variant].append(attribution.revenue)
        for contribution in attribution.contributions:
            by_source[contribution.source] += attribution.revenue * contribution.contribution_fraction

    return RevenueAnalytics(
        total_revenue=sum(variant_revenue.values()),
        revenue_by_variant=dict(variant_revenue),
        revenue_by_source=dict(by_source),
        average_order_value={variant: sum(values) / len(values) for variant, values in orders.items()},
    )


def build_time_series(
    sessions: List[UserFunnelSession],
    attributions: List[RevenueAttribution],
    conversion_type: Optional[str] = None,
) -> List[TimeSeriesPoint]:
    """Daily per-variant points, bucketed by UTC day."""
    buckets: Dict[Tuple[int, str], Dict[str, float]] = defaultdict(
        lambda: {"sessions": 0, "conversions": 0, "revenue": 0.0}
    )
    for session in sessions:
        bucket = buckets[(session.started_at - session.started_at % DAY_MS, session.variant)]
        bucket["sessions"] += 1
        if _converted(session, conversion_type):
            bucket["conversions"] += 1
    for attribution in attributions:
        day = attribution.timestamp - attribution.timestamp % DAY_MS
        buckets[(day, attribution.variant)]["revenue"] += attribution.attributed_revenue

    return [
        TimeSeriesPoint(
            day_start=day,
            variant=variant,
            sessions=int(values["sessions"]),
            conversions=int(values["conversions"]),
            revenue=values["revenue"],
            conversion_rate=stats.conversion_rate(int(values["conversions"]), int(values["sessions"])),
        )
        for (day, variant), values in sorted(buckets.items())
    ]


def observed_span_days(sessions: List[UserFunnelSession]) -> Optional[float]:
    """Days between the first and last session start, or None under one day."""
    if not sessions:
        return None
    starts = [s.started_at for s in sessions]
    span = (max(starts) - min(starts)) / DAY_MS
    return span if span >= 1 else None


def build_advanced_metrics(
    test_id: str,
    sessions: List[UserFunnelSession],
    attributions: List[RevenueAttribution],
    variant_revenue: Dict[str, float],
    funnel_metrics: Dict[str, Dict[str, FunnelAnalytics]],
    observed_days: Optional[float] = None,
    conversion_type: Optional[str] = None,
    default_sample_size: int = 1000,
) -> Optional[AdvancedTestMetrics]:
    """Assemble the full metrics report for a test; None without sessions."""
    if not sessions:
        return None

    if observed_days is None:
        observed_days = observed_span_days(sessions)

    counts = collect_variant_counts(sessions, variant_revenue, conversion_type)
    metrics = build_variant_metrics(counts)

    return AdvancedTestMetrics(
        test_id=test_id,
        variants=metrics,
        statistical_significance=statistical_significance(metrics),
        winner_analysis=analyze_winner(metrics, observed_days, default_sample_size),
        funnel_metrics=funnel_metrics,
        revenue_metrics=build_revenue_analytics(attributions, variant_revenue),
        time_series=build_time_series(sessions, attributions, conversion_type),
    )
