"""
Multi-touch revenue attribution.

Each conversion is attributed once, against the touchpoints eligible at
that moment, and the result is stored as an immutable record. Later
touchpoints never rewrite past attributions.

Supported models:
- first_touch: all credit to the earliest touchpoint
- last_touch: all credit to the latest touchpoint
- linear: equal credit to every touchpoint
- time_decay: credit decays with the touchpoint's age (7-day half-life)
- position_based: 40% first, 40% last, 20% shared by the middle
"""

from typing import Optional, List, Dict, Any, Tuple
from collections import defaultdict
import json
import logging
import threading

from splitflow.config import Settings, settings as default_settings
from splitflow.schemas import (
    DAY_MS,
    AttributionModelConfig,
    AttributionModelType,
    CustomerConversion,
    RevenueAttribution,
    Touchpoint,
    TouchpointContribution,
    normalize_currency,
    now_ms,
)
from splitflow.touchpoints import TouchpointStore

logger = logging.getLogger(__name__)

FALLBACK_MODEL = AttributionModelType.FIRST_TOUCH


def default_models(settings: Settings) -> Dict[AttributionModelType, AttributionModelConfig]:
    """Build the five default model configurations from settings."""
    lookback = settings.attribution_lookback_days
    return {
        AttributionModelType.FIRST_TOUCH: AttributionModelConfig(
            type=AttributionModelType.FIRST_TOUCH, lookback_days=lookback, weights={"first": 1.0}
        ),
        AttributionModelType.LAST_TOUCH: AttributionModelConfig(
            type=AttributionModelType.LAST_TOUCH, lookback_days=lookback, weights={"last": 1.0}
        ),
        AttributionModelType.LINEAR: AttributionModelConfig(
            type=AttributionModelType.LINEAR, lookback_days=lookback
        ),
        AttributionModelType.TIME_DECAY: AttributionModelConfig(
            type=AttributionModelType.TIME_DECAY,
            lookback_days=lookback,
            weights={
                "decay_rate": settings.time_decay_rate,
                "half_life_days": settings.time_decay_half_life_days,
            },
        ),
        AttributionModelType.POSITION_BASED: AttributionModelConfig(
            type=AttributionModelType.POSITION_BASED,
            lookback_days=lookback,
            weights={
                "first": settings.position_first_weight,
                "last": settings.position_last_weight,
                "middle": settings.position_middle_weight,
            },
        ),
    }


def eligible_touchpoints(
    touchpoints: List[Touchpoint],
    conversion_timestamp: int,
    lookback_days: int
) -> List[Touchpoint]:
    """Touchpoints at or before the conversion and inside the lookback window, oldest first."""
    window = lookback_days * DAY_MS
    eligible = [
        tp for tp in touchpoints
        if 0 <= conversion_timestamp - tp.timestamp <= window
    ]
    return sorted(eligible, key=lambda tp: tp.timestamp)


def _first_touch_weights(n: int, model: AttributionModelConfig) -> List[float]:
    return [1.0] + [0.0] * (n - 1)


def _last_touch_weights(n: int, model: AttributionModelConfig) -> List[float]:
    return [0.0] * (n - 1) + [1.0]


def _linear_weights(n: int, model: AttributionModelConfig) -> List[float]:
    return [1.0 / n] * n


def _position_based_weights(n: int, model: AttributionModelConfig) -> List[float]:
    first = model.weights.get("first", 0.4)
    last = model.weights.get("last", 0.4)
    middle = model.weights.get("middle", 0.2)

    if n == 1:
        return [1.0]
    if n == 2:
        return [first + middle / 2, last + middle / 2]

    interior = middle / (n - 2)
    return [first] + [interior] * (n - 2) + [last]


def compute_contributions(
    touchpoints: List[Touchpoint],
    conversion_timestamp: int,
    model: AttributionModelConfig,
) -> List[TouchpointContribution]:
    """
    Distribute one conversion's credit across eligible touchpoints.

    The touchpoints must already be filtered and sorted oldest first. The
    returned fractions sum to 1.0; an empty input yields no contributions.
    """
    n = len(touchpoints)
    if n == 0:
        return []

    if model.type == AttributionModelType.TIME_DECAY:
        decay_rate = model.weights.get("decay_rate", 0.7)
        half_life = model.weights.get("half_life_days", 7.0)
        raw = [
            decay_rate ** (((conversion_timestamp - tp.timestamp) / DAY_MS) / half_life)
            for tp in touchpoints
        ]
        total = sum(raw)
        weights = [w / total for w in raw]
    else:
        calculators = {
            AttributionModelType.FIRST_TOUCH: _first_touch_weights,
            AttributionModelType.LAST_TOUCH: _last_touch_weights,
            AttributionModelType.LINEAR: _linear_weights,
            AttributionModelType.POSITION_BASED: _position_based_weights,
        }
        weights = calculators[model.type](n, model)

    return [
        TouchpointContribution(
            touchpoint_id=tp.id,
            source=tp.source,
            medium=tp.medium,
            campaign=tp.campaign,
            variant=tp.variant,
            contribution_fraction=min(1.0, max(0.0, weight)),
            timestamp=tp.timestamp,
            position=index + 1,
        )
        for index, (tp, weight) in enumerate(zip(touchpoints, weights))
    ]


class AttributionEngine:
    """Attributes conversion revenue and keeps per-variant revenue rollups."""

    def __init__(self, store: TouchpointStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings
        self.models = default_models(self.settings)
        self._attributions: List[RevenueAttribution] = []
        self._variant_revenue: Dict[Tuple[str, str], float] = defaultdict(float)
        self._lock = threading.Lock()

    def register_model(self, config: AttributionModelConfig) -> None:
        """Replace the configuration used for a model type."""
        self.models[config.type] = config

    def resolve_model(self, model_type: str) -> Tuple[AttributionModelConfig, bool]:
        """
        Look up a model by name.

        Unknown names fall back to first_touch. The second element of the
        returned tuple is True when that fallback happened.
        """
        try:
            return self.models[AttributionModelType(model_type)], False
        except ValueError:
            logger.warning(
                f"Unknown attribution model '{model_type}', falling back to {FALLBACK_MODEL.value}"
            )
            return self.models[FALLBACK_MODEL], True

    def attribute_revenue(
        self,
        session_id: str,
        order_id: str,
        revenue: float,
        currency: str = "USD",
        customer_id: Optional[str] = None,
        model_type: str = "first_touch",
        timestamp: Optional[int] = None,
    ) -> Optional[RevenueAttribution]:
        """
        Attribute an order's revenue to the visitor's touchpoints.

        Returns None, writing nothing, when the revenue is negative, the
        currency is not an ISO 4217 code, the visitor has no journey or no
        touchpoint falls inside the model's lookback window.
        """
        timestamp = timestamp if timestamp is not None else now_ms()
        customer_key = customer_id or session_id

        code = normalize_currency(currency)
        if code is None or revenue < 0:
            logger.warning(f"Order {order_id} not attributed: invalid amount {revenue} {currency!r}")
            return None
        currency = code

        journey = self.store.get_journey(customer_key)
        if journey is None:
            logger.debug(f"No journey for {customer_key}; order {order_id} not attributed")
            return None

        model, fallback = self.resolve_model(model_type)
        touchpoints = eligible_touchpoints(
            self.store.journey_touchpoints(customer_key), timestamp, model.lookback_days
        )
        if not touchpoints:
            logger.debug(f"No eligible touchpoints for {customer_key}; order {order_id} not attributed")
            return None

        contributions = compute_contributions(touchpoints, timestamp, model)

        session = self.store.get_session(session_id, timestamp)
        test_id = session.test_id if session else "unknown"
        variant = session.variant if session else "unknown"

        variant_share = sum(c.contribution_fraction for c in contributions if c.variant == variant)
        attributed = revenue * variant_share

        # Both records are built before anything is written
        conversion = CustomerConversion(
            order_id=order_id,
            timestamp=timestamp,
            revenue=revenue,
            currency=currency,
            type="purchase" if revenue > 0 else "lead",
            attributed_touchpoints=[c.touchpoint_id for c in contributions if c.contribution_fraction > 0],
        )
        attribution = RevenueAttribution(
            session_id=session_id,
            order_id=order_id,
            revenue=revenue,
            currency=currency,
            timestamp=timestamp,
            model_type=model.type,
            requested_model=model_type,
            model_fallback=fallback,
            contributions=contributions,
            test_id=test_id,
            variant=variant,
            attributed_revenue=attributed,
            customer_ltv=journey.total_revenue + revenue,
        )

        self.store.record_customer_conversion(customer_key, conversion)

        with self._lock:
            self._attributions.append(attribution)
            self._variant_revenue[(test_id, variant)] += attributed

        logger.info(
            f"Attributed order {order_id}: {revenue:.2f} {currency} via {model.type.value} "
            f"across {len(contributions)} touchpoints ({attributed:.2f} to {test_id}/{variant})"
        )
        return attribution

    def variant_revenue(self, test_id: str) -> Dict[str, float]:
        """Attributed revenue per variant for a test."""
        with self._lock:
            return {
                variant: revenue
                for (tid, variant), revenue in self._variant_revenue.items()
                if tid == test_id
            }

    def attributions_for_test(self, test_id: Optional[str] = None) -> List[RevenueAttribution]:
        with self._lock:
            records = list(self._attributions)
        if test_id is None:
            return records
        return [a for a in records if a.test_id == test_id]

    def get_attribution_analytics(self, test_id: str) -> Dict[str, Any]:
        """Revenue, conversions and channel contribution per variant."""
        records = self.attributions_for_test(test_id)

        by_variant: Dict[str, List[RevenueAttribution]] = defaultdict(list)
        for record in records:
            by_variant[record.variant].append(record)

        variant_breakdown = {}
        for variant, attributions in by_variant.items():
            total = sum(a.revenue for a in attributions)
            channels: Dict[str, Dict[str, float]] = defaultdict(lambda: {"total_contribution": 0.0, "touchpoints": 0})
            for attribution in attributions:
                for c in attribution.contributions:
                    key = f"{c.source}/{c.medium}"
                    channels[key]["total_contribution"] += c.contribution_fraction
                    channels[key]["touchpoints"] += 1
            variant_breakdown[variant] = {
                "total_revenue": total,
                "attributed_revenue": sum(a.attributed_revenue for a in attributions),
                "conversions": len(attributions),
                "avg_order_value": total / len(attributions),
                "touchpoint_breakdown": dict(channels),
            }

        return {
            "test_id": test_id,
            "total_revenue": sum(a.revenue for a in records),
            "total_conversions": len(records),
            "variant_breakdown": variant_breakdown,
            "attribution_model": records[0].model_type.value if records else "unknown",
        }

    def export_attributions(self, test_id: Optional[str] = None) -> str:
        """Serialize attribution records to JSON for offline analysis."""
        return json.dumps([a.model_dump(mode="json") for a in self.attributions_for_test(test_id)])

    def cleanup_old_attributions(self, days_to_keep: Optional[int] = None, now: Optional[int] = None) -> int:
        """Drop attribution records and journeys older than the retention window."""
        days_to_keep = days_to_keep if days_to_keep is not None else self.settings.attribution_retention_days
        now = now if now is not None else now_ms()
        cutoff = now - days_to_keep * DAY_MS

        with self._lock:
            before = len(self._attributions)
            self._attributions = [a for a in self._attributions if a.timestamp >= cutoff]
            removed = before - len(self._attributions)

        removed_journeys = self.store.cleanup_journeys(cutoff)
        logger.info(f"Attribution cleanup removed {removed} records and {removed_journeys} journeys")
        return removed
