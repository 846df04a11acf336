"""
Pydantic schemas for the split-test pipeline.

Organized by domain:
- Funnel configuration schemas
- Session and touchpoint schemas
- Funnel session state schemas
- Attribution schemas
- Analytics schemas

All timestamps are epoch milliseconds. Monetary amounts are floats paired
with an explicit ISO 4217 currency code.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Tuple
from enum import Enum
import re
import time


DAY_MS = 24 * 60 * 60 * 1000

CURRENCY_PATTERN = "^[A-Z]{3}$"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_currency(code: Optional[str]) -> Optional[str]:
    """Upper-case an ISO 4217 code; None when it is not three letters."""
    if not code:
        return None
    code = code.strip().upper()
    return code if re.match(CURRENCY_PATTERN, code) else None


class FunnelStep(BaseModel):
    """A single stage of a funnel (landing, optin, checkout, ...)."""
    step_id: str = Field(..., min_length=1)
    step_name: str = Field(..., min_length=1)
    step_type: str = Field("landing", description="landing, optin, sales, checkout, upsell, thankyou")
    url: str = Field("", description="URL fragment used to match entry URLs")
    position: int = Field(..., ge=1, description="Step order in the funnel, starting at 1")
    is_required: bool = True
    conversion_goal: Optional[str] = None


def _check_positions(steps: List[FunnelStep]) -> List[FunnelStep]:
    positions = [s.position for s in steps]
    if len(positions) != len(set(positions)):
        raise ValueError("Step positions must be unique within a funnel")
    return sorted(steps, key=lambda s: s.position)


class FunnelVariant(BaseModel):
    """One arm of the experiment a funnel belongs to."""
    name: str = Field(..., min_length=1, max_length=255)
    traffic_allocation: float = Field(50.0, ge=0, le=100, description="Traffic percentage (0-100)")
    steps: Optional[List[FunnelStep]] = Field(
        None,
        description="Variant-specific step sequence; the base steps are used when omitted"
    )

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, steps: Optional[List[FunnelStep]]) -> Optional[List[FunnelStep]]:
        if steps is None:
            return steps
        return _check_positions(steps)


class FunnelFlow(BaseModel):
    """
    Static funnel configuration.

    Created before any session starts and read-only afterwards.
    """
    funnel_id: str = Field(..., min_length=1)
    funnel_name: str = ""
    test_id: str = Field(..., min_length=1)
    steps: List[FunnelStep] = Field(..., min_length=1)
    variants: List[FunnelVariant] = Field(default_factory=list)
    conversion_goals: List[str] = Field(default_factory=lambda: ["lead", "sale", "upsell"])

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, steps: List[FunnelStep]) -> List[FunnelStep]:
        return _check_positions(steps)

    @field_validator("variants")
    @classmethod
    def validate_traffic_allocation(cls, variants: List[FunnelVariant]) -> List[FunnelVariant]:
        """Ensure variant names are unique and allocations sum to 100%."""
        if not variants:
            return variants
        names = [v.name for v in variants]
        if len(names) != len(set(names)):
            raise ValueError("Variant names must be unique within a funnel")
        total = sum(v.traffic_allocation for v in variants)
        if abs(total - 100.0) > 0.01:
            raise ValueError(f"Traffic allocations must sum to 100%, got {total}%")
        return variants

    def steps_for(self, variant: str) -> List[FunnelStep]:
        for v in self.variants:
            if v.name == variant and v.steps:
                return v.steps
        return self.steps

    @property
    def last_position(self) -> int:
        return self.steps[-1].position


class Session(BaseModel):
    """A visitor's pairing with one test, owned by the touchpoint store."""
    session_id: str
    test_id: str
    variant: str
    customer_id: Optional[str] = None
    original_source: str = "direct"
    created_at: int
    attribution_window_ms: int = Field(30 * DAY_MS, ge=0)

    def is_expired(self, now: int) -> bool:
        return now - self.created_at > self.attribution_window_ms

    @property
    def customer_key(self) -> str:
        return self.customer_id or self.session_id


class Touchpoint(BaseModel):
    """A recorded marketing interaction. Appended, never mutated."""
    id: str
    session_id: str
    customer_id: str
    timestamp: int
    source: str
    medium: str
    campaign: str = ""
    variant: str = "unknown"
    test_id: str = "unknown"
    page: str = ""
    action: str = "page_view"
    value: float = 0.0

    class Config:
        frozen = True


class CustomerConversion(BaseModel):
    """A conversion as seen from the customer journey."""
    order_id: str
    timestamp: int
    revenue: float
    currency: str = Field("USD", pattern=CURRENCY_PATTERN)
    type: str = Field("purchase", description="lead, trial, purchase, upsell")
    attributed_touchpoints: List[str] = Field(default_factory=list)


class CustomerJourney(BaseModel):
    """Touchpoints and conversions keyed by a customer identity."""
    customer_id: str
    session_id: str
    touchpoints: List[Touchpoint] = Field(default_factory=list)
    conversions: List[CustomerConversion] = Field(default_factory=list)
    total_revenue: float = 0.0
    first_touch_at: int
    last_touch_at: int


class FunnelSessionStatus(str, Enum):
    """Lifecycle states of a visitor's funnel session."""
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMED_OUT = "timed_out"


class StepInteraction(BaseModel):
    """An interaction inside a step (click, scroll, form_submit, video_complete...)."""
    action: str = Field(..., min_length=1)
    element: str = ""
    timestamp: int
    value: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class StepVisit(BaseModel):
    """
    A visit to one funnel step.

    Only the last visit of an active session may be open (exited_at is None).
    """
    step_id: str
    position: int
    variant: str
    entered_at: int
    interactions: List[StepInteraction] = Field(default_factory=list)
    exited_at: Optional[int] = None
    exit_action: Optional[str] = None
    time_on_step: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def close(self, timestamp: int, exit_action: str) -> None:
        self.exited_at = timestamp
        self.exit_action = exit_action
        self.time_on_step = timestamp - self.entered_at


class FunnelConversion(BaseModel):
    """A conversion recorded against a funnel step."""
    conversion_id: str
    type: str = Field(..., description="lead, sale, upsell, custom")
    value: float = Field(0.0, ge=0)
    currency: str = Field("USD", pattern=CURRENCY_PATTERN)
    step_position: int
    timestamp: int
    metadata: Dict[str, str] = Field(default_factory=dict)


class UserFunnelSession(BaseModel):
    """A single visitor's progress through one funnel."""
    session_id: str
    funnel_id: str
    test_id: str
    variant: str
    customer_id: Optional[str] = None
    status: FunnelSessionStatus = FunnelSessionStatus.CREATED
    current_step_position: int
    step_visits: List[StepVisit] = Field(default_factory=list)
    conversions: List[FunnelConversion] = Field(default_factory=list)
    started_at: int
    last_activity_at: int
    exit_step_position: Optional[int] = None
    exit_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in (FunnelSessionStatus.CREATED, FunnelSessionStatus.ACTIVE)

    @property
    def open_visit(self) -> Optional[StepVisit]:
        if self.step_visits and self.step_visits[-1].is_open:
            return self.step_visits[-1]
        return None

    @property
    def customer_key(self) -> str:
        return self.customer_id or self.session_id


class AttributionModelType(str, Enum):
    """Supported multi-touch attribution models."""
    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"
    TIME_DECAY = "time_decay"
    POSITION_BASED = "position_based"


class AttributionModelConfig(BaseModel):
    """Configuration for one attribution model type."""
    type: AttributionModelType
    lookback_days: int = Field(30, ge=0)
    weights: Dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_position_weights(self) -> "AttributionModelConfig":
        """Position-based weights must distribute exactly the whole credit."""
        if self.type == AttributionModelType.POSITION_BASED and self.weights:
            total = sum(self.weights.get(k, 0.0) for k in ("first", "last", "middle"))
            if abs(total - 1.0) > 1e-9:
                raise ValueError(f"Position-based weights must sum to 1.0, got {total}")
        return self


class TouchpointContribution(BaseModel):
    """Share of a conversion credited to one touchpoint."""
    touchpoint_id: str
    source: str
    medium: str
    campaign: str
    variant: str
    contribution_fraction: float = Field(..., ge=0, le=1)
    timestamp: int
    position: int = Field(..., ge=1, description="Position in the journey, 1 = first")

    class Config:
        frozen = True


class RevenueAttribution(BaseModel):
    """
    Immutable result of attributing one conversion.

    `requested_model` keeps the model the caller asked for; `model_fallback`
    is True when it was unknown and first_touch was applied instead.
    """
    session_id: str
    order_id: str
    revenue: float = Field(..., ge=0)
    currency: str = Field("USD", pattern=CURRENCY_PATTERN)
    timestamp: int
    model_type: AttributionModelType
    requested_model: str
    model_fallback: bool = False
    contributions: List[TouchpointContribution]
    test_id: str
    variant: str
    attributed_revenue: float = Field(0.0, description="Revenue credited to the session's own variant")
    customer_ltv: float = 0.0

    class Config:
        frozen = True


class ExitPoint(BaseModel):
    """Where completed sessions left the funnel."""
    step_position: int
    exit_count: int
    exit_rate: float
    top_exit_reasons: List[str] = Field(default_factory=list)


class FunnelAnalytics(BaseModel):
    """Funnel performance for one variant (or "all")."""
    funnel_id: str
    test_id: str
    variant: str
    total_sessions: int
    completion_rate: float = Field(description="Share of sessions that have ended")
    dropoff_analysis: Dict[int, float] = Field(default_factory=dict)
    conversion_rates: Dict[str, float] = Field(default_factory=dict)
    average_time_per_step: Dict[int, int] = Field(default_factory=dict)
    revenue_per_visitor: float = 0.0
    top_exit_points: List[ExitPoint] = Field(default_factory=list)


class VariantCounts(BaseModel):
    """Raw per-variant aggregates fed into significance analysis."""
    variant: str
    sessions: int = Field(0, ge=0)
    conversions: int = Field(0, ge=0)
    revenue: float = 0.0


class VariantMetrics(BaseModel):
    """Derived metrics for a single variant."""
    variant: str
    sessions: int
    conversions: int
    conversion_rate: float
    revenue: float
    revenue_per_visitor: float
    average_order_value: float
    standard_error: float
    margin_of_error: float = Field(description="Half-width of the 95% confidence interval")
    confidence_interval: Tuple[float, float]
    significance_vs_control: Optional[float] = Field(
        None,
        description="Confidence (%) that the rate differs from control; None for control"
    )
    lift: Optional[float] = Field(None, description="Conversion rate lift over control (%)")


class WinnerAnalysis(BaseModel):
    """Recommendation for the best-performing non-control variant."""
    winning_variant: str
    control_variant: str
    confidence: float
    expected_lift: float
    projected_revenue: float = Field(description="Expected revenue per 1000 visitors")
    required_sample_size: int
    current_sample_size: int
    days_to_significance: Optional[int] = None
    recommendation: str


class RevenueAnalytics(BaseModel):
    """Revenue rollups for a test."""
    total_revenue: float = 0.0
    revenue_by_variant: Dict[str, float] = Field(default_factory=dict)
    revenue_by_source: Dict[str, float] = Field(default_factory=dict)
    average_order_value: Dict[str, float] = Field(default_factory=dict)


class TimeSeriesPoint(BaseModel):
    """Daily per-variant data point."""
    day_start: int
    variant: str
    sessions: int
    conversions: int
    revenue: float
    conversion_rate: float


class AdvancedTestMetrics(BaseModel):
    """
    Comprehensive test analytics.

    Contains no wall-clock fields, so repeated calls over unchanged data
    compare equal.
    """
    test_id: str
    variants: List[VariantMetrics]
    statistical_significance: Dict[str, float] = Field(
        default_factory=dict,
        description="'control_vs_variant' -> confidence (%)"
    )
    winner_analysis: Optional[WinnerAnalysis] = None
    funnel_metrics: Dict[str, Dict[str, FunnelAnalytics]] = Field(default_factory=dict)
    revenue_metrics: RevenueAnalytics = Field(default_factory=RevenueAnalytics)
    time_series: List[TimeSeriesPoint] = Field(default_factory=list)
