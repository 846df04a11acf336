"""
SplitFlow - split-test funnel tracking and revenue attribution

Wires the touchpoint store, funnel tracker and attribution engine into one
object and exposes the operations a transport layer drives:
session lifecycle, conversions, attribution and test analytics.
"""

from typing import Optional, Dict, Tuple
import logging
import threading

from splitflow.analytics import build_advanced_metrics
from splitflow.attribution import AttributionEngine
from splitflow.config import Settings, settings as default_settings
from splitflow.funnel import FunnelTracker
from splitflow.schemas import (
    AdvancedTestMetrics,
    FunnelAnalytics,
    FunnelFlow,
    RevenueAttribution,
    Touchpoint,
    UserFunnelSession,
    now_ms,
)
from splitflow.touchpoints import TouchpointStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings = default_settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


class SplitFlow:
    """Facade over the tracking pipeline."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.touchpoints = TouchpointStore(self.settings)
        self.attribution = AttributionEngine(self.touchpoints, self.settings)
        self.funnels = FunnelTracker(self.touchpoints, self.attribution, self.settings)

    def create_funnel(self, flow: FunnelFlow) -> FunnelFlow:
        return self.funnels.create_funnel(flow)

    def start_session(
        self,
        session_id: str,
        funnel_id: str,
        variant: Optional[str] = None,
        entry_url: Optional[str] = None,
        timestamp: Optional[int] = None,
        customer_id: Optional[str] = None,
    ) -> Optional[UserFunnelSession]:
        return self.funnels.start_session(session_id, funnel_id, variant, entry_url, timestamp, customer_id)

    def record_step_visit(
        self,
        session_id: str,
        step_position: int,
        timestamp: Optional[int] = None,
        previous_exit_action: Optional[str] = None,
    ) -> bool:
        return self.funnels.record_step_visit(session_id, step_position, timestamp, previous_exit_action)

    def record_interaction(
        self,
        session_id: str,
        action: str,
        element: str = "",
        value: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        timestamp: Optional[int] = None,
    ) -> bool:
        return self.funnels.record_interaction(session_id, action, element, value, metadata, timestamp)

    def record_conversion(
        self,
        session_id: str,
        conversion_type: str,
        value: float,
        currency: str = "USD",
        step_position: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        timestamp: Optional[int] = None,
        attribution_model: Optional[str] = None,
    ) -> Optional[str]:
        return self.funnels.record_conversion(
            session_id, conversion_type, value, currency, step_position, metadata, timestamp, attribution_model
        )

    def end_session(
        self,
        session_id: str,
        exit_step: Optional[int] = None,
        exit_reason: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[UserFunnelSession]:
        return self.funnels.end_session(session_id, exit_step, exit_reason, timestamp)

    def track_touchpoint(
        self,
        session_id: str,
        source: str,
        medium: str,
        campaign: str = "",
        page: str = "",
        action: str = "page_view",
        timestamp: Optional[int] = None,
        value: float = 0.0,
        customer_id: Optional[str] = None,
    ) -> Touchpoint:
        """Record a marketing touchpoint outside the funnel (ad click, email open...)."""
        return self.touchpoints.add_touchpoint(
            session_id,
            source=source,
            medium=medium,
            campaign=campaign,
            page=page,
            action=action,
            timestamp=timestamp,
            value=value,
            customer_id=customer_id,
        )

    def attribute_revenue(
        self,
        session_id: str,
        order_id: str,
        revenue: float,
        currency: str = "USD",
        customer_id: Optional[str] = None,
        model_type: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[RevenueAttribution]:
        return self.attribution.attribute_revenue(
            session_id,
            order_id,
            revenue,
            currency=currency,
            customer_id=customer_id,
            model_type=model_type or self.settings.default_attribution_model,
            timestamp=timestamp,
        )

    def get_funnel_analytics(
        self,
        funnel_id: str,
        variant: Optional[str] = None,
        time_range: Optional[Tuple[int, int]] = None,
    ) -> Optional[FunnelAnalytics]:
        return self.funnels.get_funnel_analytics(funnel_id, variant, time_range)

    def get_advanced_test_metrics(
        self,
        test_id: str,
        observed_days: Optional[float] = None,
        conversion_type: Optional[str] = None,
    ) -> Optional[AdvancedTestMetrics]:
        """
        Full statistical report for a test.

        Sessions and conversions come from funnel sessions, revenue from
        attributed revenue. Returns None when the test has no sessions.
        """
        sessions = self.funnels.sessions_for_test(test_id)
        if not sessions:
            logger.debug(f"No sessions for test {test_id}")
            return None

        funnel_metrics = {
            flow.funnel_id: self.funnels.get_variant_comparison(flow.funnel_id)
            for flow in self.funnels.funnels_for_test(test_id)
        }
        return build_advanced_metrics(
            test_id,
            sessions,
            self.attribution.attributions_for_test(test_id),
            self.attribution.variant_revenue(test_id),
            funnel_metrics,
            observed_days=observed_days,
            conversion_type=conversion_type,
            default_sample_size=self.settings.default_required_sample_size,
        )

    def cleanup(self, now: Optional[int] = None) -> Dict[str, int]:
        """Run every retention sweep once."""
        now = now if now is not None else now_ms()
        funnel_result = self.funnels.cleanup_old_sessions(now=now)
        return {
            "sessions_timed_out": funnel_result["timed_out"],
            "sessions_purged": funnel_result["purged"],
            "expired_sessions": self.touchpoints.cleanup_expired_sessions(now),
            "attributions_removed": self.attribution.cleanup_old_attributions(now=now),
        }


class CleanupScheduler:
    """Background thread running SplitFlow.cleanup on a fixed interval."""

    def __init__(self, flow: SplitFlow, interval_seconds: Optional[int] = None):
        self.flow = flow
        self.interval = interval_seconds or flow.settings.cleanup_interval_seconds
        self.running = False
        self.thread = None
        self._wake = threading.Event()

    def start(self):
        if self.running:
            return
        self.running = True
        self._wake.clear()
        self.thread = threading.Thread(target=self._run_loop, daemon=True)
        self.thread.start()
        logger.info(f"Cleanup scheduler started (interval: {self.interval}s)")

    def stop(self):
        self.running = False
        self._wake.set()
        if self.thread:
            self.thread.join(timeout=5)
        logger.info("Cleanup scheduler stopped")

    def _run_loop(self):
        while self.running:
            try:
                result = self.flow.cleanup()
                logger.debug(f"Cleanup sweep: {result}")
            except Exception as e:
                logger.exception(f"Cleanup sweep failed: {e}")
            self._wake.wait(self.interval)


def create_pipeline(settings: Optional[Settings] = None) -> SplitFlow:
    """Configure logging and build a ready-to-use pipeline."""
    settings = settings or default_settings
    configure_logging(settings)
    flow = SplitFlow(settings)
    logger.info(f"Starting {settings.service_name} pipeline...")
    return flow
