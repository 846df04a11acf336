"""
Funnel session tracking.

A visitor's funnel session moves through

    created -> active (step 1..N) -> completed | abandoned | timed_out

Step visits, interactions and conversions are applied under a per-session
lock; only the last step visit of an active session is ever open. Every
operation on an unknown session fails softly with False/None.
"""

from typing import Optional, List, Dict, Tuple
from collections import Counter, defaultdict
import logging
import uuid

from splitflow.assignment import assign_variant
from splitflow.attribution import AttributionEngine
from splitflow.config import Settings, settings as default_settings
from splitflow.schemas import (
    DAY_MS,
    ExitPoint,
    FunnelAnalytics,
    FunnelConversion,
    FunnelFlow,
    FunnelSessionStatus,
    FunnelStep,
    StepInteraction,
    StepVisit,
    UserFunnelSession,
    normalize_currency,
    now_ms,
)
from splitflow.storage import InMemoryStore, KeyValueStore, KeyedLock
from splitflow.touchpoints import TouchpointStore

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
COMPLETED_REASON = "completed"


class FunnelTracker:
    """State machine for visitors moving through configured funnels."""

    def __init__(
        self,
        store: TouchpointStore,
        attribution: AttributionEngine,
        settings: Optional[Settings] = None,
        funnels: Optional[KeyValueStore[FunnelFlow]] = None,
        active: Optional[KeyValueStore[UserFunnelSession]] = None,
        completed: Optional[KeyValueStore[UserFunnelSession]] = None,
    ):
        self.store = store
        self.attribution = attribution
        self.settings = settings or default_settings
        self.funnels = funnels if funnels is not None else InMemoryStore("funnels")
        self.active = active if active is not None else InMemoryStore("active_sessions")
        self.completed = completed if completed is not None else InMemoryStore("completed_sessions")
        self.locks = KeyedLock()

    # Configuration

    def create_funnel(self, flow: FunnelFlow) -> FunnelFlow:
        self.funnels.put(flow.funnel_id, flow)
        logger.info(f"Created funnel {flow.funnel_id} for test {flow.test_id} ({len(flow.steps)} steps)")
        return flow

    def get_funnel(self, funnel_id: str) -> Optional[FunnelFlow]:
        return self.funnels.get(funnel_id)

    # Lifecycle

    def start_session(
        self,
        session_id: str,
        funnel_id: str,
        variant: Optional[str] = None,
        entry_url: Optional[str] = None,
        timestamp: Optional[int] = None,
        customer_id: Optional[str] = None,
    ) -> Optional[UserFunnelSession]:
        """
        Start a visitor's session in a funnel.

        When no variant is given it is assigned deterministically from the
        funnel's traffic allocation. A variant already fixed for this session
        id in the touchpoint store always wins. Returns None for an unknown
        funnel.
        """
        timestamp = timestamp if timestamp is not None else now_ms()
        flow = self.funnels.get(funnel_id)
        if flow is None:
            logger.debug(f"start_session: unknown funnel {funnel_id}")
            return None

        with self.locks.hold(session_id):
            existing = self.active.get(session_id)
            if existing is not None:
                if existing.funnel_id != funnel_id:
                    logger.warning(
                        f"start_session: {session_id} is already active in funnel {existing.funnel_id}"
                    )
                    return None
                return existing

            names = [v.name for v in flow.variants]
            if variant is not None and names and variant not in names:
                logger.warning(f"start_session: variant {variant} is not part of funnel {funnel_id}; reassigning")
                variant = None

            if variant is None:
                known = self.store.get_session(session_id, timestamp)
                if known is not None and known.test_id == flow.test_id:
                    variant = known.variant
                elif flow.variants:
                    variant = assign_variant(flow.test_id, customer_id or session_id, flow.variants)
                else:
                    logger.warning(f"start_session: funnel {funnel_id} has no variants to assign from")
                    return None

            tracked = self.store.open_session(
                session_id,
                test_id=flow.test_id,
                variant=variant,
                created_at=timestamp,
                customer_id=customer_id,
            )
            variant = tracked.variant

            start_step = _match_entry_step(flow.steps_for(variant), entry_url)
            start_position = start_step.position if start_step else flow.steps_for(variant)[0].position

            session = UserFunnelSession(
                session_id=session_id,
                funnel_id=funnel_id,
                test_id=flow.test_id,
                variant=variant,
                customer_id=customer_id or tracked.customer_id,
                current_step_position=start_position,
                started_at=timestamp,
                last_activity_at=timestamp,
            )
            step = self._enter_step(session, flow, start_position, timestamp, None)
            self.active.put(session_id, session)

        self._track_step_touchpoint(session, step, start_position, timestamp)
        logger.info(f"Started funnel session {session_id} in {funnel_id} (variant={variant}, step={start_position})")
        return session

    def record_step_visit(
        self,
        session_id: str,
        step_position: int,
        timestamp: Optional[int] = None,
        previous_exit_action: Optional[str] = None,
    ) -> bool:
        """Close the open step visit and open one at step_position."""
        timestamp = timestamp if timestamp is not None else now_ms()
        if step_position < 1:
            return False

        with self.locks.hold(session_id):
            session = self.active.get(session_id)
            if session is None:
                logger.debug(f"record_step_visit: unknown session {session_id}")
                return False
            flow = self.funnels.get(session.funnel_id)
            if flow is None:
                return False
            step = self._enter_step(session, flow, step_position, timestamp, previous_exit_action)

        self._track_step_touchpoint(session, step, step_position, timestamp)
        return True

    def record_interaction(
        self,
        session_id: str,
        action: str,
        element: str = "",
        value: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        timestamp: Optional[int] = None,
    ) -> bool:
        """Append an interaction to the open step visit."""
        timestamp = timestamp if timestamp is not None else now_ms()
        if not action:
            return False
        interaction = StepInteraction(
            action=action,
            element=element,
            timestamp=timestamp,
            value=value,
            metadata=metadata or {},
        )

        with self.locks.hold(session_id):
            session = self.active.get(session_id)
            if session is None:
                logger.debug(f"record_interaction: unknown session {session_id}")
                return False
            visit = session.open_visit
            if visit is None:
                return False
            visit.interactions.append(interaction)
            session.last_activity_at = timestamp
            position = session.current_step_position

        if action in self.settings.high_value_actions:
            self.store.add_touchpoint(
                session_id,
                source="funnel",
                medium="interaction",
                campaign=session.funnel_id,
                page=f"step_{position}",
                action=action,
                timestamp=timestamp,
                customer_id=session.customer_id,
                variant=session.variant,
                test_id=session.test_id,
            )
        return True

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
        """
        Record a conversion and, for positive values, attribute its revenue.

        Returns the conversion id, or None for an unknown session, a
        negative value or an unrecognised currency code.
        """
        timestamp = timestamp if timestamp is not None else now_ms()
        code = normalize_currency(currency)
        if code is None or value < 0:
            logger.warning(
                f"record_conversion: rejected {conversion_type} for {session_id} ({value} {currency!r})"
            )
            return None
        currency = code

        with self.locks.hold(session_id):
            session = self.active.get(session_id)
            if session is None:
                logger.debug(f"record_conversion: unknown session {session_id}")
                return None

            conversion = FunnelConversion(
                conversion_id=generate_conversion_id(session_id, conversion_type, timestamp),
                type=conversion_type,
                value=value,
                currency=currency,
                step_position=step_position or session.current_step_position,
                timestamp=timestamp,
                metadata=metadata or {},
            )
            session.conversions.append(conversion)
            session.last_activity_at = timestamp

        logger.info(f"Conversion {conversion.conversion_id}: {conversion_type} {value:.2f} {currency}")

        if value > 0:
            self.attribution.attribute_revenue(
                session_id=session_id,
                order_id=conversion.conversion_id,
                revenue=value,
                currency=currency,
                customer_id=session.customer_id,
                model_type=attribution_model or self.settings.default_attribution_model,
                timestamp=timestamp,
            )
        return conversion.conversion_id

    def end_session(
        self,
        session_id: str,
        exit_step: Optional[int] = None,
        exit_reason: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[UserFunnelSession]:
        """
        Close a session and move it to the completed store.

        Ending an unknown or already-ended session returns None.
        """
        timestamp = timestamp if timestamp is not None else now_ms()

        with self.locks.hold(session_id):
            session = self.active.remove(session_id)
            if session is None:
                logger.debug(f"end_session: no active session {session_id}")
                return None

            visit = session.open_visit
            if visit is not None:
                visit.close(timestamp, exit_reason or "exit")

            session.exit_step_position = exit_step or session.current_step_position
            session.exit_reason = exit_reason
            session.last_activity_at = timestamp
            session.status = self._final_status(session, exit_reason)
            self.completed.put(session_id, session)

        logger.info(
            f"Ended funnel session {session_id}: {session.status.value} at step {session.exit_step_position}"
        )
        return session

    # Analytics

    def sessions_for_funnel(
        self,
        funnel_id: str,
        variant: Optional[str] = None,
        time_range: Optional[Tuple[int, int]] = None,
    ) -> List[UserFunnelSession]:
        def matches(session: UserFunnelSession) -> bool:
            return (
                session.funnel_id == funnel_id
                and (variant is None or session.variant == variant)
                and (time_range is None or time_range[0] <= session.started_at <= time_range[1])
            )

        return self.active.scan(matches) + self.completed.scan(matches)

    def sessions_for_test(self, test_id: str) -> List[UserFunnelSession]:
        """Active and ended sessions of every funnel belonging to a test."""
        return self.active.scan(lambda s: s.test_id == test_id) + self.completed.scan(lambda s: s.test_id == test_id)

    def funnels_for_test(self, test_id: str) -> List[FunnelFlow]:
        return self.funnels.scan(lambda f: f.test_id == test_id)

    def get_funnel_analytics(
        self,
        funnel_id: str,
        variant: Optional[str] = None,
        time_range: Optional[Tuple[int, int]] = None,
    ) -> Optional[FunnelAnalytics]:
        """
        Funnel performance for one variant, or all variants when none is given.

        Returns None for an unknown funnel or when no session matches.
        """
        flow = self.funnels.get(funnel_id)
        if flow is None:
            return None

        sessions = self.sessions_for_funnel(funnel_id, variant, time_range)
        if not sessions:
            return None

        total = len(sessions)
        ended = [s for s in sessions if not s.is_active]
        positions = [step.position for step in (flow.steps_for(variant) if variant else flow.steps)]

        # Share of sessions that never reached at least this position
        dropoff = {
            position: 1.0 - sum(
                1 for s in sessions if any(v.position >= position for v in s.step_visits)
            ) / total
            for position in positions
        }

        conversion_counts: Counter = Counter(c.type for s in sessions for c in s.conversions)
        conversion_rates = {kind: count / total for kind, count in conversion_counts.items()}

        average_time = {}
        for position in positions:
            times = [
                v.time_on_step for s in sessions for v in s.step_visits
                if v.position == position and v.time_on_step
            ]
            average_time[position] = sum(times) // len(times) if times else 0

        revenue = sum(c.value for s in sessions for c in s.conversions)

        return FunnelAnalytics(
            funnel_id=funnel_id,
            test_id=flow.test_id,
            variant=variant or "all",
            total_sessions=total,
            completion_rate=len(ended) / total,
            dropoff_analysis=dropoff,
            conversion_rates=conversion_rates,
            average_time_per_step=average_time,
            revenue_per_visitor=revenue / total,
            top_exit_points=_top_exit_points(ended, total),
        )

    def get_variant_comparison(self, funnel_id: str) -> Dict[str, FunnelAnalytics]:
        """Per-variant analytics for every variant seen in a funnel."""
        flow = self.funnels.get(funnel_id)
        if flow is None:
            return {}

        variants = []
        for session in sorted(self.sessions_for_funnel(funnel_id), key=lambda s: (s.started_at, s.variant)):
            if session.variant not in variants:
                variants.append(session.variant)

        return {
            variant: self.get_funnel_analytics(funnel_id, variant) or FunnelAnalytics(
                funnel_id=funnel_id,
                test_id=flow.test_id,
                variant=variant,
                total_sessions=0,
                completion_rate=0.0,
            )
            for variant in variants
        }

    # Cleanup

    def cleanup_old_sessions(self, days_to_keep: Optional[int] = None, now: Optional[int] = None) -> Dict[str, int]:
        """
        Purge old ended sessions and time out idle active ones.

        Best-effort: entries are re-checked under their lock before removal,
        and a session touched after the sweep started is left alone.
        """
        days_to_keep = days_to_keep if days_to_keep is not None else self.settings.funnel_retention_days
        now = now if now is not None else now_ms()
        cutoff = now - days_to_keep * DAY_MS

        timed_out = 0
        for session in self.active.scan(lambda s: s.last_activity_at < cutoff):
            with self.locks.hold(session.session_id):
                current = self.active.get(session.session_id)
                if current is None or current.last_activity_at >= cutoff:
                    continue
                if self.end_session(session.session_id, exit_reason=TIMEOUT_REASON, timestamp=now):
                    timed_out += 1

        purged = []
        for session in self.completed.scan(lambda s: s.last_activity_at < cutoff):
            with self.locks.hold(session.session_id):
                current = self.completed.get(session.session_id)
                if current is not None and current.last_activity_at < cutoff:
                    self.completed.remove(session.session_id)
                    purged.append(session.session_id)
        self.locks.prune(purged)

        logger.info(f"Funnel cleanup timed out {timed_out} sessions and purged {len(purged)}")
        return {"timed_out": timed_out, "purged": len(purged)}

    # Internals

    def _enter_step(
        self,
        session: UserFunnelSession,
        flow: FunnelFlow,
        position: int,
        timestamp: int,
        previous_exit_action: Optional[str],
    ) -> Optional[FunnelStep]:
        """Close the open visit and open a new one. Caller holds the session lock."""
        visit = session.open_visit
        if visit is not None:
            visit.close(timestamp, previous_exit_action or "next")

        step = _find_step(flow.steps_for(session.variant), position)
        session.step_visits.append(
            StepVisit(
                step_id=step.step_id if step else f"step_{position}",
                position=position,
                variant=session.variant,
                entered_at=timestamp,
            )
        )
        session.current_step_position = position
        session.last_activity_at = timestamp
        session.status = FunnelSessionStatus.ACTIVE
        return step

    def _track_step_touchpoint(
        self,
        session: UserFunnelSession,
        step: Optional[FunnelStep],
        position: int,
        timestamp: int,
    ) -> None:
        self.store.add_touchpoint(
            session.session_id,
            source="funnel",
            medium=f"step_{position}",
            campaign=session.funnel_id,
            page=step.step_name if step else f"step_{position}",
            action="page_view",
            timestamp=timestamp,
            customer_id=session.customer_id,
            variant=session.variant,
            test_id=session.test_id,
        )

    def _final_status(self, session: UserFunnelSession, exit_reason: Optional[str]) -> FunnelSessionStatus:
        if exit_reason == TIMEOUT_REASON:
            return FunnelSessionStatus.TIMED_OUT
        if exit_reason == COMPLETED_REASON:
            return FunnelSessionStatus.COMPLETED
        flow = self.funnels.get(session.funnel_id)
        steps = flow.steps_for(session.variant) if flow else []
        if steps and session.exit_step_position >= steps[-1].position:
            return FunnelSessionStatus.COMPLETED
        return FunnelSessionStatus.ABANDONED


def _find_step(steps: List[FunnelStep], position: int) -> Optional[FunnelStep]:
    for step in steps:
        if step.position == position:
            return step
    return None


def _match_entry_step(steps: List[FunnelStep], entry_url: Optional[str]) -> Optional[FunnelStep]:
    """First step whose URL contains, or is contained in, the entry URL."""
    if not entry_url:
        return None
    for step in steps:
        if step.url and (step.url in entry_url or entry_url in step.url):
            return step
    return None


def _top_exit_points(ended: List[UserFunnelSession], total: int) -> List[ExitPoint]:
    by_step: Dict[int, List[UserFunnelSession]] = defaultdict(list)
    for session in ended:
        by_step[session.exit_step_position or session.current_step_position].append(session)

    points = []
    for position, sessions in by_step.items():
        reasons = Counter(s.exit_reason for s in sessions if s.exit_reason)
        points.append(
            ExitPoint(
                step_position=position,
                exit_count=len(sessions),
                exit_rate=len(sessions) / total,
                top_exit_reasons=[reason for reason, _ in reasons.most_common(3)],
            )
        )
    points.sort(key=lambda p: (-p.exit_count, p.step_position))
    return points[:5]


def generate_conversion_id(session_id: str, conversion_type: str, timestamp: int) -> str:
    return f"{conversion_type}_{session_id}_{timestamp}_{uuid.uuid4().hex[:6]}"
