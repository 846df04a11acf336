"""
Touchpoint store.

Holds visitor sessions (test, variant, attribution window) and the ordered,
append-only touchpoint log of each customer journey. Journeys are keyed by
a stable customer id when one is known, otherwise by session id.

Session expiry is evaluated lazily on read; `cleanup_expired_sessions` can
additionally purge expired entries out of band.
"""

from typing import Optional, List, Dict, Any
from collections import Counter, defaultdict
from urllib.parse import urlencode
import bisect
import hashlib
import logging
import uuid

from splitflow.config import Settings, settings as default_settings
from splitflow.schemas import (
    DAY_MS,
    CustomerConversion,
    CustomerJourney,
    Session,
    Touchpoint,
    now_ms,
)
from splitflow.storage import InMemoryStore, KeyValueStore, KeyedLock

logger = logging.getLogger(__name__)


class TouchpointStore:
    """Sessions and customer journeys, serialized per key."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sessions: Optional[KeyValueStore[Session]] = None,
        journeys: Optional[KeyValueStore[CustomerJourney]] = None,
    ):
        self.settings = settings or default_settings
        self.sessions = sessions if sessions is not None else InMemoryStore("sessions")
        self.journeys = journeys if journeys is not None else InMemoryStore("journeys")
        self.session_locks = KeyedLock()
        self.journey_locks = KeyedLock()

    # Sessions

    def open_session(
        self,
        session_id: str,
        test_id: str,
        variant: str,
        created_at: Optional[int] = None,
        customer_id: Optional[str] = None,
        original_source: str = "direct",
        attribution_window_ms: Optional[int] = None,
    ) -> Session:
        """
        Create the session record for a visitor/test pairing.

        Idempotent: an existing, unexpired session for the same test is
        returned unchanged, so its variant never changes after creation.
        A session id reused for a different test gets a fresh session.
        """
        created_at = created_at if created_at is not None else now_ms()
        window = attribution_window_ms
        if window is None:
            window = self.settings.attribution_window_days * DAY_MS

        with self.session_locks.hold(session_id):
            existing = self.sessions.get(session_id)
            if existing is not None and not existing.is_expired(created_at):
                if existing.test_id == test_id:
                    return existing
                logger.debug(f"Session {session_id} moves from test {existing.test_id} to {test_id}")

            session = Session(
                session_id=session_id,
                test_id=test_id,
                variant=variant,
                customer_id=customer_id,
                original_source=original_source,
                created_at=created_at,
                attribution_window_ms=window,
            )
            self.sessions.put(session_id, session)

        logger.debug(f"Opened session {session_id} (test={test_id}, variant={variant})")
        return session

    def create_session(
        self,
        test_id: str,
        variant: str,
        original_source: str = "direct",
        utm_params: Optional[Dict[str, str]] = None,
        timestamp: Optional[int] = None,
        customer_id: Optional[str] = None,
    ) -> Session:
        """Create a session with a generated id and its landing-page touchpoint."""
        timestamp = timestamp if timestamp is not None else now_ms()
        utm_params = utm_params or {}

        session = self.open_session(
            session_id=generate_session_id(test_id, variant, timestamp),
            test_id=test_id,
            variant=variant,
            created_at=timestamp,
            customer_id=customer_id,
            original_source=original_source,
        )
        self.add_touchpoint(
            session.session_id,
            source=utm_params.get("utm_source", "direct"),
            medium=utm_params.get("utm_medium", "none"),
            campaign=utm_params.get("utm_campaign", "none"),
            page="landing_page",
            action="page_view",
            timestamp=timestamp,
        )
        return session

    def get_session(self, session_id: str, now: Optional[int] = None) -> Optional[Session]:
        """Return the session if it is still inside its attribution window."""
        now = now if now is not None else now_ms()
        session = self.sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(now):
            with self.session_locks.hold(session_id):
                current = self.sessions.get(session_id)
                if current is not None and current.is_expired(now):
                    self.sessions.remove(session_id)
            logger.debug(f"Session {session_id} expired")
            return None
        return session

    def is_session_valid(self, session_id: str, now: Optional[int] = None) -> bool:
        return self.get_session(session_id, now) is not None

    def extend_session(self, session_id: str, extend_days: int, now: Optional[int] = None) -> Optional[Session]:
        """Lengthen a live session's attribution window."""
        with self.session_locks.hold(session_id):
            session = self.get_session(session_id, now)
            if session is None:
                return None
            extended = session.model_copy(
                update={"attribution_window_ms": session.attribution_window_ms + extend_days * DAY_MS}
            )
            self.sessions.put(session_id, extended)
            return extended

    def bridge_url(self, base_url: str, session_id: str, now: Optional[int] = None) -> str:
        """Append session parameters to a URL so another domain can restore it."""
        now = now if now is not None else now_ms()
        session = self.get_session(session_id, now)
        if session is None:
            return base_url

        params = urlencode({
            "cb_session": session.session_id,
            "cb_variant": session.variant,
            "cb_test": session.test_id,
            "cb_timestamp": now,
        })
        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{params}"

    def restore_session(self, url_params: Dict[str, str], now: Optional[int] = None) -> Optional[Session]:
        """Rebuild a session from bridge parameters on the receiving domain."""
        session_id = url_params.get("cb_session")
        variant = url_params.get("cb_variant")
        test_id = url_params.get("cb_test")
        if not session_id or not variant or not test_id:
            return None

        existing = self.get_session(session_id, now)
        if existing is not None:
            return existing

        created_at = now if now is not None else now_ms()
        raw_timestamp = url_params.get("cb_timestamp", "")
        if raw_timestamp.isdigit():
            created_at = int(raw_timestamp)

        return self.open_session(
            session_id=session_id,
            test_id=test_id,
            variant=variant,
            created_at=created_at,
            original_source="restored",
        )

    def sessions_for_test(self, test_id: str, now: Optional[int] = None) -> List[Session]:
        now = now if now is not None else now_ms()
        return self.sessions.scan(lambda s: s.test_id == test_id and not s.is_expired(now))

    # Journeys

    def add_touchpoint(
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
        variant: Optional[str] = None,
        test_id: Optional[str] = None,
    ) -> Touchpoint:
        """
        Append a touchpoint to the visitor's journey.

        The journey key is the explicit customer id, then the session's
        customer id, then the session id. Variant and test id default to
        the session's when not given.
        """
        timestamp = timestamp if timestamp is not None else now_ms()
        session = self.sessions.get(session_id)
        if customer_id is None and session is not None:
            customer_id = session.customer_id
        customer_key = customer_id or session_id

        touchpoint = Touchpoint(
            id=generate_touchpoint_id(customer_key, timestamp),
            session_id=session_id,
            customer_id=customer_key,
            timestamp=timestamp,
            source=source,
            medium=medium,
            campaign=campaign,
            variant=variant or (session.variant if session else "unknown"),
            test_id=test_id or (session.test_id if session else "unknown"),
            page=page,
            action=action,
            value=value,
        )

        with self.journey_locks.hold(customer_key):
            journey = self.journeys.setdefault(
                customer_key,
                lambda: CustomerJourney(
                    customer_id=customer_key,
                    session_id=session_id,
                    first_touch_at=timestamp,
                    last_touch_at=timestamp,
                ),
            )
            # Keep the log ordered by time even when events arrive late
            index = bisect.bisect_right([tp.timestamp for tp in journey.touchpoints], timestamp)
            journey.touchpoints.insert(index, touchpoint)
            journey.first_touch_at = min(journey.first_touch_at, timestamp)
            journey.last_touch_at = max(journey.last_touch_at, timestamp)

        logger.debug(f"Touchpoint {touchpoint.id}: {source}/{medium} ({action})")
        return touchpoint

    def get_journey(self, customer_key: str) -> Optional[CustomerJourney]:
        return self.journeys.get(customer_key)

    def journey_touchpoints(self, customer_key: str) -> List[Touchpoint]:
        """Snapshot of a journey's touchpoints, oldest first."""
        with self.journey_locks.hold(customer_key):
            journey = self.journeys.get(customer_key)
            return list(journey.touchpoints) if journey else []

    def record_customer_conversion(self, customer_key: str, conversion: CustomerConversion) -> bool:
        with self.journey_locks.hold(customer_key):
            journey = self.journeys.get(customer_key)
            if journey is None:
                return False
            journey.conversions.append(conversion)
            journey.total_revenue += conversion.revenue
            return True

    # Reporting

    def get_session_analytics(self, test_id: str, now: Optional[int] = None) -> Dict[str, Any]:
        """Session counts and touchpoint activity for a test."""
        sessions = self.sessions_for_test(test_id, now)

        by_variant: Dict[str, List[Session]] = defaultdict(list)
        for session in sessions:
            by_variant[session.variant].append(session)

        touchpoint_counts: Dict[str, int] = {}
        actions: Counter = Counter()
        for session in sessions:
            touchpoints = [
                tp for tp in self.journey_touchpoints(session.customer_key)
                if tp.session_id == session.session_id
            ]
            touchpoint_counts[session.session_id] = len(touchpoints)
            actions.update(tp.action for tp in touchpoints)

        return {
            "total_sessions": len(sessions),
            "variant_breakdown": {
                variant: {
                    "count": len(variant_sessions),
                    "avg_touchpoints": (
                        sum(touchpoint_counts[s.session_id] for s in variant_sessions) / len(variant_sessions)
                    ),
                    "sources": sorted({s.original_source for s in variant_sessions}),
                }
                for variant, variant_sessions in by_variant.items()
            },
            "top_sources": dict(Counter(s.original_source for s in sessions).most_common()),
            "touchpoint_analysis": dict(actions),
        }

    def get_customer_ltv(self, customer_key: str) -> Optional[Dict[str, Any]]:
        """Lifetime value summary for one customer journey."""
        with self.journey_locks.hold(customer_key):
            journey = self.journeys.get(customer_key)
            if journey is None:
                return None
            conversions = sorted(journey.conversions, key=lambda c: c.timestamp)
            return {
                "customer_id": customer_key,
                "total_revenue": journey.total_revenue,
                "total_touchpoints": len(journey.touchpoints),
                "total_conversions": len(conversions),
                "first_touch_at": journey.first_touch_at,
                "last_touch_at": journey.last_touch_at,
                "average_order_value": (
                    sum(c.revenue for c in conversions) / len(conversions) if conversions else 0.0
                ),
                "touchpoint_sources": dict(Counter(tp.source for tp in journey.touchpoints)),
                "conversion_timeline": [c.model_dump() for c in conversions],
            }

    # Cleanup

    def cleanup_expired_sessions(self, now: Optional[int] = None) -> int:
        """Remove sessions past their attribution window."""
        now = now if now is not None else now_ms()
        removed = []
        for session in self.sessions.scan(lambda s: s.is_expired(now)):
            with self.session_locks.hold(session.session_id):
                current = self.sessions.get(session.session_id)
                if current is not None and current.is_expired(now):
                    self.sessions.remove(session.session_id)
                    removed.append(session.session_id)
        self.session_locks.prune(removed)
        return len(removed)

    def cleanup_journeys(self, cutoff: int) -> int:
        """Remove journeys whose last touch predates the cutoff."""
        removed = []
        for journey in self.journeys.scan(lambda j: j.last_touch_at < cutoff):
            with self.journey_locks.hold(journey.customer_id):
                current = self.journeys.get(journey.customer_id)
                if current is not None and current.last_touch_at < cutoff:
                    self.journeys.remove(journey.customer_id)
                    removed.append(journey.customer_id)
        self.journey_locks.prune(removed)
        return len(removed)


def generate_session_id(test_id: str, variant: str, timestamp: int) -> str:
    """16 hex characters, unique per call."""
    hash_input = f"{test_id}-{variant}-{timestamp}-{uuid.uuid4()}"
    return hashlib.md5(hash_input.encode()).hexdigest()[:16]


def generate_touchpoint_id(customer_key: str, timestamp: int) -> str:
    return f"{customer_key}_{timestamp}_{uuid.uuid4().hex[:6]}"
