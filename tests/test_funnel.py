"""Tests for the funnel session state machine."""

import threading

import pytest
from pydantic import ValidationError

from splitflow.schemas import FunnelFlow, FunnelSessionStatus, FunnelStep, FunnelVariant

from conftest import T0, HOUR_MS, days


def open_visits(session):
    return [v for v in session.step_visits if v.exited_at is None]


class TestFunnelConfiguration:
    """Tests for funnel validation."""

    def test_duplicate_positions_rejected(self):
        with pytest.raises(ValidationError):
            FunnelFlow(
                funnel_id="f",
                test_id="t",
                steps=[
                    FunnelStep(step_id="a", step_name="A", position=1),
                    FunnelStep(step_id="b", step_name="B", position=1),
                ],
            )

    def test_allocations_must_sum_to_100(self):
        with pytest.raises(ValidationError):
            FunnelFlow(
                funnel_id="f",
                test_id="t",
                steps=[FunnelStep(step_id="a", step_name="A", position=1)],
                variants=[
                    FunnelVariant(name="A", traffic_allocation=60),
                    FunnelVariant(name="B", traffic_allocation=60),
                ],
            )

    def test_steps_sorted_by_position(self):
        flow = FunnelFlow(
            funnel_id="f",
            test_id="t",
            steps=[
                FunnelStep(step_id="b", step_name="B", position=2),
                FunnelStep(step_id="a", step_name="A", position=1),
            ],
        )
        assert [s.step_id for s in flow.steps] == ["a", "b"]
        assert flow.last_position == 2


class TestSessionLifecycle:
    """Tests for start / step / interaction / conversion / end."""

    @pytest.fixture(autouse=True)
    def setup_funnel(self, tracker, sales_funnel):
        self.tracker = tracker
        self.tracker.create_funnel(sales_funnel)

    def test_unknown_funnel(self):
        assert self.tracker.start_session("s1", "missing", "A", timestamp=T0) is None

    def test_start_session_opens_first_step(self):
        session = self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert session.status == FunnelSessionStatus.ACTIVE
        assert session.current_step_position == 1
        assert len(session.step_visits) == 1
        assert session.step_visits[0].step_id == "landing"
        assert session.test_id == "test_1"

        touchpoints = self.tracker.store.journey_touchpoints("s1")
        assert touchpoints[0].source == "funnel"
        assert touchpoints[0].medium == "step_1"
        assert touchpoints[0].campaign == "funnel_1"

    def test_entry_url_selects_step(self):
        session = self.tracker.start_session(
            "s1", "funnel_1", "A", entry_url="https://shop.example.com/optin?ref=x", timestamp=T0
        )
        assert session.current_step_position == 2

    def test_entry_url_without_match_falls_back(self):
        session = self.tracker.start_session("s1", "funnel_1", "A", entry_url="https://other.com/", timestamp=T0)
        assert session.current_step_position == 1

    def test_deterministic_assignment(self):
        """Test the same identity always gets the same variant."""
        first = self.tracker.start_session("s1", "funnel_1", customer_id="cust_9", timestamp=T0)
        second = self.tracker.start_session("s2", "funnel_1", customer_id="cust_9", timestamp=T0)
        assert first.variant == second.variant
        assert first.variant in ("A", "B")

    def test_variant_immutable_after_creation(self):
        """Test restarting a session never changes its variant."""
        first = self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        again = self.tracker.start_session("s1", "funnel_1", "B", timestamp=T0 + 1000)
        assert again.variant == "A"
        assert again is first

        self.tracker.end_session("s1", timestamp=T0 + 2000)
        restarted = self.tracker.start_session("s1", "funnel_1", "B", timestamp=T0 + 3000)
        assert restarted.variant == "A"

    def test_session_id_reused_in_another_test(self):
        """Test a session id carries no variant or revenue across tests."""
        self.tracker.create_funnel(FunnelFlow(
            funnel_id="funnel_2",
            test_id="test_2",
            steps=[FunnelStep(step_id="home", step_name="Home", position=1)],
            variants=[
                FunnelVariant(name="control", traffic_allocation=50),
                FunnelVariant(name="challenger", traffic_allocation=50),
            ],
        ))
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        self.tracker.end_session("s1", timestamp=T0 + 1000)

        session = self.tracker.start_session("s1", "funnel_2", "A", timestamp=T0 + 2000)
        assert session.test_id == "test_2"
        assert session.variant in ("control", "challenger")
        assert self.tracker.store.get_session("s1", now=T0 + 2000).test_id == "test_2"

        self.tracker.record_conversion("s1", "sale", 40.0, timestamp=T0 + 3000)
        assert self.tracker.attribution.variant_revenue("test_1") == {}
        assert self.tracker.attribution.attributions_for_test("test_2")[0].variant == session.variant

    def test_active_session_cannot_join_second_funnel(self):
        self.tracker.create_funnel(FunnelFlow(
            funnel_id="funnel_2",
            test_id="test_2",
            steps=[FunnelStep(step_id="home", step_name="Home", position=1)],
        ))
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.start_session("s1", "funnel_2", "A", timestamp=T0 + 10) is None
        assert self.tracker.active.get("s1").funnel_id == "funnel_1"

    def test_unknown_variant_is_reassigned(self):
        session = self.tracker.start_session("s1", "funnel_1", "Z", timestamp=T0)
        assert session.variant in ("A", "B")

    def test_start_falls_back_to_first_configured_step(self):
        """Test a funnel numbered from 2 starts at its first real step."""
        self.tracker.create_funnel(FunnelFlow(
            funnel_id="funnel_3",
            test_id="test_3",
            steps=[
                FunnelStep(step_id="offer", step_name="Offer", url="/offer", position=2),
                FunnelStep(step_id="pay", step_name="Pay", url="/pay", position=3),
            ],
            variants=[FunnelVariant(name="A", traffic_allocation=100)],
        ))
        session = self.tracker.start_session("s1", "funnel_3", "A", entry_url="https://x.com/", timestamp=T0)
        assert session.current_step_position == 2
        assert session.step_visits[0].step_id == "offer"

    def test_time_on_step(self):
        """Test step K then K+1 sets time_on_step to the exact gap."""
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_step_visit("s1", 2, timestamp=T0 + 5000)

        session = self.tracker.active.get("s1")
        first, second = session.step_visits
        assert first.time_on_step == 5000
        assert first.exit_action == "next"
        assert first.exited_at == T0 + 5000
        assert second.is_open
        assert session.current_step_position == 2

    def test_custom_exit_action(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        self.tracker.record_step_visit("s1", 3, timestamp=T0 + 10, previous_exit_action="skip")
        assert self.tracker.active.get("s1").step_visits[0].exit_action == "skip"

    def test_unknown_session_fails_softly(self):
        assert self.tracker.record_step_visit("ghost", 2, timestamp=T0) is False
        assert self.tracker.record_interaction("ghost", "click", "btn", timestamp=T0) is False
        assert self.tracker.record_conversion("ghost", "sale", 10.0, timestamp=T0) is None
        assert self.tracker.end_session("ghost", timestamp=T0) is None

    def test_interaction_appends_to_open_visit(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_interaction(
            "s1", "scroll", "page", value="50", metadata={"depth": "50"}, timestamp=T0 + 10
        )
        visit = self.tracker.active.get("s1").step_visits[-1]
        assert visit.interactions[0].action == "scroll"
        assert visit.interactions[0].metadata == {"depth": "50"}
        # Plain interactions are not touchpoints
        assert len(self.tracker.store.journey_touchpoints("s1")) == 1

    def test_high_value_interaction_writes_touchpoint(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        self.tracker.record_interaction("s1", "form_submit", "optin_form", timestamp=T0 + 10)
        touchpoints = self.tracker.store.journey_touchpoints("s1")
        assert touchpoints[-1].medium == "interaction"
        assert touchpoints[-1].action == "form_submit"

    def test_conversion_triggers_attribution(self):
        """Test a paid conversion is attributed with the conversion id as order id."""
        self.tracker.start_session("s1", "funnel_1", "B", timestamp=T0)
        self.tracker.record_step_visit("s1", 3, timestamp=T0 + 1000)
        conversion_id = self.tracker.record_conversion("s1", "sale", 97.0, timestamp=T0 + 2000)

        assert conversion_id.startswith("sale_s1_")
        session = self.tracker.active.get("s1")
        assert session.conversions[0].step_position == 3

        records = self.tracker.attribution.attributions_for_test("test_1")
        assert len(records) == 1
        assert records[0].order_id == conversion_id
        assert records[0].variant == "B"
        assert self.tracker.attribution.variant_revenue("test_1") == {"B": pytest.approx(97.0)}

    def test_conversion_currency_is_normalized(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_conversion("s1", "sale", 10.0, currency="usd", timestamp=T0 + 10)
        assert self.tracker.active.get("s1").conversions[0].currency == "USD"
        assert self.tracker.attribution.attributions_for_test("test_1")[0].currency == "USD"

    def test_invalid_conversion_fails_softly(self):
        """Test negative values and bad currency codes are rejected without raising."""
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_conversion("s1", "refund", -10.0, timestamp=T0 + 10) is None
        assert self.tracker.record_conversion("s1", "sale", 10.0, currency="dollars", timestamp=T0 + 20) is None
        assert self.tracker.active.get("s1").conversions == []
        assert self.tracker.attribution.attributions_for_test() == []

    def test_empty_interaction_action(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_interaction("s1", "", "btn", timestamp=T0 + 10) is False

    def test_free_conversion_is_not_attributed(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.record_conversion("s1", "lead", 0.0, timestamp=T0 + 10)
        assert self.tracker.attribution.attributions_for_test() == []

    def test_conversion_uses_requested_model(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        self.tracker.record_step_visit("s1", 2, timestamp=T0 + 1000)
        self.tracker.record_conversion("s1", "sale", 10.0, timestamp=T0 + 2000, attribution_model="linear")
        record = self.tracker.attribution.attributions_for_test("test_1")[0]
        assert [c.contribution_fraction for c in record.contributions] == pytest.approx([0.5, 0.5])

    def test_end_session_closes_visit(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        ended = self.tracker.end_session("s1", exit_reason="bounced", timestamp=T0 + 3000)

        assert ended.status == FunnelSessionStatus.ABANDONED
        assert ended.exit_step_position == 1
        assert ended.exit_reason == "bounced"
        assert ended.step_visits[0].exit_action == "bounced"
        assert ended.step_visits[0].time_on_step == 3000
        assert open_visits(ended) == []
        assert "s1" not in self.tracker.active
        assert "s1" in self.tracker.completed

    def test_end_session_twice(self):
        """Test a second end returns None and does not duplicate the session."""
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        assert self.tracker.end_session("s1", timestamp=T0 + 10) is not None
        assert self.tracker.end_session("s1", timestamp=T0 + 20) is None
        assert len(self.tracker.completed) == 1
        assert len(self.tracker.sessions_for_test("test_1")) == 1

    def test_end_statuses(self):
        self.tracker.start_session("done", "funnel_1", "A", timestamp=T0)
        self.tracker.record_step_visit("done", 3, timestamp=T0 + 10)
        assert self.tracker.end_session("done", timestamp=T0 + 20).status == FunnelSessionStatus.COMPLETED

        self.tracker.start_session("idle", "funnel_1", "A", timestamp=T0)
        assert self.tracker.end_session("idle", exit_reason="timeout", timestamp=T0 + 20).status == (
            FunnelSessionStatus.TIMED_OUT
        )

        self.tracker.start_session("goal", "funnel_1", "A", timestamp=T0)
        assert self.tracker.end_session("goal", exit_reason="completed", timestamp=T0 + 20).status == (
            FunnelSessionStatus.COMPLETED
        )

    def test_interaction_after_end_fails(self):
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)
        self.tracker.end_session("s1", timestamp=T0 + 10)
        assert self.tracker.record_interaction("s1", "click", "btn", timestamp=T0 + 20) is False

    def test_single_open_visit_under_concurrency(self):
        """Test concurrent step visits on one session leave one open visit."""
        self.tracker.start_session("s1", "funnel_1", "A", timestamp=T0)

        def visit(offset):
            for i in range(50):
                self.tracker.record_step_visit("s1", (i % 3) + 1, timestamp=T0 + offset + i)
                self.tracker.record_interaction("s1", "click", "btn", timestamp=T0 + offset + i)

        threads = [threading.Thread(target=visit, args=(n * 1000,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        session = self.tracker.active.get("s1")
        assert len(session.step_visits) == 201
        assert len(open_visits(session)) == 1
        assert session.step_visits[-1].is_open
        assert sum(len(v.interactions) for v in session.step_visits) == 200


class TestFunnelAnalytics:
    """Tests for funnel analytics and cleanup."""

    @pytest.fixture(autouse=True)
    def setup_funnel(self, tracker, sales_funnel):
        self.tracker = tracker
        self.tracker.create_funnel(sales_funnel)

        # A: one session reaches checkout and buys, one leaves at landing
        self.tracker.start_session("a1", "funnel_1", "A", timestamp=T0)
        self.tracker.record_step_visit("a1", 2, timestamp=T0 + 4000)
        self.tracker.record_step_visit("a1", 3, timestamp=T0 + 10000)
        self.tracker.record_conversion("a1", "sale", 100.0, timestamp=T0 + 11000)
        self.tracker.end_session("a1", timestamp=T0 + 12000)

        self.tracker.start_session("a2", "funnel_1", "A", timestamp=T0 + HOUR_MS)
        self.tracker.end_session("a2", exit_reason="bounced", timestamp=T0 + HOUR_MS + 2000)

        # B: one session still on the opt-in step
        self.tracker.start_session("b1", "funnel_1", "B", timestamp=T0 + 2 * HOUR_MS)
        self.tracker.record_step_visit("b1", 2, timestamp=T0 + 2 * HOUR_MS + 6000)

    def test_unknown_funnel(self):
        assert self.tracker.get_funnel_analytics("missing") is None

    def test_all_variants(self):
        analytics = self.tracker.get_funnel_analytics("funnel_1")
        assert analytics.variant == "all"
        assert analytics.test_id == "test_1"
        assert analytics.total_sessions == 3
        assert analytics.completion_rate == pytest.approx(2 / 3)
        assert analytics.dropoff_analysis[1] == pytest.approx(0.0)
        assert analytics.dropoff_analysis[2] == pytest.approx(1 / 3)
        assert analytics.dropoff_analysis[3] == pytest.approx(2 / 3)
        assert analytics.conversion_rates == {"sale": pytest.approx(1 / 3)}
        assert analytics.revenue_per_visitor == pytest.approx(100.0 / 3)

    def test_average_time_per_step(self):
        analytics = self.tracker.get_funnel_analytics("funnel_1", variant="A")
        # a1 spent 4000ms and a2 2000ms on landing
        assert analytics.average_time_per_step[1] == 3000
        assert analytics.average_time_per_step[2] == 6000
        assert analytics.average_time_per_step[3] == 2000

    def test_exit_points(self):
        analytics = self.tracker.get_funnel_analytics("funnel_1", variant="A")
        points = {p.step_position: p for p in analytics.top_exit_points}
        assert points[1].exit_count == 1
        assert points[1].top_exit_reasons == ["bounced"]
        assert points[3].exit_rate == pytest.approx(0.5)

    def test_time_range_filter(self):
        analytics = self.tracker.get_funnel_analytics("funnel_1", time_range=(T0 + HOUR_MS, T0 + 3 * HOUR_MS))
        assert analytics.total_sessions == 2
        assert self.tracker.get_funnel_analytics("funnel_1", time_range=(T0 + days(5), T0 + days(6))) is None

    def test_variant_comparison(self):
        comparison = self.tracker.get_variant_comparison("funnel_1")
        assert list(comparison) == ["A", "B"]
        assert comparison["A"].total_sessions == 2
        assert comparison["B"].total_sessions == 1
        assert comparison["B"].completion_rate == 0.0
        assert self.tracker.get_variant_comparison("missing") == {}

    def test_cleanup_old_sessions(self):
        """Test idle active sessions time out and old ended ones are purged."""
        result = self.tracker.cleanup_old_sessions(days_to_keep=30, now=T0 + days(31))
        assert result == {"timed_out": 1, "purged": 2}
        assert len(self.tracker.active) == 0
        timed_out = self.tracker.completed.get("b1")
        assert timed_out.status == FunnelSessionStatus.TIMED_OUT
        assert timed_out.exit_reason == "timeout"
