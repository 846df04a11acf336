"""Shared fixtures for the pipeline tests."""

import pytest

from splitflow.attribution import AttributionEngine
from splitflow.config import Settings
from splitflow.funnel import FunnelTracker
from splitflow.main import SplitFlow
from splitflow.schemas import DAY_MS, FunnelFlow, FunnelStep, FunnelVariant
from splitflow.touchpoints import TouchpointStore

# Fixed clock: 2024-01-01T00:00:00Z
T0 = 1704067200000
HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store(settings):
    return TouchpointStore(settings)


@pytest.fixture
def engine(store, settings):
    return AttributionEngine(store, settings)


@pytest.fixture
def tracker(store, engine, settings):
    return FunnelTracker(store, engine, settings)


@pytest.fixture
def sales_funnel():
    """Three-step funnel split 50/50 between A and B."""
    return FunnelFlow(
        funnel_id="funnel_1",
        funnel_name="Webinar funnel",
        test_id="test_1",
        steps=[
            FunnelStep(step_id="landing", step_name="Landing", url="/landing", position=1),
            FunnelStep(step_id="optin", step_name="Opt-in", step_type="optin", url="/optin", position=2),
            FunnelStep(step_id="checkout", step_name="Checkout", step_type="checkout", url="/checkout", position=3),
        ],
        variants=[
            FunnelVariant(name="A", traffic_allocation=50),
            FunnelVariant(name="B", traffic_allocation=50),
        ],
    )


@pytest.fixture
def pipeline(settings, sales_funnel):
    flow = SplitFlow(settings)
    flow.create_funnel(sales_funnel)
    return flow


def days(n: float) -> int:
    return int(n * DAY_MS)
