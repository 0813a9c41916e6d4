"""
Shared fixtures: a controllable clock, seeded randomness, in-memory stores and
fake collaborators for drafting, summaries, knowledge and sending.
"""

import random

import pytest
import pytest_asyncio

from autopilot.core.event_bus import AutopilotEventBus
from autopilot.stores import create_memory_stores

from tests.fakes import (
    FakeDrafting,
    FakeKnowledge,
    FakeSummary,
    FakeTransport,
    FixedClock,
    make_agent,
)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def stores():
    return create_memory_stores(activity_max_entries=5000)


@pytest.fixture
def bus():
    return AutopilotEventBus()


@pytest.fixture
def drafting():
    return FakeDrafting()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def summary():
    return FakeSummary()


@pytest.fixture
def knowledge():
    return FakeKnowledge()


@pytest.fixture
def errors():
    return []


@pytest.fixture
def scheduler(stores, transport, bus, clock, errors):
    from autopilot.core.scheduler import Scheduler

    return Scheduler(stores, transport, bus, clock=clock, on_error=lambda chat_id, e: errors.append((chat_id, e)))


@pytest.fixture
def engine(stores, scheduler, drafting, summary, knowledge, bus, clock, rng, errors):
    from autopilot.core.engine import DecisionEngine

    return DecisionEngine(
        stores,
        scheduler,
        drafting,
        summary=summary,
        knowledge=knowledge,
        bus=bus,
        clock=clock,
        rng=rng,
        on_error=lambda chat_id, e: errors.append((chat_id, e)),
    )


@pytest.fixture
def controls(stores, scheduler, bus, clock):
    from autopilot.core.controls import ChatAutopilotControls

    return ChatAutopilotControls(stores, scheduler, bus, clock=clock)


@pytest_asyncio.fixture
async def agent(stores):
    agent = make_agent()
    await stores.agents.save(agent)
    return agent
