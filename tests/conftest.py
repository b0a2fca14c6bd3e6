"""Shared fixtures for the workflow engine tests.

Everything runs against the in-memory repository and event bus; no
Supabase project or Kafka broker is needed.
"""

import os

# Set before freightops.config is imported so settings never reach Supabase.
os.environ["PERSISTENCE_BACKEND"] = "memory"
os.environ["EVENT_BUS_BACKEND"] = "inmemory"
os.environ["SIDE_EFFECTS_ASYNC"] = "false"

import pytest

from freightops.domain.capabilities import Actor
from freightops.events.bus import InMemoryEventBus
from freightops.infra.repositories import InMemoryRepository
from freightops.services.workflow_service import WorkflowService


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def published(bus):
    """Every event envelope published on the bus, in order."""
    events = []
    bus.subscribe("*", events.append)
    return events


@pytest.fixture
def service(repo, bus):
    return WorkflowService(repo, event_bus=bus)


@pytest.fixture
def maker():
    return Actor.of("maker-1", "finance")


@pytest.fixture
def checker():
    return Actor.of("checker-1", "finance_manager")


@pytest.fixture
def approver():
    return Actor.of("approver-1", "director")


@pytest.fixture
def second_approver():
    return Actor.of("approver-2", "director")


@pytest.fixture
def owner():
    return Actor.of("owner-1", "owner")


@pytest.fixture
def job_order(repo):
    return repo.upsert_parent_record(
        "job_orders",
        {"id": "jo-100", "jo_number": "JO-2026-0100", "has_surat_jalan": False, "has_berita_acara": False},
    )


@pytest.fixture
def voucher(service, maker):
    return service.create_document("disbursement-voucher", maker, payload={"number": "BKK-2026-0001", "amount": 1500000})
