"""
Pytest fixtures and configuration for tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from caseflow.config import Environment, Settings
from caseflow.core.models import RetryConfig, StageTemplate, TaskTemplate, WorkflowTemplate
from caseflow.integrations import CaseInfo, InMemoryCaseRegistry, RoleDirectory
from caseflow.messaging.broker import MemoryDeliveryQueue
from caseflow.messaging.consumer import DeliveryConsumer
from caseflow.notifications.channels import LoggingChannel
from caseflow.notifications.dispatcher import NotificationDispatcher
from caseflow.orchestrator.engine import WorkflowOrchestrator
from caseflow.storage.memory import InMemoryWorkflowStore
from caseflow.template.registry import TemplateRegistry
from caseflow.triggers.engine import TriggerEngine

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def litigation_template() -> WorkflowTemplate:
    """Standard Litigation: Intake (Conflict Check) -> Discovery (Initial Disclosures)."""
    return WorkflowTemplate(
        id="standard-litigation",
        name="Standard Litigation",
        matter_type="Litigation",
        stages=[
            StageTemplate(
                id="intake",
                title="Intake",
                order=0,
                estimated_duration=2,
                tasks=[
                    TaskTemplate(
                        id="conflict-check",
                        title="Conflict Check",
                        assignee_role="paralegal",
                        sla_hours=48,
                    ),
                ],
            ),
            StageTemplate(
                id="discovery",
                title="Discovery",
                order=1,
                estimated_duration=30,
                dependencies=["intake"],
                tasks=[
                    TaskTemplate(
                        id="initial-disclosures",
                        title="Initial Disclosures",
                        assignee_role="attorney",
                        sla_hours=72,
                        dependencies=["conflict-check"],
                    ),
                ],
            ),
        ],
    )


@pytest.fixture
def three_stage_template() -> WorkflowTemplate:
    """
    Intake -> Discovery -> Trial, where Trial also waits on Intake.

    Discovery has two parallel tasks feeding a third.
    """
    return WorkflowTemplate(
        id="full-litigation",
        name="Full Litigation",
        stages=[
            StageTemplate(
                id="intake",
                title="Intake",
                order=0,
                estimated_duration=1,
                tasks=[TaskTemplate(id="open-file", title="Open File", assignee_role="paralegal")],
            ),
            StageTemplate(
                id="discovery",
                title="Discovery",
                order=1,
                estimated_duration=10,
                dependencies=["intake"],
                tasks=[
                    TaskTemplate(id="requests", title="Serve Requests", assignee_role="attorney"),
                    TaskTemplate(id="subpoenas", title="Issue Subpoenas", assignee_role="attorney"),
                    TaskTemplate(
                        id="review",
                        title="Review Production",
                        assignee_role="attorney",
                        dependencies=["requests", "subpoenas"],
                    ),
                ],
            ),
            StageTemplate(
                id="trial",
                title="Trial",
                order=2,
                estimated_duration=5,
                dependencies=["intake", "discovery"],
                tasks=[
                    TaskTemplate(
                        id="trial-prep",
                        title="Trial Preparation",
                        assignee_role="attorney",
                        automated_trigger="TrialDateSet",
                    ),
                ],
            ),
        ],
    )


@pytest.fixture
def roles() -> RoleDirectory:
    return RoleDirectory({"paralegal": ["pat"], "attorney": ["alex"], "partner": ["morgan", "sam"]})


@pytest.fixture
def case_registry() -> InMemoryCaseRegistry:
    return InMemoryCaseRegistry([
        CaseInfo(case_id="C-1", title="Acme v. Widgets", matter_type="Litigation"),
        CaseInfo(case_id="C-2", title="Smith Estate", matter_type="Probate"),
    ])


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def delivery_queue() -> MemoryDeliveryQueue:
    return MemoryDeliveryQueue()


@pytest.fixture
def dispatcher(store, delivery_queue) -> NotificationDispatcher:
    """Dispatcher whose consumer retries without delay."""
    dispatcher = NotificationDispatcher(store, queue=delivery_queue, channel=LoggingChannel())
    dispatcher.consumer = DeliveryConsumer(
        delivery_queue,
        handler=dispatcher.deliver,
        on_exhausted=dispatcher._on_delivery_exhausted,
        retry_config=RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter=False),
        block_ms=50,
    )
    return dispatcher


@pytest.fixture
def orchestrator(store, dispatcher, case_registry, roles, clock) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(
        store,
        registry=TemplateRegistry(store),
        dispatcher=dispatcher,
        case_registry=case_registry,
        identity=roles,
        clock=clock,
    )


@pytest.fixture
def trigger_engine(orchestrator) -> TriggerEngine:
    return TriggerEngine(orchestrator)


@pytest_asyncio.fixture
async def litigation_instance(orchestrator, litigation_template):
    """A published Standard Litigation template instantiated for case C-1."""
    await orchestrator.registry.publish(litigation_template, actor="admin")
    return await orchestrator.instantiate("standard-litigation", "C-1", actor="pat")

