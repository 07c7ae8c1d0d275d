"""
FastAPI routes for the case workflow engine API.

Implements the core API endpoints:
- POST /templates - Publish a template version
- POST /instances - Create a workflow instance for a case
- POST /tasks/{task_id}/transition - Move a task through its lifecycle
- POST /events - Feed a business event to the trigger engine
- POST /rules - Register a trigger rule
- POST /escalation-rules - Register an escalation rule for overdue tasks
- POST /tasks/reassign - Reassign several tasks at once
- GET /metrics - Workflow analytics
- GET /notifications/{user_id} - A user's mailbox
- GET /health - Health check

Engine errors are mapped to HTTP status codes by the application's
WorkflowError handler.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from pydantic import BaseModel, Field, model_validator

from caseflow.analytics.aggregator import WorkflowMetrics
from caseflow.core.models import (
    BusinessEvent,
    Comment,
    EscalationRule,
    InstanceFilter,
    Notification,
    StageTemplate,
    TaskInstance,
    TaskSpec,
    TriggerRule,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowTemplate,
)
from caseflow.core.state_machine import InstanceStatus, TaskStatus
from caseflow.messaging.broker import RedisDeliveryQueue
from caseflow.orchestrator.engine import WorkflowOrchestrator
from caseflow.triggers.engine import RuleExecutionResult, TriggerEngine

router = APIRouter(prefix="/v1", tags=["workflows"])


# ==================== Request/Response Models ====================

class TemplatePublishRequest(BaseModel):
    """Request body for publishing a template."""

    id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    matter_type: Optional[str] = None
    description: Optional[str] = None
    estimated_duration: Optional[float] = Field(default=None, ge=0.0)
    stages: list[StageTemplate] = Field(..., min_length=1)
    actor: str = Field(default="system")

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "standard-litigation",
                "name": "Standard Litigation",
                "matter_type": "Litigation",
                "stages": [
                    {
                        "id": "intake",
                        "title": "Intake",
                        "order": 0,
                        "estimated_duration": 2,
                        "tasks": [{"id": "conflict-check", "title": "Conflict Check", "assignee_role": "paralegal"}],
                    },
                    {
                        "id": "discovery",
                        "title": "Discovery",
                        "order": 1,
                        "dependencies": ["intake"],
                        "estimated_duration": 30,
                        "tasks": [{
                            "id": "initial-disclosures",
                            "title": "Initial Disclosures",
                            "dependencies": ["conflict-check"],
                        }],
                    },
                ],
            }
        }
    }


class InstanceCreateRequest(BaseModel):
    """
    Request body for creating an instance.

    Either ``template_id`` or an inline ``stages`` list must be given.
    """

    case_id: str = Field(..., min_length=1)
    template_id: Optional[str] = None
    template_version: Optional[int] = Field(default=None, ge=1)
    stages: Optional[list[StageTemplate]] = None
    title: Optional[str] = None
    actor: str = Field(default="system")

    @model_validator(mode="after")
    def validate_source(self) -> "InstanceCreateRequest":
        """Exactly one instance source is required."""
        if bool(self.template_id) == bool(self.stages):
            raise ValueError("provide either template_id or stages")
        return self


class InstanceActionRequest(BaseModel):
    """Request body for cancel / pause / resume."""

    actor: str = Field(default="system")
    reason: Optional[str] = None


class AdHocTaskRequest(TaskSpec):
    """Request body for inserting an ad hoc task."""

    actor: str = Field(default="system")


class TransitionRequest(BaseModel):
    """Request body for a task transition."""

    status: TaskStatus
    actor: str = Field(default="system")
    reason: Optional[str] = None


class ReopenRequest(BaseModel):
    actor: str = Field(default="system")
    reason: Optional[str] = None


class CommentRequest(BaseModel):
    author: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=10000)


class ReassignRequest(BaseModel):
    assignee: str = Field(..., min_length=1)
    actor: str = Field(default="system")
    reason: Optional[str] = None


class BulkReassignRequest(ReassignRequest):
    task_ids: list[str] = Field(..., min_length=1)


class HandoverRequest(BaseModel):
    """Request body for moving every open task of a user to another user."""

    to_user: str = Field(..., min_length=1)
    actor: str = Field(default="system")
    reason: Optional[str] = None


class EventRequest(BaseModel):
    """Request body for a business event."""

    name: str = Field(..., min_length=1)
    case_id: str = Field(..., min_length=1)
    module_tag: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    actor: str = Field(default="system")


class EventResponse(BaseModel):
    event: BusinessEvent
    results: list[RuleExecutionResult]


class CountResponse(BaseModel):
    count: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    """Get orchestrator from app state."""
    return request.app.state.orchestrator


async def get_trigger_engine(request: Request) -> TriggerEngine:
    """Get trigger engine from app state."""
    return request.app.state.trigger_engine


# ==================== Templates ====================

@router.post(
    "/templates",
    response_model=WorkflowTemplate,
    status_code=status.HTTP_201_CREATED,
    summary="Publish a template",
    description="Validate the dependency graphs and store the next version of the template.",
)
async def publish_template(
    request: TemplatePublishRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowTemplate:
    template = WorkflowTemplate(**request.model_dump(exclude={"actor"}))
    return await orchestrator.registry.publish(template, actor=request.actor)


@router.get("/templates", response_model=list[WorkflowTemplate], summary="List templates")
async def list_templates(
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[WorkflowTemplate]:
    return await orchestrator.registry.list_templates()


@router.get("/templates/{template_id}", response_model=WorkflowTemplate, summary="Get a template")
async def get_template(
    template_id: str,
    version: Optional[int] = Query(default=None, ge=1),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowTemplate:
    return await orchestrator.registry.get(template_id, version)


@router.get(
    "/templates/{template_id}/versions",
    response_model=list[WorkflowTemplate],
    summary="List template versions",
)
async def list_template_versions(
    template_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[WorkflowTemplate]:
    return await orchestrator.registry.list_versions(template_id)


# ==================== Instances ====================

@router.post(
    "/instances",
    response_model=WorkflowInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow instance",
)
async def create_instance(
    request: InstanceCreateRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowInstance:
    if request.template_id:
        return await orchestrator.instantiate(
            request.template_id,
            request.case_id,
            actor=request.actor,
            template_version=request.template_version,
            title=request.title,
        )
    return await orchestrator.create_ad_hoc(
        request.case_id,
        request.stages,
        actor=request.actor,
        title=request.title,
    )


@router.get("/instances", response_model=list[WorkflowInstance], summary="List workflow instances")
async def list_instances(
    case_id: Optional[str] = None,
    instance_status: Optional[InstanceStatus] = Query(default=None, alias="status"),
    template_id: Optional[str] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[WorkflowInstance]:
    return await orchestrator.list_instances(
        InstanceFilter(case_id=case_id, status=instance_status, template_id=template_id)
    )


@router.get("/instances/{instance_id}", response_model=WorkflowInstance, summary="Get a workflow instance")
async def get_instance(
    instance_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowInstance:
    return await orchestrator.get_instance(instance_id)


@router.post("/instances/{instance_id}/cancel", response_model=WorkflowInstance, summary="Cancel an instance")
async def cancel_instance(
    instance_id: str,
    request: Optional[InstanceActionRequest] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowInstance:
    request = request or InstanceActionRequest()
    return await orchestrator.cancel(instance_id, actor=request.actor, reason=request.reason)


@router.post("/instances/{instance_id}/pause", response_model=WorkflowInstance, summary="Pause an instance")
async def pause_instance(
    instance_id: str,
    request: Optional[InstanceActionRequest] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowInstance:
    request = request or InstanceActionRequest()
    return await orchestrator.pause(instance_id, actor=request.actor)


@router.post("/instances/{instance_id}/resume", response_model=WorkflowInstance, summary="Resume an instance")
async def resume_instance(
    instance_id: str,
    request: Optional[InstanceActionRequest] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowInstance:
    request = request or InstanceActionRequest()
    return await orchestrator.resume(instance_id, actor=request.actor)


@router.post(
    "/instances/{instance_id}/stages/{stage_id}/tasks",
    response_model=TaskInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Add an ad hoc task",
)
async def add_ad_hoc_task(
    instance_id: str,
    stage_id: str,
    request: AdHocTaskRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> TaskInstance:
    spec = TaskSpec(**request.model_dump(exclude={"actor"}))
    return await orchestrator.add_ad_hoc_task(instance_id, stage_id, spec, actor=request.actor)


@router.get(
    "/instances/{instance_id}/events",
    response_model=list[WorkflowEvent],
    summary="Event log of an instance",
)
async def get_instance_events(
    instance_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[WorkflowEvent]:
    return await orchestrator.get_events(instance_id, since, until)


# ==================== Tasks ====================

@router.post("/tasks/{task_id}/transition", response_model=TaskInstance, summary="Transition a task")
async def transition_task(
    task_id: str,
    request: TransitionRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> TaskInstance:
    return await orchestrator.transition_task(
        task_id,
        request.status,
        actor=request.actor,
        reason=request.reason,
    )


@router.post("/tasks/{task_id}/reopen", response_model=TaskInstance, summary="Reopen a Done task")
async def reopen_task(
    task_id: str,
    request: Optional[ReopenRequest] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> TaskInstance:
    request = request or ReopenRequest()
    return await orchestrator.reopen_task(task_id, actor=request.actor, reason=request.reason)


@router.post(
    "/tasks/{task_id}/comments",
    response_model=Comment,
    status_code=status.HTTP_201_CREATED,
    summary="Comment on a task",
)
async def add_comment(
    task_id: str,
    request: CommentRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> Comment:
    return await orchestrator.add_comment(task_id, request.author, request.body)


@router.post("/tasks/{task_id}/reassign", response_model=TaskInstance, summary="Reassign a task")
async def reassign_task(
    task_id: str,
    request: ReassignRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> TaskInstance:
    return await orchestrator.reassign_task(
        task_id,
        request.assignee,
        actor=request.actor,
        reason=request.reason,
    )


@router.post("/tasks/reassign", response_model=list[TaskInstance], summary="Reassign several tasks")
async def reassign_tasks(
    request: BulkReassignRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[TaskInstance]:
    return await orchestrator.reassign_tasks(
        request.task_ids,
        request.assignee,
        actor=request.actor,
        reason=request.reason,
    )


@router.post(
    "/users/{user_id}/handover",
    response_model=list[TaskInstance],
    summary="Move every open task of a user to another user",
)
async def reassign_all_from_user(
    user_id: str,
    request: HandoverRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[TaskInstance]:
    return await orchestrator.reassign_all_from_user(
        user_id,
        request.to_user,
        actor=request.actor,
        reason=request.reason,
    )


# ==================== Triggers ====================

@router.post("/events", response_model=EventResponse, summary="Handle a business event")
async def handle_event(
    request: EventRequest,
    engine: TriggerEngine = Depends(get_trigger_engine),
) -> EventResponse:
    event = BusinessEvent(**request.model_dump(exclude={"actor"}))
    results = await engine.handle_event(event, actor=request.actor)
    return EventResponse(event=event, results=results)


@router.post(
    "/rules",
    response_model=TriggerRule,
    status_code=status.HTTP_201_CREATED,
    summary="Register a trigger rule",
)
async def register_rule(
    rule: dict[str, Any] = Body(...),
    engine: TriggerEngine = Depends(get_trigger_engine),
) -> TriggerRule:
    return engine.register_rule(rule)


@router.get("/rules", response_model=list[TriggerRule], summary="List trigger rules")
async def list_rules(engine: TriggerEngine = Depends(get_trigger_engine)) -> list[TriggerRule]:
    return engine.list_rules()


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Remove a trigger rule")
async def unregister_rule(
    rule_id: str,
    engine: TriggerEngine = Depends(get_trigger_engine),
) -> None:
    engine.unregister_rule(rule_id)


# ==================== Read models ====================

@router.get("/metrics", response_model=WorkflowMetrics, summary="Workflow metrics")
async def get_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> WorkflowMetrics:
    return await orchestrator.get_metrics(start, end)


@router.post("/sla/sweep", response_model=CountResponse, summary="Run the SLA sweep now")
async def run_sla_sweep(
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> CountResponse:
    return CountResponse(count=await orchestrator.run_sla_sweep())


@router.post("/sla/escalate", response_model=CountResponse, summary="Run the escalation sweep now")
async def run_escalation_sweep(
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> CountResponse:
    return CountResponse(count=await orchestrator.run_escalation_sweep())


@router.post(
    "/escalation-rules",
    response_model=EscalationRule,
    status_code=status.HTTP_201_CREATED,
    summary="Register an escalation rule",
)
async def add_escalation_rule(
    rule: dict[str, Any] = Body(...),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> EscalationRule:
    return orchestrator.add_escalation_rule(rule)


@router.get("/escalation-rules", response_model=list[EscalationRule], summary="List escalation rules")
async def list_escalation_rules(
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[EscalationRule]:
    return orchestrator.list_escalation_rules()


@router.delete(
    "/escalation-rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an escalation rule",
)
async def remove_escalation_rule(
    rule_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> None:
    orchestrator.remove_escalation_rule(rule_id)


@router.get("/notifications/{user_id}", response_model=list[Notification], summary="A user's notifications")
async def get_notifications(
    user_id: str,
    unread_only: bool = False,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[Notification]:
    return await orchestrator.dispatcher.get_notifications(user_id, unread_only)


@router.post(
    "/notifications/{notification_id}/read",
    response_model=Notification,
    summary="Mark a notification as read",
)
async def mark_notification_read(
    notification_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> Notification:
    return await orchestrator.dispatcher.mark_read(notification_id)


@router.post(
    "/notifications/{user_id}/read-all",
    response_model=CountResponse,
    summary="Mark all of a user's notifications as read",
)
async def mark_all_notifications_read(
    user_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> CountResponse:
    return CountResponse(count=await orchestrator.dispatcher.mark_all_read(user_id))


# ==================== Health Check Routes ====================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the engine and its backing services.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check health of all services."""
    from caseflow import __version__

    services = {}
    orchestrator: WorkflowOrchestrator = request.app.state.orchestrator

    # Check store
    try:
        await orchestrator.store.list_templates()
        services["store"] = "healthy"
    except Exception:
        services["store"] = "unhealthy"

    # Check Redis when it backs delivery
    queue = orchestrator.dispatcher.queue
    if isinstance(queue, RedisDeliveryQueue):
        try:
            await queue.client.ping()
            services["redis"] = "healthy"
        except Exception:
            services["redis"] = "unhealthy"

    services["delivery"] = "healthy" if orchestrator.dispatcher.consumer.is_running else "stopped"

    # Determine overall status
    unhealthy_count = sum(1 for s in services.values() if s == "unhealthy")
    if unhealthy_count == 0:
        overall_status = "healthy"
    elif unhealthy_count == len(services):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
