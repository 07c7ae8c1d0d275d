"""
Integration tests for the HTTP API.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from caseflow.api.app import create_app

TEMPLATE = {
    "id": "standard-litigation",
    "name": "Standard Litigation",
    "matter_type": "Litigation",
    "actor": "admin",
    "stages": [
        {
            "id": "intake",
            "title": "Intake",
            "order": 0,
            "estimated_duration": 2,
            "tasks": [
                {"id": "conflict-check", "title": "Conflict Check", "assignee_role": "paralegal", "sla_hours": 48},
            ],
        },
        {
            "id": "discovery",
            "title": "Discovery",
            "order": 1,
            "estimated_duration": 30,
            "dependencies": ["intake"],
            "tasks": [
                {
                    "id": "initial-disclosures",
                    "title": "Initial Disclosures",
                    "assignee_role": "attorney",
                    "dependencies": ["conflict-check"],
                },
            ],
        },
    ],
}


@pytest_asyncio.fixture
async def client(orchestrator, trigger_engine):
    app = create_app(orchestrator=orchestrator, trigger_engine=trigger_engine)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def instance(client):
    response = await client.post("/v1/templates", json=TEMPLATE)
    assert response.status_code == 201
    response = await client.post(
        "/v1/instances",
        json={"template_id": "standard-litigation", "case_id": "C-1", "actor": "pat"},
    )
    assert response.status_code == 201
    return response.json()


def task_id(instance, title):
    for stage in instance["stages"]:
        for task in stage["tasks"]:
            if task["title"] == title:
                return task["id"]
    raise AssertionError(f"no task titled {title!r}")


async def advance(client, tid, *statuses, actor="pat"):
    for target in statuses:
        response = await client.post(f"/v1/tasks/{tid}/transition", json={"status": target, "actor": actor})
        assert response.status_code == 200, response.text


class TestTemplatesAPI:
    """Tests for template endpoints."""

    @pytest.mark.asyncio
    async def test_publish_and_version(self, client):
        first = await client.post("/v1/templates", json=TEMPLATE)
        second = await client.post("/v1/templates", json={**TEMPLATE, "name": "Revised"})

        assert first.json()["version"] == 1
        assert second.json()["version"] == 2
        assert first.json()["published_by"] == "admin"

        latest = await client.get("/v1/templates/standard-litigation")
        pinned = await client.get("/v1/templates/standard-litigation", params={"version": 1})
        versions = await client.get("/v1/templates/standard-litigation/versions")

        assert latest.json()["name"] == "Revised"
        assert pinned.json()["name"] == "Standard Litigation"
        assert [t["version"] for t in versions.json()] == [1, 2]
        assert len((await client.get("/v1/templates")).json()) == 1

    @pytest.mark.asyncio
    async def test_cyclic_template_conflict(self, client):
        body = {
            "id": "loop",
            "name": "Loop",
            "stages": [
                {"id": "a", "title": "A", "order": 0, "dependencies": ["b"]},
                {"id": "b", "title": "B", "order": 1, "dependencies": ["a"]},
            ],
        }

        response = await client.post("/v1/templates", json=body)

        assert response.status_code == 409
        assert response.json()["error"] == "CYCLIC_DEPENDENCY"

    @pytest.mark.asyncio
    async def test_unknown_template(self, client):
        response = await client.get("/v1/templates/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "TEMPLATE_NOT_FOUND"


class TestInstancesAPI:
    """Tests for instance and task endpoints."""

    @pytest.mark.asyncio
    async def test_create_requires_one_source(self, client):
        response = await client.post("/v1/instances", json={"case_id": "C-1"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_case(self, client, instance):
        response = await client.post(
            "/v1/instances",
            json={"template_id": "standard-litigation", "case_id": "C-404"},
        )
        assert response.status_code == 404
        assert response.json()["error"] == "CASE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_transition_flow(self, client, instance):
        conflict = task_id(instance, "Conflict Check")
        disclosures = task_id(instance, "Initial Disclosures")

        gated = await client.post(
            f"/v1/tasks/{disclosures}/transition",
            json={"status": "InProgress", "actor": "alex"},
        )
        assert gated.status_code == 409
        assert gated.json()["error"] == "INVALID_TRANSITION"

        await advance(client, conflict, "InProgress", "Review", "Done")

        body = (await client.get(f"/v1/instances/{instance['id']}")).json()
        assert [s["status"] for s in body["stages"]] == ["Completed", "Active"]
        assert body["progress"] == 50

        illegal = await client.post(f"/v1/tasks/{conflict}/transition", json={"status": "Review"})
        assert illegal.status_code == 409

        reopened = await client.post(f"/v1/tasks/{conflict}/reopen", json={"reason": "new party"})
        assert reopened.status_code == 200
        assert reopened.json()["status"] == "InProgress"

    @pytest.mark.asyncio
    async def test_invalid_status_value(self, client, instance):
        response = await client.post(
            f"/v1/tasks/{task_id(instance, 'Conflict Check')}/transition",
            json={"status": "Archived"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_cancel_without_body(self, client, instance):
        response = await client.post(f"/v1/instances/{instance['id']}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "Cancelled"

        frozen = await client.post(
            f"/v1/tasks/{task_id(instance, 'Conflict Check')}/transition",
            json={"status": "InProgress"},
        )
        assert frozen.status_code == 409
        assert frozen.json()["error"] == "INSTANCE_FROZEN"

    @pytest.mark.asyncio
    async def test_pause_resume(self, client, instance):
        paused = await client.post(f"/v1/instances/{instance['id']}/pause", json={"actor": "morgan"})
        assert paused.json()["status"] == "Paused"

        listed = await client.get("/v1/instances", params={"status": "Paused"})
        assert [i["id"] for i in listed.json()] == [instance["id"]]

        resumed = await client.post(f"/v1/instances/{instance['id']}/resume")
        assert resumed.json()["status"] == "Active"

    @pytest.mark.asyncio
    async def test_ad_hoc_task_comment_reassign(self, client, instance):
        created = await client.post(
            f"/v1/instances/{instance['id']}/stages/Intake/tasks",
            json={"title": "Engagement Letter", "assignee": "pat", "sla_hours": 24, "actor": "morgan"},
        )
        assert created.status_code == 201
        new_task = created.json()["id"]

        comment = await client.post(
            f"/v1/tasks/{new_task}/comments",
            json={"author": "pat", "body": "Drafted"},
        )
        assert comment.status_code == 201
        assert comment.json()["author"] == "pat"

        reassigned = await client.post(
            f"/v1/tasks/{new_task}/reassign",
            json={"assignee": "morgan", "actor": "sam"},
        )
        assert reassigned.json()["assignee"] == "morgan"

        events = await client.get(f"/v1/instances/{instance['id']}/events")
        kinds = [e["kind"] for e in events.json()]
        assert kinds[-3:] == ["TaskCreated", "CommentAdded", "TaskReassigned"]

    @pytest.mark.asyncio
    async def test_bulk_reassign_and_handover(self, client, instance):
        conflict = task_id(instance, "Conflict Check")
        disclosures = task_id(instance, "Initial Disclosures")

        bulk = await client.post(
            "/v1/tasks/reassign",
            json={"task_ids": [conflict, disclosures], "assignee": "morgan", "actor": "sam"},
        )
        assert bulk.status_code == 200
        assert [t["assignee"] for t in bulk.json()] == ["morgan", "morgan"]

        handover = await client.post("/v1/users/morgan/handover", json={"to_user": "alex", "reason": "leave"})
        assert sorted(t["id"] for t in handover.json()) == sorted([conflict, disclosures])

        missing = await client.post("/v1/tasks/reassign", json={"task_ids": ["task_missing"], "assignee": "sam"})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_task_spec(self, client, instance):
        response = await client.post(
            f"/v1/instances/{instance['id']}/stages/Intake/tasks",
            json={"title": "Depends on nothing", "dependencies": ["task_missing"]},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "TASK_SPEC_INVALID"

    @pytest.mark.asyncio
    async def test_unknown_instance(self, client):
        response = await client.get("/v1/instances/wf_missing")
        assert response.status_code == 404


class TestTriggersAPI:
    """Tests for rules and events."""

    @pytest.mark.asyncio
    async def test_rule_and_event(self, client, instance):
        rule = {
            "id": "review-uploads",
            "event_name": "DocumentUploaded",
            "action": {"type": "create_task", "stage": "Discovery", "title": "Review {{ event.payload.name }}"},
        }
        registered = await client.post("/v1/rules", json=rule)
        assert registered.status_code == 201

        response = await client.post("/v1/events", json={
            "name": "DocumentUploaded",
            "case_id": "C-1",
            "module_tag": "Documents",
            "payload": {"name": "Motion"},
        })

        results = response.json()["results"]
        assert [r["status"] for r in results] == ["applied"]
        body = (await client.get(f"/v1/instances/{instance['id']}")).json()
        assert "Review Motion" in [t["title"] for t in body["stages"][1]["tasks"]]

        assert [r["id"] for r in (await client.get("/v1/rules")).json()] == ["review-uploads"]
        assert (await client.delete("/v1/rules/review-uploads")).status_code == 204
        assert (await client.get("/v1/rules")).json() == []

    @pytest.mark.asyncio
    async def test_invalid_rule(self, client):
        response = await client.post("/v1/rules", json={"event_name": "X", "action": {"type": "explode"}})

        assert response.status_code == 422
        assert response.json()["error"] == "RULE_INVALID"


class TestReadModelsAPI:
    """Tests for notifications, SLA and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_notifications(self, client, instance):
        inbox = (await client.get("/v1/notifications/pat")).json()
        assert [n["kind"] for n in inbox] == ["task_assigned"]

        marked = await client.post(f"/v1/notifications/{inbox[0]['id']}/read")
        assert marked.json()["read"] is True

        unread = await client.get("/v1/notifications/pat", params={"unread_only": True})
        assert unread.json() == []

        count = await client.post("/v1/notifications/pat/read-all")
        assert count.json() == {"count": 0}

        missing = await client.post("/v1/notifications/notif_missing/read")
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_sla_sweep(self, client, instance, clock):
        clock.advance(hours=49)

        response = await client.post("/v1/sla/sweep")

        assert response.json() == {"count": 1}
        kinds = [n["kind"] for n in (await client.get("/v1/notifications/pat")).json()]
        assert kinds[0] == "sla_breach"

    @pytest.mark.asyncio
    async def test_escalation_rules_and_sweep(self, client, instance, clock):
        registered = await client.post(
            "/v1/escalation-rules",
            json={"id": "esc-1", "level": 1, "escalate_to_user": "morgan", "auto_reassign": True},
        )
        assert registered.status_code == 201
        assert [r["id"] for r in (await client.get("/v1/escalation-rules")).json()] == ["esc-1"]

        clock.advance(hours=49)
        response = await client.post("/v1/sla/escalate")

        assert response.json() == {"count": 1}
        body = (await client.get(f"/v1/instances/{instance['id']}")).json()
        conflict = body["stages"][0]["tasks"][0]
        assert conflict["assignee"] == "morgan"
        assert conflict["escalation_level"] == 1

        invalid = await client.post("/v1/escalation-rules", json={"level": 1})
        assert invalid.status_code == 422
        assert invalid.json()["error"] == "RULE_INVALID"

        assert (await client.delete("/v1/escalation-rules/esc-1")).status_code == 204
        assert (await client.get("/v1/escalation-rules")).json() == []

    @pytest.mark.asyncio
    async def test_metrics(self, client, instance):
        response = await client.get("/v1/metrics")

        body = response.json()
        assert body["total_count"] == 1
        assert body["active_count"] == 1
        assert body["tasks_by_status"]["Pending"] == 2

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/v1/health")

        body = response.json()
        assert body["services"]["store"] == "healthy"
        assert body["services"]["delivery"] == "stopped"
        assert body["status"] == "healthy"
