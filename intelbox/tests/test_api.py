"""HTTP-level tests against the FastAPI app on an in-memory database."""
from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from intelbox.app import app
from intelbox.models import Finding, Report, Source


@pytest.fixture()
def client(engine, monkeypatch):
    for name in ("SEARCH_PROVIDER", "TAVILY_API_KEY", "SERPAPI_API_KEY", "STALENESS_DAYS"):
        monkeypatch.delenv(name, raising=False)
    app.state.skip_init_db = True
    app.state.start_scheduler = False
    with TestClient(app) as c:
        yield c


def _create_project(client, **overrides) -> dict:
    body = {"name": "Acme Billing", "industry": "Fintech", "competitors": ["Stripe"], **overrides}
    resp = client.post("/api/projects", json=body)
    assert resp.status_code == 201
    return resp.json()


# ---------------------------------------------------------------------------
# Projects & runs
# ---------------------------------------------------------------------------


class TestProjects:
    def test_create_and_list(self, client):
        created = _create_project(client)
        assert created["vertical"] == "FINTECH"
        assert created["competitors"] == ["Stripe"]

        listed = client.get("/api/projects").json()
        assert [p["id"] for p in listed] == [created["id"]]
        assert client.get(f"/api/projects/{created['id']}").json()["name"] == "Acme Billing"

    def test_blank_name_rejected(self, client):
        assert client.post("/api/projects", json={"name": "   "}).status_code == 422

    def test_missing_project_404(self, client):
        resp = client.get("/api/projects/999")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Project not found"


class TestRuns:
    def test_start_cancel_rerun(self, client):
        proj = _create_project(client)
        resp = client.post(f"/api/projects/{proj['id']}/runs")
        assert resp.status_code == 202
        run = resp.json()
        assert run["status"] == "NEW"

        cancelled = client.post(f"/api/runs/{run['id']}/cancel").json()
        assert cancelled["status"] == "SKIPPED"
        assert cancelled["last_note"] == "Cancelled"
        assert client.post(f"/api/runs/{run['id']}/cancel").status_code == 409

        logs = client.get(f"/api/runs/{run['id']}/logs").json()
        assert [entry["line"] for entry in logs] == ["Run cancelled"]

        resp = client.post(f"/api/runs/{run['id']}/rerun")
        assert resp.status_code == 202
        assert resp.json()["id"] != run["id"]

        runs = client.get(f"/api/projects/{proj['id']}/runs").json()
        assert [r["id"] for r in runs] == [resp.json()["id"], run["id"]]

    def test_missing_run_404(self, client):
        assert client.get("/api/runs/12345").status_code == 404
        assert client.get("/api/runs/12345/logs").status_code == 404

    def test_sources_and_guardrails(self, client, session):
        proj = _create_project(client)
        run = client.post(f"/api/projects/{proj['id']}/runs").json()
        session.add(Source(run_id=run["id"], url="https://stripe.com/", title="Stripe", domain="stripe.com"))
        session.commit()

        sources = client.get(f"/api/runs/{run['id']}/sources").json()
        assert [s["domain"] for s in sources] == ["stripe.com"]

        guard = client.get(f"/api/runs/{run['id']}/guardrails").json()
        codes = {i["code"] for i in guard["issues"]}
        assert "LOW_SOURCE_COUNT" in codes

    def test_process_next_without_jobs(self, client):
        resp = client.post("/api/jobs/process-next")
        assert resp.status_code == 200
        assert resp.json() is None


class TestJobs:
    def test_list_cancel_retry(self, client):
        proj = _create_project(client)
        run = client.post(f"/api/projects/{proj['id']}/runs").json()
        (job,) = client.get("/api/jobs").json()
        assert job["status"] == "PENDING"
        assert job["run_id"] == run["id"]

        resp = client.post(f"/api/jobs/{job['id']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "SKIPPED"
        resp = client.post(f"/api/jobs/{job['id']}/cancel")
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Only pending jobs can be cancelled"

        resp = client.post(f"/api/jobs/{job['id']}/retry")
        assert resp.status_code == 201
        clone = resp.json()
        assert clone["status"] == "PENDING"
        assert clone["run_id"] == run["id"]

        assert [j["id"] for j in client.get("/api/jobs", params={"status": "PENDING"}).json()] == [clone["id"]]
        assert [j["id"] for j in client.get("/api/jobs").json()] == [clone["id"], job["id"]]

    def test_missing_job_404(self, client):
        assert client.post("/api/jobs/999/cancel").status_code == 404
        assert client.post("/api/jobs/999/retry").status_code == 404


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class TestReview:
    @pytest.fixture()
    def seeded(self, client, session):
        proj = _create_project(client)
        run = client.post(f"/api/projects/{proj['id']}/runs").json()
        source = Source(run_id=run["id"], url="https://stripe.com/", title="Stripe")
        session.add(source)
        session.commit()
        finding = Finding(run_id=run["id"], kind="INSIGHT", text="Market landscape: approved claim",
                          confidence=0.8, citations_json="[]")
        session.add(finding)
        session.commit()
        return run, source, finding

    def test_approve_and_cite(self, client, seeded):
        run, source, finding = seeded
        resp = client.post(f"/api/findings/{finding.id}/approve", json={"reviewer_notes": "ok"})
        assert resp.status_code == 200
        assert resp.json()["approved"] is True

        resp = client.put(f"/api/findings/{finding.id}/citations", json={"citations": [source.id]})
        assert resp.json()["citations"] == [source.id]

        resp = client.put(f"/api/findings/{finding.id}/citations", json={"citations": [999]})
        assert resp.status_code == 400

        findings = client.get(f"/api/runs/{run['id']}/findings").json()
        assert findings[0]["reviewer_notes"] == "ok"

    def test_report_rebuild(self, client, seeded, session):
        run, _, finding = seeded
        assert client.get(f"/api/runs/{run['id']}/report").status_code == 404

        client.post(f"/api/findings/{finding.id}/approve", json={})
        resp = client.post(f"/api/runs/{run['id']}/report/rebuild")
        assert resp.status_code == 201
        assert resp.json()["approved"] is True

        latest = client.get(f"/api/runs/{run['id']}/report").json()
        assert latest["id"] == resp.json()["id"]
        assert "approved claim" in latest["body"]
        assert session.get(Report, latest["id"]) is not None


# ---------------------------------------------------------------------------
# Scheduler & settings
# ---------------------------------------------------------------------------


class TestScheduler:
    def test_task_lifecycle(self, client):
        resp = client.post("/api/scheduler/tasks", json={
            "type": "CLEANUP", "scheduled_for": "2030-01-01T00:00:00Z", "priority": 2,
        })
        assert resp.status_code == 201
        task = resp.json()
        assert task["scheduled_for"] == "2030-01-01T00:00:00+00:00"

        assert [t["id"] for t in client.get("/api/scheduler/tasks").json()] == [task["id"]]
        assert client.get("/api/scheduler/next").json() == {"next_task_time": "2030-01-01T00:00:00+00:00"}

        assert client.delete(f"/api/scheduler/tasks/{task['id']}").status_code == 200
        assert client.delete(f"/api/scheduler/tasks/{task['id']}").status_code == 404
        assert client.get("/api/scheduler/next").json() == {"next_task_time": None}

    def test_bad_input(self, client):
        assert client.post("/api/scheduler/tasks", json={"type": "CLEANUP", "scheduled_for": "soon"}).status_code == 400
        assert client.post("/api/scheduler/tasks", json={"type": "REINDEX"}).status_code == 422

    def test_project_monitoring(self, client):
        proj = _create_project(client)
        resp = client.post(f"/api/projects/{proj['id']}/monitoring")
        assert resp.status_code == 201
        assert resp.json()["type"] == "AUTO_RERUN"
        assert client.delete(f"/api/projects/{proj['id']}/monitoring").json() == {"cancelled": 1}
        assert client.post("/api/projects/999/monitoring").status_code == 404


class TestSettings:
    def test_defaults_and_update(self, client):
        assert client.get("/api/settings").json() == {
            "search_provider": None, "configured_keys": [], "staleness_days": 180,
        }
        resp = client.put("/api/settings", json={
            "search_provider": "Tavily", "api_keys": {"tavily": "secret"}, "staleness_days": 90,
        })
        body = resp.json()
        assert body == {"search_provider": "tavily", "configured_keys": ["tavily"], "staleness_days": 90}
        assert "secret" not in json.dumps(body)

    def test_staleness_bounds(self, client):
        assert client.put("/api/settings", json={"staleness_days": 0}).status_code == 422
