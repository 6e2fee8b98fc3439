from typing import Any, Dict

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient as FastAPITestClient
from litestar import Litestar, get
from litestar.testing import TestClient

from chunkflow.client import ChunkFlowClient
from chunkflow.common.alert import AlertSeverity
from chunkflow.common.states import JobStatus
from chunkflow.config import Settings
from chunkflow.dashboard.app import create_dashboard_app
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.integrations.fastapi import add_chunkflow_to_fastapi
from chunkflow.integrations.litestar import chunkflow_dependency, configure_chunkflow
from chunkflow.monitoring.alerts import AlertManager
from chunkflow.server.engine import ContinuationEngine
from chunkflow.storage.memory_storage import MemoryStorage

from tests.support import count_chunk_items, echo_task, no_sleep


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def client(storage):
    return ChunkFlowClient(storage, Settings())


@pytest.fixture
def engine(storage):
    processors = ProcessorRegistry()
    processors.register_chunk_processor("chunked-file-import", count_chunk_items)
    processors.register_task_processor("inbound-email", echo_task)
    return ContinuationEngine(storage, processors, settings=Settings(slice_batch_size=10), sleep=no_sleep)


# --- Dashboard ---


def test_dashboard_overview_and_jobs(client):
    job = client.create_job("chunked-file-import", 30, 10, owner="acme")
    client.enqueue_task("inbound-email", {"attachment": "prices.csv"})

    with TestClient(app=create_dashboard_app(client)) as http:
        overview = http.get("/")
        assert overview.status_code == 200
        counts = overview.json()["counts"]
        assert counts["jobs"]["pending"] == 1
        assert counts["chunks"]["pending"] == 3
        assert counts["tasks"]["pending"] == 1

        jobs = http.get("/jobs", params={"status": "pending"}).json()
        assert [j["id"] for j in jobs["jobs"]] == [job.id]
        assert http.get("/jobs", params={"kind": "email-batch"}).json()["jobs"] == []

        details = http.get(f"/jobs/{job.id}").json()
        assert details["job"]["owner"] == "acme"
        assert [c["ordinal"] for c in details["chunks"]] == [0, 1, 2]

        tasks = http.get("/tasks").json()
        assert tasks["tasks"][0]["payload"] == {"attachment": "prices.csv"}


def test_dashboard_missing_job(client):
    with TestClient(app=create_dashboard_app(client)) as http:
        assert http.get("/jobs/missing").status_code == 404


def test_dashboard_metrics_and_alerts(client, storage):
    AlertManager(storage, notifiers=[]).raise_alert(AlertSeverity.WARNING, "queue", "backlog")

    with TestClient(app=create_dashboard_app(client)) as http:
        metrics = http.get("/metrics", params={"window": "6h", "unit": "chunk"})
        assert metrics.status_code == 200
        assert metrics.json()["window"] == "6h"
        assert metrics.json()["units"] == ["chunk"]

        assert http.get("/metrics", params={"window": "2h"}).status_code == 400

        alerts = http.get("/alerts").json()["alerts"]
        assert [a["dedupe_key"] for a in alerts] == ["queue:warning"]


# --- Litestar integration ---


def test_litestar_integration_provides_client(storage):
    @get("/job-count")
    async def job_count(chunkflow_client: ChunkFlowClient) -> Dict[str, Any]:
        return {"jobs": len(chunkflow_client.get_jobs())}

    app = Litestar(
        route_handlers=[job_count],
        dependencies={"chunkflow_client": chunkflow_dependency()},
    )
    chunkflow_client = configure_chunkflow(app, storage)
    chunkflow_client.create_job("email-batch", 5, 5)

    with TestClient(app=app) as http:
        assert http.get("/job-count").json() == {"jobs": 1}


# --- FastAPI integration ---


def test_fastapi_job_endpoints(engine, storage):
    app = FastAPI()
    add_chunkflow_to_fastapi(app, engine)

    with FastAPITestClient(app) as http:
        created = http.post(
            "/chunkflow/jobs",
            json={"kind": "chunked-file-import", "total_items": 30, "chunk_size": 10},
        )
        assert created.status_code == 201
        job_id = created.json()["job_id"]
        assert created.json()["total_chunks"] == 3

        summary = http.post(f"/chunkflow/jobs/{job_id}/trigger").json()
        assert summary["processed"] == 3
        assert summary["jobs"] == {job_id: JobStatus.COMPLETED}

        assert http.post("/chunkflow/jobs/missing/trigger").status_code == 404
        assert http.post("/chunkflow/jobs/missing/cancel").status_code == 404

        invalid = http.post(
            "/chunkflow/jobs",
            json={"kind": "chunked-file-import", "total_items": 30, "chunk_size": 0},
        )
        assert invalid.status_code == 400


def test_fastapi_start_continue_and_cancel(engine, storage):
    app = FastAPI()
    add_chunkflow_to_fastapi(app, engine)

    with FastAPITestClient(app) as http:
        started = http.post(
            "/chunkflow/jobs",
            json={"kind": "chunked-file-import", "total_items": 20, "chunk_size": 10, "start": True},
        ).json()
        assert started["summary"]["jobs"] == {started["job_id"]: JobStatus.COMPLETED}

        job_id = http.post(
            "/chunkflow/jobs",
            json={"kind": "chunked-file-import", "total_items": 40, "chunk_size": 10},
        ).json()["job_id"]
        continued = http.post(f"/chunkflow/jobs/{job_id}/continue", json={"cursor": 2}).json()
        assert continued["processed"] == 4

        other = http.post(
            "/chunkflow/jobs",
            json={"kind": "chunked-file-import", "total_items": 40, "chunk_size": 10},
        ).json()["job_id"]
        cancelled = http.post(f"/chunkflow/jobs/{other}/cancel").json()
        assert cancelled == {"job_id": other, "status": JobStatus.CANCELLING}
        assert http.post(f"/chunkflow/jobs/{other}/continue").json()["jobs"] == {
            other: JobStatus.CANCELLED
        }


def test_fastapi_tasks_and_tick(engine, storage):
    app = FastAPI()
    add_chunkflow_to_fastapi(app, engine)

    with FastAPITestClient(app) as http:
        created = http.post(
            "/chunkflow/tasks",
            json={
                "kind": "inbound-email",
                "payload": {"attachment": "prices.csv"},
                "source_identity": "orders@acme.test",
                "content_identity": "prices.csv",
            },
        )
        assert created.status_code == 201
        task_id = created.json()["task_id"]

        assert http.post("/chunkflow/tasks", json={"kind": ""}).status_code == 400
        tick = http.post("/chunkflow/tick").json()
        assert tick["succeeded"] == 1

    assert storage.get_task(task_id).result == {"echo": {"attachment": "prices.csv"}}


def test_fastapi_background_worker_lifecycle(engine):
    app = FastAPI()
    plugin = add_chunkflow_to_fastapi(app, engine)
    plugin.run_worker_in_background(poll_interval=0.01)
    plugin.include_dashboard()

    assert any(getattr(route, "path", None) == "/chunkflow/dashboard" for route in app.routes)
    with FastAPITestClient(app):
        assert plugin._worker_thread.is_alive()
    assert not plugin._worker_thread.is_alive()
