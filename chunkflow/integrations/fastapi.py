"""FastAPI integration helpers for chunkflow."""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

try:
    from fastapi import APIRouter, FastAPI, HTTPException
    from pydantic import BaseModel, Field
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "FastAPI integration requires 'fastapi'. Install with `pip install fastapi`."
    ) from exc

from chunkflow.client import ChunkFlowClient
from chunkflow.common.exceptions import InvalidInput, NotFound
from chunkflow.server.engine import ContinuationEngine
from chunkflow.server.scheduler import Scheduler
from chunkflow.server.worker import Worker


class JobCreateRequest(BaseModel):
    kind: str
    total_items: int
    chunk_size: int
    owner: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    start: bool = False


class TaskCreateRequest(BaseModel):
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source_identity: Optional[str] = None
    content_identity: Optional[str] = None
    owner: Optional[str] = None
    priority: int = 0
    received_at: Optional[datetime] = None


class ContinueRequest(BaseModel):
    cursor: Optional[int] = None


class ChunkFlowFastAPIPlugin:
    def __init__(self, app: FastAPI, engine: ContinuationEngine, prefix: str = "/chunkflow"):
        self.app = app
        self.engine = engine
        self.client = ChunkFlowClient(engine.storage, engine.settings, clock=engine.clock)
        self.worker: Optional[Worker] = None
        self._worker_thread: Optional[threading.Thread] = None

        app.state.chunkflow_client = self.client
        app.state.chunkflow_engine = engine
        app.include_router(self._build_router(), prefix=prefix)
        self._wrap_lifespan()

    def _wrap_lifespan(self) -> None:
        original = self.app.router.lifespan_context

        @asynccontextmanager
        async def lifespan(app):
            await self.startup()
            try:
                async with original(app) as state:
                    yield state
            finally:
                await self.shutdown()

        self.app.router.lifespan_context = lifespan

    def _build_router(self) -> APIRouter:
        router = APIRouter(tags=["chunkflow"])
        engine = self.engine
        client = self.client

        @router.post("/tick")
        def tick() -> Dict[str, Any]:
            return engine.tick().as_dict()

        @router.post("/jobs", status_code=201)
        def create_job(request: JobCreateRequest) -> Dict[str, Any]:
            try:
                job = client.create_job(
                    request.kind,
                    request.total_items,
                    request.chunk_size,
                    owner=request.owner,
                    params=request.params,
                )
            except InvalidInput as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            response: Dict[str, Any] = {"job_id": job.id, "total_chunks": job.total_chunks}
            if request.start:
                response["summary"] = engine.resume(job.id).as_dict()
            return response

        @router.post("/jobs/{job_id}/trigger")
        def trigger_job(job_id: str) -> Dict[str, Any]:
            try:
                return engine.trigger(job_id).as_dict()
            except NotFound as e:
                raise HTTPException(status_code=404, detail=str(e)) from e

        @router.post("/jobs/{job_id}/continue")
        def continue_job(job_id: str, request: Optional[ContinueRequest] = None) -> Dict[str, Any]:
            cursor = request.cursor if request else None
            try:
                return engine.resume(job_id, cursor).as_dict()
            except NotFound as e:
                raise HTTPException(status_code=404, detail=str(e)) from e

        @router.post("/jobs/{job_id}/cancel")
        def cancel_job(job_id: str) -> Dict[str, Any]:
            try:
                return {"job_id": job_id, "status": client.cancel_job(job_id)}
            except NotFound as e:
                raise HTTPException(status_code=404, detail=str(e)) from e

        @router.post("/tasks", status_code=201)
        def enqueue_task(request: TaskCreateRequest) -> Dict[str, Any]:
            try:
                task_id = client.enqueue_task(
                    request.kind,
                    payload=request.payload,
                    source_identity=request.source_identity,
                    content_identity=request.content_identity,
                    owner=request.owner,
                    priority=request.priority,
                    received_at=request.received_at,
                )
            except InvalidInput as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            return {"task_id": task_id}

        return router

    def get_client(self) -> ChunkFlowClient:
        return self.client

    def include_dashboard(self, path: str = "/chunkflow/dashboard", debug: bool = False) -> None:
        from chunkflow.dashboard.app import create_dashboard_app

        dashboard_app = create_dashboard_app(self.client, debug=debug)
        self.app.mount(path, dashboard_app)

    def run_worker_in_background(
        self, scheduler: Optional[Scheduler] = None, **worker_options
    ) -> "ChunkFlowFastAPIPlugin":
        self.worker = Worker(self.engine, scheduler, **worker_options)
        self._worker_thread = threading.Thread(target=self.worker.run, daemon=True)
        return self

    async def startup(self) -> None:
        if self._worker_thread and not self._worker_thread.is_alive():
            self._worker_thread.start()

    async def shutdown(self) -> None:
        if self.worker:
            self.worker.request_shutdown()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=10)


def add_chunkflow_to_fastapi(
    app: FastAPI, engine: ContinuationEngine, prefix: str = "/chunkflow"
) -> ChunkFlowFastAPIPlugin:
    return ChunkFlowFastAPIPlugin(app, engine, prefix=prefix)
