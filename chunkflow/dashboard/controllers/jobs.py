"""Job and task dashboard routes."""
from dataclasses import asdict
from typing import Any, Dict, Optional

from litestar import Controller, get
from litestar.exceptions import NotFoundException
from litestar.params import Parameter

from chunkflow.client import ChunkFlowClient
from chunkflow.common.exceptions import NotFound


class JobsController(Controller):
    path = "/jobs"

    @get()
    async def list_jobs(
        self,
        client: ChunkFlowClient,
        status: Optional[str] = Parameter(query="status", default=None),
        kind: Optional[str] = Parameter(query="kind", default=None),
        page: int = Parameter(query="page", default=1),
    ) -> Dict[str, Any]:
        jobs = client.get_jobs(status=status, kind=kind, page=page)
        return {"jobs": [asdict(job) for job in jobs], "status": status, "page": page}

    @get("/{job_id:str}")
    async def job_details(self, client: ChunkFlowClient, job_id: str) -> Dict[str, Any]:
        try:
            job, chunks = client.get_job_details(job_id)
        except NotFound as e:
            raise NotFoundException(detail=str(e)) from e
        return {"job": asdict(job), "chunks": [asdict(chunk) for chunk in chunks]}


class TasksController(Controller):
    path = "/tasks"

    @get()
    async def list_tasks(
        self,
        client: ChunkFlowClient,
        status: Optional[str] = Parameter(query="status", default=None),
        page: int = Parameter(query="page", default=1),
    ) -> Dict[str, Any]:
        tasks = client.get_tasks(status=status, page=page)
        return {"tasks": [asdict(task) for task in tasks], "status": status, "page": page}
