"""Litestar integration helpers for chunkflow."""

from __future__ import annotations

from typing import Optional

try:
    from litestar import Litestar
    from litestar.datastructures import State
    from litestar.di import Provide
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError(
        "Litestar integration requires 'litestar'. Install with `pip install litestar`."
    ) from exc

from chunkflow.client import ChunkFlowClient
from chunkflow.config import Settings
from chunkflow.storage.base import JobStorage


def get_chunkflow_client(state: State) -> ChunkFlowClient:
    return state.chunkflow_client


def chunkflow_dependency() -> Provide:
    return Provide(get_chunkflow_client, sync_to_thread=False)


def configure_chunkflow(
    app: Litestar, storage: JobStorage, settings: Optional[Settings] = None
) -> ChunkFlowClient:
    client = ChunkFlowClient(storage, settings)
    app.state.chunkflow_client = client
    return client
