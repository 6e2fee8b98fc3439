"""Example of how to run the chunkflow dashboard API."""
from __future__ import annotations

import argparse
import logging

import uvicorn

from chunkflow.client import ChunkFlowClient
from chunkflow.config import Settings
from chunkflow.dashboard.app import create_dashboard_app
from chunkflow.storage.memory_storage import MemoryStorage
from chunkflow.storage.sql_storage import SqlStorage


def create_client(settings: Settings, storage: str, connection_url: str | None) -> ChunkFlowClient:
    storage = storage.strip().lower()
    if storage == "memory":
        return ChunkFlowClient(MemoryStorage(), settings)
    if storage != "sql":
        raise ValueError("storage must be 'sql' or 'memory'")
    if not connection_url:
        raise ValueError("--connection-url is required for the sql backend")
    return ChunkFlowClient(SqlStorage(connection_url=connection_url), settings)


def build_arg_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the chunkflow dashboard")
    parser.add_argument(
        "--storage",
        choices=["sql", "memory"],
        default=settings.storage,
        help="Storage backend to use (env: CHUNKFLOW_STORAGE).",
    )
    parser.add_argument(
        "--connection-url",
        default=settings.database_url,
        help="SQLAlchemy URL for the sql backend (env: CHUNKFLOW_DATABASE_URL).",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    return parser


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    settings = Settings()
    args = build_arg_parser(settings).parse_args()
    client = create_client(settings, args.storage, args.connection_url)
    app = create_dashboard_app(client, debug=True)
    uvicorn.run(app, host=args.host, port=args.port)
