"""Litestar application factory for the chunkflow dashboard API."""
from litestar import Litestar
from litestar.di import Provide
from litestar.datastructures import State

from chunkflow.client import ChunkFlowClient
from .controllers.core import CoreController
from .controllers.jobs import JobsController, TasksController


async def get_client(state: State) -> ChunkFlowClient:
    return state.client


def create_dashboard_app(client: ChunkFlowClient, debug: bool = False) -> Litestar:
    """Create the Litestar application for the dashboard.

    Args:
        client: A chunkflow client instance.
        debug: Enable Litestar debug mode.

    Returns:
        A Litestar application serving JSON for job status, metrics and alerts.
    """
    return Litestar(
        route_handlers=[CoreController, JobsController, TasksController],
        state=State({"client": client}),
        dependencies={"client": Provide(get_client)},
        debug=debug,
    )
