"""Overview, metrics and alert routes."""
from dataclasses import asdict
from typing import Any, Dict, Optional

from litestar import Controller, get
from litestar.exceptions import ValidationException
from litestar.params import Parameter

from chunkflow.client import ChunkFlowClient
from chunkflow.common.exceptions import InvalidInput


class CoreController(Controller):
    path = "/"

    @get()
    async def overview(self, client: ChunkFlowClient) -> Dict[str, Any]:
        return {"counts": client.get_state_counts()}

    @get("/metrics")
    async def metrics(
        self,
        client: ChunkFlowClient,
        window: str = Parameter(query="window", default="1h"),
        unit: Optional[str] = Parameter(query="unit", default=None),
    ) -> Dict[str, Any]:
        try:
            return client.get_metrics(window, unit).as_dict()
        except InvalidInput as e:
            raise ValidationException(detail=str(e)) from e

    @get("/alerts")
    async def alerts(
        self, client: ChunkFlowClient, page: int = Parameter(query="page", default=1)
    ) -> Dict[str, Any]:
        alerts = client.get_alerts(page=page)
        return {"alerts": [asdict(alert) for alert in alerts], "page": page}
