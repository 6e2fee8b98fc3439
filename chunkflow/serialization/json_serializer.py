# chunkflow/serialization/json_serializer.py
import json
from datetime import datetime
from typing import Any, Optional

from chunkflow.serialization.base import BaseSerializer
from chunkflow.common.job import Continuation


class JsonSerializer(BaseSerializer):
    def serialize_payload(self, data: Any) -> str:
        if data is None:
            return "null"
        if isinstance(data, str):
            return json.dumps(data)
        # Datetimes and other non-JSON types degrade to their string form.
        return json.dumps(data, default=str)

    def deserialize_payload(self, data_str: Optional[str], default: Any = None) -> Any:
        if not data_str:
            return default
        try:
            value = json.loads(data_str)
        except (TypeError, json.JSONDecodeError):
            return default
        return default if value is None else value

    def serialize_continuation(self, continuation: Continuation) -> str:
        return json.dumps(
            {
                "id": continuation.id,
                "job_id": continuation.job_id,
                "cursor": continuation.cursor,
                "not_before": continuation.not_before.isoformat(),
            }
        )

    def deserialize_continuation(self, data: str) -> Continuation:
        payload = json.loads(data)
        return Continuation(
            id=payload["id"],
            job_id=payload["job_id"],
            cursor=int(payload.get("cursor", 0)),
            not_before=datetime.fromisoformat(payload["not_before"]),
        )
