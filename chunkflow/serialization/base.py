# chunkflow/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Optional

from chunkflow.common.job import Continuation


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_payload(self, data: Any) -> str: ...

    @abstractmethod
    def deserialize_payload(self, data_str: Optional[str], default: Any = None) -> Any: ...

    @abstractmethod
    def serialize_continuation(self, continuation: Continuation) -> str: ...

    @abstractmethod
    def deserialize_continuation(self, data: str) -> Continuation: ...
