from .client import ChunkFlowClient
from .config import Settings, configure as _configure, get_settings, get_storage
from .execution.registry import ProcessorRegistry
from .server.engine import ContinuationEngine

_client: ChunkFlowClient | None = None


def configure(storage, settings: Settings | None = None) -> None:
    _configure(storage, settings)
    global _client
    _client = None


def get_client() -> ChunkFlowClient:
    global _client
    if _client is None:
        _client = ChunkFlowClient(get_storage(), get_settings())
    return _client


def build_engine(processors: ProcessorRegistry | None = None, **engine_options) -> ContinuationEngine:
    return ContinuationEngine(get_storage(), processors, settings=get_settings(), **engine_options)


__all__ = [
    "ChunkFlowClient",
    "ContinuationEngine",
    "ProcessorRegistry",
    "Settings",
    "configure",
    "build_engine",
    "get_client",
    "get_settings",
    "get_storage",
]
