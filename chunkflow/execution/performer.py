# chunkflow/execution/performer.py
import asyncio
import importlib
import inspect
from typing import Any, Callable

from chunkflow.common.exceptions import ProcessorLoadError


def load_callable(path: str) -> Callable:
    """Resolve ``"package.module:function"`` (or ``package.module.function``)."""
    if ":" in path:
        module_name, func_name = path.split(":", 1)
    else:
        module_name, _, func_name = path.rpartition(".")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, func_name)
    except (ImportError, AttributeError, ValueError) as e:
        raise ProcessorLoadError(f"Could not load processor: {path}") from e
    if not callable(target):
        raise ProcessorLoadError(f"Processor is not callable: {path}")
    return target


def perform(target_func: Callable, *args: Any) -> Any:
    """Call a processor, running it to completion if it is a coroutine function."""
    if inspect.iscoroutinefunction(target_func):
        return asyncio.run(target_func(*args))
    result = target_func(*args)
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable):
    return await awaitable
