# main.py
import logging

from chunkflow.config import Settings
from chunkflow.execution.registry import ProcessorRegistry
from chunkflow.client import ChunkFlowClient
from chunkflow.common.exceptions import TransientError
from chunkflow.server.engine import ContinuationEngine
from chunkflow.storage.memory_storage import MemoryStorage

processors = ProcessorRegistry()
_attempts = {}


@processors.register_chunk_processor("supplier-import")
def import_supplier_rows(job, chunk):
    # Fail the second chunk once to show the retry path.
    _attempts[chunk.ordinal] = _attempts.get(chunk.ordinal, 0) + 1
    if chunk.ordinal == 1 and _attempts[chunk.ordinal] == 1:
        raise TransientError("Supplier API timeout")
    return {"matched": chunk.size - 2, "new": 2}


@processors.register_task_processor("inbound-email")
def process_email(task):
    logging.info(f"Processing attachment {task.payload.get('attachment')}")
    return {"rows": 12}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # 1. Configure chunkflow
    storage = MemoryStorage()
    settings = Settings(retry_initial_delay=0, retry_stagger=0, inter_batch_pause=0)
    engine = ContinuationEngine(storage, processors, settings=settings)
    client = ChunkFlowClient(storage, settings)

    # 2. Register a job and drive it to completion the way a worker would
    job = client.create_job("supplier-import", total_items=250, chunk_size=50, owner="demo")
    print(f"First slice: {engine.trigger(job.id).as_dict()}")
    for _ in range(10):
        if not len(engine.queue):
            break
        print(f"Continuation: {engine.drain_continuations().as_dict()}")

    # 3. The same email delivered twice; the redelivery is ignored
    for _ in range(2):
        client.enqueue_task(
            "inbound-email",
            {"attachment": "catalog.csv"},
            source_identity="supplier-42",
            content_identity="catalog.csv",
        )
        print(f"Tasks: {engine.process_tasks().as_dict()}")

    final = client.get_job(job.id)
    print(f"\nJob {final.id}: {final.status}, {final.processed_items} items, totals {final.result_totals}")
    print(f"Counts: {client.get_state_counts()}")
