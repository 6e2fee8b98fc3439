# chunkflow/dispatch/redis_queue.py
import logging
from datetime import datetime, UTC
from typing import List, Optional

import redis

from chunkflow.common.job import Continuation
from chunkflow.serialization.base import BaseSerializer
from chunkflow.serialization.json_serializer import JsonSerializer
from .base import ContinuationQueue

logger = logging.getLogger(__name__)


class RedisContinuationQueue(ContinuationQueue):
    """Continuations in a sorted set scored by ``not_before`` (epoch seconds).

    Members are job ids; the serialized continuation for each lives in a
    companion hash. Push and pop are Lua scripts so that concurrent workers
    never pop the same continuation.
    """

    def __init__(
        self,
        redis_client=None,
        connection_pool=None,
        key: str = "chunkflow:continuations",
        serializer: Optional[BaseSerializer] = None,
    ):
        if redis_client:
            self.redis_client = redis_client
            if not getattr(self.redis_client, "decode_responses", False):
                self.redis_client = redis.Redis(
                    connection_pool=self.redis_client.connection_pool,
                    decode_responses=True,
                )
        elif connection_pool:
            self.redis_client = redis.Redis(
                connection_pool=connection_pool, decode_responses=True
            )
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )

        self.key = key
        self.payload_key = f"{key}:payload"
        self.serializer = serializer or JsonSerializer()

        # Keeps the earlier not_before when a job already has a continuation.
        self.push_script = self.redis_client.register_script("""
            local zset_key = KEYS[1]
            local hash_key = KEYS[2]
            local job_id = ARGV[1]
            local score = tonumber(ARGV[2])
            local payload = ARGV[3]

            local current = redis.call('ZSCORE', zset_key, job_id)
            if current and tonumber(current) < score then
                score = tonumber(current)
            end
            redis.call('ZADD', zset_key, score, job_id)
            redis.call('HSET', hash_key, job_id, payload)
            return tostring(score)
        """)

        self.pop_due_script = self.redis_client.register_script("""
            local zset_key = KEYS[1]
            local hash_key = KEYS[2]
            local now = ARGV[1]
            local limit = tonumber(ARGV[2])

            local job_ids = redis.call('ZRANGEBYSCORE', zset_key, '-inf', now, 'LIMIT', 0, limit)
            local result = {}
            for _, job_id in ipairs(job_ids) do
                local score = redis.call('ZSCORE', zset_key, job_id)
                local payload = redis.call('HGET', hash_key, job_id)
                redis.call('ZREM', zset_key, job_id)
                redis.call('HDEL', hash_key, job_id)
                if payload then
                    table.insert(result, payload)
                    table.insert(result, score)
                end
            end
            return result
        """)

    def push(self, continuation: Continuation) -> None:
        self.push_script(
            keys=[self.key, self.payload_key],
            args=[
                continuation.job_id,
                continuation.not_before.timestamp(),
                self.serializer.serialize_continuation(continuation),
            ],
        )
        logger.debug(
            f"Queued continuation for job {continuation.job_id} at cursor {continuation.cursor}"
        )

    def _decode(self, payload: str, score) -> Continuation:
        continuation = self.serializer.deserialize_continuation(payload)
        continuation.not_before = datetime.fromtimestamp(float(score), UTC)
        return continuation

    def pop_due(self, now: datetime, limit: int = 10) -> List[Continuation]:
        raw = self.pop_due_script(
            keys=[self.key, self.payload_key], args=[now.timestamp(), limit]
        )
        return [self._decode(raw[i], raw[i + 1]) for i in range(0, len(raw), 2)]

    def peek(self, job_id: str) -> Optional[Continuation]:
        payload = self.redis_client.hget(self.payload_key, job_id)
        score = self.redis_client.zscore(self.key, job_id)
        if payload is None or score is None:
            return None
        return self._decode(payload, score)

    def __len__(self) -> int:
        return int(self.redis_client.zcard(self.key))
