"""Redis-backed record store."""

import json
import threading
from typing import List, Optional

import redis

from ..config import Config
from ..errors import NotFound
from ..models import AutoScalerPolicy
from .base import RecordStore


class RedisRecordStore(RecordStore):
    """
    Record store persisted in Redis.

    Layout (``prefix`` defaults to ``volumania``):
    - ``<prefix>:policies``: hash of policy id -> JSON record
    - ``<prefix>:policy-order``: sorted set of policy ids scored by insertion sequence
    - ``<prefix>:policy-seq``: insertion sequence counter
    """

    def __init__(
        self,
        url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__()
        self.url = url or Config.REDIS_URL
        self.prefix = prefix or Config.REDIS_KEY_PREFIX
        self.redis_client = client
        self._lock = threading.RLock()

    @property
    def _hash_key(self) -> str:
        return f"{self.prefix}:policies"

    @property
    def _order_key(self) -> str:
        return f"{self.prefix}:policy-order"

    @property
    def _seq_key(self) -> str:
        return f"{self.prefix}:policy-seq"

    def _get_client(self) -> redis.Redis:
        """Get or create Redis client."""
        if self.redis_client is None:
            self.redis_client = redis.Redis.from_url(self.url, decode_responses=True)
        return self.redis_client

    def put(self, policy: AutoScalerPolicy) -> None:
        record = json.dumps(policy.to_dict())
        with self._lock:
            client = self._get_client()
            is_new = not client.hexists(self._hash_key, policy.id)
            seq = client.incr(self._seq_key) if is_new else None

            pipe = client.pipeline(transaction=True)
            pipe.hset(self._hash_key, policy.id, record)
            if is_new:
                pipe.zadd(self._order_key, {policy.id: seq})
            pipe.execute()

        self.logger.debug(f"Stored autoscaler {policy.id} in Redis")

    def get(self, policy_id: str) -> AutoScalerPolicy:
        with self._lock:
            record = self._get_client().hget(self._hash_key, policy_id)
        if record is None:
            raise NotFound(f"AutoScaler {policy_id} not found")
        return AutoScalerPolicy.from_dict(json.loads(record))

    def list(self) -> List[AutoScalerPolicy]:
        with self._lock:
            client = self._get_client()
            ids = client.zrange(self._order_key, 0, -1)
            if not ids:
                return []
            records = client.hmget(self._hash_key, ids)

        policies = []
        for policy_id, record in zip(ids, records):
            if record is None:
                # Order entry left behind by an interrupted delete
                self.logger.warning(f"Missing Redis record for autoscaler {policy_id}")
                continue
            policies.append(AutoScalerPolicy.from_dict(json.loads(record)))
        return policies

    def delete(self, policy_id: str) -> bool:
        with self._lock:
            pipe = self._get_client().pipeline(transaction=True)
            pipe.hdel(self._hash_key, policy_id)
            pipe.zrem(self._order_key, policy_id)
            removed, _ = pipe.execute()
        return bool(removed)

    def close(self):
        """Close the Redis connection."""
        if self.redis_client:
            self.redis_client.close()
