"""
Redis-backed wake queue.

A sorted set scored by wake timestamp indexes the keys; a hash keeps the
exact ISO wake time so the scheduler's staleness check compares the same
value the instance row holds.
"""

from datetime import datetime, timezone

import redis

from flows_core.engine.wakes import WakeQueue

# Claims every due key and its exact time in one step, so a push racing the
# claim either lands before it (and is claimed) or after it (and is kept).
POP_DUE_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local claimed = {}
for _, key in ipairs(due) do
    redis.call('ZREM', KEYS[1], key)
    local at = redis.call('HGET', KEYS[2], key)
    redis.call('HDEL', KEYS[2], key)
    if at then
        table.insert(claimed, key)
        table.insert(claimed, at)
    end
end
return claimed
"""


class RedisWakeQueue(WakeQueue):
    def __init__(self, redis_client: redis.Redis, key: str = "flows:wakes"):
        self.redis = redis_client
        self.key = key
        self.times_key = f"{key}:at"
        self._pop_due = redis_client.register_script(POP_DUE_SCRIPT)

    def push(self, key: str, wake_at: datetime) -> None:
        pipe = self.redis.pipeline()
        pipe.hset(self.times_key, key, wake_at.isoformat())
        pipe.zadd(self.key, {key: wake_at.timestamp()})
        pipe.execute()

    def remove(self, key: str) -> None:
        pipe = self.redis.pipeline()
        pipe.zrem(self.key, key)
        pipe.hdel(self.times_key, key)
        pipe.execute()

    def pop_due(self, now: datetime) -> list[tuple[str, datetime]]:
        flat = self._pop_due(keys=[self.key, self.times_key], args=[repr(now.timestamp())])
        return [(key, datetime.fromisoformat(raw)) for key, raw in zip(flat[::2], flat[1::2])]

    def peek(self) -> datetime | None:
        first = self.redis.zrange(self.key, 0, 0, withscores=True)
        if not first:
            return None
        return datetime.fromtimestamp(first[0][1], tz=timezone.utc)

    def __len__(self) -> int:
        return int(self.redis.zcard(self.key))
