"""Redis run guard: at most one pipeline run in flight per (post, platform account).

The guard is advisory. Keys expire after ``PUBLISH_RUN_LOCK_TTL_SECONDS`` so a
crashed worker never blocks a pair for longer than that, and a run that is
still alive pushes the expiry out between stages.
"""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis


KEY_PREFIX = "postpilot:publish"

# compare-and-delete / compare-and-expire so a run never touches a guard it lost
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


@dataclass(frozen=True)
class RunPair:
    post_id: str
    account_id: str

    @property
    def key(self) -> str:
        return f"{KEY_PREFIX}:{self.post_id}:{self.account_id}"


@dataclass(frozen=True)
class PublishRunLockHandle:
    pair: RunPair
    token: str
    guard: "PublishRunLockManager"

    def extend(self) -> bool:
        return self.guard.extend(self)

    def release(self) -> bool:
        return self.guard.release(self)


class PublishRunLockManager:
    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 300) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, pair: RunPair) -> PublishRunLockHandle | None:
        """Claim the pair; None when another run already holds it."""

        token = uuid.uuid4().hex
        if not self._redis.set(pair.key, token, nx=True, ex=self._ttl_seconds):
            return None
        return PublishRunLockHandle(pair=pair, token=token, guard=self)

    def extend(self, handle: PublishRunLockHandle) -> bool:
        """Reset the expiry; False when the guard already expired or changed hands."""

        return int(self._redis.eval(EXTEND_SCRIPT, 1, handle.pair.key, handle.token, self._ttl_seconds)) == 1

    def release(self, handle: PublishRunLockHandle) -> bool:
        return int(self._redis.eval(RELEASE_SCRIPT, 1, handle.pair.key, handle.token)) == 1
