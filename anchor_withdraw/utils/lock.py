from contextlib import contextmanager
import time
import uuid
from anchor_withdraw.core.errors import AttemptBusyError
from anchor_withdraw.settings import settings
from anchor_withdraw.store.redis_conn import get_redis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

@contextmanager
def attempt_lock(attempt_id: str, ttl_ms: int = 0, scope: str = "call"):
    """
    Distributed lock per withdrawal attempt.

    scope="call": at most one anchor call in flight per attempt. Each call's
    outcome becomes exactly one action, so two concurrent calls could deliver
    their actions out of order and regress the state. Held for the whole call.

    scope="state": guards one load/reduce/save of the persisted state. Held
    briefly; user actions take only this one so they never wait on the anchor.
    """
    r = get_redis()
    key = f"lock:withdrawal:{scope}:{attempt_id}"
    token = uuid.uuid4().hex
    ttl_ms = int(ttl_ms or settings.ATTEMPT_LOCK_TTL_MS)
    acquired = r.set(key, token, px=ttl_ms, nx=True)

    try:
        if not acquired:
            # Short spin, then give up
            for _ in range(5):
                time.sleep(0.1)
                if r.set(key, token, px=ttl_ms, nx=True):
                    acquired = True
                    break

            if not acquired:
                raise AttemptBusyError(f"Could not acquire {scope} lock for attempt {attempt_id}")

        yield
    finally:
        if acquired:
            # Release only if we own it
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except Exception:
                pass
