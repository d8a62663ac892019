import logging
import time
import uuid
from contextlib import contextmanager

from redis.exceptions import RedisError

from services.shared.caching import get_redis


logger = logging.getLogger("locks")


# Compare-and-delete so a sync never frees a lock another sync re-acquired after TTL expiry
_RELEASE_LOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


class UserLockHeld(RuntimeError):
    """
    Raised when another sync already holds the per-user lock
    """

    def __init__(self, user_id):
        super().__init__(f"Sync lock already held for user_id={user_id}")
        self.user_id = user_id


def sync_lock_key(user_id):
    return f"devflow:lock:sync:{user_id}"


def acquire_user_lock(user_id, ttl_seconds=900, wait_timeout_seconds=0):
    """
    Acquire the per-user sync lock

    Args:
        user_id (int): GitHub user id
        ttl_seconds (int): Lock TTL so a crashed worker cannot wedge the user
        wait_timeout_seconds (int): Max time to wait; 0 means fail fast

    Returns:
        str lock token used for release

    Raises:
        UserLockHeld: When the lock cannot be acquired within wait_timeout_seconds
    """
    redis_client = get_redis()
    lock_key = sync_lock_key(user_id)
    lock_token = uuid.uuid4().hex

    ttl_seconds = max(1, int(ttl_seconds))
    deadline = time.monotonic() + float(max(0, int(wait_timeout_seconds)))

    while True:
        if redis_client.set(lock_key, lock_token, nx=True, ex=ttl_seconds):
            return lock_token

        if time.monotonic() >= deadline:
            raise UserLockHeld(user_id)

        time.sleep(0.2)


def release_user_lock(user_id, lock_token):
    """
    Release the per-user sync lock if this caller still owns it

    Never raises; best-effort cleanup
    """
    try:
        get_redis().eval(_RELEASE_LOCK_LUA, 1, sync_lock_key(user_id), lock_token)
    except RedisError as exc:
        logger.error(
            "Failed to release sync lock",
            extra={"user_id": user_id, "error": type(exc).__name__},
            exc_info=True,
        )


@contextmanager
def user_sync_lock(user_id, ttl_seconds=900, wait_timeout_seconds=0):
    """
    Hold the per-user sync lock for the duration of the block

    Args:
        user_id (int): GitHub user id
        ttl_seconds (int): Lock TTL
        wait_timeout_seconds (int): Max time to wait for the lock

    Yields:
        str lock token

    Raises:
        UserLockHeld: When another sync holds the lock
    """
    lock_token = acquire_user_lock(user_id, ttl_seconds=ttl_seconds, wait_timeout_seconds=wait_timeout_seconds)
    try:
        yield lock_token
    finally:
        release_user_lock(user_id, lock_token)
