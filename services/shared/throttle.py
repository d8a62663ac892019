import hashlib
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx


from services.shared.caching import get_redis
from services.shared.config import (
    GH_API_URL,
    GH_CONCURRENCY_PER_TOKEN,
    GH_COOLDOWN_MAX_WAIT_SECONDS,
    GH_REDIS_PREFIX,
    GH_REQUEST_TIMEOUT_SECONDS,
    GH_SEMAPHORE_ACQUIRE_TIMEOUT_SECONDS,
    GH_SEMAPHORE_TTL_SECONDS,
)

DEFAULT_GITHUB_TIMEOUT = GH_REQUEST_TIMEOUT_SECONDS
GITHUB_API_VERSION = "2022-11-28"

logger = logging.getLogger("throttle")


class ThrottleUnavailable(RuntimeError):
    """
    Raised when Redis cannot coordinate GitHub throttling
    """

_ACQUIRE_SEMAPHORE_LUA = """
local val = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
if val <= tonumber(ARGV[1]) then
  return val
end
redis.call('DECR', KEYS[1])
return 0
"""

_RELEASE_SEMAPHORE_LUA = """
local val = redis.call('DECR', KEYS[1])
if val <= 0 then
  redis.call('DEL', KEYS[1])
end
return val
"""


def token_hash(token):
    """
    Stable hash of the token used for Redis keys and log lines

    Args:
        token (str): OAuth token

    Returns:
        str token hash prefix
    """
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()[:32]


def _budget_key(hashed):
    return f"{GH_REDIS_PREFIX}budget:{hashed}"


def _cooldown_key(hashed):
    return f"{GH_REDIS_PREFIX}cooldown:{hashed}"


def _sem_key(hashed):
    return f"{GH_REDIS_PREFIX}sem:{hashed}"


def parse_retry_after(value):
    """
    Parse a Retry-After header expressed as seconds or an HTTP date

    Args:
        value (str): Header value or None

    Returns:
        int seconds (0 when missing or unparseable)
    """
    if not value:
        return 0

    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        pass

    try:
        dt = parsedate_to_datetime(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        return max(0, int((dt - now).total_seconds()))
    except (TypeError, ValueError, OverflowError):
        return 0


def _acquire_token_semaphore(redis_client, hashed, limit, timeout_seconds):
    """
    Acquire a per-token concurrency permit using a counter semaphore

    Args:
        redis_client: Redis client
        hashed (str): Token hash used in key names
        limit (int): Maximum concurrent requests per token
        timeout_seconds (int): Maximum time to wait for a permit

    Raises:
        TimeoutError: When a permit cannot be acquired within the timeout
    """
    sem_key = _sem_key(hashed)
    ttl_seconds = max(30, int(GH_SEMAPHORE_TTL_SECONDS))
    deadline = time.monotonic() + float(timeout_seconds)

    while True:
        if time.monotonic() > deadline:
            raise TimeoutError(
                f"Timed out acquiring GitHub semaphore for token={hashed[:6]} timeout={timeout_seconds}s"
            )

        try:
            value = int(redis_client.eval(_ACQUIRE_SEMAPHORE_LUA, 1, sem_key, int(limit), int(ttl_seconds)))
        except Exception as exc:
            raise ThrottleUnavailable("Redis unavailable for GitHub throttling") from exc

        if value > 0:
            return

        time.sleep(0.2)


def _release_token_semaphore(redis_client, hashed):
    """
    Release a per-token concurrency permit

    Never raises; best-effort cleanup
    """
    try:
        redis_client.eval(_RELEASE_SEMAPHORE_LUA, 1, _sem_key(hashed))
    except Exception as exc:
        logger.warning(
            "throttle: failed to release semaphore token=%s error=%s",
            hashed[:6],
            type(exc).__name__,
        )


def _wait_for_secondary_cooldown(redis_client, hashed):
    cd_key = _cooldown_key(hashed)

    while redis_client.exists(cd_key):
        ttl_seconds = redis_client.ttl(cd_key)

        if ttl_seconds == -2:
            return

        if ttl_seconds in (None, -1):
            logger.warning("throttle: cooldown key missing TTL; repairing (token=%s)", hashed[:6])
            redis_client.expire(cd_key, min(5, GH_COOLDOWN_MAX_WAIT_SECONDS))
            ttl_seconds = redis_client.ttl(cd_key)

        if ttl_seconds is not None and ttl_seconds > GH_COOLDOWN_MAX_WAIT_SECONDS:
            logger.warning(
                "throttle: cooldown TTL too large; capping to %ss (token=%s)",
                GH_COOLDOWN_MAX_WAIT_SECONDS,
                hashed[:6],
            )
            redis_client.expire(cd_key, GH_COOLDOWN_MAX_WAIT_SECONDS)
            ttl_seconds = GH_COOLDOWN_MAX_WAIT_SECONDS

        sleep_seconds = 1 if ttl_seconds is None or ttl_seconds < 1 else min(5, ttl_seconds)
        logger.info("throttle: secondary cooldown active for %s, ttl=%s", hashed[:6], ttl_seconds)
        time.sleep(sleep_seconds)


def begin_request(github_token):
    """
    Block while a cooldown or an exhausted primary budget applies, then acquire a permit

    Args:
        github_token (str): OAuth token

    Returns:
        tuple (token hash, redis client) for end_request
    """
    hashed = token_hash(github_token)
    redis_client = get_redis()

    _wait_for_secondary_cooldown(redis_client, hashed)

    budget = redis_client.hgetall(_budget_key(hashed)) or {}
    try:
        remaining = int(budget.get(b"remaining", b"-1"))
        reset_epoch = int(budget.get(b"reset_epoch", b"0"))
    except (TypeError, ValueError):
        remaining, reset_epoch = -1, 0

    now_epoch = int(time.time())
    if remaining == 0 and reset_epoch > now_epoch:
        wait_seconds = min(max(0, reset_epoch - now_epoch) + 1, GH_COOLDOWN_MAX_WAIT_SECONDS)
        logger.info("throttle: waiting for primary reset %ss (token=%s)", wait_seconds, hashed[:6])
        time.sleep(wait_seconds)

    _acquire_token_semaphore(
        redis_client,
        hashed,
        limit=GH_CONCURRENCY_PER_TOKEN,
        timeout_seconds=max(1, int(GH_SEMAPHORE_ACQUIRE_TIMEOUT_SECONDS)),
    )
    return hashed, redis_client


def end_request(redis_client, response, hashed):
    """
    Record the budget headers and any Retry-After cooldown, then release the permit

    Never raises; errors are logged but do not mask upstream failures

    Args:
        redis_client: Redis client from begin_request
        response (httpx.Response): HTTP response
        hashed (str): Token hash returned from begin_request

    Returns:
        None
    """
    if redis_client is None:
        logger.warning("throttle: end_request missing redis_client token=%s", hashed[:6])
        return

    try:
        remaining_hdr = response.headers.get("X-RateLimit-Remaining")
        reset_hdr = response.headers.get("X-RateLimit-Reset")
        if remaining_hdr is not None and reset_hdr is not None:
            try:
                remaining = int(remaining_hdr)
                reset_epoch = int(reset_hdr)
                ttl = max(0, reset_epoch - int(time.time())) + 5
                redis_client.hset(
                    _budget_key(hashed),
                    mapping={"remaining": remaining, "reset_epoch": reset_epoch},
                )
                redis_client.expire(_budget_key(hashed), ttl)
            except Exception as exc:
                logger.warning(
                    "throttle: failed to update budget token=%s error=%s",
                    hashed[:6],
                    type(exc).__name__,
                )

        if response.status_code in (403, 429):
            seconds = parse_retry_after(response.headers.get("Retry-After"))
            if seconds > 0:
                try:
                    redis_client.setex(_cooldown_key(hashed), seconds, 1)
                    logger.info("throttle: applying Retry-After cooldown %ss token=%s", seconds, hashed[:6])
                except Exception as exc:
                    logger.warning(
                        "throttle: failed to set cooldown token=%s error=%s",
                        hashed[:6],
                        type(exc).__name__,
                    )
    finally:
        _release_token_semaphore(redis_client, hashed)


@contextmanager
def _http_client(timeout=DEFAULT_GITHUB_TIMEOUT):
    with httpx.Client(timeout=timeout) as client:
        yield client


def send_github_request(github_token, path, params=None, timeout=DEFAULT_GITHUB_TIMEOUT):
    """
    Send one GET request to the GitHub REST API under Redis-coordinated throttling

    Does not retry; status handling belongs to the caller. Transport errors
    (timeouts, connection failures) propagate as httpx exceptions

    Args:
        github_token (str): OAuth token
        path (str): API path such as '/search/commits'
        params (dict): Query parameters
        timeout (float): HTTP client timeout per request

    Returns:
        httpx.Response

    Raises:
        PermissionError: When GitHub answers 401
        TimeoutError: When no per-token permit frees up in time
        ThrottleUnavailable: When Redis cannot coordinate the request
    """
    hashed, redis_client = begin_request(github_token)
    headers = {
        "Authorization": f"Bearer {github_token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
    }
    response = None

    try:
        with _http_client(timeout=timeout) as client:
            response = client.get(f"{GH_API_URL}{path}", headers=headers, params=params or {})
    finally:
        if response is not None:
            end_request(redis_client, response, hashed)
        else:
            _release_token_semaphore(redis_client, hashed)

    if response.status_code == 401:
        raise PermissionError("GitHub token unauthorized")

    logger.debug(
        "throttle: request completed (path=%s, status=%s, token=%s, remaining=%s)",
        path,
        response.status_code,
        hashed[:6],
        response.headers.get("X-RateLimit-Remaining", "?"),
    )
    return response
