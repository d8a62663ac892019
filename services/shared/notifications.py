import logging
from typing import Dict, Optional

from celery import Celery

from services.shared.celery_config import (
    CELERY_NOTIFY_QUEUE,
    NOTIFY_ACHIEVEMENTS_TASK,
    NOTIFY_CHALLENGE_RECALC_TASK,
    NOTIFY_INSIGHTS_TASK,
)
from services.shared.config import REDIS_URL


logger = logging.getLogger("notifications")

_celery_client: Optional[Celery] = None


def get_celery_client() -> Celery:
    """
    Get or create the Celery client used for dispatch only

    Returns:
        Celery app bound to the Redis broker
    """
    global _celery_client
    if _celery_client is None:
        _celery_client = Celery("devflow-dispatch", broker=REDIS_URL, backend=REDIS_URL)
        _celery_client.conf.task_default_queue = CELERY_NOTIFY_QUEUE
    return _celery_client


def _dispatch(task_name, args) -> bool:
    try:
        get_celery_client().send_task(task_name, args=args, queue=CELERY_NOTIFY_QUEUE)
    except Exception as exc:
        logger.warning(
            "notifications: failed to enqueue %s error=%s",
            task_name,
            type(exc).__name__,
            extra={"task_name": task_name, "task_args": args},
        )
        return False
    return True


def dispatch_post_sync_notifications(user_id) -> Dict[str, bool]:
    """
    Enqueue the downstream notifiers after a completed sync

    Never raises; each dispatch is attempted independently

    Args:
        user_id (int): GitHub user id

    Returns:
        dict task name -> whether it was enqueued
    """
    return {
        NOTIFY_ACHIEVEMENTS_TASK: _dispatch(NOTIFY_ACHIEVEMENTS_TASK, [user_id]),
        NOTIFY_INSIGHTS_TASK: _dispatch(NOTIFY_INSIGHTS_TASK, [user_id]),
        NOTIFY_CHALLENGE_RECALC_TASK: _dispatch(NOTIFY_CHALLENGE_RECALC_TASK, []),
    }
