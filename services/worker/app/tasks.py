import logging
import time

import httpx
from celery import shared_task

from services.shared import config as shared_config
from services.shared.celery_config import (
    NOTIFY_ACHIEVEMENTS_TASK,
    NOTIFY_CHALLENGE_RECALC_TASK,
    NOTIFY_INSIGHTS_TASK,
)


logger = logging.getLogger("worker.tasks")

ACHIEVEMENTS_PATH = "/api/achievements/unlock"
INSIGHTS_PATH = "/api/insights/generate"
CHALLENGE_RECALC_PATH = "/api/challenges/update-scores"

_MAX_ERROR_MESSAGE_CHARS = 500


def _truncate_error_message(value):
    normalized = str(value or "").strip()
    if len(normalized) > _MAX_ERROR_MESSAGE_CHARS:
        return normalized[:_MAX_ERROR_MESSAGE_CHARS]
    return normalized


def _post_notification(task_name, path, payload):
    """
    POST one notification to the product backend

    Failures are logged and reported in the result, never raised

    Args:
        task_name (str): Task name used in logs
        path (str): Endpoint path under NOTIFY_BASE_URL
        payload (dict): JSON body

    Returns:
        dict with status ("ok" or "failed"), status_code and optional error
    """
    url = f"{shared_config.NOTIFY_BASE_URL}{path}"
    started = time.monotonic()

    try:
        with httpx.Client(timeout=shared_config.NOTIFY_TIMEOUT_SECONDS) as client:
            response = client.post(url, json=payload)
    except httpx.HTTPError as exc:
        error = _truncate_error_message(f"{type(exc).__name__}: {exc}")
        logger.warning(
            "%s: notifier request failed",
            task_name,
            extra={"url": url, "error": error},
        )
        return {"status": "failed", "status_code": None, "error": error}

    duration = round(time.monotonic() - started, 3)
    if response.status_code >= 400:
        logger.warning(
            "%s: notifier returned HTTP %s",
            task_name,
            response.status_code,
            extra={"url": url, "duration_seconds": duration},
        )
        return {"status": "failed", "status_code": response.status_code, "error": f"http_{response.status_code}"}

    logger.info(
        "%s: notifier accepted",
        task_name,
        extra={"url": url, "status_code": response.status_code, "duration_seconds": duration},
    )
    return {"status": "ok", "status_code": response.status_code}


@shared_task(name=NOTIFY_ACHIEVEMENTS_TASK)
def notify_achievements(user_id):
    return _post_notification(NOTIFY_ACHIEVEMENTS_TASK, ACHIEVEMENTS_PATH, {"userId": user_id})


@shared_task(name=NOTIFY_INSIGHTS_TASK)
def notify_insights(user_id):
    return _post_notification(NOTIFY_INSIGHTS_TASK, INSIGHTS_PATH, {"userId": user_id})


@shared_task(name=NOTIFY_CHALLENGE_RECALC_TASK)
def notify_challenge_recalc():
    return _post_notification(NOTIFY_CHALLENGE_RECALC_TASK, CHALLENGE_RECALC_PATH, {})
