"""
Celery routing shared by the API (dispatch side) and the notifier worker
"""

CELERY_NOTIFY_QUEUE = "notify"

CELERY_QUEUE_NAMES = (CELERY_NOTIFY_QUEUE,)

NOTIFY_ACHIEVEMENTS_TASK = "notify_achievements"
NOTIFY_INSIGHTS_TASK = "notify_insights"
NOTIFY_CHALLENGE_RECALC_TASK = "notify_challenge_recalc"

CELERY_TASK_ROUTES = {
    NOTIFY_ACHIEVEMENTS_TASK: {"queue": CELERY_NOTIFY_QUEUE},
    NOTIFY_INSIGHTS_TASK: {"queue": CELERY_NOTIFY_QUEUE},
    NOTIFY_CHALLENGE_RECALC_TASK: {"queue": CELERY_NOTIFY_QUEUE},
}
