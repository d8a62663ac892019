import copy
import logging

from celery import Celery
from kombu import Queue

from services.shared.celery_config import (
    CELERY_NOTIFY_QUEUE,
    CELERY_QUEUE_NAMES,
    CELERY_TASK_ROUTES,
)
from services.shared.config import LOG_LEVEL, REDIS_URL, validate_config


def create_celery():
    """
    Create the notifier worker app configured with Redis

    Returns:
        Celery app
    """
    validate_config()
    logging.basicConfig(level=LOG_LEVEL)

    app = Celery(
        "devflow-worker",
        broker=REDIS_URL,
        backend=REDIS_URL,
        include=["services.worker.app.tasks"],
    )
    app.conf.task_default_queue = CELERY_NOTIFY_QUEUE
    app.conf.task_queues = tuple(Queue(name) for name in CELERY_QUEUE_NAMES)
    app.conf.task_routes = copy.deepcopy(CELERY_TASK_ROUTES)

    # Notifier results are never read
    app.conf.task_ignore_result = True
    app.conf.task_acks_late = True
    app.conf.task_reject_on_worker_lost = True

    return app


celery_app = create_celery()


if __name__ == "__main__":
    celery_app.start()
