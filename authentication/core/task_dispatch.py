import logging

logger = logging.getLogger(__name__)


def _task_name(task):
    return getattr(task, "name", str(task))


def dispatch_task(task, *args, fallback_sync=True, countdown=None, **kwargs):
    """
    Enqueue a Celery task; optionally fall back to in-process execution when
    the broker is unreachable. Returns True when queued or the sync run
    succeeded, else False. Never raises.
    """
    try:
        if countdown:
            task.apply_async(args=args, kwargs=kwargs, countdown=countdown)
        else:
            task.delay(*args, **kwargs)
        return True
    except Exception as queue_error:
        logger.error(
            "Failed to queue task %s with args=%s kwargs=%s: %s",
            _task_name(task),
            args,
            kwargs,
            queue_error,
            exc_info=True,
        )
        if not fallback_sync:
            return False

    try:
        result = task.apply(args=args, kwargs=kwargs)
        if result.failed():
            logger.error("Fallback execution failed for task %s: %s", _task_name(task), result.result)
            return False
        return True
    except Exception as sync_error:
        logger.error("Fallback execution crashed for task %s: %s", _task_name(task), sync_error, exc_info=True)
        return False
