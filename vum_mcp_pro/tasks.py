from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .errors import TaskCancelledError, TaskTimeoutError, VumTaskError
from .models import MoRef, TaskInfo, TaskState

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TaskInfo], None]


def wait_for_task(
    session,
    task: MoRef,
    *,
    warmup_s: Optional[float] = None,
    interval_s: Optional[float] = None,
    timeout_s: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> TaskInfo:
    """
    Block until a remote task leaves the queued/running states.

    Waits ``warmup_s`` after submission, then queries the task every
    ``interval_s`` seconds. Timings default to the session's configuration.

    Returns:
        The final TaskInfo when the task succeeded.

    Raises:
        VumTaskError: the task ended in the error state.
        TaskTimeoutError: ``timeout_s`` elapsed before the task finished.
        TaskCancelledError: ``cancel`` was set while waiting.
    """
    cfg = session.cfg
    warmup_s = cfg.task_warmup_s if warmup_s is None else warmup_s
    interval_s = cfg.task_poll_interval_s if interval_s is None else interval_s
    timeout_s = cfg.task_timeout_s if timeout_s is None else timeout_s

    if cancel is not None and sleep is time.sleep:
        sleep = cancel.wait  # wake early on cancellation

    deadline = clock() + timeout_s
    sleep(warmup_s)
    while True:
        if cancel is not None and cancel.is_set():
            raise TaskCancelledError(f"Stopped waiting for task {task.value}: cancelled", task=task.value)

        info = session.task_info(task)
        if info.done:
            if info.state == TaskState.ERROR:
                logger.error("Task %s failed: %s", task.value, info.error_message)
                raise VumTaskError(f"Task {task.value} failed: {info.error_message}", task=task.value)
            logger.info("Task %s completed", task.value)
            return info

        logger.info("Task %s %s (%s%%)", task.value, info.state.value, info.progress if info.progress is not None else "?")
        if on_progress is not None:
            on_progress(info)

        if clock() + interval_s > deadline:
            raise TaskTimeoutError(f"Task {task.value} still {info.state.value} after {timeout_s:.0f}s", task=task.value)
        sleep(interval_s)
