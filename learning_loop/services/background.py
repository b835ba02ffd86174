"""
Supervised background worker for fire-and-forget continuations.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class BackgroundWorker:
    """Thread pool whose tasks each run inside their own error boundary.

    A failing task is logged and discarded; it never reaches the code that spawned it.
    """

    def __init__(self, max_workers: int = 4, name: str = 'learning-loop'):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending = 0
        self._idle = threading.Condition()
        self._closed = False
        self.name = name

    def spawn(self, func: Callable[..., Any], *args: Any, description: str = 'task', **kwargs: Any) -> bool:
        """
        Schedule func(*args, **kwargs) without waiting for it.

        Returns:
            True if scheduled, False if the worker is shut down
        """
        with self._idle:
            if self._closed:
                logger.error(f'Worker {self.name} is shut down; dropping {description}')
                return False
            self._pending += 1

        try:
            self._executor.submit(self._run, func, description, args, kwargs)
        except RuntimeError as e:
            self._task_done()
            logger.error(f'Worker {self.name} rejected {description}: {e}')
            return False
        return True

    def _run(self, func: Callable[..., Any], description: str, args: tuple, kwargs: dict) -> None:
        try:
            func(*args, **kwargs)
        except Exception as e:
            logger.error(f'Background {description} failed: {e}', exc_info=True)
        finally:
            self._task_done()

    def _task_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no task is queued or running, including tasks spawned by tasks.

        Returns:
            True if the worker became idle, False on timeout
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drain outstanding work, then stop accepting tasks."""
        if not self.join(timeout):
            logger.warning(f'Worker {self.name} still had {self.pending} task(s) at shutdown')
        with self._idle:
            self._closed = True
        self._executor.shutdown(wait=False)
        logger.info(f'Worker {self.name} shut down')
