"""
Task Dispatch

Named tasks run off the request path:
- "store_tags"      -> TagIndexer.store_cache_tags(entities, tags, url)
- "invalidate_tags" -> InvalidationOrchestrator.invalidate_tags(invalidation)

Task failures are non-critical: they are logged and never reach the caller.
"""

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from starlette.background import BackgroundTasks


logger = logging.getLogger(__name__)

TaskHandler = Callable[..., Any]


class TaskDispatcher(ABC):
    """Registry of named task handlers plus a way to run them."""

    def __init__(self, handlers: Optional[Dict[str, TaskHandler]] = None):
        self.handlers: Dict[str, TaskHandler] = dict(handlers or {})

    def register(self, name: str, handler: TaskHandler) -> None:
        self.handlers[name] = handler

    def dispatch(self, task_name: str, **payload: Any) -> None:
        """Schedule a task. Unknown task names raise KeyError."""
        handler = self.handlers[task_name]

        logger.debug(f"Dispatching task {task_name}")

        self.submit(task_name, handler, payload)

    @abstractmethod
    def submit(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        ...

    def run(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        try:
            handler(**payload)
        except Exception as e:
            logger.error(f"Task {task_name} failed: {e}", exc_info=True)


class InlineDispatcher(TaskDispatcher):
    """Runs tasks synchronously. For tests and CLI scripts."""

    def submit(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        self.run(task_name, handler, payload)


class BackgroundTasksDispatcher(TaskDispatcher):
    """Runs tasks after the response has been sent."""

    def __init__(
        self,
        handlers: Optional[Dict[str, TaskHandler]] = None,
        background_tasks: Optional[BackgroundTasks] = None,
    ):
        super().__init__(handlers)
        self.background_tasks = background_tasks if background_tasks is not None else BackgroundTasks()

    def submit(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        self.background_tasks.add_task(self.run, task_name, handler, payload)


class ThreadPoolDispatcher(TaskDispatcher):
    """Process-wide worker pool, used for invalidations raised by ORM flushes."""

    def __init__(
        self,
        handlers: Optional[Dict[str, TaskHandler]] = None,
        max_workers: int = 4,
    ):
        super().__init__(handlers)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="edge-flush")

    def submit(self, task_name: str, handler: TaskHandler, payload: Dict[str, Any]) -> None:
        self.executor.submit(self.run, task_name, handler, payload)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
