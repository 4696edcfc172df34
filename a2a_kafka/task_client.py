"""
Task backends

`TaskClient` is the interface the dispatcher talks to. It is one shared handle per process: created and started at
process start, used concurrently by every partition worker, closed at shutdown

`LocalTaskClient` runs tasks in-process on a thread pool, resolving each task description to a registered action
"""

import dataclasses
import logging
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from .actions import ActionRegistry, StatusCallback
from .tasks import (
    SubmissionError,
    Task,
    TaskNotFoundError,
    TaskState,
    TaskTimeoutError,
    parse_description,
)


log = logging.getLogger("task_client")


class TaskClient:
    """
    Interface of a task backend

    Implementations must be safe for concurrent use from many threads
    """
    def start(self) -> None:
        pass

    def close(self) -> None:
        pass

    def submit_task(self, description: str) -> Task:
        """Create a task from `description`. Raises SubmissionError if the backend rejects it or is unreachable"""
        raise NotImplementedError

    def get_task(self, task_id: str, timeout_s: float) -> Task:
        """Wait up to `timeout_s` for the task to finish. Raises TaskTimeoutError if it does not"""
        raise NotImplementedError

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()


class _TaskStatusCallback(StatusCallback):
    """Records action status reports on the task they belong to"""
    def __init__(self, client: "LocalTaskClient", task_id: str):
        self.client = client
        self.task_id = task_id

    def send_status(self, message: str, state: TaskState) -> None:
        self.client._update(self.task_id, message=message)


class LocalTaskClient(TaskClient):
    """
    In-process task backend

    Lifecycle
    ----------
    - `start()` spins up the executor; submissions before `start()` or after `close()` are rejected
    - `close()` stops accepting work and waits for running actions

    State
    ----------
    tasks: Dict[str, Task] - Running tasks plus the most recently finished ones, guarded by `lock`
    done: Dict[str, threading.Event] - Set once the matching task reaches a terminal state
    finished: OrderedDict - Finished task ids, oldest first; beyond `max_finished` the oldest are evicted from
        `tasks` and `done`, after which `get_task` reports them as unknown

    Callers always receive copies of the stored tasks
    """
    def __init__(self, registry: ActionRegistry, max_workers: int = 4, max_finished: int = 1000):
        self.registry = registry
        self.max_workers = max_workers
        self.max_finished = max_finished

        self.lock = threading.Lock()
        self.tasks: Dict[str, Task] = {}
        self.done: Dict[str, threading.Event] = {}
        self.finished: "OrderedDict[str, None]" = OrderedDict()
        self._executor: Optional[ThreadPoolExecutor] = None

    def start(self) -> None:
        with self.lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="task")
                log.info(f"Local task client started with {len(self.registry)} actions")

    def close(self) -> None:
        with self.lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
            log.info("Local task client closed")

    def submit_task(self, description: str) -> Task:
        try:
            request = parse_description(description)
        except ValueError as e:
            raise SubmissionError(str(e)) from e

        action = self.registry.for_message_type(request.message_type)
        if action is None:
            raise SubmissionError(f"No action registered for message type {request.message_type}")

        task = Task(id=str(uuid.uuid4()), description=description)
        with self.lock:
            if self._executor is None:
                raise SubmissionError("Task client is not running")
            self.tasks[task.id] = task
            self.done[task.id] = threading.Event()
            snapshot = dataclasses.replace(task)
            self._executor.submit(self._run, task.id, action, request)

        log.debug(f"Task {task.id} submitted for action {action.name}")
        return snapshot

    def get_task(self, task_id: str, timeout_s: float) -> Task:
        with self.lock:
            event = self.done.get(task_id)
        if event is None:
            raise TaskNotFoundError(f"Unknown task {task_id}")

        # Wait outside the lock so workers can finish the task
        finished = event.wait(timeout_s)
        snapshot = self._snapshot(task_id)
        if not finished:
            raise TaskTimeoutError(snapshot, timeout_s)
        return snapshot

    # ---------- Internals ----------
    def _run(self, task_id: str, action, request) -> None:
        self._update(task_id, status=TaskState.IN_PROGRESS)
        try:
            result = action.invoke(request, _TaskStatusCallback(self, task_id))
            self._update(task_id, status=TaskState.COMPLETED, result=result)
        except Exception as e:
            log.exception(f"Action {action.name} failed for task {task_id}")
            self._update(task_id, status=TaskState.FAILED, result=str(e))
        finally:
            self._retire(task_id)

    def _retire(self, task_id: str) -> None:
        with self.lock:
            event = self.done[task_id]
            self.finished[task_id] = None
            while len(self.finished) > self.max_finished:
                old, _ = self.finished.popitem(last=False)
                self.tasks.pop(old, None)
                self.done.pop(old, None)
        event.set()

    def _update(self, task_id: str, **changes) -> None:
        with self.lock:
            task = self.tasks[task_id]
            for name, value in changes.items():
                setattr(task, name, value)

    def _snapshot(self, task_id: str) -> Task:
        with self.lock:
            task = self.tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} already evicted")
            return dataclasses.replace(task)
