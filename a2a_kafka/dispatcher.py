"""
Task dispatcher: bridges one Kafka record to one task lifecycle

Per record
----------
RECEIVED -> DESCRIBED -> SUBMITTED -> POLLING -> RESOLVED | POLL_TIMEOUT -> ACK_ELIGIBLE

Only a failed submission (SubmissionError / HandlerPanic) withholds the acknowledgment. A wait that times out is logged
and the last known task is returned; the task keeps running on the backend
"""

import logging

from .task_client import TaskClient
from .tasks import HandlerPanic, SubmissionError, Task, TaskClientError, TaskTimeoutError, format_description


log = logging.getLogger("dispatcher")

DEFAULT_RESULT_TIMEOUT_S = 5.0


class TaskDispatcher:
    """
    Stateless apart from the shared task client

    Parameters
    ----------
    client: TaskClient - Shared, thread-safe backend handle (owned by the process, not by the dispatcher)
    result_timeout_s: float - Upper bound on the wait for a terminal task status
    """
    def __init__(self, client: TaskClient, result_timeout_s: float = DEFAULT_RESULT_TIMEOUT_S):
        self.client = client
        self.result_timeout_s = result_timeout_s

    def handle(self, message_type: str, topic: str, key: str, value: str) -> Task:
        """
        Describe, submit and await one task

        Returns
        ----------
        Task - The resolved task, or the latest snapshot if the wait timed out

        Raises
        ----------
        SubmissionError - The backend rejected the task or was unreachable
        HandlerPanic - Anything else went wrong before the task existed
        """
        description = format_description(message_type, topic, key, value)

        try:
            task = self.client.submit_task(description)
        except SubmissionError:
            raise
        except TaskClientError as e:
            raise SubmissionError(str(e)) from e
        except Exception as e:
            raise HandlerPanic(f"Unexpected error submitting task for {topic}/{key}: {e}") from e

        log.info(f"Created task {task.id} for Kafka message from topic {topic}")

        try:
            result = self.client.get_task(task.id, self.result_timeout_s)
            log.info(f"Task result: id={result.id} status={result.status.value} result={result.result!r}")
            return result
        except TaskTimeoutError as e:
            log.warning(f"Timed out waiting for task {task.id} after {self.result_timeout_s}s; status={e.task.status.value}")
            return e.task
        except Exception as e:
            # The task exists; failing to read it back must not withhold the ack
            log.error(f"Failed to fetch result of task {task.id}: {e}")
            return task
