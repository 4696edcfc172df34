"""
Task model shared by the dispatcher and the task backends

A Kafka record becomes a task description string, the backend turns that string back into a
`TaskRequest`, runs the matching action and tracks the outcome on a `Task`
"""

import enum
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


DESCRIPTION_PREFIX = "kafka-message:"

_DESCRIPTION_RE = re.compile(r"^kafka-message:(?P<message_type>\S+) topic:(?P<topic>\S+) key:", re.DOTALL)
_VALUE_SEP = " value:"


class TaskState(enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


@dataclass
class Task:
    """
    A unit of work created by the task backend

    Fields
    ----------
    id: str - Backend assigned (or client generated) task id
    status: TaskState - Lifecycle state
    result: Optional[str] - Action output once COMPLETED, error text once FAILED
    description: str - The task description the task was created from
    message: Optional[str] - Last status message reported by the running action
    """
    id: str
    status: TaskState = TaskState.PENDING
    result: Optional[str] = None
    description: str = ""
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal


@dataclass(frozen=True)
class TaskRequest:
    """Parsed form of a task description"""
    message_type: str
    topic: str
    key: str
    value: str
    payload: Dict[str, Any] = field(default_factory=dict)


# ---------- Errors ----------
class TaskClientError(Exception):
    """Base class for task backend failures"""


class SubmissionError(TaskClientError):
    """The backend rejected the task or could not be reached"""


class TaskNotFoundError(TaskClientError):
    pass


class TaskTimeoutError(TaskClientError, TimeoutError):
    """
    The task did not reach a terminal state within the wait bound

    `task` carries the last snapshot seen by the client, so callers can still report on it
    """
    def __init__(self, task: Task, timeout_s: float):
        super().__init__(f"Task {task.id} not finished after {timeout_s}s (status={task.status.value})")
        self.task = task
        self.timeout_s = timeout_s


class HandlerPanic(Exception):
    """Unexpected failure while handling a record (not a backend error)"""


# ---------- Description codec ----------
def format_description(message_type: str, topic: str, key: str, value: str) -> str:
    return f"{DESCRIPTION_PREFIX}{message_type} topic:{topic} key:{key} value:{value}"


def parse_description(description: str) -> TaskRequest:
    """
    Parse a task description back into its parts

    The value is decoded as JSON when it holds an object; any other value leaves `payload` empty

    Keys may themselves contain " value:", so every separator position is tried and the first split whose
    value is a JSON object wins; without one, the split falls at the first separator

    Raises
    ----------
    ValueError - If the string is not a kafka-message description
    """
    description = description or ""
    m = _DESCRIPTION_RE.match(description)
    rest = description[m.end():] if m else ""

    splits = []
    i = rest.find(_VALUE_SEP)
    while i != -1:
        splits.append(i)
        i = rest.find(_VALUE_SEP, i + 1)
    if m is None or not splits:
        raise ValueError(f"Not a kafka-message task description: {description[:80]!r}")

    key, value, payload = rest[:splits[0]], rest[splits[0] + len(_VALUE_SEP):], {}
    for i in splits:
        candidate = rest[i + len(_VALUE_SEP):]
        decoded = _json_object(candidate)
        if decoded is not None:
            key, value, payload = rest[:i], candidate, decoded
            break

    return TaskRequest(
        message_type=m.group("message_type"),
        topic=m.group("topic"),
        key=key,
        value=value,
        payload=payload,
    )


def _json_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        decoded = json.loads(text)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None
