"""
A2A HTTP task backend

Talks JSON-RPC 2.0 to a remote A2A agent server:
    - tasks/send - create a task from a text message (the task description)
    - tasks/get  - fetch the task's current state

HTTP behavior
----------
- One pooled requests.Session shared by all partition workers, created on first use and closed by `close()`
- Exponential backoff retries for 429/5xx; task ids are generated client side so a retried tasks/send targets the same task
- `get_task` polls tasks/get every A2A_POLL_INTERVAL_S until the task is terminal or the wait bound elapses
"""

import logging
import os
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter, Retry

from .task_client import TaskClient
from .tasks import SubmissionError, Task, TaskNotFoundError, TaskState, TaskTimeoutError


# ---------- Config ----------
A2A_SERVER_URL = os.getenv("A2A_SERVER_URL", "http://localhost:7860")
A2A_POLL_INTERVAL_S = float(os.getenv("A2A_POLL_INTERVAL_S", "0.5"))
A2A_HTTP_TIMEOUT_S = float(os.getenv("A2A_HTTP_TIMEOUT_S", "10"))
USER_AGENT = os.getenv("USER_AGENT", "a2a-kafka-consumer/1.0")

log = logging.getLogger("a2a_http")

# A2A task states -> local lifecycle
STATE_MAP = {
    "submitted": TaskState.PENDING,
    "working": TaskState.IN_PROGRESS,
    "input-required": TaskState.IN_PROGRESS,
    "completed": TaskState.COMPLETED,
    "failed": TaskState.FAILED,
    "canceled": TaskState.FAILED,
}

TASK_NOT_FOUND_CODE = -32001


def make_session() -> requests.Session:
    """
    Build a preconfigured HTTP client for the A2A server

    Features
    ----------
    - Connection pooling & TCP/TLS reuse
    - Exponential backoff retries for 429 and 5xx, honoring Retry-After
    - Default headers: User-Agent and JSON content type

    Returns
    ----------
    requests.Session
    """
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=0.3,                                  # 0.3s, 0.6s, 1.2s
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["POST"],                            # JSON-RPC rides on POST
        respect_retry_after_header=True,
        raise_on_status=False
    )
    adapter = HTTPAdapter(max_retries=retries, pool_maxsize=10)

    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT, "Content-Type": "application/json"})
    return session


class A2ARpcError(Exception):
    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"A2A error {code}: {message}")
        self.code = code


def _parts_text(parts: Optional[List[Dict[str, Any]]]) -> List[str]:
    return [p.get("text", "") for p in parts or [] if p.get("type") == "text"]


def task_from_a2a(data: Dict[str, Any], description: str = "") -> Task:
    """
    Convert an A2A task object into a `Task`

    The result is the text of the artifacts' text parts; failing that, the status message text
    """
    status = data.get("status") or {}
    state = STATE_MAP.get(str(status.get("state", "")).lower(), TaskState.PENDING)

    message_text = "\n".join(_parts_text((status.get("message") or {}).get("parts"))) or None

    artifact_texts: List[str] = []
    for artifact in data.get("artifacts") or []:
        artifact_texts.extend(_parts_text(artifact.get("parts")))
    result = "\n".join(artifact_texts) or (message_text if state.terminal else None)

    return Task(id=str(data.get("id", "")), status=state, result=result, description=description, message=message_text)


class HttpTaskClient(TaskClient):
    """
    Task backend reached over HTTP

    Parameters
    ----------
    base_url: str - JSON-RPC endpoint of the A2A server
    poll_interval_s: float - Sleep between tasks/get calls while waiting
    http_timeout_s: float - Per-request timeout
    session_factory - Builds the shared session (defaults to `make_session`)
    """
    def __init__(self, base_url: str = A2A_SERVER_URL, poll_interval_s: float = A2A_POLL_INTERVAL_S,
                 http_timeout_s: float = A2A_HTTP_TIMEOUT_S, session_factory=make_session):
        self.base_url = base_url
        self.poll_interval_s = poll_interval_s
        self.http_timeout_s = http_timeout_s
        self.session_factory = session_factory

        self._session_obj: Optional[requests.Session] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        log.info(f"A2A HTTP task client targeting {self.base_url}")

    def close(self) -> None:
        with self._lock:
            session, self._session_obj = self._session_obj, None
        if session is not None:
            session.close()

    def _session(self) -> requests.Session:
        with self._lock:
            if self._session_obj is None:
                self._session_obj = self.session_factory()
            return self._session_obj

    def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        One JSON-RPC round trip

        Raises
        ----------
        requests.RequestException - Transport failure or non-2xx status
        A2ARpcError - The server answered with a JSON-RPC error object
        """
        body = {"jsonrpc": "2.0", "id": str(uuid.uuid4()), "method": method, "params": params}
        resp = self._session().post(self.base_url, json=body, timeout=self.http_timeout_s)
        resp.raise_for_status()

        payload = resp.json()
        if payload.get("error"):
            err = payload["error"]
            raise A2ARpcError(err.get("code"), err.get("message", ""))
        return payload.get("result") or {}

    def submit_task(self, description: str) -> Task:
        task_id = str(uuid.uuid4())
        params = {
            "id": task_id,
            "sessionId": str(uuid.uuid4()),
            "message": {"role": "user", "parts": [{"type": "text", "text": description}]},
        }
        try:
            result = self._call("tasks/send", params)
        except (requests.RequestException, ValueError, A2ARpcError) as e:
            raise SubmissionError(f"tasks/send failed: {e}") from e

        task = task_from_a2a(result, description)
        if not task.id:
            task.id = task_id
        log.debug(f"Remote task {task.id} created (status={task.status.value})")
        return task

    def get_task(self, task_id: str, timeout_s: float) -> Task:
        deadline = time.monotonic() + timeout_s
        last = Task(id=task_id)

        while True:
            try:
                last = task_from_a2a(self._call("tasks/get", {"id": task_id}), last.description)
                last.id = last.id or task_id
                if last.is_terminal:
                    return last
            except A2ARpcError as e:
                if e.code == TASK_NOT_FOUND_CODE:
                    raise TaskNotFoundError(f"Unknown task {task_id}") from e
                log.warning(f"tasks/get {task_id} failed: {e}")
            except (requests.RequestException, ValueError) as e:
                log.warning(f"tasks/get {task_id} failed: {e}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TaskTimeoutError(last, timeout_s)
            time.sleep(min(self.poll_interval_s, remaining))
