"""Shared test fixtures"""
import pytest

from a2a_kafka.actions import default_registry
from a2a_kafka.task_client import LocalTaskClient, TaskClient
from a2a_kafka.tasks import Task, TaskState


class FakeMessage:
    """Quacks like confluent_kafka.Message"""

    def __init__(self, topic, key, value, partition=0, offset=0, error=None):
        self._topic = topic
        self._key = key.encode("utf-8") if isinstance(key, str) else key
        self._value = value.encode("utf-8") if isinstance(value, str) else value
        self._partition = partition
        self._offset = offset
        self._error = error

    def topic(self):
        return self._topic

    def key(self):
        return self._key

    def value(self):
        return self._value

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def error(self):
        return self._error


class StubTaskClient(TaskClient):
    """Scriptable task backend that records every call"""

    def __init__(self):
        self.descriptions = []
        self.waits = []
        self.submit_error = None
        self.get_error = None
        self.final_status = TaskState.COMPLETED

    def submit_task(self, description):
        self.descriptions.append(description)
        if self.submit_error is not None:
            raise self.submit_error
        return Task(id=f"task-{len(self.descriptions)}", description=description)

    def get_task(self, task_id, timeout_s):
        self.waits.append((task_id, timeout_s))
        if self.get_error is not None:
            raise self.get_error
        return Task(id=task_id, status=self.final_status, result="done")


class RecordingAck:
    def __init__(self):
        self.acknowledged = False
        self.calls = 0

    def acknowledge(self):
        self.calls += 1
        self.acknowledged = True


@pytest.fixture
def make_message():
    return FakeMessage


@pytest.fixture
def stub_client():
    return StubTaskClient()


@pytest.fixture
def ack():
    return RecordingAck()


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def local_client(registry):
    client = LocalTaskClient(registry, max_workers=2)
    client.start()
    yield client
    client.close()


@pytest.fixture
def order_value():
    return '{"id":"ORD-1","status":"created","amount":150.00}'
