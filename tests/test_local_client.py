"""Unit tests for the in-process task backend"""
import threading

import pytest

from a2a_kafka.actions import Action, ActionGroup, ActionRegistry
from a2a_kafka.dispatcher import TaskDispatcher
from a2a_kafka.task_client import LocalTaskClient
from a2a_kafka.tasks import (
    SubmissionError,
    TaskNotFoundError,
    TaskState,
    TaskTimeoutError,
    format_description,
)


def test_order_task_completes(local_client, order_value):
    task = local_client.submit_task(format_description("order-processing", "orders", "ORD-1", order_value))

    assert task.id
    assert task.status in (TaskState.PENDING, TaskState.IN_PROGRESS, TaskState.COMPLETED)

    done = local_client.get_task(task.id, 5)

    assert done.status == TaskState.COMPLETED
    assert done.result == "Processed your order Order ID: ORD-1, Status: created, Amount: 150.0"
    # The action's status report lands on the task
    assert done.message == done.result


def test_each_submission_creates_a_new_task(local_client, order_value):
    description = format_description("order-processing", "orders", "ORD-1", order_value)

    first = local_client.submit_task(description)
    second = local_client.submit_task(description)

    assert first.id != second.id


def test_submission_rejected_before_start(registry):
    client = LocalTaskClient(registry)

    with pytest.raises(SubmissionError):
        client.submit_task(format_description("order-processing", "orders", "ORD-1", "{}"))


def test_submission_rejected_after_close(registry):
    with LocalTaskClient(registry) as client:
        pass

    with pytest.raises(SubmissionError):
        client.submit_task(format_description("order-processing", "orders", "ORD-1", "{}"))


def test_unknown_message_type_is_rejected(local_client):
    with pytest.raises(SubmissionError, match="No action registered"):
        local_client.submit_task(format_description("refund-processing", "refunds", "R-1", "{}"))


def test_malformed_description_is_rejected(local_client):
    with pytest.raises(SubmissionError):
        local_client.submit_task("hello")


def test_unknown_task_id(local_client):
    with pytest.raises(TaskNotFoundError):
        local_client.get_task("missing", 0.1)


def test_wait_times_out_while_action_runs():
    release = threading.Event()
    registry = ActionRegistry()
    registry.register(Action("slow", "blocks", ActionGroup("g", "d"), "order-processing",
                             lambda request, callback: "finished" if release.wait(5) else "gave up"))

    with LocalTaskClient(registry, max_workers=1) as client:
        task = client.submit_task(format_description("order-processing", "orders", "ORD-9", "{}"))

        with pytest.raises(TaskTimeoutError) as exc_info:
            client.get_task(task.id, 0.05)

        assert exc_info.value.task.id == task.id
        assert exc_info.value.task.status in (TaskState.PENDING, TaskState.IN_PROGRESS)

        release.set()
        assert client.get_task(task.id, 5).result == "finished"


def test_failing_action_marks_task_failed():
    def explode(request, callback):
        raise RuntimeError("ledger offline")

    registry = ActionRegistry()
    registry.register(Action("boom", "fails", ActionGroup("g", "d"), "payment-processing", explode))

    with LocalTaskClient(registry) as client:
        task = client.submit_task(format_description("payment-processing", "payments", "PAY-1", "{}"))
        done = client.get_task(task.id, 5)

    assert done.status == TaskState.FAILED
    assert done.result == "ledger offline"


def test_finished_tasks_are_evicted_beyond_retention(registry, order_value):
    with LocalTaskClient(registry, max_workers=2, max_finished=10) as client:
        dispatcher = TaskDispatcher(client)
        tasks = [dispatcher.handle("order-processing", "orders", "ORD-1", order_value) for _ in range(50)]

        assert all(t.status == TaskState.COMPLETED for t in tasks)
        assert len(client.tasks) <= 10
        assert len(client.done) <= 10
        assert len(client.finished) == 10

        with pytest.raises(TaskNotFoundError):
            client.get_task(tasks[0].id, 0.1)
        assert client.get_task(tasks[-1].id, 0.1).status == TaskState.COMPLETED
